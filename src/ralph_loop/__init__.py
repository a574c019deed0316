"""Autonomous run-until-done loop around an OpenCode agent backend."""

__version__ = "0.1.0"
