"""Agent backend providers."""
