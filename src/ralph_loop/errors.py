class RalphError(Exception):
    """Base class for errors raised while driving the loop."""


class ConnectivityError(RalphError):
    """An externally supplied backend could not be reached. Never retried."""


class SessionError(RalphError):
    """The backend reported an error for the active session mid-turn."""


class SessionClosedError(RalphError):
    """A message was sent on a session that has already ended."""


class LoopError(RalphError):
    """An iteration failed and the error strategy gave up."""
