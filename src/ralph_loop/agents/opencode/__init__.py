"""OpenCode server backend support."""

from .client import OpenCodeClient
from .events import SSEEvent, parse_sse_lines
from .provider import BackendLaunchError, OpenCodeProvider, server_auth_from_env
from .translate import OpenCodeEventTranslator

__all__ = [
    "BackendLaunchError",
    "OpenCodeClient",
    "OpenCodeEventTranslator",
    "OpenCodeProvider",
    "SSEEvent",
    "parse_sse_lines",
    "server_auth_from_env",
]
