"""hassws — asyncio client for a home-automation gateway's WebSocket API.

Exports the building blocks most callers need:
  - HassClient / open_client / connect — typed request/response facade
  - Connection      — owns the socket, reader/writer loops, correlation tables
  - errors          — HassError and its subclasses
  - models          — typed result payloads (config, states, registries…)
"""

from . import errors, log_setup, models
from .client import HassClient, connect, open_client
from .connection import AuthState, Connection
from .errors import (
    AuthenticationFailed,
    DeserializationFailed,
    GatewayError,
    HassError,
    NotAuthenticated,
    TransportClosed,
    TransportError,
    UnexpectedPayload,
    UnknownSubscription,
)
from .messages import WSEvent, WSResult
from .transport import FrameStream, WebSocketStream, build_url

__version__ = "0.1.0"
__all__ = [
    "errors",
    "log_setup",
    "models",
    "HassClient",
    "connect",
    "open_client",
    "AuthState",
    "Connection",
    "AuthenticationFailed",
    "DeserializationFailed",
    "GatewayError",
    "HassError",
    "NotAuthenticated",
    "TransportClosed",
    "TransportError",
    "UnexpectedPayload",
    "UnknownSubscription",
    "WSEvent",
    "WSResult",
    "FrameStream",
    "WebSocketStream",
    "build_url",
]
