"""Exception hierarchy raised by hassws.

Everything derives from :class:`HassError` so callers can catch the whole
family at once. Transport failures are fatal to a connection; every other
error concerns a single request only.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .messages import Response, WSResult


class HassError(Exception):
    """Base class for every hassws error."""


class AuthenticationFailed(HassError):
    """The gateway rejected the token, or the handshake was violated."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Authentication has failed: {message}")
        self.message = message


class NotAuthenticated(HassError):
    """A command was issued before the handshake completed."""


class GatewayError(HassError):
    """A well-formed ``result`` with ``success: false``."""

    def __init__(self, code: str | int, message: str) -> None:
        super().__init__(f"Gateway error {code}: {message}")
        self.code = code
        self.message = message

    @classmethod
    def from_result(cls, result: WSResult) -> GatewayError:
        if result.error is None:
            return cls("unknown_error", "request failed without an error payload")
        return cls(result.error.code, result.error.message)


class UnexpectedPayload(HassError):
    """A valid response of the wrong kind, e.g. a pong where a result was due."""

    def __init__(self, response: Response | Any) -> None:
        kind = getattr(response, "type", type(response).__name__)
        super().__init__(f"Unexpected payload received: {kind}")
        self.response = response


class DeserializationFailed(HassError):
    """A frame or result payload could not be decoded."""


class TransportError(HassError):
    """The underlying connection failed."""


class TransportClosed(TransportError):
    """The connection is closed; no further traffic is possible."""


class UnknownSubscription(HassError):
    """The subscription id is not tracked by this connection."""

    def __init__(self, subscription_id: int) -> None:
        super().__init__(f"Unknown subscription: {subscription_id}")
        self.subscription_id = subscription_id
