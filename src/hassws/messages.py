"""Wire messages: outbound commands, inbound responses, and their codecs.

Every frame is a JSON object tagged by its ``type`` field. Commands that
expect a reply carry an ``id`` assigned by the connection's writer loop;
``auth`` is the only command sent without one.
"""

from __future__ import annotations

import functools
import json
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import DeserializationFailed, GatewayError, UnexpectedPayload

# ---------------------------------------------------------------------------
# Commands (client → gateway)
# ---------------------------------------------------------------------------


class Command(BaseModel):
    """An outbound request. Immutable; ``with_id`` returns a stamped copy."""

    model_config = ConfigDict(frozen=True)

    expects_reply: ClassVar[bool] = True

    id: int | None = None
    type: str

    def with_id(self, msg_id: int) -> Command:
        return self.model_copy(update={"id": msg_id})

    def to_frame(self) -> str:
        """Serialise to one compact JSON text frame, dropping null fields."""
        data = {k: v for k, v in self.model_dump(mode="json").items() if v is not None}
        return json.dumps(data, separators=(",", ":"))


class Auth(Command):
    """Handshake frame. Never carries an id and is never logged."""

    expects_reply: ClassVar[bool] = False

    type: Literal["auth"] = "auth"
    access_token: str = Field(repr=False)


class Ask(Command):
    """Parameterless request: ``ping``, ``get_config``, registry listings…"""


class CallService(Command):
    type: Literal["call_service"] = "call_service"
    domain: str
    service: str
    service_data: dict[str, Any] | None = None


class SubscribeEvents(Command):
    type: Literal["subscribe_events"] = "subscribe_events"
    event_type: str | None = None  # None subscribes to every event


class UnsubscribeEvents(Command):
    type: Literal["unsubscribe_events"] = "unsubscribe_events"
    subscription: int


# ---------------------------------------------------------------------------
# Responses (gateway → client)
# ---------------------------------------------------------------------------


class AuthRequired(BaseModel):
    type: Literal["auth_required"]
    ha_version: str | None = None


class AuthOk(BaseModel):
    type: Literal["auth_ok"]
    ha_version: str | None = None


class AuthInvalid(BaseModel):
    type: Literal["auth_invalid"]
    message: str = ""


class Pong(BaseModel):
    type: Literal["pong"]
    id: int


class ErrorInfo(BaseModel):
    code: str | int
    message: str = ""


class WSResult(BaseModel):
    type: Literal["result"]
    id: int
    success: bool
    result: Any = None
    error: ErrorInfo | None = None


class WSEvent(BaseModel):
    """An event pushed for a live subscription; ``id`` is the subscription id."""

    type: Literal["event"]
    id: int
    event: dict[str, Any] = Field(default_factory=dict)

    def as_hass_event(self) -> Any:
        """Decode the payload as a state_changed style ``HassEvent``."""
        from .models import HassEvent

        try:
            return HassEvent.model_validate(self.event)
        except ValidationError as exc:
            raise DeserializationFailed(f"Unable to decode event payload: {exc}") from exc


Response = Annotated[
    AuthRequired | AuthOk | AuthInvalid | Pong | WSResult | WSEvent,
    Field(discriminator="type"),
]

_RESPONSE_ADAPTER: TypeAdapter[Any] = TypeAdapter(Response)

# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def parse_response(raw: str | bytes) -> Any:
    """Deserialise one inbound frame into the matching response model."""
    try:
        return _RESPONSE_ADAPTER.validate_json(raw)
    except ValidationError as exc:
        raise DeserializationFailed(
            f"Unable to deserialize the received value: {exc}"
        ) from exc


def peek_id(raw: str | bytes) -> int | None:
    """Best-effort read of the top-level ``id`` of an undecodable frame."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    msg_id = data.get("id")
    if isinstance(msg_id, int) and not isinstance(msg_id, bool):
        return msg_id
    return None


@functools.lru_cache(maxsize=None)
def _adapter(result_type: Any) -> TypeAdapter[Any]:
    return TypeAdapter(result_type)


def expect_result(response: Any, result_type: Any = None, *, expect: type = WSResult) -> Any:
    """Turn a reply into the typed ``result`` payload or raise.

    ``result_type`` of None returns the raw payload untouched. ``expect``
    names the reply kind the command is answered with; anything other than
    ``WSResult`` (e.g. ``Pong``) is returned as is.
    """
    match response:
        case WSResult(success=False):
            raise GatewayError.from_result(response)
        case _ if expect is not WSResult:
            if isinstance(response, expect):
                return response
            raise UnexpectedPayload(response)
        case WSResult():
            if result_type is None:
                return response.result
            try:
                return _adapter(result_type).validate_python(response.result)
            except ValidationError as exc:
                raise DeserializationFailed(
                    f"Unable to decode result of request {response.id}: {exc}"
                ) from exc
        case _:
            raise UnexpectedPayload(response)
