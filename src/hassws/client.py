"""HassClient — typed request/response API over a :class:`Connection`.

Usage::

    async with open_client("ws://localhost:8123/api/websocket", token) as client:
        config = await client.get_config()
        sub_id = await client.subscribe("state_changed")
        async for event in client.events(sub_id):
            print(event.as_hass_event())

Every request follows the same path: build the command, hand it to the
connection (which assigns the id and correlates the reply), then decode the
reply with :func:`hassws.messages.expect_result`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from .connection import OUTBOUND_QUEUE_SIZE, Connection
from .errors import UnknownSubscription
from .messages import (
    Ask,
    CallService,
    Command,
    Pong,
    SubscribeEvents,
    UnsubscribeEvents,
    WSEvent,
    WSResult,
    expect_result,
)
from .models import (
    HassArea,
    HassConfig,
    HassDevice,
    HassEntity,
    HassEntityState,
    HassPanels,
    HassServices,
)
from .subscriptions import EventHandler, Subscription
from .transport import MAX_FRAME_SIZE, WebSocketStream

logger = logging.getLogger(__name__)


class HassClient:
    """Public API of one gateway connection."""

    def __init__(self, connection: Connection) -> None:
        self.connection = connection

    async def __aenter__(self) -> HassClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def subscriptions(self) -> list[int]:
        """Ids of the live subscriptions."""
        return self.connection.subscriptions.ids()

    async def authenticate(self, access_token: str) -> None:
        """Authenticate the session with a long-lived access token."""
        await self.connection.authenticate(access_token)

    async def close(self) -> None:
        await self.connection.close()

    # ------------------------------------------------------------------
    # Generic request path
    # ------------------------------------------------------------------

    async def _request(
        self,
        command: Command,
        result_type: Any = None,
        *,
        expect: type = WSResult,
        **kwargs: Any,
    ) -> Any:
        response = await self.connection.execute(command, **kwargs)
        return expect_result(response, result_type, expect=expect)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def ping(self) -> None:
        """Heartbeat: the gateway answers ``ping`` with ``pong``."""
        await self._request(Ask(type="ping"), expect=Pong)

    async def get_config(self) -> HassConfig:
        return await self._request(Ask(type="get_config"), HassConfig)

    async def get_states(self) -> list[HassEntityState]:
        return await self._request(Ask(type="get_states"), list[HassEntityState])

    async def get_services(self) -> HassServices:
        return await self._request(Ask(type="get_services"), HassServices)

    async def get_panels(self) -> HassPanels:
        return await self._request(Ask(type="get_panels"), HassPanels)

    async def get_area_registry(self) -> list[HassArea]:
        return await self._request(Ask(type="config/area_registry/list"), list[HassArea])

    async def get_device_registry(self) -> list[HassDevice]:
        return await self._request(Ask(type="config/device_registry/list"), list[HassDevice])

    async def get_entity_registry(self) -> list[HassEntity]:
        return await self._request(Ask(type="config/entity_registry/list"), list[HassEntity])

    async def call_service(
        self,
        domain: str,
        service: str,
        service_data: dict[str, Any] | None = None,
    ) -> Any:
        """Call a service and return the gateway's ``result`` payload.

        The gateway replies once the service has finished executing. A
        ``GatewayError`` means the service was not executed.
        """
        command = CallService(domain=domain, service=service, service_data=service_data)
        return await self._request(command)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        event_type: str | None = None,
        handler: EventHandler | None = None,
    ) -> int:
        """Subscribe to events of *event_type* (every event when None).

        Returns the subscription id. Events go to *handler* if given,
        otherwise they are queued for :meth:`events`.
        """
        subscription = Subscription(event_type, handler)
        table = self.connection.subscriptions

        def _record(result: WSResult) -> None:
            # Runs in the reader before any following event frame is routed
            table.add(result.id, subscription)

        await self._request(SubscribeEvents(event_type=event_type), on_ack=_record)
        logger.info("Subscribed to %s (id=%s)", event_type or "all events", subscription.id)
        return subscription.id  # type: ignore[return-value]

    async def unsubscribe(self, subscription_id: int) -> None:
        """Cancel a subscription. Unknown ids raise ``UnknownSubscription``."""
        table = self.connection.subscriptions
        subscription = table.get(subscription_id)
        if subscription is None:
            raise UnknownSubscription(subscription_id)

        def _forget(result: WSResult) -> None:
            # Runs in the reader, so a teardown right after the ack finds it gone
            table.discard(subscription_id)

        await self._request(UnsubscribeEvents(subscription=subscription_id), on_ack=_forget)
        subscription.close()
        logger.info("Unsubscribed %s", subscription_id)

    async def events(self, subscription_id: int) -> AsyncIterator[WSEvent]:
        """Iterate the events of a handler-less subscription until it ends."""
        subscription = self.connection.subscriptions.get(subscription_id)
        if subscription is None:
            raise UnknownSubscription(subscription_id)
        if subscription.handler is not None:
            raise ValueError(f"subscription {subscription_id} delivers to a handler")
        while True:
            event = await subscription.queue.get()
            if event is None:
                return
            yield event


async def connect(
    url: str,
    *,
    queue_size: int = OUTBOUND_QUEUE_SIZE,
    max_size: int | None = MAX_FRAME_SIZE,
) -> HassClient:
    """Open the WebSocket and start the connection. Authenticate next."""
    stream = await WebSocketStream.open(url, max_size=max_size)
    connection = Connection(stream, queue_size=queue_size)
    connection.start()
    return HassClient(connection)


@asynccontextmanager
async def open_client(
    url: str,
    access_token: str,
    *,
    queue_size: int = OUTBOUND_QUEUE_SIZE,
    max_size: int | None = MAX_FRAME_SIZE,
) -> AsyncIterator[HassClient]:
    """Connect, authenticate, and close the connection on exit."""
    client = await connect(url, queue_size=queue_size, max_size=max_size)
    try:
        await client.authenticate(access_token)
        yield client
    finally:
        await client.close()
