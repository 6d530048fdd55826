"""Duplex text-frame transport over a WebSocket connection.

The connection engine only needs three awaitables: send one frame,
receive one frame, close. :class:`FrameStream` names that contract and
:class:`WebSocketStream` implements it with the ``websockets`` library,
translating its exceptions into :mod:`hassws.errors`.
"""

from __future__ import annotations

import logging
from typing import Protocol
from urllib.parse import urlparse, urlunparse

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from .errors import TransportClosed, TransportError

logger = logging.getLogger(__name__)

API_PATH = "/api/websocket"
DEFAULT_PORT = 8123
MAX_FRAME_SIZE = 16 * 1024 * 1024  # get_states on a large install exceeds 1 MiB

_SCHEMES = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}


class FrameStream(Protocol):
    async def send(self, frame: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self) -> None: ...


def build_url(base: str) -> str:
    """Normalise a gateway address into its WebSocket API endpoint.

    Accepts ``host``, ``host:port``, ``http(s)://…`` or ``ws(s)://…``. A
    bare host gets the default port; a missing path becomes
    ``/api/websocket``.
    """
    bare = "://" not in base
    if bare:
        base = f"ws://{base}"
    parsed = urlparse(base)
    scheme = _SCHEMES.get(parsed.scheme)
    if scheme is None:
        raise ValueError(f"Unsupported URL scheme: {parsed.scheme!r}")
    netloc = parsed.netloc
    if bare and parsed.port is None:
        netloc = f"{netloc}:{DEFAULT_PORT}"
    path = parsed.path.rstrip("/") or API_PATH
    return urlunparse(parsed._replace(scheme=scheme, netloc=netloc, path=path))


def _closed_error(exc: ConnectionClosed) -> TransportError:
    if isinstance(exc, ConnectionClosedOK):
        return TransportClosed(f"Connection closed: {exc}")
    return TransportError(f"Connection lost: {exc}")


class WebSocketStream:
    """:class:`FrameStream` backed by a ``websockets`` client connection."""

    def __init__(self, ws: ClientConnection) -> None:
        self._ws = ws

    @classmethod
    async def open(cls, url: str, *, max_size: int | None = MAX_FRAME_SIZE) -> WebSocketStream:
        logger.info("Connecting to gateway: %s", url)
        try:
            ws = await connect(url, max_size=max_size)
        except (OSError, InvalidURI, InvalidHandshake, WebSocketException) as exc:
            raise TransportError(f"Unable to connect to {url}: {exc}") from exc
        logger.info("Connected to gateway: %s", url)
        return cls(ws)

    async def send(self, frame: str) -> None:
        try:
            await self._ws.send(frame)
        except ConnectionClosed as exc:
            raise _closed_error(exc) from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Send failed: {exc}") from exc

    async def recv(self) -> str:
        try:
            frame = await self._ws.recv()
        except ConnectionClosed as exc:
            raise _closed_error(exc) from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Receive failed: {exc}") from exc
        if isinstance(frame, bytes):
            return frame.decode("utf-8", errors="replace")
        return frame

    async def close(self) -> None:
        await self._ws.close()
