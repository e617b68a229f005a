from __future__ import annotations

import logging
from typing import Optional, Protocol, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ...core.logging_utils import log_event
from .constants import CLOSE_CODE_NORMAL
from .errors import TransportError

logger = logging.getLogger(__name__)


class TransportClosed(TransportError):
    """The gateway socket closed; `close_code` is the server's code when known."""


class GatewayConnection(Protocol):
    @property
    def closed(self) -> bool: ...

    async def send(self, message: str) -> None: ...

    async def recv(self) -> Union[str, bytes]: ...

    async def close(self, code: int = CLOSE_CODE_NORMAL) -> None: ...


class GatewayTransport(Protocol):
    async def open(self, url: str) -> GatewayConnection: ...


def gateway_close_code(exc: BaseException) -> Optional[int]:
    received = getattr(exc, "rcvd", None)
    received_code = getattr(received, "code", None)
    if isinstance(received_code, int):
        return received_code
    code = getattr(exc, "close_code", None)
    if isinstance(code, int):
        return code
    return None


class WebsocketsConnection:
    def __init__(self, websocket: websockets.ClientConnection) -> None:
        self._websocket = websocket
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: str) -> None:
        if self._closed:
            raise TransportClosed("Discord gateway socket already closed")
        try:
            await self._websocket.send(message)
        except ConnectionClosed as exc:
            self._closed = True
            code = gateway_close_code(exc)
            raise TransportClosed(
                f"Discord gateway closed during send (code={code})", close_code=code
            ) from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Discord gateway send failed: {exc}") from exc

    async def recv(self) -> Union[str, bytes]:
        try:
            return await self._websocket.recv()
        except ConnectionClosed as exc:
            self._closed = True
            code = gateway_close_code(exc)
            raise TransportClosed(
                f"Discord gateway closed (code={code})", close_code=code
            ) from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Discord gateway receive failed: {exc}") from exc

    async def close(self, code: int = CLOSE_CODE_NORMAL) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._websocket.close(code=code)
        except (OSError, WebSocketException) as exc:
            log_event(
                logger,
                logging.DEBUG,
                "discord.transport.close_failed",
                close_code=code,
                exc=exc,
            )


class WebsocketsTransport:
    """Default gateway transport backed by the `websockets` asyncio client."""

    def __init__(self, *, open_timeout: float = 10.0, max_size: int = 2**23) -> None:
        self._open_timeout = open_timeout
        self._max_size = max_size

    async def open(self, url: str) -> GatewayConnection:
        try:
            websocket = await websockets.connect(
                url, open_timeout=self._open_timeout, max_size=self._max_size
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            raise TransportError(
                f"Discord gateway connect failed: {type(exc).__name__}: {exc}"
            ) from exc
        return WebsocketsConnection(websocket)
