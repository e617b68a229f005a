"""Scripted gateway transport and a virtual clock for driving sessions."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Union

import pytest

from flowdesk_gateway.integrations.discord.errors import TransportError
from flowdesk_gateway.integrations.discord.transport import TransportClosed


async def settle(rounds: int = 50) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class VirtualClock:
    """`time()`/`sleep()` pair whose sleeps only finish when `advance()` says so."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self.log: list[tuple[Any, ...]] = []
        self._sleepers: list[tuple[float, asyncio.Future[None]]] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (self.now + seconds, future)
        self._sleepers.append(entry)
        try:
            await future
        except asyncio.CancelledError:
            self.log.append(("sleep_cancelled", seconds))
            raise
        finally:
            if entry in self._sleepers:
                self._sleepers.remove(entry)

    @property
    def pending_sleeps(self) -> int:
        return sum(1 for _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            await settle()
            due = [
                entry
                for entry in self._sleepers
                if entry[0] <= target and not entry[1].done()
            ]
            if not due:
                break
            deadline, future = min(due, key=lambda entry: entry[0])
            self.now = max(self.now, deadline)
            future.set_result(None)
        self.now = target
        await settle()


class ScriptedConnection:
    """In-memory gateway socket; the test pushes server frames into it."""

    def __init__(self, clock: VirtualClock, frames: tuple[dict[str, Any], ...] = ()) -> None:
        self._clock = clock
        self._incoming: asyncio.Queue[Union[str, int, None]] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.sent_at: list[float] = []
        self.close_code: Optional[int] = None
        for frame in frames:
            self.push(frame)

    @property
    def closed(self) -> bool:
        return self.close_code is not None

    def push(self, frame: dict[str, Any]) -> None:
        self._incoming.put_nowait(json.dumps(frame))

    def server_close(self, code: int) -> None:
        self._incoming.put_nowait(code)

    def sent_ops(self) -> list[int]:
        return [frame["op"] for frame in self.sent]

    async def send(self, message: str) -> None:
        if self.closed:
            raise TransportClosed("socket closed", close_code=self.close_code)
        self.sent.append(json.loads(message))
        self.sent_at.append(self._clock.now)

    async def recv(self) -> str:
        if self.closed:
            raise TransportClosed("socket closed", close_code=self.close_code)
        item = await self._incoming.get()
        if item is None:
            raise TransportClosed("socket closed", close_code=self.close_code)
        if isinstance(item, int):
            self.close_code = item
            raise TransportClosed(f"server closed ({item})", close_code=item)
        return item

    async def close(self, code: int = 1000) -> None:
        if self.closed:
            return
        self.close_code = code
        self._clock.log.append(("close", code))
        self._incoming.put_nowait(None)


class ScriptedTransport:
    def __init__(self, connections: list[ScriptedConnection]) -> None:
        self._pending = list(connections)
        self.opened_urls: list[str] = []

    async def open(self, url: str) -> ScriptedConnection:
        self.opened_urls.append(url)
        if not self._pending:
            raise TransportError("no scripted connection left")
        return self._pending.pop(0)


def hello(interval_ms: int = 41250) -> dict[str, Any]:
    return {"op": 10, "d": {"heartbeat_interval": interval_ms}}


def ready(
    *,
    seq: int = 1,
    session_id: str = "session-1",
    resume_url: Optional[str] = "wss://resume.example",
    user_id: str = "100",
) -> dict[str, Any]:
    return {
        "op": 0,
        "s": seq,
        "t": "READY",
        "d": {
            "v": 10,
            "session_id": session_id,
            "resume_gateway_url": resume_url,
            "user": {"id": user_id, "username": "me"},
            "guilds": [],
        },
    }


def dispatch(event_type: str, data: dict[str, Any], seq: Optional[int]) -> dict[str, Any]:
    return {"op": 0, "s": seq, "t": event_type, "d": data}


class GatewayScript:
    """Fixture facade bundling the fakes and frame builders."""

    VirtualClock = VirtualClock
    ScriptedConnection = ScriptedConnection
    ScriptedTransport = ScriptedTransport
    settle = staticmethod(settle)
    hello = staticmethod(hello)
    ready = staticmethod(ready)
    dispatch = staticmethod(dispatch)

    def __init__(self) -> None:
        self.clock = VirtualClock()

    def connection(self, *frames: dict[str, Any]) -> ScriptedConnection:
        return ScriptedConnection(self.clock, frames)


@pytest.fixture
def gateway_script() -> GatewayScript:
    return GatewayScript()
