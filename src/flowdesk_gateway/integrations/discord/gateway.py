from __future__ import annotations

import asyncio
import json
import logging
import platform
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ...core.logging_utils import log_event
from .constants import (
    CLOSE_CODE_NORMAL,
    CLOSE_CODE_RESUMABLE,
    DISCORD_GATEWAY_QUERY,
    DISCORD_GATEWAY_URL,
    FATAL_GATEWAY_CLOSE_CODES,
    NON_RESUMABLE_CLOSE_CODES,
    GatewayOpcode,
)
from .errors import AuthExpired, ProtocolError, TransportError
from .transport import GatewayConnection, GatewayTransport, TransportClosed

INVALID_SESSION_MAX_DELAY_SECONDS = 5.0

DispatchHandler = Callable[[str, dict[str, Any]], Awaitable[None]]
StateChangeHandler = Callable[["GatewayState", "GatewayState", Optional[str]], None]


class GatewayState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_HELLO = "awaiting_hello"
    IDENTIFYING = "identifying"
    RESUMING = "resuming"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True)
class GatewayFrame:
    op: int
    d: Any = None
    s: Optional[int] = None
    t: Optional[str] = None
    raw: dict[str, Any] | None = None


@dataclass
class GatewaySessionState:
    sequence: Optional[int] = None
    session_id: Optional[str] = None
    resume_url: Optional[str] = None
    heartbeat_interval_ms: int = 0
    last_heartbeat_ack_received: bool = True
    last_heartbeat_sent_at: Optional[float] = None

    @property
    def resumable(self) -> bool:
        return self.session_id is not None and self.sequence is not None

    def discard(self) -> None:
        self.sequence = None
        self.session_id = None
        self.resume_url = None


def build_identify_payload(*, token: str, intents: int) -> dict[str, Any]:
    return {
        "op": int(GatewayOpcode.IDENTIFY),
        "d": {
            "token": token,
            "intents": intents,
            "properties": {
                "os": platform.system().lower() or "unknown",
                "browser": "flowdesk-gateway",
                "device": "flowdesk-gateway",
            },
        },
    }


def build_resume_payload(*, token: str, session_id: str, seq: int) -> dict[str, Any]:
    return {
        "op": int(GatewayOpcode.RESUME),
        "d": {"token": token, "session_id": session_id, "seq": seq},
    }


def build_heartbeat_payload(sequence: Optional[int]) -> dict[str, Any]:
    return {"op": int(GatewayOpcode.HEARTBEAT), "d": sequence}


def parse_gateway_frame(frame: str | bytes | dict[str, Any]) -> GatewayFrame:
    if isinstance(frame, bytes):
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("Discord gateway frame is not valid UTF-8") from exc
    if isinstance(frame, str):
        try:
            payload = json.loads(frame)
        except ValueError as exc:
            raise ProtocolError("Discord gateway frame is not valid JSON") from exc
    else:
        payload = frame
    if not isinstance(payload, dict):
        raise ProtocolError("Discord gateway frame must be a JSON object")
    op = payload.get("op")
    if not isinstance(op, int) or isinstance(op, bool):
        raise ProtocolError(f"Discord gateway frame missing numeric op: {payload!r}")
    seq = payload.get("s")
    event_type = payload.get("t")
    return GatewayFrame(
        op=op,
        d=payload.get("d"),
        s=seq if isinstance(seq, int) and not isinstance(seq, bool) else None,
        t=event_type if isinstance(event_type, str) else None,
        raw=payload,
    )


def calculate_reconnect_backoff(
    attempt: int,
    *,
    base_seconds: float = 1.0,
    max_seconds: float = 30.0,
    rand_float: Callable[[], float] = random.random,
) -> float:
    """Full-jitter exponential backoff: uniform in [0, min(cap, base * 2**attempt)]."""
    if max_seconds <= 0.0 or base_seconds <= 0.0:
        return 0.0
    normalized_attempt = min(max(attempt, 0), 32)
    ceiling = min(max_seconds, base_seconds * (2**normalized_attempt))
    return ceiling * min(max(rand_float(), 0.0), 1.0)


def with_gateway_query(url: str) -> str:
    if "?" in url:
        return url
    return f"{url.rstrip('/')}/?{DISCORD_GATEWAY_QUERY}"


@dataclass
class _ConnectionOutcome:
    reason: str
    delay_seconds: Optional[float] = None


class GatewaySession:
    """One long-lived gateway connection driven by a single control loop.

    `run()` owns the read loop and the reconnect policy; the heartbeat runs as
    a child task of the current connection and is cancelled whenever that
    connection ends. All waits go through `sleep_fn` so tests can drive the
    session on a virtual clock.
    """

    def __init__(
        self,
        *,
        token_provider: Callable[[], Awaitable[str]],
        intents: int,
        transport: GatewayTransport,
        logger: logging.Logger,
        gateway_url: str | None = None,
        url_resolver: Optional[Callable[[], Awaitable[str]]] = None,
        on_dispatch: Optional[DispatchHandler] = None,
        on_state_change: Optional[StateChangeHandler] = None,
        reconnect_base_seconds: float = 1.0,
        reconnect_max_seconds: float = 30.0,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._token_provider = token_provider
        self._intents = intents
        self._transport = transport
        self._logger = logger
        self._gateway_url = gateway_url
        self._url_resolver = url_resolver
        self._on_dispatch = on_dispatch
        self._on_state_change = on_state_change
        self._reconnect_base_seconds = reconnect_base_seconds
        self._reconnect_max_seconds = reconnect_max_seconds
        self._sleep = sleep_fn
        self._clock = clock
        self._rand = rand
        self._session = GatewaySessionState()
        self._state = GatewayState.DISCONNECTED
        self._stop_event = asyncio.Event()
        self._connection: Optional[GatewayConnection] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._backoff_task: Optional[asyncio.Future[None]] = None
        self._established_in_connection = False

    @property
    def state(self) -> GatewayState:
        return self._state

    @property
    def session(self) -> GatewaySessionState:
        return self._session

    @property
    def is_connected(self) -> bool:
        return self._state is GatewayState.CONNECTED

    async def run(self) -> None:
        reconnect_attempt = 0
        while not self._stop_event.is_set():
            outcome: Optional[_ConnectionOutcome] = None
            fatal_reason: Optional[str] = None
            self._established_in_connection = False
            self._set_state(GatewayState.CONNECTING)
            try:
                url = await self._resolve_gateway_url()
                connection = await self._transport.open(url)
                self._connection = connection
                if self._stop_event.is_set():
                    break
                outcome = await self._run_connection(connection)
            except asyncio.CancelledError:
                raise
            except AuthExpired as exc:
                fatal_reason = "auth_expired"
                log_event(
                    self._logger,
                    logging.ERROR,
                    "discord.gateway.auth_expired",
                    exc=exc,
                )
            except TransportClosed as exc:
                if not self._stop_event.is_set():
                    fatal_reason = self._handle_server_close(exc.close_code)
            except (TransportError, ProtocolError) as exc:
                if not self._stop_event.is_set():
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "discord.gateway.connection_error",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "discord.gateway.unexpected_error",
                    exc=exc,
                )
            finally:
                await self._cancel_heartbeat()
                await self._close_connection(
                    CLOSE_CODE_NORMAL
                    if self._stop_event.is_set()
                    else CLOSE_CODE_RESUMABLE
                )

            if self._stop_event.is_set():
                break
            if fatal_reason is not None:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "discord.gateway.halted",
                    reason=fatal_reason,
                )
                self._session.discard()
                self._set_state(GatewayState.CLOSED, fatal_reason)
                return

            if self._established_in_connection:
                reconnect_attempt = 0
            if outcome is not None and outcome.delay_seconds is not None:
                delay = outcome.delay_seconds
            else:
                delay = calculate_reconnect_backoff(
                    reconnect_attempt,
                    base_seconds=self._reconnect_base_seconds,
                    max_seconds=self._reconnect_max_seconds,
                    rand_float=self._rand,
                )
                reconnect_attempt += 1
            reason = outcome.reason if outcome is not None else "connection_lost"
            self._set_state(GatewayState.RECONNECTING, reason)
            log_event(
                self._logger,
                logging.INFO,
                "discord.gateway.reconnecting",
                reason=reason,
                delay_seconds=round(delay, 3),
                attempt=reconnect_attempt,
                resumable=self._session.resumable,
            )
            await self._wait_before_reconnect(delay)

        self._set_state(GatewayState.CLOSED, "disconnect")

    async def disconnect(self) -> None:
        """Stop for good: heartbeat, then socket (code 1000), then backoff timer."""
        self._stop_event.set()
        await self._cancel_heartbeat()
        await self._close_connection(CLOSE_CODE_NORMAL)
        backoff = self._backoff_task
        if backoff is not None and not backoff.done():
            backoff.cancel()
        self._session = GatewaySessionState()
        self._set_state(GatewayState.CLOSED, "disconnect")

    async def send_command(self, op: int, d: Any) -> None:
        connection = self._connection
        if not self.is_connected or connection is None or connection.closed:
            raise TransportError(
                f"Discord gateway is not connected (state={self._state.value})"
            )
        await self._send_frame(connection, {"op": int(op), "d": d})

    async def update_presence(
        self,
        *,
        status: str = "online",
        activities: Optional[list[dict[str, Any]]] = None,
        afk: bool = False,
        since: Optional[int] = None,
    ) -> None:
        await self.send_command(
            GatewayOpcode.PRESENCE_UPDATE,
            {
                "since": since,
                "activities": list(activities or []),
                "status": status,
                "afk": afk,
            },
        )

    async def update_voice_state(
        self,
        *,
        guild_id: str,
        channel_id: Optional[str],
        self_mute: bool = False,
        self_deaf: bool = False,
    ) -> None:
        await self.send_command(
            GatewayOpcode.VOICE_STATE_UPDATE,
            {
                "guild_id": guild_id,
                "channel_id": channel_id,
                "self_mute": self_mute,
                "self_deaf": self_deaf,
            },
        )

    async def request_guild_members(
        self,
        *,
        guild_id: str,
        query: str = "",
        limit: int = 0,
        presences: bool = False,
        nonce: Optional[str] = None,
    ) -> None:
        payload: dict[str, Any] = {
            "guild_id": guild_id,
            "query": query,
            "limit": max(limit, 0),
            "presences": presences,
        }
        if nonce:
            payload["nonce"] = nonce
        await self.send_command(GatewayOpcode.REQUEST_GUILD_MEMBERS, payload)

    async def _resolve_gateway_url(self) -> str:
        if self._session.resumable and self._session.resume_url:
            return with_gateway_query(self._session.resume_url)
        if self._gateway_url:
            return self._gateway_url
        if self._url_resolver is not None:
            url = await self._url_resolver()
            if isinstance(url, str) and url:
                return with_gateway_query(url)
        return DISCORD_GATEWAY_URL

    async def _run_connection(self, connection: GatewayConnection) -> _ConnectionOutcome:
        self._set_state(GatewayState.AWAITING_HELLO)
        hello = parse_gateway_frame(await connection.recv())
        if hello.op != GatewayOpcode.HELLO:
            raise ProtocolError(
                f"Discord gateway expected HELLO, received op={hello.op}"
            )
        hello_data = hello.d if isinstance(hello.d, dict) else {}
        heartbeat_ms = hello_data.get("heartbeat_interval")
        if not isinstance(heartbeat_ms, (int, float)) or heartbeat_ms <= 0:
            raise ProtocolError("Discord gateway HELLO missing heartbeat_interval")

        self._session.heartbeat_interval_ms = int(heartbeat_ms)
        self._session.last_heartbeat_ack_received = True
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(connection, float(heartbeat_ms) / 1000.0)
        )

        token = await self._token_provider()
        session_id = self._session.session_id
        sequence = self._session.sequence
        if session_id is not None and sequence is not None:
            self._set_state(GatewayState.RESUMING)
            await self._send_frame(
                connection,
                build_resume_payload(token=token, session_id=session_id, seq=sequence),
            )
        else:
            self._set_state(GatewayState.IDENTIFYING)
            await self._send_frame(
                connection, build_identify_payload(token=token, intents=self._intents)
            )

        while True:
            frame = parse_gateway_frame(await connection.recv())
            op = frame.op

            if op == GatewayOpcode.DISPATCH:
                self._observe_sequence(frame.s)
                if frame.t == "READY":
                    self._record_ready(frame.d)
                elif frame.t == "RESUMED":
                    self._established_in_connection = True
                    self._set_state(GatewayState.CONNECTED, "resumed")
                if frame.t:
                    await self._deliver_dispatch(
                        frame.t, frame.d if isinstance(frame.d, dict) else {}
                    )
                continue
            if op == GatewayOpcode.HEARTBEAT:
                self._session.last_heartbeat_sent_at = self._clock()
                await self._send_frame(
                    connection, build_heartbeat_payload(self._session.sequence)
                )
                continue
            if op == GatewayOpcode.HEARTBEAT_ACK:
                self._session.last_heartbeat_ack_received = True
                continue
            if op == GatewayOpcode.RECONNECT:
                log_event(self._logger, logging.INFO, "discord.gateway.reconnect_requested")
                await self._cancel_heartbeat()
                await self._close_connection(CLOSE_CODE_RESUMABLE)
                return _ConnectionOutcome(reason="server_requested_reconnect")
            if op == GatewayOpcode.INVALID_SESSION:
                resumable = frame.d is True
                log_event(
                    self._logger,
                    logging.WARNING,
                    "discord.gateway.invalid_session",
                    resumable=resumable,
                )
                if not resumable:
                    self._session.discard()
                await self._cancel_heartbeat()
                await self._close_connection(
                    CLOSE_CODE_RESUMABLE if resumable else CLOSE_CODE_NORMAL
                )
                return _ConnectionOutcome(
                    reason="invalid_session",
                    delay_seconds=self._rand() * INVALID_SESSION_MAX_DELAY_SECONDS,
                )
            log_event(
                self._logger,
                logging.DEBUG,
                "discord.gateway.unexpected_opcode",
                op=op,
            )

    def _observe_sequence(self, seq: Optional[int]) -> None:
        if seq is None:
            return
        current = self._session.sequence
        if current is not None and seq < current:
            log_event(
                self._logger,
                logging.DEBUG,
                "discord.gateway.stale_sequence",
                received=seq,
                current=current,
            )
            return
        self._session.sequence = seq

    def _record_ready(self, data: Any) -> None:
        payload = data if isinstance(data, dict) else {}
        session_id = payload.get("session_id")
        resume_url = payload.get("resume_gateway_url")
        if isinstance(session_id, str) and session_id:
            self._session.session_id = session_id
        if isinstance(resume_url, str) and resume_url:
            self._session.resume_url = resume_url
        self._established_in_connection = True
        self._set_state(GatewayState.CONNECTED, "ready")

    async def _deliver_dispatch(self, event_type: str, data: dict[str, Any]) -> None:
        if self._on_dispatch is None:
            return
        try:
            await self._on_dispatch(event_type, data)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "discord.gateway.dispatch_failed",
                event_type=event_type,
                exc=exc,
            )

    def _handle_server_close(self, close_code: Optional[int]) -> Optional[str]:
        if close_code in FATAL_GATEWAY_CLOSE_CODES:
            log_event(
                self._logger,
                logging.ERROR,
                "discord.gateway.fatal_close",
                close_code=close_code,
            )
            return f"gateway_close_code={close_code}"
        if close_code in NON_RESUMABLE_CLOSE_CODES:
            self._session.discard()
        log_event(
            self._logger,
            logging.INFO,
            "discord.gateway.socket_closed",
            close_code=close_code,
            resumable=self._session.resumable,
        )
        return None

    async def _heartbeat_loop(
        self, connection: GatewayConnection, interval_seconds: float
    ) -> None:
        while not self._stop_event.is_set():
            await self._sleep(interval_seconds)
            if connection.closed or self._stop_event.is_set():
                return
            if not self._session.last_heartbeat_ack_received:
                await self._handle_zombie(connection)
                return
            self._session.last_heartbeat_ack_received = False
            self._session.last_heartbeat_sent_at = self._clock()
            try:
                await self._send_frame(
                    connection, build_heartbeat_payload(self._session.sequence)
                )
            except TransportError as exc:
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "discord.gateway.heartbeat_send_failed",
                    exc=exc,
                )
                return

    async def _handle_zombie(self, connection: GatewayConnection) -> None:
        log_event(
            self._logger,
            logging.WARNING,
            "discord.gateway.zombie_connection",
            heartbeat_interval_ms=self._session.heartbeat_interval_ms,
        )
        self._session.discard()
        self._set_state(GatewayState.RECONNECTING, "heartbeat_ack_missed")
        if self._connection is connection:
            self._connection = None
        await connection.close(CLOSE_CODE_NORMAL)

    async def _send_frame(
        self, connection: GatewayConnection, payload: dict[str, Any]
    ) -> None:
        await connection.send(json.dumps(payload))

    async def _close_connection(self, code: int) -> None:
        connection = self._connection
        self._connection = None
        if connection is None or connection.closed:
            return
        await connection.close(code)

    async def _wait_before_reconnect(self, delay: float) -> None:
        task = asyncio.ensure_future(self._sleep(max(delay, 0.0)))
        self._backoff_task = task
        try:
            await task
        except asyncio.CancelledError:
            if not self._stop_event.is_set():
                raise
        finally:
            self._backoff_task = None

    async def _cancel_heartbeat(self) -> None:
        task = self._heartbeat_task
        if task is None:
            return
        self._heartbeat_task = None
        if task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            # Heartbeat sends can fail after the socket drops; shutdown still proceeds.
            self._logger.debug("Discord heartbeat task ended with error: %s", exc)

    def _set_state(self, state: GatewayState, reason: Optional[str] = None) -> None:
        previous = self._state
        if previous is state:
            return
        if previous is GatewayState.CLOSED and self._stop_event.is_set():
            return
        self._state = state
        log_event(
            self._logger,
            logging.DEBUG,
            "discord.gateway.state",
            previous=previous.value,
            state=state.value,
            reason=reason,
        )
        if self._on_state_change is not None:
            self._on_state_change(previous, state, reason)
