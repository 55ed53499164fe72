"""Gateway connection manager.

Owns the WebSocket to the bot gateway and runs its opcode state machine:

    DISCONNECTED → CONNECTING → AWAITING_READY → READY
        → RECONNECT_PENDING → CONNECTING (resume) → ...

Every failure path funnels into reset(), which tears down all timers of
the current connection, closes the socket and schedules exactly one
reconnect. Readers and timers are bound to the socket they were started
for; once that socket is superseded they exit without side effects.
Only close() is terminal.

Key classes:
    ConnectionState: Session lifecycle states.
    GatewaySession: Connection lifecycle, identify/resume, heartbeat,
        sequence tracking and business message forwarding.
"""

import asyncio
import json
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

import aiohttp
import structlog

from .exceptions import CredentialError, TransportError
from .protocol import (
    READY_EVENT,
    RECONNECT_OPCODES,
    RESUMED_EVENT,
    InboundMessage,
    OpCode,
    decode_frame,
    heartbeat_frame,
    identify_frame,
    resume_frame,
)
from .tasks import cancel_task, spawn
from .token_provider import Credential, TokenProvider

logger = structlog.get_logger("gatebot.gateway")

MessageCallback = Callable[[InboundMessage], Awaitable[None]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_READY = "awaiting_ready"
    READY = "ready"
    RECONNECT_PENDING = "reconnect_pending"


class GatewaySession:
    """Persistent gateway client with heartbeat and resume-on-reconnect.

    Args:
        api: REST collaborator providing ``resolve_gateway_endpoint``.
        tokens: TokenProvider used to authenticate each connection.
        on_message: Coroutine function receiving business messages.
            Called fire-and-forget; its failures are logged only.
        intents: Intents bitmask sent with identify.
        shard: ``[shard_id, shard_count]`` sent with identify.
        reconnect_close_delay: Backoff after a clean close (seconds).
        reconnect_error_delay: Backoff after a socket error (seconds).
        connect_retry_delay: Backoff after a failed token/endpoint fetch.
        session_max_age: Interval of the forced periodic reconnect.
        default_heartbeat_interval: Heartbeat interval (seconds) used
            until the gateway announces one.
    """

    def __init__(
        self,
        api,
        tokens: TokenProvider,
        on_message: MessageCallback,
        *,
        intents: int,
        shard: List[int],
        reconnect_close_delay: float = 3.0,
        reconnect_error_delay: float = 5.0,
        connect_retry_delay: float = 5.0,
        session_max_age: float = 3600.0,
        default_heartbeat_interval: float = 41.25,
    ):
        self._api = api
        self._tokens = tokens
        self._on_message = on_message
        self.intents = intents
        self.shard = list(shard)
        self.reconnect_close_delay = reconnect_close_delay
        self.reconnect_error_delay = reconnect_error_delay
        self.connect_retry_delay = connect_retry_delay
        self.session_max_age = session_max_age
        self.default_heartbeat_interval = default_heartbeat_interval

        self.state = ConnectionState.DISCONNECTED
        self.sequence: Optional[int] = None
        self.heartbeat_interval_ms: Optional[int] = None
        self.resume_requested = False
        self.credential: Optional[Credential] = None
        self._last_session_id: Optional[str] = None

        self._http: Optional[aiohttp.ClientSession] = None
        self._ws = None
        self._is_connecting = False
        self._closed = False

        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._periodic_reset_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        # A failed token renewal goes through the normal error path
        self._tokens.on_refresh_failed = self._on_token_refresh_failed

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> Optional[str]:
        """The gateway session id, reported only while READY."""
        if self.state == ConnectionState.READY:
            return self._last_session_id
        return None

    @property
    def is_connecting(self) -> bool:
        return self._is_connecting

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def heartbeat_interval(self) -> float:
        """Current heartbeat interval in seconds."""
        if self.heartbeat_interval_ms:
            return self.heartbeat_interval_ms / 1000
        return self.default_heartbeat_interval

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Authenticate, resolve the gateway and open the socket.

        A call made while another connect is in flight is dropped.
        Failures schedule a retry through reset(); nothing is raised.
        """
        if self._closed:
            return
        if self._is_connecting:
            logger.warning("gateway_connect_in_progress_skipped")
            return

        # A connect that finished while a reset was pending left a socket behind
        self._close_detached(self._teardown())

        self._is_connecting = True
        self.state = ConnectionState.CONNECTING
        try:
            credential = await self._tokens.acquire()
            url = await self._api.resolve_gateway_endpoint(credential.token)
            logger.info("gateway_endpoint_resolved", url=url)
            ws = await self._open_socket(url)
        except (CredentialError, TransportError) as e:
            logger.error(
                "gateway_connect_failed",
                error=str(e),
                error_type=type(e).__name__,
                retry_in=self.connect_retry_delay,
            )
            self.reset(self.connect_retry_delay, reason="connect_failed")
            return
        finally:
            self._is_connecting = False

        if self._closed:
            await ws.close()
            return

        self.credential = credential
        self._ws = ws
        self.state = ConnectionState.AWAITING_READY
        logger.info("gateway_connected")

        try:
            await self._send_auth(ws, credential)
        except TransportError as e:
            if ws is self._ws:
                logger.error("gateway_auth_send_failed", error=str(e))
                self.reset(self.reconnect_error_delay, reason="auth_send_failed")
            return
        if ws is not self._ws:
            return

        self._reader_task = spawn(self._receive_loop(ws), name="gateway-reader")
        self._schedule_periodic_reset()

    async def _open_socket(self, url: str):
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        try:
            return await self._http.ws_connect(url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(
                f"websocket connect failed: {e}",
                module="gateway",
                url=url,
                error_type=type(e).__name__,
            ) from e

    async def _send(self, ws, frame: dict) -> None:
        try:
            await ws.send_str(json.dumps(frame))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise TransportError(
                f"websocket send failed: {e}",
                module="gateway",
                op=frame.get("op"),
            ) from e

    async def _send_auth(self, ws, credential: Credential) -> None:
        """Send resume when a prior session should be resumed, else identify."""
        if self.resume_requested and self._last_session_id:
            logger.info(
                "gateway_resume_sent",
                session_id=self._last_session_id,
                seq=(self.sequence or 0) + 1,
            )
            await self._send(ws, resume_frame(credential.token, self._last_session_id, self.sequence))
        else:
            logger.info("gateway_identify_sent", intents=self.intents, shard=self.shard)
            await self._send(ws, identify_frame(credential.token, self.intents, self.shard))
        self.resume_requested = False

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    async def _receive_loop(self, ws) -> None:
        try:
            async for msg in ws:
                if ws is not self._ws:
                    return
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self.handle_frame(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    if ws is self._ws:
                        logger.error("gateway_socket_error", error=str(ws.exception()))
                        self.reset(self.reconnect_error_delay, reason="socket_error")
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if ws is self._ws:
                logger.error("gateway_receive_failed", error=str(e), error_type=type(e).__name__)
                self.reset(self.reconnect_error_delay, reason="receive_failed")
            return

        if ws is self._ws:
            logger.warning("gateway_closed", close_code=getattr(ws, "close_code", None))
            self.reset(self.reconnect_close_delay, reason="socket_closed")

    async def handle_frame(self, raw: Any) -> None:
        """Process one raw frame in arrival order."""
        try:
            event = decode_frame(raw)
        except ValueError as e:
            logger.warning("gateway_frame_invalid", error=str(e))
            return

        logger.debug("gateway_frame_received", **event.summary())
        data = event.data

        content = data.get("content")
        if isinstance(content, str) and content:
            spawn(self._on_message(InboundMessage.from_payload(data)), name="message-dispatch")

        interval = data.get("heartbeat_interval")
        if interval:
            self.heartbeat_interval_ms = int(interval)
            logger.debug("heartbeat_interval_set", interval_ms=self.heartbeat_interval_ms)

        if event.sequence is not None:
            self._update_sequence(event.sequence)

        if event.event_name == READY_EVENT:
            self._last_session_id = data.get("session_id")
            self.state = ConnectionState.READY
            logger.info("gateway_ready", session_id=self._last_session_id)
            self._start_heartbeat()
        elif event.event_name == RESUMED_EVENT:
            self.state = ConnectionState.READY
            logger.info("gateway_resumed", session_id=self._last_session_id, seq=self.sequence)
            self._start_heartbeat()
        elif event.op == OpCode.HEARTBEAT_ACK:
            logger.debug("heartbeat_ack")

        if event.op in RECONNECT_OPCODES:
            if event.op == OpCode.INVALID_SESSION:
                # The old session cannot be resumed; next connect identifies
                self._last_session_id = None
            logger.info("gateway_reconnect_requested", op=event.op)
            self.reset(0, reason=f"op_{event.op}")

    def _update_sequence(self, seq: int) -> None:
        if self.sequence is None or seq > self.sequence:
            self.sequence = seq

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _start_heartbeat(self) -> None:
        cancel_task(self._heartbeat_task)
        self._heartbeat_task = spawn(self._heartbeat_loop(self._ws), name="gateway-heartbeat")

    async def _heartbeat_loop(self, ws) -> None:
        while ws is not None and ws is self._ws:
            try:
                await self._send(ws, heartbeat_frame(self.sequence))
            except TransportError as e:
                if ws is self._ws:
                    logger.error("heartbeat_send_failed", error=str(e))
                    self.reset(self.reconnect_error_delay, reason="heartbeat_failed")
                return
            logger.debug("heartbeat_sent", seq=self.sequence)
            await asyncio.sleep(self.heartbeat_interval)

    def _schedule_periodic_reset(self) -> None:
        cancel_task(self._periodic_reset_task)
        self._periodic_reset_task = asyncio.get_running_loop().create_task(
            self._periodic_reset(), name="gateway-periodic-reset"
        )
        logger.debug("gateway_periodic_reset_scheduled", minutes=self.session_max_age / 60)

    async def _periodic_reset(self) -> None:
        try:
            await asyncio.sleep(self.session_max_age)
        except asyncio.CancelledError:
            return
        logger.info("gateway_periodic_reset")
        self.reset(0, reason="periodic")

    async def _reconnect_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        if self._closed:
            return
        logger.info("gateway_reconnecting", resume=self.resume_requested)
        await self.connect()

    def _on_token_refresh_failed(self, error: CredentialError) -> None:
        self.reset(self.reconnect_error_delay, reason="token_refresh_failed")

    # ------------------------------------------------------------------
    # Reset / shutdown
    # ------------------------------------------------------------------

    def _teardown(self):
        """Cancel every timer of the current connection and detach the socket.

        Returns:
            The detached socket (possibly still open), or None.
        """
        cancel_task(self._heartbeat_task)
        self._heartbeat_task = None
        self._tokens.cancel_refresh()
        cancel_task(self._periodic_reset_task)
        self._periodic_reset_task = None
        cancel_task(self._reader_task)
        self._reader_task = None

        ws, self._ws = self._ws, None
        self.state = ConnectionState.DISCONNECTED
        return ws

    def _close_detached(self, ws) -> None:
        if ws is not None and not ws.closed:
            spawn(ws.close(), name="gateway-socket-close")

    def reset(self, delay: float = 0, reason: str = "") -> None:
        """Tear down the connection and schedule a (resuming) reconnect.

        Idempotent and safe to call from error handlers: repeated calls
        leave exactly one reconnect pending. No-op after close().
        """
        if self._closed:
            return
        logger.warning("gateway_reset", reason=reason, delay_seconds=delay)

        self._close_detached(self._teardown())

        self.resume_requested = True
        cancel_task(self._reconnect_task)
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after(delay), name="gateway-reconnect"
        )
        self.state = ConnectionState.RECONNECT_PENDING

    def handle_fault(self, error: BaseException) -> None:
        """Recover from an unexpected fault by doing a full reconnect."""
        logger.error("gateway_fault", error=str(error), error_type=type(error).__name__)
        self.reset(0, reason="fault")

    async def close(self) -> None:
        """Terminal shutdown: cancel timers, close the socket, never reconnect."""
        if self._closed:
            return
        self._closed = True
        cancel_task(self._reconnect_task)
        self._reconnect_task = None

        ws = self._teardown()
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.warning("gateway_close_error", error=str(e))
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None
        logger.info("gateway_session_closed")
