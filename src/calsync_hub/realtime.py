"""Realtime channel to the user's other live sessions.

Wire frames are JSON objects ``{"event": <name>, "data": <payload>}``.

Handshake:
1. Client sends: ``{"event": "auth", "data": {"token": "..."}}``
2. Server replies: ``authenticated`` or ``authInvalid`` (a close with
   code 4401 also means the token was rejected)

After authentication the whole pending queue is replayed in sequence
order. A rejected token is never retried; the channel stays disconnected
until a different token is available.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import aiohttp
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, wait_exponential_jitter

from .credentials import CredentialProvider
from .errors import AuthenticationError, ChannelError
from .models import ChannelState, CursorUpdate, PresenceChange, SyncOperation
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)

AUTH_REJECTED_CLOSE_CODE = 4401

OperationsCallback = Callable[[List[SyncOperation]], Awaitable[None]]
StateListener = Callable[[ChannelState], None]
PresenceListener = Callable[[Any], None]

_RECONNECTABLE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ChannelError, OSError)


class RealtimeChannel:
    """WebSocket fan-out of local operations and ingest of remote ones."""

    def __init__(
        self,
        url: str,
        queue: SyncQueue,
        token: Optional[str] = None,
        credentials: Optional[CredentialProvider] = None,
        on_operations: Optional[OperationsCallback] = None,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        auth_timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        if token is None and credentials is None:
            raise ValueError("RealtimeChannel needs a token or a credential provider")
        self.url = url
        self.queue = queue
        self.credentials = credentials
        self.on_operations = on_operations
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.auth_timeout = auth_timeout
        self.logger = logger.getChild('channel')

        self.state = ChannelState.DISCONNECTED
        self.cursors: Dict[str, CursorUpdate] = {}
        self.presence: Dict[str, PresenceChange] = {}
        self.connection_count = 0

        self._token = token
        self._rejected_token: Optional[str] = None
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._run_task: Optional[asyncio.Task] = None
        self._closing = False
        self._sent: Set[int] = set()
        self._send_lock = asyncio.Lock()
        self._connected = asyncio.Event()
        self._state_listeners: List[StateListener] = []
        self._presence_listeners: List[PresenceListener] = []

    @property
    def connected(self) -> bool:
        return self.state == ChannelState.CONNECTED

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def on_presence(self, listener: PresenceListener) -> None:
        """Listeners receive CursorUpdate and PresenceChange objects."""
        self._presence_listeners.append(listener)

    def set_token(self, token: str) -> None:
        self._token = token

    def _set_state(self, state: ChannelState) -> None:
        if state == self.state:
            return
        self.logger.info(f"Channel {self.state.value} -> {state.value}")
        self.state = state
        if state == ChannelState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                self.logger.error(f"State listener failed: {e}")

    async def _current_token(self) -> str:
        if self.credentials is not None:
            return await self.credentials.get_access_token()
        return self._token

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Start connecting in the background. Returns immediately."""
        if self._run_task is not None and not self._run_task.done():
            return
        self._closing = False
        self._set_state(ChannelState.CONNECTING)
        self._run_task = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        """Close the connection; no reconnect follows."""
        self._closing = True
        task = self._run_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._close_ws()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None
        self._set_state(ChannelState.DISCONNECTED)

    async def _run(self) -> None:
        try:
            while not self._closing:
                try:
                    async for attempt in AsyncRetrying(
                        wait=wait_exponential_jitter(
                            multiplier=self.initial_delay, max=self.max_delay, jitter=self.initial_delay
                        ),
                        retry=retry_if_exception_type(_RECONNECTABLE_ERRORS),
                        stop=self._stop_reconnecting,
                        before_sleep=self._log_retry,
                        reraise=True,
                    ):
                        with attempt:
                            await self._open()
                except AuthenticationError as e:
                    self.logger.error(f"Realtime authentication rejected: {e}")
                    await self._close_ws()
                    break
                except _RECONNECTABLE_ERRORS:
                    # Only reached when close() stopped the retries
                    break

                self.connection_count += 1
                self._sent.clear()
                self._set_state(ChannelState.CONNECTED)
                await self.flush()

                rejected = await self._receive_loop()
                await self._close_ws()
                if rejected or self._closing:
                    break

                self._set_state(ChannelState.RECONNECTING)
                await asyncio.sleep(self.initial_delay)
        finally:
            self._set_state(ChannelState.DISCONNECTED)

    def _stop_reconnecting(self, retry_state) -> bool:
        return self._closing

    def _log_retry(self, retry_state) -> None:
        self.logger.warning(
            f"Connect attempt {retry_state.attempt_number} failed "
            f"({retry_state.outcome.exception()}), retrying in {retry_state.next_action.sleep:.1f}s"
        )

    async def _open(self) -> None:
        """Open the WebSocket and complete the auth handshake.

        Raises:
            AuthenticationError: The server rejected the token
            ChannelError: Unexpected handshake reply
        """
        token = await self._current_token()
        if not token:
            raise AuthenticationError("No realtime token available")
        if token == self._rejected_token:
            raise AuthenticationError("Token was already rejected, waiting for a new one")

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        self.logger.debug(f"Connecting to {self.url}")
        self._ws = await self._session.ws_connect(self.url, heartbeat=30.0)
        try:
            await self._handshake(token)
        except BaseException:
            await self._close_ws()
            raise

    async def _handshake(self, token: str) -> None:
        await self._ws.send_json({'event': 'auth', 'data': {'token': token}})

        msg = await self._ws.receive(timeout=self.auth_timeout)
        if msg.type == aiohttp.WSMsgType.TEXT:
            frame = self._decode(msg.data)
            event = frame.get('event') if frame else None
            if event == 'authenticated':
                return
            if event == 'authInvalid':
                self._rejected_token = token
                raise AuthenticationError("Server rejected the realtime token")
            await self._close_ws()
            raise ChannelError(f"Unexpected auth reply: {event!r}")

        close_code = self._ws.close_code
        await self._close_ws()
        if close_code == AUTH_REJECTED_CLOSE_CODE:
            self._rejected_token = token
            raise AuthenticationError("Server closed the connection: invalid token")
        raise ChannelError(f"Connection closed during handshake (type={msg.type}, code={close_code})")

    async def _close_ws(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except (aiohttp.ClientError, OSError) as e:
                self.logger.debug(f"Error closing websocket: {e}")

    async def _receive_loop(self) -> bool:
        """Dispatch frames until the connection drops.

        Returns:
            True if the server rejected the token mid-session
        """
        ws = self._ws
        while ws is not None and not ws.closed:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                frame = self._decode(msg.data)
                if frame is None:
                    continue
                if frame.get('event') == 'authInvalid':
                    self._rejected_token = await self._current_token()
                    self.logger.error("Realtime token revoked by server")
                    return True
                await self._dispatch(frame)
            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                break

        close_code = ws.close_code if ws is not None else None
        if close_code == AUTH_REJECTED_CLOSE_CODE:
            self._rejected_token = await self._current_token()
            self.logger.error("Realtime token revoked by server")
            return True
        if not self._closing:
            self.logger.warning(f"Realtime connection dropped (code={close_code})")
        return False

    def _decode(self, data: str) -> Optional[Dict[str, Any]]:
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            self.logger.warning(f"Invalid JSON frame: {data!r}")
            return None
        if not isinstance(frame, dict):
            self.logger.warning(f"Ignoring non-object frame: {data!r}")
            return None
        return frame

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _dispatch(self, frame: Dict[str, Any]) -> None:
        event = frame.get('event')
        data = frame.get('data')

        if event == 'operations':
            await self._handle_operations(data)
        elif event == 'ack':
            for seq in self._seqs(data):
                self._sent.discard(seq)
                self.queue.ack(seq)
        elif event == 'reject':
            error = (data.get('error') if isinstance(data, dict) else None) or 'rejected by server'
            for seq in self._seqs(data):
                self._sent.discard(seq)
                self.queue.mark_failed(seq, error)
            # Rejected operations go out again ahead of later ones for the same event
            await self.flush()
        elif event == 'cursorUpdate':
            self._handle_cursor(data)
        elif event in ('userJoined', 'userLeft'):
            self._handle_presence(data, joined=event == 'userJoined')
        else:
            self.logger.debug(f"Unhandled event: {event!r}")

    def _seqs(self, data: Any) -> List[int]:
        if not isinstance(data, dict):
            return []
        raw = data.get('seqs') or []
        if not isinstance(raw, list):
            self.logger.warning(f"Ignoring malformed seqs: {raw!r}")
            return []
        seqs = []
        for seq in raw:
            try:
                seqs.append(int(seq))
            except (TypeError, ValueError):
                self.logger.warning(f"Ignoring malformed seq: {seq!r}")
        return seqs

    async def _handle_operations(self, data: Any) -> None:
        if not isinstance(data, list):
            self.logger.warning("operations frame without a list payload")
            return
        operations = []
        for item in data:
            try:
                operations.append(SyncOperation.model_validate(item))
            except ValidationError as e:
                self.logger.warning(f"Skipping malformed remote operation: {e}")
        if not operations or self.on_operations is None:
            return
        try:
            await self.on_operations(operations)
        except Exception as e:
            self.logger.error(f"Failed to apply {len(operations)} remote operations: {e}")

    def _handle_cursor(self, data: Any) -> None:
        try:
            cursor = CursorUpdate.model_validate(data)
        except ValidationError as e:
            self.logger.debug(f"Ignoring malformed cursor update: {e}")
            return
        self.cursors[cursor.user_id or cursor.username] = cursor
        self._notify_presence(cursor)

    def _handle_presence(self, data: Any, joined: bool) -> None:
        try:
            change = PresenceChange.model_validate({**(data or {}), 'joined': joined})
        except (ValidationError, TypeError) as e:
            self.logger.debug(f"Ignoring malformed presence event: {e}")
            return
        if joined:
            self.presence[change.user_id] = change
        else:
            self.presence.pop(change.user_id, None)
            self.cursors.pop(change.user_id, None)
        self.logger.info(f"User {'joined' if joined else 'left'}: {change.username or change.user_id}")
        self._notify_presence(change)

    def _notify_presence(self, item: Any) -> None:
        for listener in list(self._presence_listeners):
            try:
                listener(item)
            except Exception as e:
                self.logger.error(f"Presence listener failed: {e}")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send_frame(self, event: str, data: Any) -> bool:
        async with self._send_lock:
            if not self.connected or self._ws is None or self._ws.closed:
                return False
            try:
                await self._ws.send_json({'event': event, 'data': data})
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                self.logger.warning(f"Failed to send {event}: {e}")
                return False
            return True

    async def send_operations(self, operations: Iterable[SyncOperation]) -> bool:
        """Send operations not yet sent on the current connection.

        An operation waits while an earlier queued operation for the same
        event is unsent (for example after a reject), so peers apply each
        event's operations in sequence order. Held operations go out on the
        next flush.

        Returns:
            False if the channel is not connected; operations stay queued
        """
        if not self.connected:
            return False
        batch = self._sendable(operations)
        if not batch:
            return True
        self._sent.update(op.seq for op in batch)
        if not await self._send_frame('operations', [op.to_wire() for op in batch]):
            self._sent.difference_update(op.seq for op in batch)
            return False
        self.logger.debug(f"Sent {len(batch)} operations (seqs {batch[0].seq}..{batch[-1].seq})")
        return True

    def _sendable(self, operations: Iterable[SyncOperation]) -> List[SyncOperation]:
        requested = {op.seq: op for op in operations if op.seq not in self._sent}
        candidates = {op.seq: op for op in self.queue.pending() if op.seq not in self._sent}
        candidates.update(requested)

        batch = []
        held: Set[str] = set()
        for seq in sorted(candidates):
            operation = candidates[seq]
            if seq in requested and operation.event_id not in held:
                batch.append(operation)
            else:
                held.add(operation.event_id)
        return batch

    async def flush(self) -> bool:
        """Send every pending queue entry not yet sent on this connection."""
        return await self.send_operations(self.queue.pending())

    async def send_cursor_update(self, x: float, y: float, username: str) -> bool:
        return await self._send_frame('cursorUpdate', {'x': x, 'y': y, 'username': username})

    async def join_calendar(self, calendar_id: str, username: str) -> bool:
        return await self._send_frame('joinCalendar', {'calendarId': calendar_id, 'username': username})

    async def leave_calendar(self, calendar_id: str) -> bool:
        return await self._send_frame('leaveCalendar', {'calendarId': calendar_id})
