"""Pull/push synchronization against one calendar provider."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx
import pytz
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .adapters.base import ProviderAdapter
from .credentials import CredentialProvider
from .database import DatabaseManager
from .errors import (
    AuthenticationError, ProviderRequestError, ReauthenticationRequired, SyncError,
    TokenExpiredError, TransientNetworkError
)
from .models import (
    CanonicalEvent, MergeOutcome, NormalizedBatch, OperationType, ServiceStatus,
    SyncConfig, SyncOperation, SyncReport, SyncResult
)
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)

MergeCallback = Callable[[List[CanonicalEvent]], Awaitable[Optional[List[MergeOutcome]]]]
ErrorCallback = Callable[[Exception], None]


class SyncService:
    """Drives the fetch-normalize-merge-push lifecycle of one provider.

    Remote events are handed to ``merge_callback`` (the engine), local
    operations are taken from the provider's ``SyncQueue``. Polling runs as
    an owned task that launches each cycle as its own task, so a slow
    request never delays the next tick.
    """

    def __init__(
        self,
        config: SyncConfig,
        adapter: ProviderAdapter,
        queue: SyncQueue,
        credentials: Optional[CredentialProvider] = None,
        merge_callback: Optional[MergeCallback] = None,
        db_manager: Optional[DatabaseManager] = None,
        seq_allocator: Optional[Callable[[], int]] = None,
        origin: Optional[str] = None,
        on_error: Optional[ErrorCallback] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize sync service.

        Args:
            config: Provider connection parameters
            adapter: Adapter for the provider's schema
            queue: Destination queue holding operations for this provider
            credentials: Source of refreshed tokens
            merge_callback: Coroutine merging fetched events into the store
            db_manager: Persistence for id mappings and session history
            seq_allocator: Sequence numbers for operations re-queued by push_event
            origin: Session id stamped on operations created here
            on_error: Receives errors that need user attention
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.config = config
        self.adapter = adapter
        self.queue = queue
        self.credentials = credentials
        self.merge_callback = merge_callback
        self.db_manager = db_manager
        self.origin = origin
        self.on_error = on_error
        self.timeout = timeout
        self.logger = logger.getChild(config.provider)

        self.status = ServiceStatus.IDLE
        self.last_report: Optional[SyncReport] = None

        self._seq_allocator = seq_allocator or self._next_local_seq
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()
        self._stopped = False
        self._drain_lock = asyncio.Lock()
        self._remote_ids: Dict[str, str] = {}

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize_sync(self) -> List[CanonicalEvent]:
        """Initial full pull, merge, then start polling.

        Returns:
            Events fetched by the initial pull
        """
        self._stopped = False
        self.status = ServiceStatus.RUNNING
        try:
            report = await self.poll_once()
        except SyncError as e:
            self.logger.error(f"Initial sync failed: {e}")
            raise
        self.start_polling()
        return report.events

    def start_polling(self, interval: Optional[float] = None) -> None:
        """Start (or restart) the periodic poll task."""
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._stopped = False
        self.status = ServiceStatus.RUNNING
        interval = interval or self.config.poll_interval_seconds
        self._poll_task = asyncio.create_task(self._poll_loop(interval))
        self.logger.info(f"Polling every {interval}s")

    async def _poll_loop(self, interval: float) -> None:
        while not self._stopped:
            await asyncio.sleep(interval)
            if self._stopped:
                break
            task = asyncio.create_task(self.run_cycle())
            self._cycle_tasks.add(task)
            task.add_done_callback(self._cycle_tasks.discard)

    async def run_cycle(self) -> Optional[SyncReport]:
        """One poll tick. Errors are logged here, never raised."""
        try:
            return await self.poll_once()
        except TransientNetworkError as e:
            self.logger.warning(f"Poll failed, retrying next tick: {e}")
        except ReauthenticationRequired as e:
            self.logger.error(str(e))
        except SyncError as e:
            self.logger.error(f"Poll failed: {e}")
        return None

    def stop_sync(self) -> None:
        """Cancel polling. In-flight requests may finish but their results are dropped."""
        self._stopped = True
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        if self.status != ServiceStatus.REAUTH_REQUIRED:
            self.status = ServiceStatus.STOPPED
        self.logger.info("Sync stopped")

    async def close(self) -> None:
        """Stop polling, cancel running cycles and close the HTTP client."""
        self.stop_sync()
        tasks = [t for t in [self._poll_task, *self._cycle_tasks] if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def fetch_remote_events(self) -> List[CanonicalEvent]:
        """Fetch and normalize every event from the provider."""
        return (await self.fetch_remote_batch()).events

    async def fetch_remote_batch(self) -> NormalizedBatch:
        """Like ``fetch_remote_events`` but also reports skipped items."""
        url = self.adapter.endpoint(self.config)
        response = await self._authorized_request('GET', url)
        try:
            payload = response.json()
        except ValueError as e:
            raise TransientNetworkError(f"Invalid JSON from {self.provider}: {e}") from e

        batch = self.adapter.normalize_batch(payload)
        for event in batch.events:
            if event.remote_id:
                self._remember_remote_id(event.id, event.remote_id)
        self.logger.debug(f"Fetched {len(batch.events)} events ({len(batch.skipped)} skipped)")
        return batch

    async def poll_once(self) -> SyncReport:
        """Fetch, merge and drain the queue once.

        Returns:
            Report of the cycle, also recorded in the sync session history
        """
        report = SyncReport(provider=self.provider)
        try:
            batch = await self.fetch_remote_batch()
            if self._stopped:
                self.logger.info("Discarding fetch result, sync was stopped")
                return self._finish(report, 'cancelled')

            report.fetched = len(batch.events)
            report.skipped = len(batch.skipped)
            report.events = batch.events
            for item in batch.skipped:
                report.errors.append(f"Skipped item #{item.index}: {item.reason}")

            if self.merge_callback is not None and batch.events:
                outcomes = await self.merge_callback(batch.events) or []
                for outcome in outcomes:
                    if outcome.action == 'inserted':
                        report.inserted += 1
                    elif outcome.action == 'updated':
                        report.updated += 1
                    elif outcome.action == 'kept_local':
                        report.kept_local += 1

            if not self._stopped:
                drained = await self.drain_queue()
                report.pushed = drained.pushed
                report.requeued = drained.requeued
                report.dead_lettered = drained.dead_lettered
                report.results = drained.results
                report.errors.extend(drained.errors)
        except SyncError as e:
            self._finish(report, 'failed', str(e))
            raise

        return self._finish(report, 'completed')

    def _finish(self, report: SyncReport, status: str, error: Optional[str] = None) -> SyncReport:
        report.completed_at = datetime.now(pytz.UTC)
        if error:
            report.errors.append(error)
        self.last_report = report
        if self.db_manager is not None:
            try:
                self.db_manager.record_sync_session(report, status=status, error_message=error)
            except Exception as e:
                self.logger.error(f"Failed to record sync session: {e}")
        return report

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push_event(self, event: CanonicalEvent) -> bool:
        """Send one event to the provider.

        On failure the event goes back to the queue as an update instead of
        being dropped.

        Returns:
            True if the provider accepted the event
        """
        try:
            await self._deliver_event(event)
            return True
        except SyncError as e:
            self.logger.warning(f"Push of {event.id} failed, re-queueing: {e}")
            self.queue.enqueue(SyncOperation(
                seq=self._seq_allocator(),
                type=OperationType.UPDATE,
                event_id=event.id,
                event=event,
                origin=self.origin,
            ))
            return False

    async def drain_queue(self) -> SyncReport:
        """Push pending operations in sequence order.

        After a failure for an id, later operations for the same id wait for
        the next drain so per-id order is preserved.
        """
        async with self._drain_lock:
            report = SyncReport(provider=self.provider)
            blocked: Set[str] = set()

            for entry in self.queue.pending_entries():
                if self._stopped:
                    break
                operation = entry.operation
                if operation.event_id in blocked:
                    continue

                try:
                    await self._deliver(operation)
                except ReauthenticationRequired:
                    raise
                except SyncError as e:
                    blocked.add(operation.event_id)
                    notice = self.queue.mark_failed(operation.seq, str(e))
                    if notice is not None:
                        report.dead_lettered += 1
                    else:
                        report.requeued += 1
                    report.errors.append(f"seq {operation.seq}: {e}")
                    report.results.append(self._result(operation, False, str(e)))
                    continue

                self.queue.ack(operation.seq)
                report.pushed += 1
                report.results.append(self._result(operation, True))

            report.completed_at = datetime.now(pytz.UTC)
            if report.results:
                self.logger.info(
                    f"Drained queue: {report.pushed} pushed, {report.requeued} re-queued, "
                    f"{report.dead_lettered} dead-lettered"
                )
            return report

    def _result(self, operation: SyncOperation, success: bool, error: Optional[str] = None) -> SyncResult:
        return SyncResult(
            operation=operation.type,
            seq=operation.seq,
            event_id=operation.event_id,
            provider=self.provider,
            success=success,
            error_message=error,
        )

    async def _deliver(self, operation: SyncOperation) -> None:
        if operation.type == OperationType.DELETE:
            await self._deliver_delete(operation)
        else:
            await self._deliver_event(operation.event)

    async def _deliver_event(self, event: CanonicalEvent) -> None:
        remote_id = self._remote_id_for(event)
        method, url = self.adapter.push_target(self.config, remote_id)
        response = await self._authorized_request(method, url, json=self.adapter.denormalize(event))

        if remote_id is None:
            try:
                created_id = self.adapter.extract_remote_id(response.json())
            except ValueError:
                created_id = None
            if created_id:
                self._remember_remote_id(event.id, created_id)
        self.logger.debug(f"{method} {event.id} -> {self.provider}")

    async def _deliver_delete(self, operation: SyncOperation) -> None:
        remote_id = self._remote_id_for(operation.event) if operation.event else self._lookup_remote_id(operation.event_id)
        method, url = self.adapter.delete_target(self.config, operation.event_id, remote_id)
        try:
            await self._authorized_request(method, url)
        except ProviderRequestError as e:
            if e.status_code not in (404, 410):
                raise
            self.logger.debug(f"{operation.event_id} already gone at {self.provider}")
        self._forget_remote_id(operation.event_id)

    # ------------------------------------------------------------------
    # Remote id mapping
    # ------------------------------------------------------------------

    def _remote_id_for(self, event: CanonicalEvent) -> Optional[str]:
        remote_id = self._lookup_remote_id(event.id)
        if remote_id is None and self.adapter.owns(event):
            remote_id = event.remote_id
        return remote_id

    def _lookup_remote_id(self, event_id: str) -> Optional[str]:
        remote_id = self._remote_ids.get(event_id)
        if remote_id is None and self.db_manager is not None:
            remote_id = self.db_manager.get_remote_id(self.provider, event_id)
            if remote_id:
                self._remote_ids[event_id] = remote_id
        return remote_id

    def _remember_remote_id(self, event_id: str, remote_id: str) -> None:
        if self._remote_ids.get(event_id) == remote_id:
            return
        self._remote_ids[event_id] = remote_id
        if self.db_manager is not None:
            self.db_manager.set_remote_id(self.provider, event_id, remote_id)

    def _forget_remote_id(self, event_id: str) -> None:
        self._remote_ids.pop(event_id, None)
        if self.db_manager is not None:
            self.db_manager.delete_remote_id(self.provider, event_id)

    def _next_local_seq(self) -> int:
        known = [entry.seq for entry in self.queue.pending_entries() + self.queue.dead_letters()]
        return max(known, default=0) + 1

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _authorized_request(
        self,
        method: str,
        url: str,
        json: Optional[Any] = None
    ) -> httpx.Response:
        """Send a request, refreshing the token once on 401.

        Raises:
            ReauthenticationRequired: The refreshed token was rejected too
            TransientNetworkError: Network failure or server error
            SyncError: Any other non-success response
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(2),
                retry=retry_if_exception_type(TokenExpiredError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        await self._refresh_token()
                    response = await self._send(method, url, json)
        except AuthenticationError as e:
            raise self._reauth_required(e) from e
        return response

    async def _send(self, method: str, url: str, json: Optional[Any]) -> httpx.Response:
        headers = self.adapter.request_headers(await self._access_token())
        try:
            response = await self._get_client().request(method, url, headers=headers, json=json)
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}") from e

        if response.status_code == 401:
            raise TokenExpiredError(f"{self.provider} rejected the access token")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(f"{method} {url} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"{method} {url} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )
        return response

    async def _access_token(self) -> str:
        """Current token, preferring the credential provider over the config."""
        if self.credentials is not None:
            token = await self.credentials.get_access_token()
            if token and token != self.config.access_token:
                self.config = self.config.model_copy(update={'access_token': token})
        return self.config.access_token

    async def _refresh_token(self) -> None:
        if self.credentials is None:
            raise AuthenticationError(f"No credential provider for {self.provider}")
        self.logger.info("Access token expired, refreshing")
        token = await self.credentials.refresh_access_token()
        self.config = self.config.model_copy(update={'access_token': token})

    def _reauth_required(self, error: Exception) -> ReauthenticationRequired:
        self.status = ServiceStatus.REAUTH_REQUIRED
        self._stopped = True
        if self._poll_task is not None and not self._poll_task.done() \
                and self._poll_task is not asyncio.current_task():
            self._poll_task.cancel()
        reauth = ReauthenticationRequired(self.provider, f"Reauthentication required for {self.provider}: {error}")
        self.logger.error(str(reauth))
        if self.on_error is not None:
            self.on_error(reauth)
        return reauth
