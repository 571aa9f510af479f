"""Sync engine: wires the store, queues, provider services and realtime channel."""

import asyncio
import logging
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set, Union
from uuid import uuid4

import aiohttp
import httpx

from .adapters import AdapterRegistry
from .config import Settings
from .conflict import ConflictResolver
from .credentials import CredentialProvider, StaticCredentialProvider
from .database import DatabaseManager, SESSION_ID_KEY
from .errors import DeadLetterError, SyncError, TransientNetworkError, UnknownProviderError
from .models import (
    CanonicalEvent, DeadLetterNotice, MergeOutcome, OperationType, QueueEntry, ServiceStatus,
    SyncOperation, SyncReport
)
from .realtime import RealtimeChannel
from .store import EventStore
from .sync_queue import REALTIME_QUEUE, SyncQueue
from .sync_service import SyncService
from .timeutils import now_epoch_ms

logger = logging.getLogger(__name__)

ErrorListener = Callable[[Exception], None]


class SyncEngine:
    """Composition root owning every sync component for one process.

    Local mutations enter through ``submit_mutation``; remote operations
    from other sessions through ``apply_remote_operations``. Errors that
    need the user's attention (dead letters, re-authentication) are kept in
    ``errors`` and passed to registered error listeners.
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: Optional[DatabaseManager] = None,
        registry: Optional[AdapterRegistry] = None,
        credentials: Optional[Dict[str, CredentialProvider]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        realtime_session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db_manager: Persistence layer (defaults to settings.database_url)
            registry: Adapter registry (defaults to the built-in adapters)
            credentials: Credential providers keyed by provider tag or 'realtime'
            transport: httpx transport shared by the provider services
            realtime_session: aiohttp session for the realtime channel
        """
        self.settings = settings
        self.logger = logger.getChild('sync_engine')
        self.db_manager = db_manager or DatabaseManager(settings)
        self.db_manager.init_db()
        self.registry = registry or AdapterRegistry.default()
        self.resolver = ConflictResolver(settings.conflict_resolution, settings.provider_priority)
        self.store = EventStore(self.db_manager)
        self.session_id = self._load_session_id()

        self.errors: List[Exception] = []
        self._error_listeners: List[ErrorListener] = []
        self._drain_tasks: Set[asyncio.Task] = set()
        self._started = False

        credentials = credentials or {}
        self.queues: Dict[str, SyncQueue] = {}
        self.services: Dict[str, SyncService] = {}
        for config in settings.get_active_providers():
            try:
                adapter = self.registry.get(config.provider, config.api_endpoint)
            except UnknownProviderError as e:
                self.logger.error(f"Skipping provider: {e}")
                self._report_error(e)
                continue

            queue = self._create_queue(config.provider)
            resolver = ConflictResolver(config.conflict_resolution, settings.provider_priority)
            provider_credentials = credentials.get(config.provider) or StaticCredentialProvider(
                config.access_token, config.refresh_token, name=config.provider
            )
            self.services[config.provider] = SyncService(
                config=config,
                adapter=adapter,
                queue=queue,
                credentials=provider_credentials,
                merge_callback=partial(self._merge_remote_events, resolver),
                db_manager=self.db_manager,
                seq_allocator=self.db_manager.next_sequence,
                origin=self.session_id,
                on_error=self._report_error,
                timeout=settings.request_timeout_seconds,
                transport=transport,
            )

        self.channel: Optional[RealtimeChannel] = None
        if settings.realtime_url:
            self.channel = RealtimeChannel(
                url=settings.realtime_url,
                queue=self._create_queue(REALTIME_QUEUE),
                token=settings.realtime_token,
                credentials=credentials.get(REALTIME_QUEUE),
                on_operations=self.apply_remote_operations,
                initial_delay=settings.realtime_reconnect_initial_seconds,
                max_delay=settings.realtime_reconnect_max_seconds,
                auth_timeout=settings.realtime_auth_timeout_seconds,
                session=realtime_session,
            )

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.stop()

    def _load_session_id(self) -> str:
        session_id = self.db_manager.get_value(SESSION_ID_KEY)
        if not session_id:
            session_id = uuid4().hex
            self.db_manager.set_value(SESSION_ID_KEY, session_id)
        return session_id

    def _create_queue(self, name: str) -> SyncQueue:
        queue = SyncQueue(name, self.db_manager, max_attempts=self.settings.max_retry_attempts)
        queue.subscribe(self._on_dead_letter)
        self.queues[name] = queue
        return queue

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, initial_sync: bool = True, polling: bool = True) -> None:
        """Run the initial pull for every provider and connect the channel.

        Args:
            initial_sync: Pull from every provider before returning
            polling: Keep polling providers in the background
        """
        if self._started:
            return
        self._started = True

        if initial_sync:
            for service in self.services.values():
                try:
                    if polling:
                        await service.initialize_sync()
                    else:
                        await service.poll_once()
                except TransientNetworkError as e:
                    self.logger.warning(f"Initial sync of {service.provider} failed: {e}")
                    if polling:
                        service.start_polling()
                except SyncError as e:
                    self.logger.error(f"Initial sync of {service.provider} failed: {e}")
        elif polling:
            for service in self.services.values():
                service.start_polling()

        if self.channel is not None:
            await self.channel.connect()

        self.logger.info(
            f"Sync engine started (session {self.session_id}, "
            f"{len(self.services)} providers, realtime {'on' if self.channel else 'off'})"
        )

    async def stop(self) -> None:
        """Stop polling, close the channel and release network resources."""
        for task in list(self._drain_tasks):
            task.cancel()
        if self._drain_tasks:
            await asyncio.gather(*self._drain_tasks, return_exceptions=True)
        for service in self.services.values():
            await service.close()
        if self.channel is not None:
            await self.channel.close()
        self._started = False
        self.logger.info("Sync engine stopped")

    # ------------------------------------------------------------------
    # Local intake
    # ------------------------------------------------------------------

    async def submit_mutation(
        self,
        type: Union[OperationType, str],
        event: Optional[CanonicalEvent] = None,
        event_id: Optional[str] = None
    ) -> SyncOperation:
        """Apply a local change and queue it for every destination.

        Args:
            type: create, update or delete
            event: The written event (optional for deletes)
            event_id: Id of the affected event, defaults to event.id

        Returns:
            The queued operation
        """
        op_type = OperationType(type)
        if event is not None:
            event_id = event_id or event.id
            # A local edit is the newest version of the event
            event = event.model_copy(update={'timestamp': now_epoch_ms()})
        elif op_type == OperationType.DELETE and event_id:
            # Keep the last-known version so providers can address the delete
            event = self.store.get(event_id)
        if not event_id:
            raise ValueError("submit_mutation needs an event or an event_id")

        operation = SyncOperation(
            seq=self.db_manager.next_sequence(),
            type=op_type,
            event_id=event_id,
            event=event,
            origin=self.session_id,
        )
        await self.store.apply_local(operation)

        for queue in self.queues.values():
            queue.enqueue(operation)

        if self.channel is not None and self.channel.connected:
            await self.channel.send_operations([operation])

        if self.settings.push_on_submit:
            for service in self.services.values():
                if service.status != ServiceStatus.REAUTH_REQUIRED:
                    self._schedule_drain(service)

        self.logger.debug(f"Submitted {op_type.value} {event_id} (seq {operation.seq})")
        return operation

    def _schedule_drain(self, service: SyncService) -> None:
        task = asyncio.create_task(self._drain(service))
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)

    async def _drain(self, service: SyncService) -> Optional[SyncReport]:
        try:
            return await service.drain_queue()
        except SyncError as e:
            self.logger.warning(f"Push to {service.provider} failed: {e}")
            return None

    async def drain_all(self) -> List[SyncReport]:
        """Push pending operations to every provider and wait for the result."""
        if self._drain_tasks:
            await asyncio.gather(*list(self._drain_tasks), return_exceptions=True)
        reports = []
        for service in self.services.values():
            report = await self._drain(service)
            if report is not None:
                reports.append(report)
        return reports

    # ------------------------------------------------------------------
    # Remote intake
    # ------------------------------------------------------------------

    async def _merge_remote_events(
        self,
        resolver: ConflictResolver,
        events: List[CanonicalEvent]
    ) -> List[MergeOutcome]:
        return await self.store.merge_remote_batch(events, resolver, skip=self._has_unsent_delete)

    def _has_unsent_delete(self, event_id: str) -> bool:
        # A pull must not bring back an event the user deleted locally
        return any(queue.has_unsent_delete(event_id) for queue in self.queues.values())

    async def apply_remote_operations(self, operations: List[SyncOperation]) -> List[MergeOutcome]:
        """Apply operations received from other sessions.

        Operations are applied in (origin, seq) order; this session's own
        operations echoed back by the server are ignored.
        """
        outcomes = []
        for operation in sorted(operations, key=lambda op: (op.origin or '', op.seq)):
            if operation.origin == self.session_id:
                continue
            if operation.type == OperationType.DELETE:
                outcome = await self.store.apply_remote_delete(operation, self.resolver)
            else:
                outcome = await self.store.merge_remote(operation.event, self.resolver)
            outcomes.append(outcome)
        return outcomes

    async def sync_once(self) -> List[SyncReport]:
        """Run one pull/push cycle for every enabled provider."""
        reports = []
        for service in self.services.values():
            try:
                reports.append(await service.poll_once())
            except SyncError as e:
                self.logger.error(f"Sync with {service.provider} failed: {e}")
                if service.last_report is not None:
                    reports.append(service.last_report)
        return reports

    # ------------------------------------------------------------------
    # Errors and dead letters
    # ------------------------------------------------------------------

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def _on_dead_letter(self, notice: DeadLetterNotice) -> None:
        self._report_error(DeadLetterError(notice))

    def _report_error(self, error: Exception) -> None:
        self.errors.append(error)
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception as e:
                self.logger.error(f"Error listener failed: {e}")

    def dead_letters(self) -> List[QueueEntry]:
        entries = []
        for queue in self.queues.values():
            entries.extend(queue.dead_letters())
        return entries

    def retry_dead_letter(self, seq: int, queue: Optional[str] = None) -> int:
        """Re-queue a dead letter; returns the number of queues affected."""
        return sum(1 for q in self._select_queues(queue) if q.retry_dead_letter(seq))

    def discard(self, seq: int, queue: Optional[str] = None) -> int:
        """Drop an operation; returns the number of queues affected."""
        return sum(1 for q in self._select_queues(queue) if q.discard(seq))

    def _select_queues(self, name: Optional[str]) -> List[SyncQueue]:
        if name is None:
            return list(self.queues.values())
        if name not in self.queues:
            raise KeyError(f"Unknown queue: {name}")
        return [self.queues[name]]

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of engine state for display."""
        return {
            'session_id': self.session_id,
            'events': len(self.store),
            'channel': self.channel.state.value if self.channel else None,
            'services': {name: service.status.value for name, service in self.services.items()},
            'queues': {
                name: {'pending': len(queue), 'dead': len(queue.dead_letters())}
                for name, queue in self.queues.items()
            },
            'errors': [str(error) for error in self.errors],
        }
