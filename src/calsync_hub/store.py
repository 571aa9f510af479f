"""Engine-owned canonical event set."""

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Callable, Dict, Iterable, List, Optional

from .conflict import ConflictResolver
from .database import DatabaseManager
from .models import CanonicalEvent, MergeOutcome, OperationType, SyncOperation

logger = logging.getLogger(__name__)

ChangeListener = Callable[[List[str]], None]


class EventStore:
    """Canonical events keyed by id.

    Writes for the same id are serialized through a per-id lock; writes for
    different ids do not wait on each other. Every write is an upsert, so
    replaying an operation never produces a duplicate.
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager
        self.logger = logger.getChild('store')
        self._events: Dict[str, CanonicalEvent] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._listeners: List[ChangeListener] = []

        if db_manager is not None:
            for event in db_manager.load_events():
                self._events[event.id] = event
            self.logger.info(f"Loaded {len(self._events)} events")

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._events

    def get(self, event_id: str) -> Optional[CanonicalEvent]:
        return self._events.get(event_id)

    def snapshot(self) -> List[CanonicalEvent]:
        """All events ordered by start time."""
        return sorted(self._events.values(), key=lambda e: (e.start_time, e.id))

    def subscribe(self, listener: ChangeListener) -> None:
        """Register a callback receiving the ids changed by each write."""
        self._listeners.append(listener)

    def lock_for(self, event_id: str) -> asyncio.Lock:
        lock = self._locks.get(event_id)
        if lock is None:
            lock = self._locks[event_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _locked(self, event_id: str):
        """Hold the id's lock; the lock is dropped once nobody uses it."""
        lock = self.lock_for(event_id)
        self._lock_users[event_id] = self._lock_users.get(event_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[event_id] -= 1
            if not self._lock_users[event_id]:
                del self._lock_users[event_id]
                if not lock.locked():
                    self._locks.pop(event_id, None)

    async def apply_local(self, operation: SyncOperation) -> MergeOutcome:
        """Apply a mutation made on this device. Local intake always wins."""
        async with self._locked(operation.event_id):
            if operation.type == OperationType.DELETE:
                outcome = self._delete(operation.event_id)
            else:
                outcome = self._put(operation.event)
        self._notify([outcome])
        return outcome

    async def merge_remote(self, event: CanonicalEvent, resolver: ConflictResolver) -> MergeOutcome:
        """Merge one remote version through the resolver."""
        async with self._locked(event.id):
            local = self._events.get(event.id)
            winner = event if local is None else resolver.resolve(local, event)
            outcome = self._store_winner(local, winner)
        self._notify([outcome])
        return outcome

    async def merge_remote_batch(
        self,
        events: Iterable[CanonicalEvent],
        resolver: ConflictResolver,
        skip: Optional[Callable[[str], bool]] = None
    ) -> List[MergeOutcome]:
        """Merge a batch, resolving all versions of an id together.

        Ids for which ``skip`` returns True (checked under the id's lock)
        are left untouched, e.g. events deleted locally whose delete has not
        reached the provider yet.
        """
        grouped: Dict[str, List[CanonicalEvent]] = OrderedDict()
        for event in events:
            grouped.setdefault(event.id, []).append(event)

        outcomes = []
        for event_id, versions in grouped.items():
            async with self._locked(event_id):
                if skip is not None and skip(event_id):
                    self.logger.debug(f"Skipping remote version of {event_id}")
                    outcomes.append(MergeOutcome(event_id=event_id, action='ignored'))
                    continue
                local = self._events.get(event_id)
                winner = resolver.resolve_many(local, versions)
                outcomes.append(self._store_winner(local, winner))
        self._notify(outcomes)
        return outcomes

    async def apply_remote_delete(
        self,
        operation: SyncOperation,
        resolver: ConflictResolver
    ) -> MergeOutcome:
        """Apply a delete received from elsewhere, if the resolver allows it."""
        async with self._locked(operation.event_id):
            local = self._events.get(operation.event_id)
            if local is None:
                outcome = MergeOutcome(event_id=operation.event_id, action='ignored')
            elif resolver.resolve_delete(local, operation):
                outcome = self._delete(operation.event_id)
            else:
                outcome = MergeOutcome(event_id=local.id, action='kept_local', event=local)
        self._notify([outcome])
        return outcome

    def _store_winner(self, local: Optional[CanonicalEvent], winner: CanonicalEvent) -> MergeOutcome:
        if local is None:
            self._write(winner)
            return MergeOutcome(event_id=winner.id, action='inserted', event=winner)
        if winner == local:
            action = 'kept_local' if winner is local else 'ignored'
            return MergeOutcome(event_id=local.id, action=action, event=local)
        if winner is local:
            return MergeOutcome(event_id=local.id, action='kept_local', event=local)
        self._write(winner)
        return MergeOutcome(event_id=winner.id, action='updated', event=winner)

    def _put(self, event: CanonicalEvent) -> MergeOutcome:
        existing = self._events.get(event.id)
        if existing == event:
            return MergeOutcome(event_id=event.id, action='ignored', event=event)
        self._write(event)
        action = 'inserted' if existing is None else 'updated'
        return MergeOutcome(event_id=event.id, action=action, event=event)

    def _delete(self, event_id: str) -> MergeOutcome:
        if self._events.pop(event_id, None) is None:
            return MergeOutcome(event_id=event_id, action='ignored')
        if self.db_manager is not None:
            self.db_manager.delete_event(event_id)
        return MergeOutcome(event_id=event_id, action='deleted')

    def _write(self, event: CanonicalEvent) -> None:
        self._events[event.id] = event
        if self.db_manager is not None:
            self.db_manager.upsert_event(event)

    def _notify(self, outcomes: List[MergeOutcome]) -> None:
        changed = [o.event_id for o in outcomes if o.action in ('inserted', 'updated', 'deleted')]
        if not changed:
            return
        for listener in list(self._listeners):
            try:
                listener(changed)
            except Exception as e:
                self.logger.error(f"Change listener failed: {e}")
