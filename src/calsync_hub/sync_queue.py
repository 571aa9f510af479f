"""Durable FIFO of local operations awaiting acknowledgment."""

import logging
from typing import Callable, Dict, List, Optional

from .database import DatabaseManager
from .models import DeadLetterNotice, OperationType, QueueEntry, QueueStatus, SyncOperation

logger = logging.getLogger(__name__)

REALTIME_QUEUE = 'realtime'

DeadLetterListener = Callable[[DeadLetterNotice], None]


class SyncQueue:
    """Operations for one destination, ordered by client sequence number.

    An entry leaves the queue only through ``ack`` (or ``discard``). Failed
    deliveries count attempts; at ``max_attempts`` the entry becomes a dead
    letter and listeners receive a ``DeadLetterNotice``. Every change is
    written through to the database so a new queue over the same database
    picks up where the old one stopped.
    """

    def __init__(
        self,
        name: str,
        db_manager: Optional[DatabaseManager] = None,
        max_attempts: int = 5
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.name = name
        self.db_manager = db_manager
        self.max_attempts = max_attempts
        self.logger = logger.getChild(name)
        self._entries: Dict[int, QueueEntry] = {}
        self._listeners: List[DeadLetterListener] = []

        if db_manager is not None:
            for entry in db_manager.load_queue(name):
                self._entries[entry.seq] = entry
            if self._entries:
                self.logger.info(
                    f"Restored {len(self.pending())} pending and "
                    f"{len(self.dead_letters())} dead operations"
                )

    def __len__(self) -> int:
        return len(self.pending())

    def __contains__(self, seq: int) -> bool:
        return seq in self._entries

    def subscribe(self, listener: DeadLetterListener) -> None:
        self._listeners.append(listener)

    def get(self, seq: int) -> Optional[QueueEntry]:
        return self._entries.get(seq)

    def enqueue(self, operation: SyncOperation) -> QueueEntry:
        """Append an operation; re-enqueueing a known seq is a no-op."""
        existing = self._entries.get(operation.seq)
        if existing is not None:
            return existing

        entry = QueueEntry(queue=self.name, operation=operation)
        self._entries[operation.seq] = entry
        self._persist(entry)
        self.logger.debug(f"Queued {operation.type.value} {operation.event_id} (seq {operation.seq})")
        return entry

    def ack(self, seq: int) -> bool:
        """Remove an acknowledged operation.

        Returns:
            True if the seq was queued
        """
        entry = self._entries.pop(seq, None)
        if entry is None:
            return False
        if self.db_manager is not None:
            self.db_manager.delete_queue_entry(self.name, seq)
        self.logger.debug(f"Acknowledged seq {seq}")
        return True

    def mark_failed(self, seq: int, error: str) -> Optional[DeadLetterNotice]:
        """Record a failed delivery attempt.

        Returns:
            The notice if this failure exhausted the retries, else None
        """
        entry = self._entries.get(seq)
        if entry is None or entry.status == QueueStatus.DEAD:
            return None

        entry.attempts += 1
        entry.last_error = error
        notice = None
        if entry.attempts >= self.max_attempts:
            entry.status = QueueStatus.DEAD
            notice = DeadLetterNotice(
                queue=self.name,
                seq=seq,
                event_id=entry.operation.event_id,
                operation=entry.operation.type,
                attempts=entry.attempts,
                last_error=error,
            )
            self.logger.error(f"Dead letter: {notice}")
        else:
            self.logger.warning(
                f"Delivery of seq {seq} failed (attempt {entry.attempts}/{self.max_attempts}): {error}"
            )
        self._persist(entry)

        if notice is not None:
            for listener in list(self._listeners):
                try:
                    listener(notice)
                except Exception as e:
                    self.logger.error(f"Dead-letter listener failed: {e}")
        return notice

    def pending_entries(self) -> List[QueueEntry]:
        return sorted(
            (e for e in self._entries.values() if e.status == QueueStatus.PENDING),
            key=lambda e: e.seq
        )

    def pending(self) -> List[SyncOperation]:
        """Pending operations in sequence order."""
        return [entry.operation for entry in self.pending_entries()]

    def dead_letters(self) -> List[QueueEntry]:
        return sorted(
            (e for e in self._entries.values() if e.status == QueueStatus.DEAD),
            key=lambda e: e.seq
        )

    def has_unsent_delete(self, event_id: str) -> bool:
        """True if the newest undelivered operation for ``event_id`` is a delete."""
        latest = None
        for entry in self._entries.values():
            if entry.operation.event_id == event_id and (latest is None or entry.seq > latest.seq):
                latest = entry
        return latest is not None and latest.operation.type == OperationType.DELETE

    def retry_dead_letter(self, seq: int) -> bool:
        """Move a dead letter back to pending with a fresh attempt budget."""
        entry = self._entries.get(seq)
        if entry is None or entry.status != QueueStatus.DEAD:
            return False
        entry.status = QueueStatus.PENDING
        entry.attempts = 0
        self._persist(entry)
        self.logger.info(f"Dead letter seq {seq} re-queued for retry")
        return True

    def discard(self, seq: int) -> bool:
        """Drop an entry without delivering it."""
        if seq not in self._entries:
            return False
        self.logger.info(f"Discarding seq {seq}")
        return self.ack(seq)

    def _persist(self, entry: QueueEntry) -> None:
        if self.db_manager is not None:
            self.db_manager.save_queue_entry(entry)
