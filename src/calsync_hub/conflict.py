"""Conflict resolution between versions of the same event."""

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from .config import DEFAULT_PROVIDER_PRIORITY
from .models import CanonicalEvent, ConflictResolution, EventSource, SyncOperation

logger = logging.getLogger(__name__)


class ConflictResolver:
    """Picks the winning version of an event under one strategy.

    Resolution is pure and total: it never mutates its inputs and always
    returns one of them. Applying it again with the same remote version
    returns the same winner.
    """

    def __init__(
        self,
        strategy: ConflictResolution = ConflictResolution.TIMESTAMP,
        provider_priority: Optional[Sequence[str]] = None
    ):
        """Initialize conflict resolver.

        Args:
            strategy: Conflict resolution strategy
            provider_priority: Provider tags, highest precedence first
        """
        self.strategy = ConflictResolution(strategy)
        self.provider_priority = [
            tag.lower() for tag in (provider_priority or DEFAULT_PROVIDER_PRIORITY)
        ]
        self.logger = logger.getChild('conflict_resolver')

    def resolve(self, local: CanonicalEvent, remote: CanonicalEvent) -> CanonicalEvent:
        """Return the winner between the local and a remote version."""
        winner, reason = self.resolve_conflict(local, remote)
        self.logger.debug(f"{local.id}: {reason}")
        return winner

    def resolve_conflict(
        self,
        local: CanonicalEvent,
        remote: CanonicalEvent
    ) -> Tuple[CanonicalEvent, str]:
        """Resolve a conflict and explain the decision.

        Args:
            local: Version currently held by this engine
            remote: Version received from a provider or another session

        Returns:
            Tuple of (winning_event, resolution_reason)
        """
        if self.strategy == ConflictResolution.LOCAL:
            return local, "Resolved: local wins policy"

        if self.strategy == ConflictResolution.SOURCE:
            return self._resolve_by_source(local, remote)

        if remote.timestamp > local.timestamp:
            return remote, f"Resolved: remote is more recent ({remote.timestamp} > {local.timestamp})"
        if local.timestamp > remote.timestamp:
            return local, f"Resolved: local is more recent ({local.timestamp} > {remote.timestamp})"
        return local, f"Resolved: equal timestamps ({local.timestamp}), local wins (tiebreaker)"

    def _resolve_by_source(
        self,
        local: CanonicalEvent,
        remote: CanonicalEvent
    ) -> Tuple[CanonicalEvent, str]:
        local_native = local.source_calendar == EventSource.NATIVE
        remote_native = remote.source_calendar == EventSource.NATIVE

        if local_native and remote_native:
            return local, "Resolved: both versions native, local wins"
        if local_native:
            return remote, f"Resolved: {remote.source_calendar.value} is the system of record"
        if remote_native:
            return local, f"Resolved: {local.source_calendar.value} is the system of record"

        if local.source_calendar == remote.source_calendar:
            return remote, f"Resolved: {remote.source_calendar.value} reported a newer copy of its own event"

        local_rank = self.rank(local.source_calendar.value)
        remote_rank = self.rank(remote.source_calendar.value)
        if remote_rank < local_rank:
            return remote, (
                f"Resolved: {remote.source_calendar.value} outranks {local.source_calendar.value}"
            )
        return local, f"Resolved: {local.source_calendar.value} outranks {remote.source_calendar.value}"

    def rank(self, tag: str) -> int:
        """Position of a provider in the priority order; unknown tags rank last."""
        try:
            return self.provider_priority.index(tag.lower())
        except ValueError:
            return len(self.provider_priority)

    def _fold_order(self, event: CanonicalEvent):
        return (
            self.rank(event.source_calendar.value),
            event.timestamp,
            event.remote_id or '',
            event.content_hash(),
        )

    def resolve_many(
        self,
        local: Optional[CanonicalEvent],
        remotes: Iterable[CanonicalEvent]
    ) -> Optional[CanonicalEvent]:
        """Resolve the local version against several remote versions.

        Remotes are folded in provider-priority order, so the winner does
        not depend on the order in which providers reported.

        Args:
            local: Version held by this engine, or None if it has none
            remotes: Versions of the same event from other sources

        Returns:
            The winning version, or None if there was nothing to resolve
        """
        ordered: List[CanonicalEvent] = sorted(remotes, key=self._fold_order)
        if local is None:
            if not ordered:
                return None
            winner, ordered = ordered[0], ordered[1:]
        else:
            winner = local

        for remote in ordered:
            winner = self.resolve(winner, remote)
        return winner

    def resolve_delete(self, local: Optional[CanonicalEvent], operation: SyncOperation) -> bool:
        """Decide whether a remote delete applies to the local version.

        Returns:
            True if the event should be removed
        """
        if local is None:
            return True

        if self.strategy == ConflictResolution.LOCAL:
            self.logger.debug(f"{local.id}: delete ignored, local wins policy")
            return False

        if self.strategy == ConflictResolution.TIMESTAMP and local.timestamp > operation.timestamp:
            self.logger.debug(
                f"{local.id}: delete ignored, local is more recent "
                f"({local.timestamp} > {operation.timestamp})"
            )
            return False

        return True
