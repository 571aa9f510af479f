"""Data models for calendar synchronization."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, List
from dataclasses import dataclass
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, validator
import pytz

from .timeutils import ensure_utc, now_epoch_ms


class EventSource(str, Enum):
    """Origin calendar of an event."""

    NATIVE = "native"
    GOOGLE = "google"
    APPLE = "apple"
    OUTLOOK = "outlook"


class ConflictResolution(str, Enum):
    """Conflict resolution strategies."""

    SOURCE = "source"  # Non-native provider is the system of record
    LOCAL = "local"  # Local version always wins (one-way push)
    TIMESTAMP = "timestamp"  # Most recently modified event wins


class OperationType(str, Enum):
    """Sync operation types."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class QueueStatus(str, Enum):
    """Queue entry states."""

    PENDING = "pending"
    DEAD = "dead"


class ServiceStatus(str, Enum):
    """Lifecycle state of a provider sync service."""

    IDLE = "idle"
    RUNNING = "running"
    REAUTH_REQUIRED = "reauth_required"
    STOPPED = "stopped"


class ChannelState(str, Enum):
    """Realtime channel connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class CanonicalEvent(BaseModel):
    """Provider-agnostic calendar event."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, description="Stable id of the logical event")
    title: str = Field("", description="Event title")
    start_time: datetime = Field(..., alias="startTime", description="Start instant (UTC)")
    end_time: datetime = Field(..., alias="endTime", description="End instant (UTC)")
    description: Optional[str] = Field(None, description="Event description")
    source_calendar: EventSource = Field(
        EventSource.NATIVE, alias="sourceCalendar", description="Origin provider"
    )
    timestamp: int = Field(
        default_factory=now_epoch_ms, description="Last-modified instant, epoch milliseconds"
    )
    remote_id: Optional[str] = Field(
        None, alias="remoteId", description="Provider-native id when it differs from id"
    )

    @validator('start_time', 'end_time')
    def normalize_to_utc(cls, v):
        """Interpret naive datetimes as UTC and convert aware ones to UTC."""
        return ensure_utc(v)

    @validator('end_time')
    def end_not_before_start(cls, v, values):
        """Zero-duration events are valid, negative ones are not."""
        if 'start_time' in values and v < values['start_time']:
            raise ValueError(
                f"End time ({v}) must not be before start time ({values['start_time']})"
            )
        return v

    def content_hash(self) -> str:
        """Generate content hash for change detection."""
        import hashlib
        import json

        content = {
            'title': self.title,
            'description': self.description or '',
            'start': self.start_time.isoformat(),
            'end': self.end_time.isoformat(),
        }
        content_str = json.dumps(content, sort_keys=True)
        return hashlib.sha256(content_str.encode()).hexdigest()

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with camelCase keys for JSON transports."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SyncOperation(BaseModel):
    """A single pending mutation awaiting transmission."""

    model_config = ConfigDict(populate_by_name=True)

    seq: int = Field(..., ge=1, description="Client-generated sequence number")
    type: OperationType = Field(..., description="Mutation kind")
    event_id: str = Field(..., alias="eventId", min_length=1)
    event: Optional[CanonicalEvent] = Field(None, description="Affected event, optional for deletes")
    origin: Optional[str] = Field(None, description="Session id of the producing engine")
    timestamp: int = Field(default_factory=now_epoch_ms, description="Creation instant, epoch ms")

    @validator('event', always=True)
    def event_required_unless_delete(cls, v, values):
        """Creates and updates must carry the event they write."""
        op_type = values.get('type')
        if v is None and op_type in (OperationType.CREATE, OperationType.UPDATE):
            raise ValueError(f"{op_type.value} operation requires an event")
        if v is not None and 'event_id' in values and v.id != values['event_id']:
            raise ValueError(f"event id {v.id!r} does not match eventId {values['event_id']!r}")
        return v

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with camelCase keys for the realtime channel."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class QueueEntry(BaseModel):
    """Queued operation plus its delivery bookkeeping."""

    queue: str
    operation: SyncOperation
    attempts: int = Field(0, ge=0)
    status: QueueStatus = Field(QueueStatus.PENDING)
    last_error: Optional[str] = None

    @property
    def seq(self) -> int:
        return self.operation.seq


class SyncConfig(BaseModel):
    """Connection parameters for one provider.

    Frozen: a token refresh produces a new instance via ``model_copy``.
    """

    model_config = ConfigDict(frozen=True)

    provider: str = Field(..., min_length=1, description="Provider tag (google, apple, outlook or custom)")
    api_endpoint: Optional[str] = Field(None, description="Custom endpoint for unknown providers")
    access_token: str = Field("", description="Bearer token")
    refresh_token: Optional[str] = Field(None, description="Refresh token handed to the credential provider")
    conflict_resolution: ConflictResolution = Field(ConflictResolution.TIMESTAMP)
    poll_interval_seconds: float = Field(30.0, gt=0)
    enabled: bool = Field(True)

    @validator('provider')
    def normalize_provider_tag(cls, v):
        return v.strip().lower()


class SyncResult(BaseModel):
    """Result of a single push attempt."""

    operation: OperationType
    seq: int
    event_id: str
    provider: str
    success: bool
    error_message: Optional[str] = None


class SyncReport(BaseModel):
    """Report of one pull/push cycle against a provider."""

    sync_id: UUID = Field(default_factory=uuid4)
    provider: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = Field(None)

    fetched: int = Field(0)
    skipped: int = Field(0)
    inserted: int = Field(0)
    updated: int = Field(0)
    kept_local: int = Field(0)
    pushed: int = Field(0)
    requeued: int = Field(0)
    dead_lettered: int = Field(0)

    results: List[SyncResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    events: List[CanonicalEvent] = Field(default_factory=list, exclude=True)

    @property
    def total_operations(self) -> int:
        """Total number of push attempts performed."""
        return len(self.results)

    @property
    def success_rate(self) -> float:
        """Success rate of push attempts."""
        if not self.results:
            return 1.0
        successful = sum(1 for r in self.results if r.success)
        return successful / len(self.results)


class DeadLetterNotice(BaseModel):
    """User-visible notice that a change could not be synced."""

    queue: str
    seq: int
    event_id: str
    operation: OperationType
    attempts: int
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))

    def __str__(self) -> str:
        return (
            f"{self.operation.value} of event {self.event_id} (seq {self.seq}) failed to sync "
            f"to {self.queue} after {self.attempts} attempts: {self.last_error}"
        )


class CursorUpdate(BaseModel):
    """Live cursor position of another session. Advisory only."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(None, alias="userId")
    x: float
    y: float
    username: str = ""


class PresenceChange(BaseModel):
    """Another user joined or left. Advisory only."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    username: str = ""
    joined: bool = True


@dataclass
class SkippedItem:
    index: int
    reason: str
    item: Any = None


@dataclass
class NormalizedBatch:
    events: List[CanonicalEvent]
    skipped: List[SkippedItem]


@dataclass
class MergeOutcome:
    """What a merge did to the canonical store for one id."""

    event_id: str
    action: str  # 'inserted', 'updated', 'kept_local', 'deleted', 'ignored'
    event: Optional[CanonicalEvent] = None
