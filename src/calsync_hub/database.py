"""Database models and operations for durable sync state."""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import create_engine, Column, String, DateTime, Text, Integer, BigInteger, Index
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import CanonicalEvent, QueueEntry, QueueStatus, SyncOperation, SyncReport

Base = declarative_base()

NEXT_SEQ_KEY = 'next_seq'
SESSION_ID_KEY = 'session_id'


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgresUUID())
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return str(value)
        else:
            if not isinstance(value, UUID):
                return "%.32x" % UUID(value).int
            else:
                return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        else:
            if not isinstance(value, UUID):
                return UUID(value)
            return value


class CanonicalEventDB(Base):
    """Database model for the last-known canonical event set."""

    __tablename__ = 'canonical_events'

    id = Column(String(255), primary_key=True)
    source_calendar = Column(String(20), nullable=False)
    timestamp = Column(BigInteger, nullable=False)
    content_hash = Column(String(64), nullable=False)
    payload = Column(Text, nullable=False)  # JSON, camelCase wire form
    updated_at = Column(DateTime, nullable=False, default=lambda: datetime.now(pytz.UTC))

    __table_args__ = (
        Index('idx_canonical_event_source', 'source_calendar'),
        Index('idx_canonical_event_timestamp', 'timestamp'),
    )


class EventMappingDB(Base):
    """Database model mapping canonical ids to provider-native ids."""

    __tablename__ = 'event_mappings'

    provider = Column(String(50), primary_key=True)
    event_id = Column(String(255), primary_key=True)  # Canonical id
    remote_id = Column(String(1000), nullable=False)  # Provider id or resource href
    updated_at = Column(DateTime, nullable=False, default=lambda: datetime.now(pytz.UTC))

    __table_args__ = (
        Index('idx_event_mapping_remote', 'provider', 'remote_id'),
    )


class QueuedOperationDB(Base):
    """Database model for operations awaiting acknowledgment."""

    __tablename__ = 'queued_operations'

    queue = Column(String(50), primary_key=True)  # 'realtime' or a provider tag
    seq = Column(BigInteger, primary_key=True)
    operation = Column(String(20), nullable=False)  # 'create', 'update', 'delete'
    event_id = Column(String(255), nullable=False)
    payload = Column(Text, nullable=False)  # JSON SyncOperation
    attempts = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=QueueStatus.PENDING.value)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(pytz.UTC))
    updated_at = Column(DateTime, nullable=False, default=lambda: datetime.now(pytz.UTC))

    __table_args__ = (
        Index('idx_queued_operation_status', 'queue', 'status', 'seq'),
        Index('idx_queued_operation_event', 'event_id'),
    )


class SyncSessionDB(Base):
    """Database model for pull/push cycles against a provider."""

    __tablename__ = 'sync_sessions'

    id = Column(GUID(), primary_key=True, default=uuid4)
    provider = Column(String(50), nullable=False)
    started_at = Column(DateTime, nullable=False, default=lambda: datetime.now(pytz.UTC))
    completed_at = Column(DateTime, nullable=True)

    # Counters
    fetched = Column(Integer, default=0)
    skipped = Column(Integer, default=0)
    inserted = Column(Integer, default=0)
    updated = Column(Integer, default=0)
    kept_local = Column(Integer, default=0)
    pushed = Column(Integer, default=0)
    requeued = Column(Integer, default=0)
    dead_lettered = Column(Integer, default=0)

    # Status
    status = Column(String(20), nullable=False, default='running')  # 'running', 'completed', 'failed'
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_sync_session_provider', 'provider'),
        Index('idx_sync_session_started', 'started_at'),
        Index('idx_sync_session_status', 'status'),
    )


class ConfigDB(Base):
    """Database model for key-value engine state."""

    __tablename__ = 'config'

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=lambda: datetime.now(pytz.UTC))

    __table_args__ = (
        Index('idx_config_updated', 'updated_at'),
    )


class DatabaseManager:
    """Persistence for the sync queue, the canonical event set and sync history."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def reset(self) -> None:
        """Drop and recreate all tables."""
        Base.metadata.drop_all(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    # ------------------------------------------------------------------
    # Key-value state
    # ------------------------------------------------------------------

    def get_value(self, key: str) -> Optional[str]:
        with self.get_session() as session:
            row = session.get(ConfigDB, key)
            return row.value if row else None

    def set_value(self, key: str, value: str) -> None:
        with self.get_session() as session:
            row = session.get(ConfigDB, key)
            if row is None:
                session.add(ConfigDB(key=key, value=value))
            else:
                row.value = value
                row.updated_at = datetime.now(pytz.UTC)
            session.commit()

    def next_sequence(self) -> int:
        """Allocate the next client sequence number.

        Returns:
            A number strictly greater than every number handed out before,
            including by earlier processes sharing this database.
        """
        with self.get_session() as session:
            row = session.get(ConfigDB, NEXT_SEQ_KEY)
            if row is None:
                seq = 1
                session.add(ConfigDB(key=NEXT_SEQ_KEY, value=str(seq + 1)))
            else:
                seq = int(row.value)
                row.value = str(seq + 1)
                row.updated_at = datetime.now(pytz.UTC)
            session.commit()
            return seq

    # ------------------------------------------------------------------
    # Canonical events
    # ------------------------------------------------------------------

    def load_events(self) -> List[CanonicalEvent]:
        """Load the last-known canonical event set."""
        with self.get_session() as session:
            rows = session.query(CanonicalEventDB).order_by(CanonicalEventDB.id).all()
            return [CanonicalEvent.model_validate(json.loads(row.payload)) for row in rows]

    def upsert_event(self, event: CanonicalEvent) -> None:
        """Insert or replace the stored version of an event."""
        with self.get_session() as session:
            row = session.get(CanonicalEventDB, event.id)
            payload = json.dumps(event.to_wire(), sort_keys=True)
            if row is None:
                row = CanonicalEventDB(id=event.id)
                session.add(row)
            row.source_calendar = event.source_calendar.value
            row.timestamp = event.timestamp
            row.content_hash = event.content_hash()
            row.payload = payload
            row.updated_at = datetime.now(pytz.UTC)
            session.commit()

    def delete_event(self, event_id: str) -> bool:
        with self.get_session() as session:
            deleted = session.query(CanonicalEventDB).filter(
                CanonicalEventDB.id == event_id
            ).delete()
            session.commit()
            return bool(deleted)

    # ------------------------------------------------------------------
    # Event mappings
    # ------------------------------------------------------------------

    def get_remote_id(self, provider: str, event_id: str) -> Optional[str]:
        with self.get_session() as session:
            row = session.get(EventMappingDB, (provider, event_id))
            return row.remote_id if row else None

    def set_remote_id(self, provider: str, event_id: str, remote_id: str) -> None:
        with self.get_session() as session:
            row = session.get(EventMappingDB, (provider, event_id))
            if row is None:
                session.add(EventMappingDB(provider=provider, event_id=event_id, remote_id=remote_id))
            elif row.remote_id != remote_id:
                row.remote_id = remote_id
                row.updated_at = datetime.now(pytz.UTC)
            session.commit()

    def delete_remote_id(self, provider: str, event_id: str) -> None:
        with self.get_session() as session:
            session.query(EventMappingDB).filter(
                EventMappingDB.provider == provider,
                EventMappingDB.event_id == event_id
            ).delete()
            session.commit()

    # ------------------------------------------------------------------
    # Queued operations
    # ------------------------------------------------------------------

    def save_queue_entry(self, entry: QueueEntry) -> None:
        """Insert or update a queue entry."""
        with self.get_session() as session:
            row = session.get(QueuedOperationDB, (entry.queue, entry.seq))
            if row is None:
                row = QueuedOperationDB(queue=entry.queue, seq=entry.seq)
                session.add(row)
            row.operation = entry.operation.type.value
            row.event_id = entry.operation.event_id
            row.payload = json.dumps(entry.operation.to_wire(), sort_keys=True)
            row.attempts = entry.attempts
            row.status = entry.status.value
            row.last_error = entry.last_error
            row.updated_at = datetime.now(pytz.UTC)
            session.commit()

    def delete_queue_entry(self, queue: str, seq: int) -> bool:
        with self.get_session() as session:
            deleted = session.query(QueuedOperationDB).filter(
                QueuedOperationDB.queue == queue,
                QueuedOperationDB.seq == seq
            ).delete()
            session.commit()
            return bool(deleted)

    def load_queue(self, queue: str) -> List[QueueEntry]:
        """Load every entry of a queue ordered by sequence number."""
        with self.get_session() as session:
            rows = session.query(QueuedOperationDB).filter(
                QueuedOperationDB.queue == queue
            ).order_by(QueuedOperationDB.seq).all()
            return [
                QueueEntry(
                    queue=row.queue,
                    operation=SyncOperation.model_validate(json.loads(row.payload)),
                    attempts=row.attempts,
                    status=QueueStatus(row.status),
                    last_error=row.last_error,
                )
                for row in rows
            ]

    # ------------------------------------------------------------------
    # Sync sessions
    # ------------------------------------------------------------------

    def record_sync_session(
        self,
        report: SyncReport,
        status: str = 'completed',
        error_message: Optional[str] = None
    ) -> SyncSessionDB:
        """Persist the outcome of one sync cycle.

        Args:
            report: Report of the cycle
            status: Final status
            error_message: Error message if failed

        Returns:
            Stored sync session
        """
        with self.get_session() as session:
            sync_session = SyncSessionDB(
                id=report.sync_id,
                provider=report.provider,
                started_at=report.started_at,
                completed_at=report.completed_at or datetime.now(pytz.UTC),
                fetched=report.fetched,
                skipped=report.skipped,
                inserted=report.inserted,
                updated=report.updated,
                kept_local=report.kept_local,
                pushed=report.pushed,
                requeued=report.requeued,
                dead_lettered=report.dead_lettered,
                status=status,
                error_message=error_message,
            )
            session.merge(sync_session)
            session.commit()
            return sync_session

    def get_recent_sync_sessions(
        self,
        limit: int = 10
    ) -> List[SyncSessionDB]:
        """Get recent sync sessions.

        Args:
            limit: Number of sessions to return

        Returns:
            List of sync sessions
        """
        with self.get_session() as session:
            return session.query(SyncSessionDB).order_by(
                SyncSessionDB.started_at.desc()
            ).limit(limit).all()

    def get_sync_statistics(self, days: int = 30) -> Dict[str, Any]:
        """Get synchronization statistics for the past N days."""
        cutoff_date = datetime.now(pytz.UTC) - timedelta(days=days)

        with self.get_session() as session:
            sessions = session.query(SyncSessionDB).filter(
                SyncSessionDB.started_at >= cutoff_date
            ).all()
            dead_letters = session.query(QueuedOperationDB).filter(
                QueuedOperationDB.status == QueueStatus.DEAD.value
            ).count()
            pending = session.query(QueuedOperationDB).filter(
                QueuedOperationDB.status == QueueStatus.PENDING.value
            ).count()

        return {
            'period_days': days,
            'total_sessions': len(sessions),
            'successful_sessions': len([s for s in sessions if s.status == 'completed']),
            'failed_sessions': len([s for s in sessions if s.status == 'failed']),
            'events_pushed': sum(s.pushed or 0 for s in sessions),
            'events_skipped': sum(s.skipped or 0 for s in sessions),
            'pending_operations': pending,
            'dead_letters': dead_letters,
        }
