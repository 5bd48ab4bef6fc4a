from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import time
from typing import Callable, Iterator, TypeVar

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, create_engine, event, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker

from gruntforge.domain.events import EventType, normalize_event_type
from gruntforge.observability import get_logger
from gruntforge.repository import RunCreateRecord, new_run_id, normalize_run_status

_log = get_logger('gruntforge.db')

T = TypeVar('T')

SQLITE_PRAGMAS = (
    'PRAGMA journal_mode=WAL',
    'PRAGMA synchronous=NORMAL',
    'PRAGMA foreign_keys=ON',
    'PRAGMA busy_timeout=30000',
)


def _utc(value: datetime) -> str:
    # SQLite drops tzinfo on the way back.
    aware = value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    return aware.isoformat()


class Base(DeclarativeBase):
    pass


class RunEntity(Base):
    __tablename__ = 'runs'

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    prompt: Mapped[str] = mapped_column(Text(), nullable=False)
    tier: Mapped[str] = mapped_column(String(32), nullable=False)
    max_execution_seconds: Mapped[int] = mapped_column(Integer(), nullable=False)
    partial_assessment_interval_seconds: Mapped[int] = mapped_column(Integer(), nullable=False)
    technologies: Mapped[list] = mapped_column(JSON(), nullable=False, default=list)
    worker_budget: Mapped[int] = mapped_column(Integer(), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    winner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    summary: Mapped[str | None] = mapped_column(Text(), nullable=True)
    last_event_seq: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    events: Mapped[list['RunEventEntity']] = relationship('RunEventEntity', back_populates='run', cascade='all,delete-orphan')

    def to_dict(self) -> dict:
        return {
            'run_id': self.run_id,
            'prompt': self.prompt,
            'tier': self.tier,
            'max_execution_seconds': self.max_execution_seconds,
            'partial_assessment_interval_seconds': self.partial_assessment_interval_seconds,
            'technologies': [str(item) for item in (self.technologies or [])],
            'worker_budget': self.worker_budget,
            'status': self.status,
            'reason': self.reason,
            'winner': self.winner,
            'summary': self.summary,
            'created_at': _utc(self.created_at),
            'updated_at': _utc(self.updated_at),
        }


class RunEventEntity(Base):
    __tablename__ = 'run_events'
    __table_args__ = (UniqueConstraint('run_id', 'seq', name='uq_run_events_run_seq'),)

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), ForeignKey('runs.run_id'), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    run: Mapped[RunEntity] = relationship('RunEntity', back_populates='events')

    def to_dict(self) -> dict:
        return {
            'seq': self.seq,
            'run_id': self.run_id,
            'type': self.event_type,
            'payload': dict(self.payload or {}),
            'created_at': _utc(self.created_at),
        }


class Database:
    def __init__(self, url: str):
        connect_args: dict[str, object] = {}
        is_sqlite = str(url or '').strip().lower().startswith('sqlite')
        if is_sqlite:
            # The monitor thread and API handlers share one file.
            connect_args = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, future=True, connect_args=connect_args)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if is_sqlite:
            event.listen(self.engine, 'connect', _apply_sqlite_pragmas)

    @property
    def is_sqlite(self) -> bool:
        return self.engine.dialect.name == 'sqlite'

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def _apply_sqlite_pragmas(dbapi_connection, connection_record) -> None:  # noqa: ARG001
    cursor = dbapi_connection.cursor()
    try:
        for pragma in SQLITE_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def _is_lock_error(exc: OperationalError) -> bool:
    text = str(exc).lower()
    return 'database is locked' in text or 'database table is locked' in text


class SqlRunRepository:
    """Runs and their event streams in any SQLAlchemy database.

    Event sequence numbers come from a per-run counter; writers that collide
    on SQLite lock errors or the (run_id, seq) constraint retry with backoff.
    """

    def __init__(self, db: Database, *, write_attempts: int | None = None):
        self.db = db
        self.write_attempts = max(1, int(write_attempts or (8 if db.is_sqlite else 3)))

    def create_run(self, record: RunCreateRecord, *, run_id: str | None = None) -> dict:
        now = datetime.now(timezone.utc)
        run = RunEntity(
            run_id=str(run_id or '').strip() or new_run_id(),
            prompt=record.prompt,
            tier=record.tier,
            max_execution_seconds=int(record.max_execution_seconds),
            partial_assessment_interval_seconds=int(record.partial_assessment_interval_seconds),
            technologies=[str(item) for item in record.technologies],
            worker_budget=int(record.worker_budget),
            status='queued',
            last_event_seq=0,
            created_at=now,
            updated_at=now,
        )
        with self.db.session() as session:
            session.add(run)
        return run.to_dict()

    def list_runs(self, *, limit: int = 100) -> list[dict]:
        query = select(RunEntity).order_by(RunEntity.created_at.desc()).limit(max(1, int(limit)))
        with self.db.session() as session:
            return [row.to_dict() for row in session.scalars(query)]

    def get_run(self, run_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(RunEntity, run_id)
            return row.to_dict() if row is not None else None

    def update_run(
        self,
        run_id: str,
        *,
        status: str,
        reason: str | None = None,
        winner: str | None = None,
        summary: str | None = None,
    ) -> dict:
        status = normalize_run_status(status)

        def write() -> dict:
            with self.db.session() as session:
                row = self._require_run(session, run_id)
                row.status = status
                row.reason = reason
                if winner is not None:
                    row.winner = winner
                if summary is not None:
                    row.summary = summary
                row.updated_at = datetime.now(timezone.utc)
                session.flush()
                return row.to_dict()

        return self._with_retry('update_run', write)

    def append_event(self, run_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        event_type = normalize_event_type(event_type)

        def write() -> dict:
            with self.db.session() as session:
                run = self._require_run(session, run_id)
                run.last_event_seq = int(run.last_event_seq or 0) + 1
                entity = RunEventEntity(
                    run_id=run_id,
                    seq=run.last_event_seq,
                    event_type=event_type,
                    payload=dict(payload or {}),
                    created_at=datetime.now(timezone.utc),
                )
                session.add(entity)
                session.flush()
                return entity.to_dict()

        return self._with_retry('append_event', write)

    def list_events(self, run_id: str) -> list[dict]:
        query = select(RunEventEntity).where(RunEventEntity.run_id == run_id).order_by(RunEventEntity.seq.asc())
        with self.db.session() as session:
            self._require_run(session, run_id)
            return [row.to_dict() for row in session.scalars(query)]

    @staticmethod
    def _require_run(session: Session, run_id: str) -> RunEntity:
        row = session.get(RunEntity, run_id)
        if row is None:
            raise KeyError(run_id)
        return row

    def _with_retry(self, operation: str, write: Callable[[], T]) -> T:
        for attempt in range(1, self.write_attempts + 1):
            try:
                return write()
            except IntegrityError:
                if attempt >= self.write_attempts:
                    raise
            except OperationalError as exc:
                if not _is_lock_error(exc) or attempt >= self.write_attempts:
                    raise
            _log.debug('sql_write_retry operation=%s attempt=%d', operation, attempt)
            time.sleep(min(0.2, 0.02 * 2 ** (attempt - 1)))
        raise RuntimeError(f'{operation} retries exhausted')
