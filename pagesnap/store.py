"""SQLite persistence for capture jobs and usage records."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from math import ceil
from pathlib import Path
from typing import Any, Iterator, Mapping, Protocol

from pydantic import BaseModel
from sqlalchemy import Column, delete, event, func, update
from sqlalchemy.dialects.sqlite import JSON as SQLITE_JSON
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from pagesnap.auth import APIKey  # noqa: F401 - registers the api_keys table
from pagesnap.errors import PersistenceError
from pagesnap.schemas import CaptureJob, JobPage, JobStatus, UsageRecordView, UsageSummary
from pagesnap.settings import get_settings

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CaptureJobRecord(SQLModel, table=True):
    """One capture request and its lifecycle state."""

    __tablename__ = "capture_jobs"

    id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    source_url: str
    status: str = Field(default=JobStatus.PENDING.value, index=True)
    options: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SQLITE_JSON))
    result: dict[str, Any] | None = Field(default=None, sa_column=Column(SQLITE_JSON))
    error_message: str | None = None
    created_at: datetime = Field(default_factory=_utcnow, index=True)
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=_utcnow)


class UsageRecord(SQLModel, table=True):
    """Append-only usage ledger entry."""

    __tablename__ = "usage_records"

    id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    job_id: str | None = Field(default=None, index=True)
    type: str = Field(index=True)
    timestamp: datetime = Field(default_factory=_utcnow, index=True)
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SQLITE_JSON))


class JobRepository(Protocol):
    def create_job(self, *, job_id: str, owner_id: str, source_url: str, options: Mapping[str, Any]) -> CaptureJob: ...

    def find_job(self, job_id: str) -> CaptureJob | None: ...

    def update_job(self, job_id: str, **patch: Any) -> CaptureJob | None: ...

    def claim_job(self, job_id: str, *, owner_id: str | None = None) -> bool: ...

    def finish_job(
        self,
        job_id: str,
        *,
        status: JobStatus,
        result: Mapping[str, Any] | None = None,
        error_message: str | None = None,
    ) -> bool: ...

    def delete_job(self, job_id: str) -> bool: ...

    def list_jobs(
        self,
        owner_id: str,
        *,
        page: int = 1,
        limit: int = 10,
        status: JobStatus | None = None,
    ) -> JobPage: ...

    def find_stuck_jobs(self, *, started_before: datetime) -> list[CaptureJob]: ...


class UsageRepository(Protocol):
    def append_usage(
        self,
        owner_id: str,
        usage_type: str,
        *,
        job_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> UsageRecordView: ...

    def query_usage(
        self,
        owner_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> UsageSummary: ...


@dataclass(frozen=True)
class StoreConfig:
    """Resolved database location."""

    db_path: Path

    @classmethod
    def from_env(cls) -> StoreConfig:
        return cls(db_path=get_settings().storage.db_path)


class Store:
    """SQLModel-backed implementation of the job and usage repositories.

    All methods are synchronous; async callers run them via ``asyncio.to_thread``.
    """

    def __init__(self, config: StoreConfig | None = None) -> None:
        self.config = config or StoreConfig.from_env()
        self.config.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = _create_engine(self.config.db_path)
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    def create_job(self, *, job_id: str, owner_id: str, source_url: str, options: Mapping[str, Any]) -> CaptureJob:
        now = _utcnow()
        record = CaptureJobRecord(
            id=job_id,
            owner_id=owner_id,
            source_url=source_url,
            status=JobStatus.PENDING.value,
            options=dict(options),
            created_at=now,
            updated_at=now,
        )
        with self._guard("create job"), self.session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return _to_job(record)

    def find_job(self, job_id: str) -> CaptureJob | None:
        with self._guard("load job"), self.session() as session:
            record = session.get(CaptureJobRecord, job_id)
            return _to_job(record) if record else None

    def update_job(self, job_id: str, **patch: Any) -> CaptureJob | None:
        """Apply ``patch`` to the job's columns; returns the updated job."""

        with self._guard("update job"), self.session() as session:
            record = session.get(CaptureJobRecord, job_id)
            if record is None:
                return None
            for name, value in patch.items():
                if name not in CaptureJobRecord.model_fields:
                    raise KeyError(f"Unknown job column '{name}'")
                setattr(record, name, _column_value(value))
            record.updated_at = _utcnow()
            session.add(record)
            session.commit()
            session.refresh(record)
            return _to_job(record)

    def claim_job(self, job_id: str, *, owner_id: str | None = None) -> bool:
        """Atomically move ``job_id`` from pending to processing."""

        now = _db_time(_utcnow())
        statement = (
            update(CaptureJobRecord)
            .where(col(CaptureJobRecord.id) == job_id)
            .where(col(CaptureJobRecord.status) == JobStatus.PENDING.value)
            .values(status=JobStatus.PROCESSING.value, processing_started_at=now, updated_at=now)
        )
        if owner_id is not None:
            statement = statement.where(col(CaptureJobRecord.owner_id) == owner_id)
        with self._guard("claim job"), self.engine.begin() as conn:
            return conn.execute(statement).rowcount == 1

    def finish_job(
        self,
        job_id: str,
        *,
        status: JobStatus,
        result: Mapping[str, Any] | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Write the terminal state, only if the job is still processing."""

        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        now = _db_time(_utcnow())
        statement = (
            update(CaptureJobRecord)
            .where(col(CaptureJobRecord.id) == job_id)
            .where(col(CaptureJobRecord.status) == JobStatus.PROCESSING.value)
            .values(
                status=status.value,
                result=dict(result) if result is not None else None,
                error_message=error_message,
                processing_completed_at=now,
                updated_at=now,
            )
        )
        with self._guard("finish job"), self.engine.begin() as conn:
            return conn.execute(statement).rowcount == 1

    def delete_job(self, job_id: str) -> bool:
        statement = delete(CaptureJobRecord).where(col(CaptureJobRecord.id) == job_id)
        with self._guard("delete job"), self.engine.begin() as conn:
            return conn.execute(statement).rowcount == 1

    def list_jobs(
        self,
        owner_id: str,
        *,
        page: int = 1,
        limit: int = 10,
        status: JobStatus | None = None,
    ) -> JobPage:
        """Newest-first page of an owner's jobs; ``status`` filters before paging."""

        page = max(1, page)
        limit = max(1, limit)
        filters = [col(CaptureJobRecord.owner_id) == owner_id]
        if status is not None:
            filters.append(col(CaptureJobRecord.status) == JobStatus(status).value)

        with self._guard("list jobs"), self.session() as session:
            total = session.exec(select(func.count()).select_from(CaptureJobRecord).where(*filters)).one()
            statement = (
                select(CaptureJobRecord)
                .where(*filters)
                .order_by(col(CaptureJobRecord.created_at).desc(), col(CaptureJobRecord.id))
                .offset((page - 1) * limit)
                .limit(limit)
            )
            jobs = [_to_job(record) for record in session.exec(statement)]

        total_pages = ceil(total / limit) if total else 0
        return JobPage(
            jobs=jobs,
            total_count=total,
            current_page=page,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_previous_page=page > 1,
        )

    def find_stuck_jobs(self, *, started_before: datetime) -> list[CaptureJob]:
        statement = (
            select(CaptureJobRecord)
            .where(col(CaptureJobRecord.status) == JobStatus.PROCESSING.value)
            .where(col(CaptureJobRecord.processing_started_at) < _db_time(started_before))
        )
        with self._guard("scan stuck jobs"), self.session() as session:
            return [_to_job(record) for record in session.exec(statement)]

    def append_usage(
        self,
        owner_id: str,
        usage_type: str,
        *,
        job_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> UsageRecordView:
        record = UsageRecord(owner_id=owner_id, job_id=job_id, type=usage_type, details=dict(details or {}))
        with self._guard("append usage"), self.session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return _to_usage(record)

    def query_usage(
        self,
        owner_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> UsageSummary:
        """Usage records for ``owner_id`` with ``start <= timestamp <= end``."""

        statement = select(UsageRecord).where(col(UsageRecord.owner_id) == owner_id)
        if start is not None:
            statement = statement.where(col(UsageRecord.timestamp) >= _db_time(start))
        if end is not None:
            statement = statement.where(col(UsageRecord.timestamp) <= _db_time(end))
        statement = statement.order_by(col(UsageRecord.timestamp).desc())

        with self._guard("query usage"), self.session() as session:
            records = [_to_usage(record) for record in session.exec(statement)]

        counts: dict[str, int] = {}
        for record in records:
            counts[record.type] = counts.get(record.type, 0) + 1
        return UsageSummary(total_count=len(records), counts_by_type=counts, records=records)

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            LOGGER.exception("Failed to %s", action)
            raise PersistenceError(f"Failed to {action}: {exc}") from exc


def build_store(config: StoreConfig | None = None) -> Store:
    """Convenience wrapper used by FastAPI startup hooks."""

    return Store(config=config)


def _create_engine(db_path: Path):
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[override]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    return engine


def _to_job(record: CaptureJobRecord) -> CaptureJob:
    job = CaptureJob.from_record(record)
    return job.model_copy(
        update={
            "created_at": _as_utc(job.created_at),
            "updated_at": _as_utc(job.updated_at),
            "processing_started_at": _as_utc(job.processing_started_at),
            "processing_completed_at": _as_utc(job.processing_completed_at),
        }
    )


def _to_usage(record: UsageRecord) -> UsageRecordView:
    return UsageRecordView(
        id=record.id or 0,
        owner_id=record.owner_id,
        job_id=record.job_id,
        type=record.type,
        timestamp=_as_utc(record.timestamp),
        details=dict(record.details or {}),
    )


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return _db_time(value)
    return value


def _db_time(value: datetime) -> datetime:
    # SQLite DATETIME columns drop tzinfo; keep everything stored as naive UTC.
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = [
    "CaptureJobRecord",
    "UsageRecord",
    "JobRepository",
    "UsageRepository",
    "StoreConfig",
    "Store",
    "build_store",
]
