"""SQLAlchemy 2.0 async models for runs, step logs and workflow statistics."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    event,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.pool import StaticPool

from conveyor.config import settings
from conveyor.engine.run import RunStatus, StepStatus


class Base(AsyncAttrs, DeclarativeBase):
    """Declarative base shared by every Conveyor table."""


class RunRecord(Base):
    """One run of a workflow, mirrored from the in-memory Run."""

    __tablename__ = "runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workflow_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    workflow_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus), nullable=False, default=RunStatus.PENDING
    )
    input_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    output_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    failed_step_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    steps: Mapped[list[StepRecord]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="StepRecord.seq"
    )


class StepRecord(Base):
    """One entry of a run's step log (a final result or a retried attempt)."""

    __tablename__ = "run_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("runs.id", ondelete="CASCADE"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    step_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tool: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[StepStatus] = mapped_column(Enum(StepStatus), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    final: Mapped[bool] = mapped_column(Boolean, default=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    output_data: Mapped[Any] = mapped_column(JSON, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    run: Mapped[RunRecord] = relationship(back_populates="steps")


class WorkflowStats(Base):
    """Execution counters per workflow id."""

    __tablename__ = "workflow_stats"

    workflow_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    execution_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# Database engine and session factory

def _build_engine_url() -> str:
    """Build the database URL, defaulting to SQLite in data_dir."""
    if settings.database_url:
        return settings.database_url
    data_path = Path(settings.data_dir).resolve()
    data_path.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{data_path}/conveyor.db"


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url)


def _build_engine_kwargs(url: str) -> dict:
    """Engine options for *url*; SQLite needs thread and pool tweaks."""
    kwargs: dict = {"echo": False}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    if _is_memory_sqlite(url):
        # One shared connection, otherwise every session sees an empty database
        kwargs["poolclass"] = StaticPool
    return kwargs


def _sqlite_wal_mode(dbapi_conn, _connection_record):
    """Switch file-backed SQLite to WAL with a busy timeout."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


_url = _build_engine_url()
engine = create_async_engine(_url, **_build_engine_kwargs(_url))

if _url.startswith("sqlite") and not _is_memory_sqlite(_url):
    event.listen(engine.sync_engine, "connect", _sqlite_wal_mode)

async_session = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    """Create all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
