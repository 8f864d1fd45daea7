"""
SQLAlchemy models for store migration state tracking.

This module defines the database schema for migrations, their per-module
progress, per-item checkpoints, the append-only log feed, the error list
and the durable module job queue.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

MIGRATION_STATUSES = ("pending", "running", "paused", "completed", "failed", "cancelled")
ITEM_STATUSES = ("pending", "completed", "failed")
LOG_LEVELS = ("info", "warning", "error", "success")
JOB_STATUSES = ("queued", "running", "succeeded", "failed", "halted", "dropped")
ACTIVE_JOB_STATUSES = ("queued", "running")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Migration(Base):
    """
    One source to destination copy operation.

    Store columns hold references (configured store names), never credentials.
    """

    __tablename__ = "migrations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4()), comment="Migration UUID"
    )
    account_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True, comment="Owning account"
    )
    source_store: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Source store reference"
    )
    destination_store: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Destination store reference"
    )
    selected_modules: Mapped[dict] = mapped_column(
        JSON, nullable=False, comment="Mapping of module name to selected flag"
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True, comment="Lifecycle status"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, comment="When migration was created"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        comment="When migration was last updated",
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="When the migration first started running"
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="When the migration completed"
    )

    progress: Mapped[list["ModuleProgress"]] = relationship(
        "ModuleProgress", back_populates="migration", cascade="all, delete-orphan"
    )
    failures: Mapped[list["MigrationFailure"]] = relationship(
        "MigrationFailure",
        back_populates="migration",
        cascade="all, delete-orphan",
        order_by="MigrationFailure.id",
    )
    items: Mapped[list["MigrationItem"]] = relationship(
        "MigrationItem", back_populates="migration", cascade="all, delete-orphan"
    )
    logs: Mapped[list["MigrationLog"]] = relationship(
        "MigrationLog", back_populates="migration", cascade="all, delete-orphan"
    )
    jobs: Mapped[list["ModuleJob"]] = relationship(
        "ModuleJob", back_populates="migration", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(_in_clause("status", MIGRATION_STATUSES), name="ck_migrations_status"),
        Index("idx_migrations_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Migration(id='{self.id}', source='{self.source_store}', "
            f"destination='{self.destination_store}', status='{self.status}')>"
        )


class ModuleProgress(Base):
    """
    Progress of one module within a migration.

    Rows are written only through an upsert keyed by (migration_id, module),
    so concurrent module jobs never overwrite each other's counters.
    """

    __tablename__ = "module_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    migration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("migrations.id", ondelete="CASCADE"), nullable=False
    )
    module: Mapped[str] = mapped_column(String(20), nullable=False, comment="Module name")
    percentage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Progress percentage (0-100)"
    )
    processed: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Items processed in the current run"
    )
    total: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Items discovered in the source store"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, comment="Last progress update"
    )

    migration: Mapped["Migration"] = relationship("Migration", back_populates="progress")

    __table_args__ = (
        UniqueConstraint("migration_id", "module", name="uq_module_progress_migration_module"),
        CheckConstraint("percentage >= 0 AND percentage <= 100", name="ck_module_progress_pct"),
    )

    def __repr__(self) -> str:
        return (
            f"<ModuleProgress(migration_id='{self.migration_id}', module='{self.module}', "
            f"percentage={self.percentage}, processed={self.processed}, total={self.total})>"
        )


class MigrationItem(Base):
    """
    Checkpoint record for one source item.

    At most one row exists per (migration_id, module, source_id). A second
    attempt updates the row rather than adding another.
    """

    __tablename__ = "migration_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    migration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("migrations.id", ondelete="CASCADE"), nullable=False
    )
    module: Mapped[str] = mapped_column(String(20), nullable=False, comment="Module name")
    source_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Item identifier in the source store"
    )
    destination_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Item identifier in the destination store (null until created)",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="Item status: pending, completed, failed",
    )
    error_message: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last error message if the item failed"
    )
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Number of failed attempts"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    migration: Mapped["Migration"] = relationship("Migration", back_populates="items")

    __table_args__ = (
        UniqueConstraint(
            "migration_id", "module", "source_id", name="uq_migration_items_migration_module_source"
        ),
        CheckConstraint(_in_clause("status", ITEM_STATUSES), name="ck_migration_items_status"),
        Index("idx_migration_items_module_status", "migration_id", "module", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<MigrationItem(module='{self.module}', source_id='{self.source_id}', "
            f"destination_id='{self.destination_id}', status='{self.status}')>"
        )


class MigrationLog(Base):
    """Append-only log entry shown in the live migration feed."""

    __tablename__ = "migration_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    migration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("migrations.id", ondelete="CASCADE"), nullable=False
    )
    module: Mapped[str | None] = mapped_column(String(20), nullable=True)
    level: Mapped[str] = mapped_column(String(10), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    log_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    migration: Mapped["Migration"] = relationship("Migration", back_populates="logs")

    __table_args__ = (
        CheckConstraint(_in_clause("level", LOG_LEVELS), name="ck_migration_logs_level"),
        Index("idx_migration_logs_migration_id", "migration_id", "id"),
    )

    def __repr__(self) -> str:
        return f"<MigrationLog(level='{self.level}', module='{self.module}', message='{self.message[:40]}')>"


class MigrationFailure(Base):
    """Entry of a migration's error list, appended when a module job fails."""

    __tablename__ = "migration_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    migration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("migrations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    module: Mapped[str] = mapped_column(String(20), nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    migration: Mapped["Migration"] = relationship("Migration", back_populates="failures")


class ModuleJob(Base):
    """
    Durable record of one queued unit of work (migration, module).

    Only one queued or running job may exist per (migration_id, module).
    """

    __tablename__ = "module_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    migration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("migrations.id", ondelete="CASCADE"), nullable=False
    )
    module: Mapped[str] = mapped_column(String(20), nullable=False)
    dispatch_id: Mapped[str] = mapped_column(
        String(36), nullable=False, comment="Identifier of the start/resume call that queued it"
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True, comment="Scheduler that claimed the job"
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Last liveness signal of the owner"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    migration: Mapped["Migration"] = relationship("Migration", back_populates="jobs")

    __table_args__ = (
        CheckConstraint(_in_clause("status", JOB_STATUSES), name="ck_module_jobs_status"),
        Index("idx_module_jobs_status", "status", "id"),
        Index(
            "uq_module_jobs_active",
            "migration_id",
            "module",
            unique=True,
            sqlite_where=text(_in_clause("status", ACTIVE_JOB_STATUSES)),
            postgresql_where=text(_in_clause("status", ACTIVE_JOB_STATUSES)),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ModuleJob(id={self.id}, migration_id='{self.migration_id}', "
            f"module='{self.module}', status='{self.status}', attempts={self.attempts})>"
        )
