#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
SQLAlchemy ORM models for the migration ledger.

Defines the tables the engine keeps inside the target database:
- ChangelogRow: One row per changeset application (the ledger)
- ChangeLockRow: Single-row advisory lock record

Usage:
    from schemaledger.models import Base, ChangelogRow

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

Rows in ``schemaledger_changelog`` are never deleted. Rolling back a
changeset flips its status to ``rolled_back``; applying it again later
appends a new row.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, String, Text, false, text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

LEDGER_TABLE = 'schemaledger_changelog'
LOCK_TABLE = 'schemaledger_lock'

STATUS_APPLIED = 'applied'
STATUS_ROLLED_BACK = 'rolled_back'

EXEC_TYPE_EXECUTED = 'EXECUTED'
EXEC_TYPE_MARK_RAN = 'MARK_RAN'

# The single lock row always has this primary key
LOCK_ROW_ID = 1


class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for ledger ORM models.

    Kept separate from any application metadata so that creating the ledger
    tables never touches the schema being migrated.
    """
    pass


# ============================================================================
# Ledger
# ============================================================================

class ChangelogRow(Base):
    """
    One application of one changeset.

    At most one row per (changeset_id, author) may be in ``applied`` status;
    a partial unique index enforces it on SQLite and PostgreSQL.
    """
    __tablename__ = LEDGER_TABLE

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        comment="Row id"
    )

    changeset_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Changeset id from the changelog"
    )

    author: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Changeset author from the changelog"
    )

    checksum: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 of the changeset body at application time"
    )

    order_executed: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        unique=True,
        comment="Monotonic execution order number"
    )

    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the changeset was applied"
    )

    applied_by: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Principal that applied the changeset"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=STATUS_APPLIED,
        server_default=STATUS_APPLIED,
        comment="'applied' or 'rolled_back'"
    )

    exec_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=EXEC_TYPE_EXECUTED,
        server_default=EXEC_TYPE_EXECUTED,
        comment="'EXECUTED' or 'MARK_RAN' (precondition satisfied without running)"
    )

    execution_time_ms: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Time taken to execute the changeset"
    )

    rolled_back_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the changeset was rolled back"
    )

    rolled_back_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Principal that rolled the changeset back"
    )

    source: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Changelog file the changeset was declared in"
    )

    comment: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Changeset comment"
    )

    __table_args__ = (
        Index(
            'uq_schemaledger_changelog_applied',
            'changeset_id', 'author',
            unique=True,
            sqlite_where=text("status = 'applied'"),
            postgresql_where=text("status = 'applied'"),
        ),
        Index('idx_schemaledger_changelog_status', 'status', 'order_executed'),
        CheckConstraint(
            "status IN ('applied', 'rolled_back')",
            name='check_schemaledger_status'
        ),
        CheckConstraint(
            "exec_type IN ('EXECUTED', 'MARK_RAN')",
            name='check_schemaledger_exec_type'
        ),
        {'comment': 'Applied/rolled back changesets (append-only)'}
    )

    def __repr__(self) -> str:
        return (
            f"<ChangelogRow(#{self.order_executed} "
            f"{self.changeset_id}::{self.author}, {self.status})>"
        )


# ============================================================================
# Change Lock
# ============================================================================

class ChangeLockRow(Base):
    """
    Single-row lock record serializing migration runs per target.

    The row with id=1 is seeded when the ledger tables are created.
    """
    __tablename__ = LOCK_TABLE

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=False,
        comment="Always 1"
    )

    locked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
        comment="Whether a run currently holds the lock"
    )

    locked_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Holder identity (principal@host:pid)"
    )

    locked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the lock was taken"
    )

    __table_args__ = (
        {'comment': 'Migration run lock'},
    )

    def __repr__(self) -> str:
        return f"<ChangeLockRow(locked={self.locked}, locked_by={self.locked_by!r})>"
