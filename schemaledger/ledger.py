"""
Persistent record of applied changesets.

The ledger lives in the target database (see ``models.ChangelogRow``) and
is written inside the same transaction as the schema change it records.
It is append-only: rows are inserted on application and flipped to
``rolled_back`` on reversal, never deleted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .changeset import Changeset
from .database import TargetDatabase
from .errors import DuplicateApplicationError, SchemaLedgerError
from .models import (
    EXEC_TYPE_EXECUTED,
    STATUS_APPLIED,
    STATUS_ROLLED_BACK,
    ChangelogRow,
)

logger = logging.getLogger(__name__)


@dataclass
class LedgerEntry:
    """
    A changeset application as recorded in the ledger.

    Attributes:
        changeset_id: Changeset id
        author: Changeset author
        checksum: Checksum at time of application
        order_executed: Monotonic execution order number
        applied_at: When the changeset was applied
        applied_by: Principal that applied it
        status: 'applied' or 'rolled_back'
        exec_type: 'EXECUTED' or 'MARK_RAN'
        execution_time_ms: Time taken to execute (optional)
        rolled_back_at: When it was rolled back (optional)
        rolled_back_by: Who rolled it back (optional)
        source: Changelog file it came from (optional)

    Example:
        >>> entry = LedgerEntry(
        ...     changeset_id='1',
        ...     author='alice',
        ...     checksum='a1b2c3d4...',
        ...     order_executed=1,
        ...     applied_at=datetime(2026, 1, 5, 10, 0, 0),
        ...     applied_by='deploy',
        ... )
        >>> print(entry)
        <LedgerEntry(#1 1::alice, applied)>
    """

    changeset_id: str
    author: str
    checksum: str
    order_executed: int
    applied_at: datetime
    applied_by: str
    status: str = STATUS_APPLIED
    exec_type: str = EXEC_TYPE_EXECUTED
    execution_time_ms: Optional[int] = None
    rolled_back_at: Optional[datetime] = None
    rolled_back_by: Optional[str] = None
    source: Optional[str] = None

    def __post_init__(self):
        if self.status not in (STATUS_APPLIED, STATUS_ROLLED_BACK):
            raise ValueError(
                f"LedgerEntry status must be '{STATUS_APPLIED}' or "
                f"'{STATUS_ROLLED_BACK}', got '{self.status}'"
            )

    @classmethod
    def from_row(cls, row: ChangelogRow) -> 'LedgerEntry':
        return cls(
            changeset_id=row.changeset_id,
            author=row.author,
            checksum=row.checksum,
            order_executed=row.order_executed,
            applied_at=row.applied_at,
            applied_by=row.applied_by,
            status=row.status,
            exec_type=row.exec_type,
            execution_time_ms=row.execution_time_ms,
            rolled_back_at=row.rolled_back_at,
            rolled_back_by=row.rolled_back_by,
            source=row.source,
        )

    @property
    def identity(self) -> tuple[str, str]:
        return (self.changeset_id, self.author)

    @property
    def key(self) -> str:
        return f"{self.changeset_id}::{self.author}"

    @property
    def is_applied(self) -> bool:
        return self.status == STATUS_APPLIED

    def to_dict(self) -> dict:
        return {
            'id': self.changeset_id,
            'author': self.author,
            'checksum': self.checksum,
            'order_executed': self.order_executed,
            'applied_at': self.applied_at.isoformat() if self.applied_at else None,
            'applied_by': self.applied_by,
            'status': self.status,
            'exec_type': self.exec_type,
            'execution_time_ms': self.execution_time_ms,
            'rolled_back_at': self.rolled_back_at.isoformat() if self.rolled_back_at else None,
            'rolled_back_by': self.rolled_back_by,
        }

    def __repr__(self) -> str:
        return f"<LedgerEntry(#{self.order_executed} {self.key}, {self.status})>"


class MigrationLedger:
    """
    Reads and writes ledger rows.

    Every method takes the caller's session so that ledger writes share the
    transaction of the schema change they describe. Concurrent writers are
    excluded by ``ChangeLock``; the partial unique index on applied rows is
    the last line of defence and surfaces as DuplicateApplicationError.

    Example:
        ledger = MigrationLedger(database)
        async with database.session() as session:
            await database.execute_sql(session, changeset.sql)
            await ledger.record_applied(session, changeset, checksum, 'deploy')
    """

    def __init__(self, database: TargetDatabase):
        self.database = database
        self.logger = logging.getLogger(__name__)

    async def ensure_tables(self, timeout: float = 30.0, poll_interval: float = 0.5) -> None:
        await self.database.ensure_ledger_tables(timeout=timeout, poll_interval=poll_interval)

    async def list_applied(self, session: AsyncSession) -> List[LedgerEntry]:
        """
        Applied entries in execution order.

        Returns:
            Entries with status 'applied', ascending order_executed
        """
        result = await session.execute(
            select(ChangelogRow)
            .where(ChangelogRow.status == STATUS_APPLIED)
            .order_by(ChangelogRow.order_executed)
        )
        return [LedgerEntry.from_row(row) for row in result.scalars()]

    async def history(self, session: AsyncSession) -> List[LedgerEntry]:
        """All entries, applied and rolled back, in execution order."""
        result = await session.execute(
            select(ChangelogRow).order_by(ChangelogRow.order_executed)
        )
        return [LedgerEntry.from_row(row) for row in result.scalars()]

    async def _find_applied_row(self, session: AsyncSession,
                                changeset_id: str, author: str) -> Optional[ChangelogRow]:
        result = await session.execute(
            select(ChangelogRow).where(
                ChangelogRow.changeset_id == changeset_id,
                ChangelogRow.author == author,
                ChangelogRow.status == STATUS_APPLIED,
            )
        )
        return result.scalar_one_or_none()

    async def record_applied(
        self,
        session: AsyncSession,
        changeset: Changeset,
        checksum: str,
        principal: str,
        exec_type: str = EXEC_TYPE_EXECUTED,
        execution_time_ms: Optional[int] = None,
    ) -> LedgerEntry:
        """
        Append an 'applied' row for a changeset.

        Does not commit (caller manages the transaction).

        Args:
            session: Active database session
            changeset: Changeset that was applied
            checksum: Checksum computed at application time
            principal: User/system applying it
            exec_type: 'EXECUTED' or 'MARK_RAN'
            execution_time_ms: Execution time in milliseconds

        Returns:
            The new LedgerEntry

        Raises:
            DuplicateApplicationError: If the changeset is already applied
        """
        existing = await self._find_applied_row(session, changeset.id, changeset.author)
        if existing is not None:
            raise DuplicateApplicationError(
                f"Changeset {changeset.key} is already applied "
                f"(order #{existing.order_executed} by {existing.applied_by})",
                changeset_id=changeset.id,
                author=changeset.author,
            )

        max_order = await session.scalar(select(func.max(ChangelogRow.order_executed)))
        row = ChangelogRow(
            changeset_id=changeset.id,
            author=changeset.author,
            checksum=checksum,
            order_executed=(max_order or 0) + 1,
            applied_at=datetime.now(timezone.utc),
            applied_by=principal,
            status=STATUS_APPLIED,
            exec_type=exec_type,
            execution_time_ms=execution_time_ms,
            source=changeset.source or None,
            comment=changeset.comment,
        )
        session.add(row)
        try:
            await session.flush()
        except IntegrityError as e:
            raise DuplicateApplicationError(
                f"Changeset {changeset.key} was recorded concurrently by another run",
                changeset_id=changeset.id,
                author=changeset.author,
            ) from e

        self.logger.debug('Recorded %s as applied (#%d)', changeset.key, row.order_executed)
        return LedgerEntry.from_row(row)

    async def record_rolled_back(
        self,
        session: AsyncSession,
        changeset_id: str,
        author: Optional[str] = None,
        principal: str = 'system',
    ) -> LedgerEntry:
        """
        Mark an applied entry as rolled back.

        The row is kept; only its status changes. Does not commit.

        Args:
            session: Active database session
            changeset_id: Changeset id
            author: Changeset author (required if the id is ambiguous)
            principal: User/system rolling it back

        Returns:
            The updated LedgerEntry

        Raises:
            SchemaLedgerError: If no matching applied entry exists, or the
                id matches several authors and none was given
        """
        query = select(ChangelogRow).where(
            ChangelogRow.changeset_id == str(changeset_id),
            ChangelogRow.status == STATUS_APPLIED,
        )
        if author is not None:
            query = query.where(ChangelogRow.author == author)
        rows = list((await session.execute(query)).scalars())

        if not rows:
            raise SchemaLedgerError(
                f"Changeset {changeset_id} is not applied",
                changeset_id=str(changeset_id),
                author=author,
            )
        if len(rows) > 1:
            raise SchemaLedgerError(
                f"Changeset id {changeset_id} is applied by several authors "
                f"({', '.join(r.author for r in rows)}); specify the author",
                changeset_id=str(changeset_id),
            )

        row = rows[0]
        row.status = STATUS_ROLLED_BACK
        row.rolled_back_at = datetime.now(timezone.utc)
        row.rolled_back_by = principal
        await session.flush()

        self.logger.debug('Recorded %s::%s as rolled back', row.changeset_id, row.author)
        return LedgerEntry.from_row(row)

    async def update_checksum(self, session: AsyncSession, changeset_id: str,
                              author: str, checksum: str) -> int:
        """Re-baseline the stored checksum of an applied entry.

        Returns:
            Number of rows updated (0 or 1)
        """
        result = await session.execute(
            update(ChangelogRow)
            .where(
                ChangelogRow.changeset_id == changeset_id,
                ChangelogRow.author == author,
                ChangelogRow.status == STATUS_APPLIED,
            )
            .values(checksum=checksum)
        )
        return result.rowcount
