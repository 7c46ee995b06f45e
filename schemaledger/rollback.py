#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Rollback of applied changesets.

Reverses ledger entries newest-first using the rollback SQL each changeset
author supplied. Inverses are never derived automatically. Each reversal
runs in its own transaction with its ledger status transition; a failure
halts the sequence and leaves exactly the already-reversed entries marked
rolled back.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .changeset import Changelog, Changeset, ExecutionRecord
from .checksum import ChecksumValidator
from .database import TargetDatabase
from .errors import ExecutionError, NoRollbackDefinedError, SchemaLedgerError
from .executor import DryRunRollback
from .ledger import LedgerEntry, MigrationLedger
from .lock import ChangeLock
from .models import EXEC_TYPE_MARK_RAN

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    """
    Outcome of a rollback call.

    Attributes:
        planned: Ledger entries selected for reversal, newest first
        records: One ExecutionRecord per entry reversed
        dry_run: Whether nothing was committed
    """
    planned: List[LedgerEntry] = field(default_factory=list)
    records: List[ExecutionRecord] = field(default_factory=list)
    dry_run: bool = False

    @property
    def rolled_back(self) -> List[Changeset]:
        return [r.changeset for r in self.records if r.success and not r.dry_run]

    def to_dict(self) -> dict:
        return {
            'dry_run': self.dry_run,
            'planned': [entry.key for entry in self.planned],
            'records': [r.to_dict() for r in self.records],
        }


@dataclass
class _Step:
    entry: LedgerEntry
    changeset: Changeset


class RollbackEngine:
    """
    Reverses applied changesets in strict reverse execution order.

    Attributes:
        database: Target database
        ledger: Ledger bound to the same database
        validator: Checksum validator (drifted changesets are not reversed)
        principal: Identity recorded as rolled_back_by

    Example:
        engine = RollbackEngine(database, ledger, validator, principal='ops')
        result = await engine.rollback(changelog, count=2)
        result = await engine.rollback(changelog, to_changeset=('3', 'alice'))
    """

    def __init__(
        self,
        database: TargetDatabase,
        ledger: MigrationLedger,
        validator: ChecksumValidator,
        principal: str = 'system',
        lock_timeout: float = 30.0,
        lock_poll_interval: float = 0.5,
    ):
        self.database = database
        self.ledger = ledger
        self.validator = validator
        self.principal = principal
        self.lock_timeout = lock_timeout
        self.lock_poll_interval = lock_poll_interval

    def select_entries(
        self,
        applied: List[LedgerEntry],
        count: Optional[int] = None,
        to_changeset: Optional[tuple] = None,
    ) -> List[LedgerEntry]:
        """
        Pick the entries to reverse, newest first.

        Args:
            applied: Applied entries in execution order
            count: Reverse the most recent N entries
            to_changeset: (id, author or None); reverse every entry applied
                after it, keeping the named changeset itself

        Raises:
            ValueError: If neither or both selectors are given, or count < 1
            SchemaLedgerError: If the target changeset is not applied or is
                ambiguous
        """
        if (count is None) == (to_changeset is None):
            raise ValueError("Specify exactly one of count or to_changeset")

        if count is not None:
            if count < 1:
                raise ValueError(f"Rollback count must be >= 1, got {count}")
            if count > len(applied):
                logger.warning(
                    'Requested rollback of %d changeset(s) but only %d applied',
                    count, len(applied)
                )
            selected = applied[-count:] if count <= len(applied) else list(applied)
            return list(reversed(selected))

        target_id, target_author = to_changeset
        matches = [
            index for index, entry in enumerate(applied)
            if entry.changeset_id == str(target_id)
            and (target_author is None or entry.author == target_author)
        ]
        if not matches:
            raise SchemaLedgerError(
                f"Cannot roll back to {target_id}: changeset is not applied",
                changeset_id=str(target_id),
                author=target_author,
            )
        if len(matches) > 1:
            authors = ', '.join(applied[i].author for i in matches)
            raise SchemaLedgerError(
                f"Changeset id {target_id} is applied by several authors ({authors}); "
                f"specify the author",
                changeset_id=str(target_id),
            )
        return list(reversed(applied[matches[0] + 1:]))

    def _resolve(self, changelog: Changelog, entries: List[LedgerEntry]) -> List[_Step]:
        """Check every selected entry can be reversed before touching anything."""
        steps = []
        for entry in entries:
            changeset = changelog.get(entry.changeset_id, entry.author)
            if changeset is None:
                raise NoRollbackDefinedError(
                    f"Changeset {entry.key} is not in the changelog; "
                    f"no rollback definition available",
                    changeset_id=entry.changeset_id,
                    author=entry.author,
                )
            self.validator.verify(changeset, entry.checksum)
            if not changeset.has_rollback and entry.exec_type != EXEC_TYPE_MARK_RAN:
                raise NoRollbackDefinedError(
                    f"Changeset {changeset.key} has no rollback defined",
                    changeset_id=changeset.id,
                    author=changeset.author,
                    details={'source': changeset.source},
                )
            steps.append(_Step(entry, changeset))
        return steps

    async def rollback(
        self,
        changelog: Changelog,
        count: Optional[int] = None,
        to_changeset: Optional[tuple] = None,
        dry_run: bool = False,
    ) -> RollbackResult:
        """
        Reverse applied changesets.

        Args:
            changelog: Loaded changelog (source of rollback SQL)
            count: Reverse the most recent N applied changesets
            to_changeset: (id, author or None); reverse everything after it
            dry_run: Execute the reversals in one transaction and roll back

        Returns:
            RollbackResult listing what was reversed

        Raises:
            NoRollbackDefinedError: A selected changeset has no rollback
                (checked for all of them before anything runs)
            ChecksumDriftError: A selected changeset was modified
            ExecutionError: A rollback failed (earlier reversals stay)
            LockTimeoutError: Another run holds the change lock
        """
        await self.ledger.ensure_tables(self.lock_timeout, self.lock_poll_interval)
        lock = ChangeLock(
            self.database,
            principal=self.principal,
            timeout=self.lock_timeout,
            poll_interval=self.lock_poll_interval,
        )

        async with lock:
            async with self.database.session() as session:
                applied = await self.ledger.list_applied(session)
            entries = self.select_entries(applied, count=count, to_changeset=to_changeset)
            steps = self._resolve(changelog, entries)
            result = RollbackResult(planned=entries, dry_run=dry_run)

            logger.info('Rolling back %d changeset(s)%s', len(steps),
                        ' (DRY RUN)' if dry_run else '')
            if dry_run:
                await self._dry_run(steps, result)
            else:
                for step in steps:
                    start_time = time.monotonic()
                    try:
                        result.records.append(await self._rollback_one(step))
                    except ExecutionError as e:
                        result.records.append(ExecutionRecord(
                            step.changeset, 'rollback', False,
                            int((time.monotonic() - start_time) * 1000),
                            error=e.message,
                        ))
                        e.details['rolled_back'] = [cs.key for cs in result.rolled_back]
                        e.details['records'] = [r.to_dict() for r in result.records]
                        raise

        return result

    async def _rollback_one(self, step: _Step) -> ExecutionRecord:
        changeset = step.changeset
        start_time = time.monotonic()
        logger.info('Rolling back changeset %s (#%d)', changeset.key, step.entry.order_executed)

        try:
            async with self.database.session() as session:
                if step.entry.exec_type != EXEC_TYPE_MARK_RAN:
                    await self.database.execute_sql(session, changeset.rollback_sql)
                await self.ledger.record_rolled_back(
                    session, changeset.id, changeset.author, principal=self.principal
                )
        except SQLAlchemyError as e:
            execution_time_ms = int((time.monotonic() - start_time) * 1000)
            logger.error(
                'Failed to roll back changeset %s (%dms): %s',
                changeset.key, execution_time_ms, e
            )
            raise ExecutionError(
                f"Rollback of changeset {changeset.key} failed: {e}",
                changeset_id=changeset.id,
                author=changeset.author,
                original_error=e,
                details={'source': changeset.source},
            ) from e

        execution_time_ms = int((time.monotonic() - start_time) * 1000)
        logger.info('Rolled back changeset %s (%dms)', changeset.key, execution_time_ms)
        return ExecutionRecord(changeset, 'rollback', True, execution_time_ms)

    async def _dry_run(self, steps: List[_Step], result: RollbackResult) -> None:
        try:
            async with self.database.session() as session:
                for step in steps:
                    start_time = time.monotonic()
                    try:
                        if step.entry.exec_type != EXEC_TYPE_MARK_RAN:
                            await self.database.execute_sql(session, step.changeset.rollback_sql)
                        await self.ledger.record_rolled_back(
                            session, step.changeset.id, step.changeset.author,
                            principal=self.principal
                        )
                    except SQLAlchemyError as e:
                        raise ExecutionError(
                            f"Rollback of changeset {step.changeset.key} failed (dry run): {e}",
                            changeset_id=step.changeset.id,
                            author=step.changeset.author,
                            original_error=e,
                        ) from e
                    execution_time_ms = int((time.monotonic() - start_time) * 1000)
                    result.records.append(ExecutionRecord(
                        step.changeset, 'rollback', True, execution_time_ms, dry_run=True
                    ))
                raise DryRunRollback('Dry-run mode: rolling back transaction')
        except DryRunRollback:
            logger.info('Dry-run rollback complete; transaction rolled back')
