#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Migration executor with transaction management and tracking.

Applies pending changesets in changelog order, each inside its own
transaction together with its ledger row, under the target's change lock.
A failing changeset is rolled back and halts the run; everything applied
before it stays recorded, so re-running resumes where the failure happened.
A changeset skipped by its precondition ends the run early, leaving it and
everything after it pending.
Supports dry-run mode for previewing changes without committing.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .changeset import Changelog, Changeset, ExecutionRecord, OnFail, PreconditionKind
from .checksum import ChecksumValidator, LintWarning
from .database import TargetDatabase
from .errors import ExecutionError, PreconditionFailedError
from .ledger import LedgerEntry, MigrationLedger
from .lock import ChangeLock
from .models import EXEC_TYPE_EXECUTED, EXEC_TYPE_MARK_RAN, LEDGER_TABLE
from .status import pending_changesets


class DryRunRollback(Exception):
    """Exception raised to trigger rollback during dry-run mode."""
    pass


class RunState(Enum):
    IDLE = "idle"
    PLANNING = "planning"
    APPLYING = "applying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RunResult:
    """
    Outcome of an update run.

    Attributes:
        state: Final run state (COMPLETED; failures raise instead)
        planned: Changesets that were pending when planning finished
        records: One ExecutionRecord per changeset processed
        dry_run: Whether nothing was committed
    """
    state: RunState
    planned: List[Changeset] = field(default_factory=list)
    records: List[ExecutionRecord] = field(default_factory=list)
    dry_run: bool = False

    @property
    def applied(self) -> List[Changeset]:
        return [r.changeset for r in self.records
                if r.success and r.action in ('apply', 'mark_ran') and not r.dry_run]

    def to_dict(self) -> dict:
        return {
            'state': self.state.value,
            'dry_run': self.dry_run,
            'planned': [cs.key for cs in self.planned],
            'records': [r.to_dict() for r in self.records],
        }


@dataclass
class ValidationResult:
    """Outcome of a checksum-only validation pass."""
    pending: List[Changeset]
    warnings: List[LintWarning]
    unknown: List[LedgerEntry] = field(default_factory=list)


class MigrationExecutor:
    """
    Applies pending changesets with transaction safety.

    State machine per run: IDLE -> PLANNING -> APPLYING -> COMPLETED,
    or -> FAILED from PLANNING/APPLYING. Each changeset is atomic: its
    statements and its ledger row commit or roll back together.

    Attributes:
        database: Target database
        ledger: Ledger bound to the same database
        validator: Checksum validator
        principal: Identity recorded as applied_by
        state: Current run state

    Example:
        executor = MigrationExecutor(database, ledger, validator, principal='deploy')
        result = await executor.update(changelog)
        print([cs.key for cs in result.applied])
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
        self.state = RunState.IDLE
        self.logger = logging.getLogger(__name__)

    def _lock(self) -> ChangeLock:
        return ChangeLock(
            self.database,
            principal=self.principal,
            timeout=self.lock_timeout,
            poll_interval=self.lock_poll_interval,
        )

    async def plan(self, changelog: Changelog) -> List[Changeset]:
        """
        Compute pending changesets and verify applied checksums.

        Args:
            changelog: Loaded changelog

        Returns:
            Pending changesets in changelog order

        Raises:
            ChecksumDriftError: If any applied changeset was modified
        """
        async with self.database.session() as session:
            applied = await self.ledger.list_applied(session)

        for entry in applied:
            changeset = changelog.get(entry.changeset_id, entry.author)
            if changeset is None:
                self.logger.warning(
                    'Applied changeset %s (#%d) is not in the changelog',
                    entry.key, entry.order_executed
                )
                continue
            self.validator.verify(changeset, entry.checksum)

        pending = pending_changesets(changelog, applied)
        self.logger.info(
            'Planned %d pending changeset(s) (%d already applied)',
            len(pending), len(applied)
        )
        return pending

    async def update(self, changelog: Changelog, count: Optional[int] = None,
                     dry_run: bool = False) -> RunResult:
        """
        Apply pending changesets.

        Args:
            changelog: Loaded changelog
            count: Apply at most this many pending changesets (None for all)
            dry_run: Execute everything in one transaction and roll it back

        Returns:
            RunResult with state COMPLETED

        Raises:
            ChecksumDriftError: Applied changeset modified (nothing applied)
            ExecutionError: A changeset failed (earlier ones stay applied)
            PreconditionFailedError: A HALT precondition did not hold
            DuplicateApplicationError: Another run recorded the same changeset
            LockTimeoutError: Another run holds the change lock
        """
        self.state = RunState.IDLE
        await self.ledger.ensure_tables(self.lock_timeout, self.lock_poll_interval)

        try:
            async with self._lock():
                self.state = RunState.PLANNING
                pending = await self.plan(changelog)
                if count is not None:
                    pending = pending[:max(count, 0)]

                self.state = RunState.APPLYING
                result = RunResult(state=RunState.APPLYING, planned=pending, dry_run=dry_run)
                if dry_run:
                    await self._dry_run(pending, result)
                else:
                    for changeset in pending:
                        start_time = time.monotonic()
                        try:
                            record = await self._apply_one(changeset)
                        except (ExecutionError, PreconditionFailedError) as e:
                            result.records.append(ExecutionRecord(
                                changeset, 'apply', False,
                                int((time.monotonic() - start_time) * 1000),
                                error=e.message,
                            ))
                            e.details['applied'] = [cs.key for cs in result.applied]
                            e.details['records'] = [r.to_dict() for r in result.records]
                            raise
                        result.records.append(record)
                        if record.action == 'skip':
                            # Later changesets wait so ledger order follows changelog order
                            self.logger.info(
                                'Stopping run at skipped changeset %s; %d left pending',
                                changeset.key, len(pending) - len(result.records) + 1
                            )
                            break

                self.state = RunState.COMPLETED
                result.state = RunState.COMPLETED
        except BaseException:
            self.state = RunState.FAILED
            raise

        if not dry_run:
            self.logger.info('Update complete: %d changeset(s) applied', len(result.applied))
        return result

    async def _check_preconditions(self, session, changeset: Changeset) -> str:
        """
        Evaluate preconditions.

        Returns:
            'apply', 'mark_ran' or 'skip'

        Raises:
            PreconditionFailedError: If a HALT precondition does not hold
        """
        for precondition in changeset.preconditions:
            if precondition.kind == PreconditionKind.SQL_CHECK:
                value = await self.database.scalar(session, precondition.sql)
                holds = str(value) == precondition.expected
            else:
                exists = await self.database.table_exists(session, precondition.table)
                holds = exists if precondition.kind == PreconditionKind.TABLE_EXISTS else not exists

            if holds:
                continue

            if precondition.on_fail == OnFail.MARK_RAN:
                self.logger.info(
                    'Precondition %s failed for %s; marking as ran',
                    precondition.describe(), changeset.key
                )
                return 'mark_ran'
            if precondition.on_fail == OnFail.SKIP:
                self.logger.info(
                    'Precondition %s failed for %s; skipping',
                    precondition.describe(), changeset.key
                )
                return 'skip'
            raise PreconditionFailedError(
                f"Precondition {precondition.describe()} failed for changeset {changeset.key}",
                changeset_id=changeset.id,
                author=changeset.author,
            )
        return 'apply'

    async def _apply_one(self, changeset: Changeset) -> ExecutionRecord:
        """
        Apply one changeset and record it, in a single transaction.

        Raises:
            ExecutionError: On any database failure (transaction rolled back)
        """
        start_time = time.monotonic()
        self.logger.info('Applying changeset %s', changeset.key)

        try:
            async with self.database.session() as session:
                action = await self._check_preconditions(session, changeset)
                if action == 'skip':
                    return ExecutionRecord(changeset, 'skip', True, 0)

                statements = 0
                if action == 'apply':
                    statements = await self.database.execute_sql(session, changeset.sql)

                execution_time_ms = int((time.monotonic() - start_time) * 1000)
                await self.ledger.record_applied(
                    session,
                    changeset,
                    checksum=self.validator.fingerprint(changeset),
                    principal=self.principal,
                    exec_type=EXEC_TYPE_MARK_RAN if action == 'mark_ran' else EXEC_TYPE_EXECUTED,
                    execution_time_ms=execution_time_ms,
                )

        except SQLAlchemyError as e:
            execution_time_ms = int((time.monotonic() - start_time) * 1000)
            self.logger.error(
                'Failed to apply changeset %s (%dms): %s',
                changeset.key, execution_time_ms, e
            )
            raise ExecutionError(
                f"Changeset {changeset.key} failed: {e}",
                changeset_id=changeset.id,
                author=changeset.author,
                original_error=e,
                details={'source': changeset.source},
            ) from e

        execution_time_ms = int((time.monotonic() - start_time) * 1000)
        self.logger.info(
            'Applied changeset %s (%d statement(s), %dms)',
            changeset.key, statements, execution_time_ms
        )
        return ExecutionRecord(changeset, action, True, execution_time_ms)

    async def _dry_run(self, pending: List[Changeset], result: RunResult) -> None:
        """Run every pending changeset in one transaction, then roll it back."""
        self.logger.info('Dry run: %d changeset(s)', len(pending))
        try:
            async with self.database.session() as session:
                for changeset in pending:
                    start_time = time.monotonic()
                    try:
                        action = await self._check_preconditions(session, changeset)
                        if action == 'apply':
                            await self.database.execute_sql(session, changeset.sql)
                        if action != 'skip':
                            await self.ledger.record_applied(
                                session, changeset,
                                checksum=self.validator.fingerprint(changeset),
                                principal=self.principal,
                            )
                    except SQLAlchemyError as e:
                        raise ExecutionError(
                            f"Changeset {changeset.key} failed (dry run): {e}",
                            changeset_id=changeset.id,
                            author=changeset.author,
                            original_error=e,
                        ) from e
                    execution_time_ms = int((time.monotonic() - start_time) * 1000)
                    result.records.append(
                        ExecutionRecord(changeset, action, True, execution_time_ms, dry_run=True)
                    )
                    if action == 'skip':
                        break
                raise DryRunRollback('Dry-run mode: rolling back transaction')
        except DryRunRollback:
            self.logger.info('Dry run complete; transaction rolled back')

    async def validate(self, changelog: Changelog) -> ValidationResult:
        """
        Checksum-only pass: verify applied changesets, lint pending ones.

        Takes no lock and writes nothing.

        Raises:
            ChecksumDriftError: If any applied changeset was modified
        """
        async with self.database.session() as session:
            if await self.database.table_exists(session, LEDGER_TABLE):
                applied = await self.ledger.list_applied(session)
            else:
                applied = []

        unknown = []
        for entry in applied:
            changeset = changelog.get(entry.changeset_id, entry.author)
            if changeset is None:
                unknown.append(entry)
                continue
            self.validator.verify(changeset, entry.checksum)

        warnings = []
        for changeset in changelog:
            warnings.extend(self.validator.lint(changeset))

        return ValidationResult(
            pending=pending_changesets(changelog, applied),
            warnings=warnings,
            unknown=unknown,
        )

    async def clear_checksums(self, changelog: Changelog) -> List[str]:
        """
        Re-baseline stored checksums to the current changelog content.

        Explicit operator override: accepts edits made to applied
        changesets. Every re-baselined entry is logged at WARNING level.

        Returns:
            Keys of the changesets whose stored checksum changed
        """
        await self.ledger.ensure_tables(self.lock_timeout, self.lock_poll_interval)
        rebaselined = []
        async with self._lock():
            async with self.database.session() as session:
                for entry in await self.ledger.list_applied(session):
                    changeset = changelog.get(entry.changeset_id, entry.author)
                    if changeset is None:
                        continue
                    computed = self.validator.fingerprint(changeset)
                    if computed == entry.checksum:
                        continue
                    await self.ledger.update_checksum(
                        session, entry.changeset_id, entry.author, computed
                    )
                    self.logger.warning(
                        'Re-baselined checksum of %s by %s: %s... -> %s...',
                        entry.key, self.principal, entry.checksum[:8], computed[:8]
                    )
                    rebaselined.append(entry.key)
        self.logger.info('Cleared checksums: %d entr(ies) re-baselined', len(rebaselined))
        return rebaselined
