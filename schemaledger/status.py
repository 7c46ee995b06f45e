"""
Changelog vs. ledger status reporting.

Read-only: classifies every changeset as applied, drifted or pending
without taking the change lock, so a report may reflect a slightly stale
snapshot while another run is applying changes.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from .changeset import Changelog, Changeset
from .checksum import ChecksumMatch, ChecksumValidator
from .database import TargetDatabase
from .errors import ChecksumDriftError
from .ledger import LedgerEntry, MigrationLedger
from .models import LEDGER_TABLE

logger = logging.getLogger(__name__)


class ChangesetState(Enum):
    APPLIED = "applied"
    DRIFTED = "drifted"
    PENDING = "pending"


class OverallState(Enum):
    UP_TO_DATE = "up_to_date"
    PENDING = "pending"
    DRIFTED = "drifted"


def pending_changesets(changelog: Iterable[Changeset],
                       applied: Iterable[LedgerEntry]) -> List[Changeset]:
    """
    Changesets not yet applied, in changelog order.

    Args:
        changelog: Changesets in declaration order
        applied: Ledger entries currently in 'applied' status

    Returns:
        Ordered difference changelog - applied
    """
    applied_ids = {entry.identity for entry in applied}
    return [cs for cs in changelog if cs.identity not in applied_ids]


@dataclass
class ChangesetStatus:
    """Classification of one changeset."""
    changeset: Changeset
    state: ChangesetState
    entry: Optional[LedgerEntry] = None
    checksum: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            'id': self.changeset.id,
            'author': self.changeset.author,
            'state': self.state.value,
            'checksum': self.checksum,
        }
        if self.entry is not None:
            result['order_executed'] = self.entry.order_executed
            result['applied_at'] = self.entry.applied_at.isoformat()
            result['applied_by'] = self.entry.applied_by
            if self.state == ChangesetState.DRIFTED:
                result['stored_checksum'] = self.entry.checksum
        return result


@dataclass
class StatusReport:
    """
    Result of comparing a changelog with the ledger.

    Attributes:
        items: One status per changeset, in changelog order
        unknown: Applied ledger entries with no changeset in the changelog
    """
    items: List[ChangesetStatus]
    unknown: List[LedgerEntry] = field(default_factory=list)

    def _with_state(self, state: ChangesetState) -> List[ChangesetStatus]:
        return [item for item in self.items if item.state == state]

    @property
    def applied(self) -> List[ChangesetStatus]:
        return self._with_state(ChangesetState.APPLIED)

    @property
    def drifted(self) -> List[ChangesetStatus]:
        return self._with_state(ChangesetState.DRIFTED)

    @property
    def pending(self) -> List[ChangesetStatus]:
        return self._with_state(ChangesetState.PENDING)

    @property
    def state(self) -> OverallState:
        if self.drifted:
            return OverallState.DRIFTED
        if self.pending:
            return OverallState.PENDING
        return OverallState.UP_TO_DATE

    @property
    def is_up_to_date(self) -> bool:
        return self.state == OverallState.UP_TO_DATE

    def state_of(self, changeset_id: str, author: Optional[str] = None) -> Optional[ChangesetState]:
        for item in self.items:
            if item.changeset.id == str(changeset_id) and author in (None, item.changeset.author):
                return item.state
        return None

    def raise_for_drift(self) -> None:
        """
        Raise ChecksumDriftError if any changeset drifted.

        The error names the first drifted changeset; all of them are listed
        in ``details['drifted']``.
        """
        drifted = self.drifted
        if not drifted:
            return
        first = drifted[0]
        keys = [item.changeset.key for item in drifted]
        raise ChecksumDriftError(
            f"{len(drifted)} applied changeset(s) modified after application: "
            f"{', '.join(keys)}",
            changeset_id=first.changeset.id,
            author=first.changeset.author,
            expected=first.entry.checksum if first.entry else None,
            actual=first.checksum,
            details={'drifted': keys},
        )

    def to_dict(self) -> dict:
        return {
            'state': self.state.value,
            'changesets': [item.to_dict() for item in self.items],
            'unknown': [entry.to_dict() for entry in self.unknown],
        }


def classify(changelog: Iterable[Changeset], applied: Iterable[LedgerEntry],
             validator: ChecksumValidator) -> StatusReport:
    """Pure diff of a changelog against applied ledger entries."""
    applied_by_identity = {entry.identity: entry for entry in applied}
    items = []
    seen = set()

    for changeset in changelog:
        seen.add(changeset.identity)
        computed = validator.fingerprint(changeset)
        entry = applied_by_identity.get(changeset.identity)
        if entry is None:
            state = ChangesetState.PENDING
        elif validator.compare(entry.checksum, computed) == ChecksumMatch.MATCH:
            state = ChangesetState.APPLIED
        else:
            state = ChangesetState.DRIFTED
        items.append(ChangesetStatus(changeset, state, entry, computed))

    unknown = [entry for identity, entry in applied_by_identity.items()
               if identity not in seen]
    return StatusReport(items=items, unknown=unknown)


class StatusReporter:
    """
    Reports pending/applied/drifted state for a target.

    Does not take the change lock and never writes.

    Example:
        reporter = StatusReporter(database, ledger, validator)
        report = await reporter.report(changelog)
        print(report.state)
    """

    def __init__(self, database: TargetDatabase, ledger: MigrationLedger,
                 validator: ChecksumValidator):
        self.database = database
        self.ledger = ledger
        self.validator = validator

    async def report(self, changelog: Changelog) -> StatusReport:
        async with self.database.session() as session:
            if not await self.database.table_exists(session, LEDGER_TABLE):
                logger.debug('Ledger table missing; treating target as empty')
                applied = []
            else:
                applied = await self.ledger.list_applied(session)

        report = classify(changelog, applied, self.validator)
        logger.debug(
            'Status: %d applied, %d drifted, %d pending, %d unknown',
            len(report.applied), len(report.drifted),
            len(report.pending), len(report.unknown)
        )
        return report
