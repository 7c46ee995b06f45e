"""
Changeset data models.

This module defines the core data structures shared by the engine:
- Changeset: One identified, ordered unit of schema change
- Precondition: Guard evaluated before a changeset is applied
- Changelog: Ordered, identity-unique sequence of changesets
- ExecutionRecord: Transient result of applying or rolling back a changeset
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional


class OnFail(Enum):
    """What to do when a precondition does not hold."""
    HALT = "HALT"
    MARK_RAN = "MARK_RAN"
    SKIP = "SKIP"


class PreconditionKind(Enum):
    """Supported precondition checks."""
    TABLE_EXISTS = "table_exists"
    TABLE_NOT_EXISTS = "table_not_exists"
    SQL_CHECK = "sql_check"


@dataclass(frozen=True)
class Precondition:
    """
    Guard evaluated against the target right before a changeset runs.

    Attributes:
        kind: Which check to perform
        table: Table name for table_exists/table_not_exists
        sql: Scalar query for sql_check
        expected: Expected scalar result (compared as string) for sql_check
        on_fail: Action when the check does not hold

    Example:
        >>> Precondition(PreconditionKind.TABLE_NOT_EXISTS, table='quotes')
        <Precondition(table_not_exists quotes, on_fail=HALT)>
    """

    kind: PreconditionKind
    table: Optional[str] = None
    sql: Optional[str] = None
    expected: Optional[str] = None
    on_fail: OnFail = OnFail.HALT

    def __post_init__(self):
        """Validate that the check has what it needs."""
        if self.kind in (PreconditionKind.TABLE_EXISTS,
                         PreconditionKind.TABLE_NOT_EXISTS) and not self.table:
            raise ValueError(f"Precondition {self.kind.value} requires 'table'")
        if self.kind == PreconditionKind.SQL_CHECK:
            if not self.sql or self.expected is None:
                raise ValueError("Precondition sql_check requires 'sql' and 'expected'")

    def describe(self) -> str:
        """Short human-readable description for logs and errors."""
        if self.kind == PreconditionKind.SQL_CHECK:
            return f"sql_check {self.sql!r} == {self.expected!r}"
        return f"{self.kind.value} {self.table}"

    def __repr__(self) -> str:
        return f"<Precondition({self.describe()}, on_fail={self.on_fail.value})>"


@dataclass
class Changeset:
    """
    A single identified unit of schema change.

    Identity is the (id, author) pair. The body (``sql``) is what the
    checksum covers; ``rollback_sql`` and preconditions are not part of it,
    so fixing a rollback does not count as drift.

    Attributes:
        id: Changeset id, unique per author within a changelog
        author: Changeset author
        sql: Forward SQL (one or more statements)
        rollback_sql: Author-supplied inverse SQL (None if not reversible)
        preconditions: Guards checked before applying
        source: File the changeset was declared in
        comment: Optional free-text description
        position: Zero-based declaration order within the changelog

    Example:
        >>> cs = Changeset(id='1', author='alice',
        ...                sql='CREATE TABLE quotes (id INTEGER);',
        ...                rollback_sql='DROP TABLE quotes;')
        >>> cs.key
        '1::alice'
    """

    id: str
    author: str
    sql: str
    rollback_sql: Optional[str] = None
    preconditions: List[Precondition] = field(default_factory=list)
    source: str = ''
    comment: Optional[str] = None
    position: int = 0

    def __post_init__(self):
        """Validate changeset after initialization."""
        if not str(self.id).strip():
            raise ValueError("Changeset id must not be empty")
        if not str(self.author).strip():
            raise ValueError(f"Changeset {self.id} has empty author")
        if not isinstance(self.sql, str):
            raise ValueError(f"Changeset {self.id}::{self.author} body must be a string")
        if not self.sql.strip():
            raise ValueError(f"Changeset {self.id}::{self.author} has empty body")
        if self.rollback_sql is not None and not isinstance(self.rollback_sql, str):
            raise ValueError(f"Changeset {self.id}::{self.author} rollback must be a string")
        self.id = str(self.id)
        self.author = str(self.author)
        if self.rollback_sql is not None and not self.rollback_sql.strip():
            self.rollback_sql = None

    @property
    def identity(self) -> tuple[str, str]:
        return (self.id, self.author)

    @property
    def key(self) -> str:
        return f"{self.id}::{self.author}"

    @property
    def has_rollback(self) -> bool:
        return self.rollback_sql is not None

    def __repr__(self) -> str:
        return f"<Changeset({self.key})>"


class Changelog:
    """
    Ordered sequence of changesets.

    Declaration order is application order and is never re-sorted.
    Identities are unique (enforced by the loader).

    Example:
        >>> changelog = Changelog([a, b, c], path='db/changelog.yaml')
        >>> [cs.id for cs in changelog]
        ['a', 'b', 'c']
        >>> changelog.get('b', 'alice')
        <Changeset(b::alice)>
    """

    def __init__(self, changesets: List[Changeset], path: str = ''):
        self.path = path
        self._changesets = list(changesets)
        self._by_identity = {cs.identity: cs for cs in self._changesets}

    def __iter__(self) -> Iterator[Changeset]:
        return iter(self._changesets)

    def __len__(self) -> int:
        return len(self._changesets)

    def __getitem__(self, index: int) -> Changeset:
        return self._changesets[index]

    def get(self, changeset_id: str, author: str) -> Optional[Changeset]:
        """Look up a changeset by identity."""
        return self._by_identity.get((str(changeset_id), str(author)))

    def __repr__(self) -> str:
        return f"<Changelog({self.path or '<memory>'}, {len(self)} changesets)>"


@dataclass
class ExecutionRecord:
    """
    Result of applying or rolling back one changeset.

    Transient: logged and returned to the caller, never persisted.

    Attributes:
        changeset: Changeset that was processed
        action: 'apply', 'mark_ran', 'skip' or 'rollback'
        success: Whether all statements succeeded
        duration_ms: Execution time in milliseconds
        error: Error message if failed (None on success)
        dry_run: True when the transaction was rolled back on purpose
    """

    changeset: Changeset
    action: str
    success: bool
    duration_ms: int
    error: Optional[str] = None
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            'id': self.changeset.id,
            'author': self.changeset.author,
            'action': self.action,
            'success': self.success,
            'duration_ms': self.duration_ms,
            'error': self.error,
            'dry_run': self.dry_run,
        }
