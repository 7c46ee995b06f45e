"""
Versioned schema migration engine.

This package provides:
- ChangelogLoader: Loading ordered changesets from YAML/JSON/SQL changelogs
- ChecksumValidator: Change fingerprints, drift detection and linting
- MigrationLedger: Persistent record of applied changesets
- MigrationExecutor: Applying pending changesets under the change lock
- RollbackEngine: Reversing applied changesets newest-first
- StatusReporter: Read-only applied/pending/drifted classification
- ChangeLock: Single-row lock serializing runs against one target
"""

from .changelog import ChangelogLoader
from .changeset import (
    Changelog,
    Changeset,
    ExecutionRecord,
    OnFail,
    Precondition,
    PreconditionKind,
)
from .checksum import ChecksumMatch, ChecksumValidator, LintWarning, Normalization, WarningLevel
from .config import Settings, configure_logger, load_settings
from .database import TargetDatabase
from .errors import (
    ChecksumDriftError,
    ConfigurationError,
    DuplicateApplicationError,
    ExecutionError,
    LockTimeoutError,
    MalformedChangelogError,
    NoRollbackDefinedError,
    PreconditionFailedError,
    SchemaLedgerError,
)
from .executor import DryRunRollback, MigrationExecutor, RunResult, RunState, ValidationResult
from .ledger import LedgerEntry, MigrationLedger
from .lock import ChangeLock
from .rollback import RollbackEngine, RollbackResult
from .status import ChangesetState, OverallState, StatusReport, StatusReporter

__version__ = '0.1.0'

__all__ = [
    'ChangelogLoader',
    'Changelog',
    'Changeset',
    'ExecutionRecord',
    'OnFail',
    'Precondition',
    'PreconditionKind',
    'ChecksumMatch',
    'ChecksumValidator',
    'LintWarning',
    'Normalization',
    'WarningLevel',
    'Settings',
    'configure_logger',
    'load_settings',
    'TargetDatabase',
    'SchemaLedgerError',
    'ConfigurationError',
    'MalformedChangelogError',
    'ChecksumDriftError',
    'DuplicateApplicationError',
    'ExecutionError',
    'PreconditionFailedError',
    'NoRollbackDefinedError',
    'LockTimeoutError',
    'DryRunRollback',
    'MigrationExecutor',
    'RunResult',
    'RunState',
    'ValidationResult',
    'LedgerEntry',
    'MigrationLedger',
    'ChangeLock',
    'RollbackEngine',
    'RollbackResult',
    'ChangesetState',
    'OverallState',
    'StatusReport',
    'StatusReporter',
]
