"""
Migration engine exceptions.

This module defines the exception hierarchy raised by the changelog loader,
executor, rollback engine and ledger. Every error carries a stable code and
the identity of the offending changeset where one is involved, so callers
(and the CLI) can report failures without parsing messages.
"""

from typing import Any, Optional


class SchemaLedgerError(Exception):
    """
    Base exception for migration engine errors.

    All engine exceptions inherit from this base class, allowing catch-all
    handling at the command surface.
    """

    code = "SCHEMALEDGER_ERROR"

    def __init__(
        self,
        message: str,
        changeset_id: Optional[str] = None,
        author: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize engine error.

        Args:
            message: Human-readable error message
            changeset_id: Id of the changeset that caused the error, if any
            author: Author of the changeset that caused the error, if any
            details: Optional dict of additional context
        """
        self.message = message
        self.changeset_id = changeset_id
        self.author = author
        self.details = details or {}
        super().__init__(f"[{self.code}] {message}")

    @property
    def changeset_key(self) -> Optional[str]:
        """Changeset identity rendered as ``id::author`` (None if not set)."""
        if self.changeset_id is None:
            return None
        return f"{self.changeset_id}::{self.author}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        result: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.changeset_id is not None:
            result["changeset"] = {"id": self.changeset_id, "author": self.author}
        if self.details:
            result["details"] = self.details
        return result


class ConfigurationError(SchemaLedgerError):
    """
    Settings are missing or invalid.

    Raised when:
    - Config file cannot be read or parsed
    - A required setting (database URL, changelog path) is missing
    - A setting has an invalid value
    """

    code = "CONFIGURATION_ERROR"


class MalformedChangelogError(SchemaLedgerError):
    """
    Changelog structure is invalid.

    Raised when:
    - Two changesets share the same (id, author) identity
    - An included file does not exist
    - Includes form a cycle
    - A document cannot be parsed or lacks required fields

    Fatal to the run; nothing is applied.
    """

    code = "MALFORMED_CHANGELOG"


class ChecksumDriftError(SchemaLedgerError):
    """
    An applied changeset was edited after application.

    The stored checksum no longer matches the changeset body. Fatal; an
    operator must either revert the edit or re-baseline with
    ``clear-checksums``.
    """

    code = "CHECKSUM_DRIFT"

    def __init__(
        self,
        message: str,
        changeset_id: Optional[str] = None,
        author: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize drift error.

        Args:
            message: Human-readable error message
            changeset_id: Drifted changeset id
            author: Drifted changeset author
            expected: Checksum recorded in the ledger
            actual: Checksum computed from the current changelog
            details: Optional additional context
        """
        self.expected = expected
        self.actual = actual
        super().__init__(message, changeset_id, author, details)


class DuplicateApplicationError(SchemaLedgerError):
    """
    Changeset is already recorded as applied.

    Raised by the ledger when a second application of the same changeset
    is attempted, typically because two runs raced past the lock.
    """

    code = "DUPLICATE_APPLICATION"


class ExecutionError(SchemaLedgerError):
    """
    A changeset's statements failed.

    The changeset's transaction was rolled back; the ledger reflects exactly
    the changesets that succeeded before it.
    """

    code = "EXECUTION_FAILED"

    def __init__(
        self,
        message: str,
        changeset_id: Optional[str] = None,
        author: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize execution error.

        Args:
            message: Human-readable error message
            changeset_id: Failed changeset id
            author: Failed changeset author
            original_error: The database exception that caused the failure
            details: Optional additional context
        """
        self.original_error = original_error
        super().__init__(message, changeset_id, author, details)


class PreconditionFailedError(SchemaLedgerError):
    """Changeset precondition failed with ``on_fail: HALT``."""

    code = "PRECONDITION_FAILED"


class NoRollbackDefinedError(SchemaLedgerError):
    """
    Rollback requested for a changeset without rollback statements.

    Inverses are never inferred; fatal to that rollback call only.
    """

    code = "NO_ROLLBACK_DEFINED"


class LockTimeoutError(SchemaLedgerError):
    """
    The change lock could not be acquired in time.

    Another run holds the lock for this target. Retryable by the caller.
    """

    code = "LOCK_TIMEOUT"

    def __init__(
        self,
        message: str,
        timeout: float,
        locked_by: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize lock timeout error.

        Args:
            message: Human-readable error message
            timeout: Seconds waited before giving up
            locked_by: Current lock holder, if known
            details: Optional additional context
        """
        self.timeout = timeout
        self.locked_by = locked_by
        super().__init__(message, details=details)
