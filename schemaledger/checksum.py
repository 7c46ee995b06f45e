#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Checksum fingerprinting and changeset safety checks.

Computes content fingerprints used to detect edits to changesets after
they were applied, and lints changesets for destructive operations and
basic syntax problems. Lint findings are advisory (INFO/WARNING/ERROR)
and never block execution; checksum mismatches always do.
"""
import hashlib
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .changeset import Changeset
from .errors import ChecksumDriftError


class Normalization(Enum):
    """How the change body is normalized before hashing."""
    EXACT = "exact"
    WHITESPACE = "whitespace"


class ChecksumMatch(Enum):
    MATCH = "match"
    MISMATCH = "mismatch"


class WarningLevel(Enum):
    """Severity levels for lint warnings."""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class LintWarning:
    """
    Warning from changeset linting.

    Attributes:
        level: Severity level (INFO, WARNING, ERROR)
        message: Human-readable warning message
        changeset_id: Changeset id that triggered the warning
        author: Changeset author
        category: 'destructive', 'syntax' or 'rollback'

    Example:
        >>> warning = LintWarning(
        ...     level=WarningLevel.WARNING,
        ...     message="Changeset drops table",
        ...     changeset_id="7",
        ...     author="alice",
        ...     category="destructive"
        ... )
        >>> print(warning)
        [WARNING] Changeset 7::alice: Changeset drops table
    """
    level: WarningLevel
    message: str
    changeset_id: str
    author: str
    category: str

    def to_dict(self) -> dict:
        return {
            'level': self.level.value,
            'message': self.message,
            'changeset_id': self.changeset_id,
            'author': self.author,
            'category': self.category
        }

    def __str__(self) -> str:
        return f"[{self.level.value}] Changeset {self.changeset_id}::{self.author}: {self.message}"


_WHITESPACE_RUN = re.compile(r'\s+')


class ChecksumValidator:
    """
    Computes and compares changeset fingerprints.

    The fingerprint is a SHA-256 hex digest of the changeset's forward
    body. With ``Normalization.WHITESPACE`` every run of whitespace is
    collapsed to one space and the ends are stripped first, so reformatting
    a changeset does not count as drift. Rollback SQL and preconditions are
    not part of the fingerprint.

    Attributes:
        normalization: Body normalization mode

    Example:
        >>> validator = ChecksumValidator()
        >>> checksum = validator.fingerprint(changeset)
        >>> validator.compare(stored, checksum)
        <ChecksumMatch.MATCH: 'match'>
    """

    DROP_COLUMN_PATTERN = re.compile(r'\bDROP\s+COLUMN\b', re.IGNORECASE)
    DROP_TABLE_PATTERN = re.compile(r'\bDROP\s+TABLE\b', re.IGNORECASE)
    TRUNCATE_PATTERN = re.compile(r'\bTRUNCATE\s+(TABLE\b)?', re.IGNORECASE)
    DELETE_ALL_PATTERN = re.compile(r'\bDELETE\s+FROM\s+\w+\s*(;|$)', re.IGNORECASE)

    def __init__(self, normalization: Normalization = Normalization.EXACT):
        """
        Initialize validator.

        Args:
            normalization: Normalization mode (or its string value)
        """
        self.normalization = Normalization(normalization)

    def normalize(self, body: str) -> str:
        if self.normalization == Normalization.WHITESPACE:
            return _WHITESPACE_RUN.sub(' ', body).strip()
        return body

    def fingerprint(self, changeset: Changeset) -> str:
        """
        Compute the checksum of a changeset body.

        Returns:
            Hexadecimal SHA-256 hash (64 characters)
        """
        body = self.normalize(changeset.sql)
        return hashlib.sha256(body.encode('utf-8')).hexdigest()

    def compare(self, stored: Optional[str], computed: str) -> ChecksumMatch:
        if stored == computed:
            return ChecksumMatch.MATCH
        return ChecksumMatch.MISMATCH

    def verify(self, changeset: Changeset, stored: Optional[str]) -> str:
        """
        Verify an applied changeset still matches its stored checksum.

        Args:
            changeset: Changeset from the current changelog
            stored: Checksum recorded in the ledger at application time

        Returns:
            The computed checksum

        Raises:
            ChecksumDriftError: If the changeset body changed
        """
        computed = self.fingerprint(changeset)
        if self.compare(stored, computed) == ChecksumMatch.MISMATCH:
            raise ChecksumDriftError(
                f"Changeset {changeset.key} was modified after it was applied "
                f"(checksum mismatch). Expected: {(stored or '')[:8]}..., "
                f"Got: {computed[:8]}...",
                changeset_id=changeset.id,
                author=changeset.author,
                expected=stored,
                actual=computed,
                details={'source': changeset.source},
            )
        return computed

    def lint(self, changeset: Changeset) -> List[LintWarning]:
        """
        Check a changeset for destructive operations and syntax problems.

        Checks performed:
        - Destructive operations (DROP TABLE/COLUMN, TRUNCATE, unfiltered DELETE)
        - Basic SQL syntax (parentheses, quotes) in body and rollback
        - Missing rollback definition

        Returns:
            List of LintWarning objects (empty if no issues)
        """
        warnings = []
        warnings.extend(self._check_destructive_operations(changeset))
        warnings.extend(self._check_syntax(changeset, changeset.sql, 'body'))
        if changeset.rollback_sql:
            warnings.extend(self._check_syntax(changeset, changeset.rollback_sql, 'rollback'))
        else:
            warnings.append(self._warning(
                changeset, WarningLevel.INFO,
                "No rollback defined; this changeset cannot be rolled back.",
                'rollback'
            ))
        return warnings

    def _warning(self, changeset: Changeset, level: WarningLevel,
                 message: str, category: str) -> LintWarning:
        return LintWarning(
            level=level,
            message=message,
            changeset_id=changeset.id,
            author=changeset.author,
            category=category
        )

    def _check_destructive_operations(self, changeset: Changeset) -> List[LintWarning]:
        warnings = []
        sql = changeset.sql

        if self.DROP_COLUMN_PATTERN.search(sql):
            warnings.append(self._warning(
                changeset, WarningLevel.WARNING,
                "Changeset drops column (potential data loss). "
                "Ensure column data is no longer needed or backed up.",
                'destructive'
            ))

        if self.DROP_TABLE_PATTERN.search(sql):
            warnings.append(self._warning(
                changeset, WarningLevel.WARNING,
                "Changeset drops table (all table data will be deleted). "
                "Ensure data is backed up or no longer needed.",
                'destructive'
            ))

        if self.TRUNCATE_PATTERN.search(sql):
            warnings.append(self._warning(
                changeset, WarningLevel.WARNING,
                "Changeset truncates table (all rows will be deleted).",
                'destructive'
            ))

        if self.DELETE_ALL_PATTERN.search(sql):
            warnings.append(self._warning(
                changeset, WarningLevel.WARNING,
                "Changeset deletes without a WHERE clause (all rows will be deleted).",
                'destructive'
            ))

        return warnings

    def _check_syntax(self, changeset: Changeset, sql: str, section: str) -> List[LintWarning]:
        """
        Check for unbalanced parentheses and unterminated strings.

        Simple heuristics; comments are removed first.
        """
        warnings = []

        sql_no_comments = re.sub(r'--.*$', '', sql, flags=re.MULTILINE)
        sql_no_comments = re.sub(r'/\*.*?\*/', '', sql_no_comments, flags=re.DOTALL)

        open_parens = sql_no_comments.count('(')
        close_parens = sql_no_comments.count(')')
        if open_parens != close_parens:
            warnings.append(self._warning(
                changeset, WarningLevel.ERROR,
                f"Unmatched parentheses in {section}: {open_parens} open, {close_parens} close",
                'syntax'
            ))

        single_quotes = sql_no_comments.count("'")
        if single_quotes % 2 != 0:
            warnings.append(self._warning(
                changeset, WarningLevel.ERROR,
                f"Unterminated string in {section} (odd number of single quotes: {single_quotes})",
                'syntax'
            ))

        return warnings
