"""
Changelog loading for the migration engine.

This module provides the ChangelogLoader class which handles:
- Parsing YAML/JSON master changelogs
- Resolving ``include`` / ``include_all`` references (with cycle detection)
- Parsing SQL files with ``-- UP`` / ``-- DOWN`` sections
- Parsing formatted SQL files holding several ``-- changeset`` blocks

Master changelog format:
    changelog:
      - changeset:
          id: create-quotes
          author: alice
          sql: CREATE TABLE quotes (id INTEGER PRIMARY KEY);
          rollback: DROP TABLE quotes;
      - include: sql/002_add_rating.sql
      - include_all: sql/later/

UP/DOWN file format (id taken from the file name):
    -- UP
    CREATE TABLE my_table (id INTEGER PRIMARY KEY);

    -- DOWN
    DROP TABLE my_table;

Formatted SQL format:
    -- schemaledger formatted sql

    -- changeset alice:1
    -- precondition table_not_exists quotes on_fail:MARK_RAN
    CREATE TABLE quotes (id INTEGER PRIMARY KEY);
    -- rollback DROP TABLE quotes;
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, List, Optional

import yaml

from .changeset import Changelog, Changeset, OnFail, Precondition, PreconditionKind
from .errors import MalformedChangelogError

logger = logging.getLogger(__name__)


class ChangelogLoader:
    """
    Loads an ordered changelog from disk.

    Responsibilities:
    - Read master changelogs and the files they reference
    - Preserve declaration order exactly
    - Reject duplicate identities, missing files and include cycles

    Read-only: never touches the database.

    Example:
        >>> loader = ChangelogLoader(default_author='ops')
        >>> changelog = loader.load(Path('db/changelog.yaml'))
        >>> [cs.key for cs in changelog]
        ['1::alice', '2::alice', '003_add_index::ops']
    """

    # Section markers in UP/DOWN files
    UP_MARKER = '-- UP'
    DOWN_MARKER = '-- DOWN'

    # Formatted SQL markers
    FORMATTED_HEADER = re.compile(r'^--\s*schemaledger\s+formatted\s+sql\s*$', re.IGNORECASE)
    CHANGESET_LINE = re.compile(r'^--\s*changeset\s+([^:\s]+):(\S+)\s*$', re.IGNORECASE)
    ROLLBACK_LINE = re.compile(r'^--\s*rollback\b\s?(.*)$', re.IGNORECASE)
    PRECONDITION_LINE = re.compile(r'^--\s*precondition\s+(.+)$', re.IGNORECASE)
    COMMENT_LINE = re.compile(r'^--\s*comment:\s*(.*)$', re.IGNORECASE)

    DOCUMENT_SUFFIXES = ('.yaml', '.yml', '.json')
    INCLUDABLE_SUFFIXES = DOCUMENT_SUFFIXES + ('.sql',)

    def __init__(self, default_author: str = 'schemaledger'):
        """
        Initialize changelog loader.

        Args:
            default_author: Author assigned to changesets whose source
                does not name one (UP/DOWN files)
        """
        self.default_author = default_author

    def load(self, path) -> Changelog:
        """
        Load a changelog and everything it includes.

        Args:
            path: Master changelog (YAML, JSON or SQL)

        Returns:
            Changelog in declaration order

        Raises:
            MalformedChangelogError: On duplicates, missing files, include
                cycles or unparseable documents
        """
        root = Path(path)
        if not root.exists():
            raise MalformedChangelogError(f"Changelog not found: {root}")

        changesets = self._load_file(root.resolve(), stack=[], author=None)

        seen = {}
        for position, changeset in enumerate(changesets):
            if changeset.identity in seen:
                raise MalformedChangelogError(
                    f"Duplicate changeset {changeset.key} "
                    f"(declared in {seen[changeset.identity]} and {changeset.source})",
                    changeset_id=changeset.id,
                    author=changeset.author,
                )
            seen[changeset.identity] = changeset.source
            changeset.position = position

        logger.info('Loaded %d changesets from %s', len(changesets), root)
        return Changelog(changesets, path=str(root))

    def _load_file(self, path: Path, stack: List[Path], author: Optional[str]) -> List[Changeset]:
        """Dispatch on file type, tracking the include chain for cycles."""
        if path in stack:
            chain = ' -> '.join(str(p) for p in stack + [path])
            raise MalformedChangelogError(f"Cyclic include detected: {chain}")
        if not path.is_file():
            raise MalformedChangelogError(f"Included file not found: {path}")

        stack = stack + [path]
        if path.suffix.lower() in self.DOCUMENT_SUFFIXES:
            return self._load_document(path, stack)
        if path.suffix.lower() == '.sql':
            content = self._read(path)
            if self._is_formatted(content):
                return self.parse_formatted_sql(content, str(path))
            up_sql, down_sql = self.parse_sections(content, path.name)
            return [self._build(
                {'id': path.stem, 'author': author or self.default_author},
                up_sql, down_sql, str(path),
            )]
        raise MalformedChangelogError(f"Unsupported changelog file type: {path}")

    def _load_document(self, path: Path, stack: List[Path]) -> List[Changeset]:
        """Parse a YAML/JSON master changelog."""
        text = self._read(path)
        try:
            if path.suffix.lower() == '.json':
                document = json.loads(text)
            else:
                document = yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise MalformedChangelogError(f"Cannot parse {path}: {e}") from e

        if isinstance(document, dict):
            entries = document.get('changelog')
        else:
            entries = document
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise MalformedChangelogError(f"{path}: 'changelog' must be a list")

        changesets = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict) or len(entry) != 1:
                raise MalformedChangelogError(
                    f"{path}: entry #{index + 1} must be a mapping with exactly one of "
                    f"'changeset', 'include', 'include_all'"
                )
            kind, value = next(iter(entry.items()))
            if kind == 'changeset':
                changesets.append(self._changeset_from_mapping(value, path))
            elif kind == 'include':
                changesets.extend(self._include(value, path, stack))
            elif kind == 'include_all':
                changesets.extend(self._include_all(value, path, stack))
            else:
                raise MalformedChangelogError(f"{path}: unknown entry type '{kind}'")
        return changesets

    def _include(self, value: Any, path: Path, stack: List[Path]) -> List[Changeset]:
        author = None
        if isinstance(value, dict):
            author = value.get('author')
            value = value.get('file')
        if not isinstance(value, str) or not value:
            raise MalformedChangelogError(f"{path}: 'include' needs a file path")
        target = (path.parent / value).resolve()
        return self._load_file(target, stack, author)

    def _include_all(self, value: Any, path: Path, stack: List[Path]) -> List[Changeset]:
        author = None
        if isinstance(value, dict):
            author = value.get('author')
            value = value.get('path')
        if not isinstance(value, str) or not value:
            raise MalformedChangelogError(f"{path}: 'include_all' needs a directory path")
        directory = (path.parent / value).resolve()
        if not directory.is_dir():
            raise MalformedChangelogError(f"Included directory not found: {directory}")

        changesets = []
        # File name order is declaration order for include_all
        for file_path in sorted(directory.iterdir()):
            if not file_path.is_file():
                continue
            if file_path.suffix.lower() not in self.INCLUDABLE_SUFFIXES:
                logger.debug('Skipping non-changelog file: %s', file_path.name)
                continue
            changesets.extend(self._load_file(file_path.resolve(), stack, author))
        return changesets

    @staticmethod
    def _read(path: Path) -> str:
        try:
            return path.read_text(encoding='utf-8')
        except UnicodeDecodeError as e:
            raise MalformedChangelogError(f"{path} is not valid UTF-8: {e}") from e
        except OSError as e:
            raise MalformedChangelogError(f"Cannot read {path}: {e}") from e

    @staticmethod
    def _sql_text(value: Any, name: str, data: dict, path: Path) -> Optional[str]:
        """Accept a string or a list of strings for 'sql'/'rollback'."""
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            return '\n'.join(value)
        raise MalformedChangelogError(
            f"{path}: changeset {data['id']}::{data['author']} '{name}' must be a "
            f"string or a list of strings, got {type(value).__name__}",
            changeset_id=str(data['id']),
            author=str(data['author']),
        )

    def _changeset_from_mapping(self, data: Any, path: Path) -> Changeset:
        if not isinstance(data, dict):
            raise MalformedChangelogError(f"{path}: changeset must be a mapping")
        for required in ('id', 'author'):
            if data.get(required) in (None, ''):
                raise MalformedChangelogError(
                    f"{path}: changeset is missing '{required}'",
                    changeset_id=data.get('id'),
                    author=data.get('author'),
                )

        sql = data.get('sql')
        rollback = data.get('rollback')
        if data.get('file'):
            if sql is not None:
                raise MalformedChangelogError(
                    f"{path}: changeset has both 'sql' and 'file'",
                    changeset_id=data['id'],
                    author=data['author'],
                )
            body_path = (path.parent / data['file']).resolve()
            if not body_path.is_file():
                raise MalformedChangelogError(
                    f"Changeset file not found: {body_path}",
                    changeset_id=data['id'],
                    author=data['author'],
                )
            sql, file_rollback = self.parse_sections(
                self._read(body_path), body_path.name
            )
            if rollback is None:
                rollback = file_rollback

        sql = self._sql_text(sql, 'sql', data, path)
        rollback = self._sql_text(rollback, 'rollback', data, path)
        return self._build(data, sql, rollback, str(path))

    def _build(self, data: dict, sql: Optional[str], rollback: Optional[str], source: str) -> Changeset:
        preconditions = self._parse_preconditions(data.get('preconditions'), data, source)
        try:
            return Changeset(
                id=data['id'],
                author=data['author'],
                sql=sql or '',
                rollback_sql=rollback,
                preconditions=preconditions,
                source=source,
                comment=data.get('comment'),
            )
        except ValueError as e:
            raise MalformedChangelogError(
                f"{source}: {e}",
                changeset_id=str(data['id']),
                author=str(data['author']),
            ) from e

    def _parse_preconditions(self, raw: Any, data: dict, source: str) -> List[Precondition]:
        """
        Parse precondition entries.

        Each entry is a mapping with one check key and an optional
        ``on_fail``:

            preconditions:
              - table_not_exists: quotes
                on_fail: MARK_RAN
              - sql_check:
                  sql: SELECT COUNT(*) FROM users
                  expected: 0
        """
        if not raw:
            return []
        if not isinstance(raw, list):
            raw = [raw]

        preconditions = []
        for item in raw:
            try:
                if not isinstance(item, dict):
                    raise ValueError(f"precondition must be a mapping, got {item!r}")
                on_fail = OnFail(str(item.get('on_fail', 'HALT')).upper())
                checks = [k for k in item if k != 'on_fail']
                if len(checks) != 1:
                    raise ValueError(f"precondition needs exactly one check, got {checks}")
                kind = PreconditionKind(checks[0])
                value = item[checks[0]]
                if kind == PreconditionKind.SQL_CHECK:
                    if not isinstance(value, dict):
                        raise ValueError("sql_check needs 'sql' and 'expected'")
                    expected = value.get('expected')
                    preconditions.append(Precondition(
                        kind, sql=value.get('sql'),
                        expected=None if expected is None else str(expected),
                        on_fail=on_fail,
                    ))
                else:
                    preconditions.append(Precondition(kind, table=value, on_fail=on_fail))
            except ValueError as e:
                raise MalformedChangelogError(
                    f"{source}: invalid precondition: {e}",
                    changeset_id=str(data.get('id')),
                    author=str(data.get('author')),
                ) from e
        return preconditions

    def _is_formatted(self, content: str) -> bool:
        for line in content.splitlines():
            if line.strip():
                return bool(self.FORMATTED_HEADER.match(line.strip()))
        return False

    def parse_sections(self, content: str, filename: str) -> tuple[str, Optional[str]]:
        """
        Parse UP and DOWN sections from SQL file content.

        A file without an ``-- UP`` marker is taken whole as the body.
        The DOWN section is optional.

        Args:
            content: Full file content
            filename: Filename for error messages

        Returns:
            Tuple of (up_sql, down_sql or None)

        Raises:
            MalformedChangelogError: If DOWN appears before UP
        """
        lines = content.split('\n')

        up_start = None
        down_start = None

        for i, line in enumerate(lines):
            line_stripped = line.strip().upper()
            if line_stripped == self.UP_MARKER:
                up_start = i + 1
            elif line_stripped == self.DOWN_MARKER:
                down_start = i + 1

        if up_start is None:
            if down_start is not None:
                raise MalformedChangelogError(
                    f"Changeset file {filename} has '{self.DOWN_MARKER}' "
                    f"without '{self.UP_MARKER}'"
                )
            return content.strip(), None

        if down_start is None:
            return '\n'.join(lines[up_start:]).strip(), None

        if up_start >= down_start:
            raise MalformedChangelogError(
                f"Changeset file {filename} has '{self.DOWN_MARKER}' before "
                f"'{self.UP_MARKER}' (UP at line {up_start}, "
                f"DOWN at line {down_start})"
            )

        up_sql = '\n'.join(lines[up_start:down_start - 1]).strip()
        down_sql = '\n'.join(lines[down_start:]).strip()
        return up_sql, down_sql or None

    def parse_formatted_sql(self, content: str, source: str) -> List[Changeset]:
        """
        Parse a formatted SQL file into changesets.

        Every ``-- changeset author:id`` line starts a new changeset. Lines
        starting with ``-- rollback`` accumulate that changeset's rollback
        SQL; ``-- precondition`` lines add guards; all other lines are body.
        """
        blocks = []
        current = None

        for lineno, line in enumerate(content.split('\n'), start=1):
            stripped = line.strip()
            if self.FORMATTED_HEADER.match(stripped):
                continue

            match = self.CHANGESET_LINE.match(stripped)
            if match:
                author, changeset_id = match.groups()
                current = {'id': changeset_id, 'author': author, 'body': [],
                           'rollback': [], 'preconditions': [], 'comment': None}
                blocks.append(current)
                continue

            if current is None:
                if stripped and not stripped.startswith('--'):
                    raise MalformedChangelogError(
                        f"{source}:{lineno}: SQL before first '-- changeset' line"
                    )
                continue

            match = self.ROLLBACK_LINE.match(stripped)
            if match:
                if match.group(1).strip():
                    current['rollback'].append(match.group(1))
                continue

            match = self.PRECONDITION_LINE.match(stripped)
            if match:
                current['preconditions'].append(
                    self._parse_precondition_line(match.group(1), current, source, lineno)
                )
                continue

            match = self.COMMENT_LINE.match(stripped)
            if match:
                current['comment'] = match.group(1)
                continue

            current['body'].append(line)

        changesets = []
        for block in blocks:
            data = {'id': block['id'], 'author': block['author'], 'comment': block['comment']}
            rollback = '\n'.join(block['rollback']) if block['rollback'] else None
            changeset = self._build(data, '\n'.join(block['body']).strip(), rollback, source)
            changeset.preconditions = block['preconditions']
            changesets.append(changeset)
        return changesets

    def _parse_precondition_line(self, text: str, block: dict, source: str, lineno: int) -> Precondition:
        # table_exists <table> [on_fail:X] | sql_check <expected> <sql...> [on_fail:X]
        on_fail = OnFail.HALT
        match = re.search(r'\s+on_fail:(\w+)\s*$', text)
        try:
            if match:
                on_fail = OnFail(match.group(1).upper())
                text = text[:match.start()]
            parts = text.split(None, 2)
            kind = PreconditionKind(parts[0].lower())
            if kind == PreconditionKind.SQL_CHECK:
                if len(parts) < 3:
                    raise ValueError("sql_check needs '<expected> <sql>'")
                return Precondition(kind, sql=parts[2], expected=parts[1], on_fail=on_fail)
            if len(parts) != 2:
                raise ValueError(f"{kind.value} needs exactly one table name")
            return Precondition(kind, table=parts[1], on_fail=on_fail)
        except (ValueError, IndexError) as e:
            raise MalformedChangelogError(
                f"{source}:{lineno}: invalid precondition: {e}",
                changeset_id=block['id'],
                author=block['author'],
            ) from e
