"""
Changelog and engine builders shared by the test suites.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import yaml

from schemaledger.changelog import ChangelogLoader
from schemaledger.checksum import ChecksumValidator
from schemaledger.database import TargetDatabase
from schemaledger.executor import MigrationExecutor
from schemaledger.ledger import MigrationLedger
from schemaledger.rollback import RollbackEngine
from schemaledger.status import StatusReporter


def changeset(cs_id: str, sql: str, rollback: Optional[str] = None,
              author: str = 'alice', **extra) -> dict:
    """Build one changeset mapping for a YAML changelog."""
    data = {'id': cs_id, 'author': author, 'sql': sql}
    if rollback is not None:
        data['rollback'] = rollback
    data.update(extra)
    return data


def table_changeset(name: str, author: str = 'alice', rollback: bool = True) -> dict:
    """Changeset creating table ``t_<name>`` with a matching DROP rollback."""
    return changeset(
        name,
        f'CREATE TABLE t_{name} (id INTEGER PRIMARY KEY, label TEXT);',
        f'DROP TABLE t_{name};' if rollback else None,
        author=author,
    )


def write_changelog(directory: Path, changesets: List[dict],
                    name: str = 'changelog.yaml') -> Path:
    """Write a YAML master changelog holding the given changesets."""
    path = Path(directory) / name
    document = {'changelog': [{'changeset': cs} for cs in changesets]}
    path.write_text(yaml.safe_dump(document, sort_keys=False), encoding='utf-8')
    return path


def load_changelog(directory: Path, changesets: List[dict]):
    """Write and load a changelog in one step."""
    return ChangelogLoader().load(write_changelog(directory, changesets))


@dataclass
class Components:
    database: TargetDatabase
    ledger: MigrationLedger
    validator: ChecksumValidator
    executor: MigrationExecutor
    rollback: RollbackEngine
    reporter: StatusReporter


def build_components(database: TargetDatabase, principal: str = 'tester',
                     lock_timeout: float = 2.0) -> Components:
    ledger = MigrationLedger(database)
    validator = ChecksumValidator()
    return Components(
        database=database,
        ledger=ledger,
        validator=validator,
        executor=MigrationExecutor(
            database, ledger, validator,
            principal=principal, lock_timeout=lock_timeout, lock_poll_interval=0.05,
        ),
        rollback=RollbackEngine(
            database, ledger, validator,
            principal=principal, lock_timeout=lock_timeout, lock_poll_interval=0.05,
        ),
        reporter=StatusReporter(database, ledger, validator),
    )


async def table_exists(database: TargetDatabase, name: str) -> bool:
    async with database.session() as session:
        return await database.table_exists(session, name)


async def applied_keys(components: Components) -> List[str]:
    async with components.database.session() as session:
        entries = await components.ledger.list_applied(session)
    return [entry.key for entry in entries]
