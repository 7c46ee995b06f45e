#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Integration tests for the command line interface.

Runs ``main(argv)`` against a SQLite file and checks exit codes and
output for each command.
"""
import asyncio
import json

import pytest

from schemaledger.cli import (
    EXIT_FAILURE,
    EXIT_LOCKED,
    EXIT_OK,
    EXIT_PENDING,
    main,
    parse_changeset_ref,
)
from schemaledger.database import TargetDatabase
from schemaledger.lock import ChangeLock
from tests.fixtures.builders import changeset, table_changeset, write_changelog


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ('DATABASE_URL', 'CHANGELOG', 'PRINCIPAL', 'LOCK_TIMEOUT', 'LOG_LEVEL'):
        monkeypatch.delenv(f'SCHEMALEDGER_{name}', raising=False)


@pytest.fixture
def cli(tmp_path, db_path):
    """Run the CLI against the tmp_path target and changelog."""
    changelog_path = tmp_path / 'changelog.yaml'

    def _run(*args):
        return main([
            '--database-url', str(db_path),
            '--changelog', str(changelog_path),
            '--principal', 'cli-user',
            '--log-level', 'WARNING',
            *args,
        ])
    return _run


def hold_lock(db_path) -> str:
    """Take the change lock from a separate handle and leave it held."""
    async def _hold():
        database = TargetDatabase(str(db_path))
        try:
            await database.ensure_ledger_tables()
            lock = ChangeLock(database, principal='other-run')
            await lock.acquire()
            return lock.holder
        finally:
            await database.close()
    return asyncio.run(_hold())


class TestParseChangesetRef:
    """Test --to parsing."""

    def test_id_only(self):
        assert parse_changeset_ref('3') == ('3', None)

    def test_id_and_author(self):
        assert parse_changeset_ref('3::alice') == ('3', 'alice')

    @pytest.mark.parametrize('value', ['', '::alice', '3::'])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_changeset_ref(value)


class TestStatusAndUpdate:
    """Test status/update exit codes."""

    def test_pending_then_up_to_date(self, cli, tmp_path, capsys):
        write_changelog(tmp_path, [table_changeset(x) for x in 'abc'])

        assert cli('status') == EXIT_PENDING
        assert 'pending' in capsys.readouterr().out

        assert cli('update') == EXIT_OK
        assert 'Applied 3 changeset(s)' in capsys.readouterr().out

        assert cli('status') == EXIT_OK
        assert cli('update') == EXIT_OK
        assert 'up to date' in capsys.readouterr().out

    def test_status_json(self, cli, tmp_path, capsys):
        write_changelog(tmp_path, [table_changeset('a')])
        assert cli('--json', 'status') == EXIT_PENDING

        data = json.loads(capsys.readouterr().out)
        assert data['state'] == 'pending'
        assert data['changesets'][0]['id'] == 'a'

    def test_update_count_and_dry_run(self, cli, tmp_path, capsys):
        write_changelog(tmp_path, [table_changeset(x) for x in 'abc'])

        assert cli('update', '--dry-run') == EXIT_OK
        assert 'would be applied' in capsys.readouterr().out
        assert cli('update', '--count', '1') == EXIT_OK
        capsys.readouterr()

        assert cli('--json', 'status') == EXIT_PENDING
        states = [c['state'] for c in json.loads(capsys.readouterr().out)['changesets']]
        assert states == ['applied', 'pending', 'pending']

    def test_execution_failure(self, cli, tmp_path, capsys):
        write_changelog(tmp_path, [
            table_changeset('a'),
            changeset('bad', 'INSERT INTO missing_table VALUES (1);'),
        ])
        assert cli('update') == EXIT_FAILURE
        assert 'ERROR [EXECUTION_FAILED]' in capsys.readouterr().err

    def test_drift(self, cli, tmp_path, capsys):
        write_changelog(tmp_path, [table_changeset('a')])
        assert cli('update') == EXIT_OK

        write_changelog(tmp_path, [changeset('a', 'CREATE TABLE t_a (id BIGINT);', 'DROP TABLE t_a;')])
        capsys.readouterr()

        assert cli('status') == EXIT_FAILURE
        assert 'ERROR [CHECKSUM_DRIFT]' in capsys.readouterr().err
        assert cli('update') == EXIT_FAILURE
        assert cli('validate') == EXIT_FAILURE

        assert cli('clear-checksums') == EXIT_FAILURE
        assert cli('clear-checksums', '--yes') == EXIT_OK
        assert cli('status') == EXIT_OK

    def test_malformed_changelog(self, cli, tmp_path, capsys):
        write_changelog(tmp_path, [table_changeset('a'), table_changeset('a')])
        assert cli('status') == EXIT_FAILURE
        assert 'ERROR [MALFORMED_CHANGELOG]' in capsys.readouterr().err

    def test_lock_contention(self, cli, tmp_path, db_path, capsys):
        write_changelog(tmp_path, [table_changeset('a')])
        holder = hold_lock(db_path)

        assert cli('--lock-timeout', '0', 'update') == EXIT_LOCKED
        err = capsys.readouterr().err
        assert 'ERROR [LOCK_TIMEOUT]' in err
        assert holder in err

        # Status never takes the lock
        assert cli('status') == EXIT_PENDING

        assert cli('release-locks') == EXIT_OK
        assert 'other-run' in capsys.readouterr().out
        assert cli('update') == EXIT_OK

    def test_missing_database_url(self, tmp_path, capsys):
        write_changelog(tmp_path, [table_changeset('a')])
        assert main(['--changelog', str(tmp_path / 'changelog.yaml'), 'status']) == EXIT_FAILURE
        assert 'ERROR [CONFIGURATION_ERROR]' in capsys.readouterr().err

    def test_config_file(self, tmp_path, db_path, capsys):
        write_changelog(tmp_path, [table_changeset('a')])
        config = tmp_path / 'schemaledger.yaml'
        config.write_text(
            f"database_url: {db_path}\n"
            "changelog: changelog.yaml\n"
            "logging:\n"
            "  level: warning\n"
        )
        assert main(['--config', str(config), 'update']) == EXIT_OK
        assert main(['--config', str(config), 'status']) == EXIT_OK


class TestRollbackCommands:
    """Test rollback/history/validate commands."""

    def test_rollback_count_and_history(self, cli, tmp_path, capsys):
        write_changelog(tmp_path, [table_changeset(x) for x in 'abc'])
        assert cli('update') == EXIT_OK

        assert cli('rollback', '--count', '2') == EXIT_OK
        assert 'Rolled back 2 changeset(s)' in capsys.readouterr().out
        assert cli('status') == EXIT_PENDING

        capsys.readouterr()
        assert cli('--json', 'history') == EXIT_OK
        history = json.loads(capsys.readouterr().out)
        assert [(e['id'], e['status']) for e in history] == [
            ('a', 'applied'), ('b', 'rolled_back'), ('c', 'rolled_back'),
        ]
        assert history[1]['rolled_back_by'] == 'cli-user'

    def test_rollback_to(self, cli, tmp_path, capsys):
        write_changelog(tmp_path, [table_changeset(x) for x in 'abc'])
        assert cli('update') == EXIT_OK

        assert cli('rollback', '--to', 'a::alice') == EXIT_OK
        capsys.readouterr()
        assert cli('--json', 'status') == EXIT_PENDING
        states = [c['state'] for c in json.loads(capsys.readouterr().out)['changesets']]
        assert states == ['applied', 'pending', 'pending']

    def test_no_rollback_defined(self, cli, tmp_path, capsys):
        write_changelog(tmp_path, [table_changeset('a', rollback=False)])
        assert cli('update') == EXIT_OK

        assert cli('rollback', '--count', '1') == EXIT_FAILURE
        assert 'ERROR [NO_ROLLBACK_DEFINED]' in capsys.readouterr().err

    def test_rollback_requires_target(self, cli, tmp_path):
        write_changelog(tmp_path, [table_changeset('a')])
        with pytest.raises(SystemExit):
            cli('rollback')

    def test_validate(self, cli, tmp_path, capsys):
        write_changelog(tmp_path, [changeset('drop', 'DROP TABLE legacy;')])
        assert cli('--json', 'validate') == EXIT_OK

        data = json.loads(capsys.readouterr().out)
        assert data['pending'] == ['drop::alice']
        assert {w['category'] for w in data['warnings']} == {'destructive', 'rollback'}
