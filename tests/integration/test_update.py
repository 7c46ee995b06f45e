#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Integration tests for MigrationExecutor.update against SQLite.

Tests ordered application, idempotence, partial failure and resumption,
drift detection, preconditions, dry runs and count limits.
"""
import pytest

from schemaledger.errors import ChecksumDriftError, ExecutionError, PreconditionFailedError
from schemaledger.executor import RunState
from schemaledger.models import EXEC_TYPE_MARK_RAN
from schemaledger.status import OverallState
from tests.fixtures.builders import applied_keys, changeset, table_changeset, table_exists


class TestApply:
    """Test applying pending changesets."""

    async def test_fresh_target(self, engine, make_changelog):
        changelog = make_changelog([table_changeset(x) for x in 'abc'])

        result = await engine.executor.update(changelog)

        assert result.state == RunState.COMPLETED
        assert [cs.key for cs in result.applied] == ['a::alice', 'b::alice', 'c::alice']
        for name in 'abc':
            assert await table_exists(engine.database, f't_{name}')

        async with engine.database.session() as session:
            entries = await engine.ledger.list_applied(session)
        assert [e.order_executed for e in entries] == [1, 2, 3]
        assert all(e.applied_by == 'tester' for e in entries)
        assert all(e.checksum == engine.validator.fingerprint(changelog.get(e.changeset_id, e.author))
                   for e in entries)

    async def test_idempotent(self, engine, make_changelog):
        changelog = make_changelog([table_changeset(x) for x in 'abc'])
        await engine.executor.update(changelog)

        result = await engine.executor.update(changelog)

        assert result.planned == []
        assert result.applied == []
        assert len(await applied_keys(engine)) == 3

    async def test_appended_changeset_applied(self, engine, make_changelog):
        await engine.executor.update(make_changelog([table_changeset(x) for x in 'ab']))

        changelog = make_changelog([table_changeset(x) for x in 'abd'])
        report = await engine.reporter.report(changelog)
        assert [item.changeset.id for item in report.pending] == ['d']

        result = await engine.executor.update(changelog)
        assert [cs.id for cs in result.applied] == ['d']

    async def test_colon_in_literal(self, engine, make_changelog):
        changelog = make_changelog([
            changeset('1', "CREATE TABLE notes (body TEXT); "
                           "INSERT INTO notes VALUES ('ratio 1:2 at 10:30');"),
        ])
        await engine.executor.update(changelog)

        async with engine.database.session() as session:
            assert await engine.database.scalar(session, 'SELECT body FROM notes') == 'ratio 1:2 at 10:30'

    async def test_count_limit(self, engine, make_changelog):
        changelog = make_changelog([table_changeset(x) for x in 'abc'])

        result = await engine.executor.update(changelog, count=2)

        assert [cs.id for cs in result.applied] == ['a', 'b']
        assert not await table_exists(engine.database, 't_c')


class TestPartialFailure:
    """Test failure halting and resumption."""

    async def test_failure_at_third_of_five(self, engine, make_changelog):
        changesets = [table_changeset(x) for x in 'abcde']
        changesets[2] = changeset(
            'c',
            'CREATE TABLE t_c (id INTEGER); INSERT INTO missing_table VALUES (1);',
            'DROP TABLE t_c;',
        )
        changelog = make_changelog(changesets)

        with pytest.raises(ExecutionError) as exc_info:
            await engine.executor.update(changelog)

        error = exc_info.value
        assert error.changeset_key == 'c::alice'
        assert error.details['applied'] == ['a::alice', 'b::alice']
        failed = error.details['records'][-1]
        assert [r['id'] for r in error.details['records']] == ['a', 'b', 'c']
        assert failed['success'] is False
        assert 'missing_table' in failed['error']
        assert error.original_error is not None
        assert engine.executor.state == RunState.FAILED

        assert await applied_keys(engine) == ['a::alice', 'b::alice']
        # The failed changeset's DDL was rolled back with it
        assert not await table_exists(engine.database, 't_c')
        assert not await table_exists(engine.database, 't_d')

        changesets[2] = table_changeset('c')
        result = await engine.executor.update(make_changelog(changesets))

        assert [cs.id for cs in result.applied] == ['c', 'd', 'e']
        assert len(await applied_keys(engine)) == 5

    async def test_lock_released_after_failure(self, engine, make_changelog):
        changelog = make_changelog([changeset('bad', 'INSERT INTO missing_table VALUES (1);')])
        with pytest.raises(ExecutionError):
            await engine.executor.update(changelog)

        result = await engine.executor.update(make_changelog([table_changeset('a')]))
        assert [cs.id for cs in result.applied] == ['a']


class TestDrift:
    """Test checksum drift blocking updates."""

    async def test_drift_blocks_update(self, engine, make_changelog):
        await engine.executor.update(make_changelog([table_changeset(x) for x in 'ab']))

        edited = [
            table_changeset('a'),
            changeset('b', 'CREATE TABLE t_b (id BIGINT);', 'DROP TABLE t_b;'),
            table_changeset('c'),
        ]
        changelog = make_changelog(edited)

        with pytest.raises(ChecksumDriftError) as exc_info:
            await engine.executor.update(changelog)

        assert exc_info.value.changeset_key == 'b::alice'
        assert not await table_exists(engine.database, 't_c')

        report = await engine.reporter.report(changelog)
        assert report.state == OverallState.DRIFTED

    async def test_clear_checksums_rebaselines(self, engine, make_changelog):
        await engine.executor.update(make_changelog([table_changeset(x) for x in 'ab']))
        changelog = make_changelog([
            table_changeset('a'),
            changeset('b', 'CREATE TABLE t_b (id INTEGER PRIMARY KEY, label TEXT); -- edited',
                      'DROP TABLE t_b;'),
        ])

        assert await engine.executor.clear_checksums(changelog) == ['b::alice']

        report = await engine.reporter.report(changelog)
        assert report.is_up_to_date
        assert await engine.executor.clear_checksums(changelog) == []

    async def test_validate_reports_drift_and_lint(self, engine, make_changelog):
        await engine.executor.update(make_changelog([table_changeset('a')]))

        result = await engine.executor.validate(make_changelog([
            table_changeset('a'),
            changeset('drop', 'DROP TABLE t_a;'),
        ]))
        assert [cs.id for cs in result.pending] == ['drop']
        assert any(w.category == 'destructive' for w in result.warnings)

        with pytest.raises(ChecksumDriftError):
            await engine.executor.validate(make_changelog([
                changeset('a', 'CREATE TABLE t_a (id INTEGER);'),
            ]))


class TestPreconditions:
    """Test precondition handling during update."""

    async def test_mark_ran(self, engine, make_changelog):
        async with engine.database.session() as session:
            await engine.database.execute_sql(session, 'CREATE TABLE legacy (id INTEGER);')

        changelog = make_changelog([changeset(
            'legacy', 'CREATE TABLE legacy (id INTEGER);', 'DROP TABLE legacy;',
            preconditions=[{'table_not_exists': 'legacy', 'on_fail': 'MARK_RAN'}],
        )])
        result = await engine.executor.update(changelog)

        assert result.records[0].action == 'mark_ran'
        async with engine.database.session() as session:
            entry = (await engine.ledger.list_applied(session))[0]
        assert entry.exec_type == EXEC_TYPE_MARK_RAN

    async def test_skip_ends_run(self, engine, make_changelog):
        changelog = make_changelog([
            table_changeset('a'),
            changeset('needs-users', 'CREATE INDEX idx_users ON users(id);',
                      preconditions=[{'table_exists': 'users', 'on_fail': 'SKIP'}]),
            table_changeset('b'),
        ])
        result = await engine.executor.update(changelog)

        assert result.state == RunState.COMPLETED
        assert [r.action for r in result.records] == ['apply', 'skip']
        assert [cs.id for cs in result.applied] == ['a']
        assert not await table_exists(engine.database, 't_b')
        report = await engine.reporter.report(changelog)
        assert [item.changeset.id for item in report.pending] == ['needs-users', 'b']

    async def test_skipped_changeset_applied_in_changelog_order(self, engine, make_changelog):
        changelog = make_changelog([
            changeset('gated', 'CREATE TABLE t_gated (id INTEGER);',
                      preconditions=[{'table_exists': 'gate', 'on_fail': 'SKIP'}]),
            table_changeset('b'),
        ])
        await engine.executor.update(changelog)
        assert await applied_keys(engine) == []

        async with engine.database.session() as session:
            await engine.database.execute_sql(session, 'CREATE TABLE gate (id INTEGER)')
        await engine.executor.update(changelog)

        async with engine.database.session() as session:
            entries = await engine.ledger.list_applied(session)
        assert [(e.order_executed, e.changeset_id) for e in entries] == [(1, 'gated'), (2, 'b')]

    async def test_dry_run_stops_at_skip(self, engine, make_changelog):
        changelog = make_changelog([
            changeset('gated', 'CREATE TABLE t_gated (id INTEGER);',
                      preconditions=[{'table_exists': 'gate', 'on_fail': 'SKIP'}]),
            table_changeset('b'),
        ])
        result = await engine.executor.update(changelog, dry_run=True)
        assert [r.action for r in result.records] == ['skip']

    async def test_halt(self, engine, make_changelog):
        changelog = make_changelog([
            table_changeset('a'),
            changeset('guarded', 'DELETE FROM t_a;',
                      preconditions=[{'sql_check': {'sql': 'SELECT COUNT(*) FROM t_a',
                                                    'expected': 5}}]),
            table_changeset('c'),
        ])

        with pytest.raises(PreconditionFailedError) as exc_info:
            await engine.executor.update(changelog)

        assert exc_info.value.changeset_key == 'guarded::alice'
        assert await applied_keys(engine) == ['a::alice']

    async def test_sql_check_passes(self, engine, make_changelog):
        changelog = make_changelog([
            table_changeset('a'),
            changeset('guarded', 'DELETE FROM t_a;',
                      preconditions=[{'sql_check': {'sql': 'SELECT COUNT(*) FROM t_a',
                                                    'expected': 0}}]),
        ])
        result = await engine.executor.update(changelog)
        assert [cs.id for cs in result.applied] == ['a', 'guarded']


class TestDryRun:
    """Test dry-run mode."""

    async def test_nothing_committed(self, engine, make_changelog):
        changelog = make_changelog([table_changeset(x) for x in 'ab'])

        result = await engine.executor.update(changelog, dry_run=True)

        assert result.dry_run
        assert [r.changeset.id for r in result.records] == ['a', 'b']
        assert all(r.dry_run for r in result.records)
        assert result.applied == []
        assert await applied_keys(engine) == []
        assert not await table_exists(engine.database, 't_a')

    async def test_dry_run_surfaces_failures(self, engine, make_changelog):
        changelog = make_changelog([
            table_changeset('a'),
            changeset('bad', 'INSERT INTO missing_table VALUES (1);'),
        ])
        with pytest.raises(ExecutionError):
            await engine.executor.update(changelog, dry_run=True)
        assert not await table_exists(engine.database, 't_a')
