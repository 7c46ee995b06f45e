#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Unit tests for changeset data models and engine errors.
"""
import pytest

from schemaledger.changeset import (
    Changelog,
    Changeset,
    OnFail,
    Precondition,
    PreconditionKind,
)
from schemaledger.errors import (
    ChecksumDriftError,
    LockTimeoutError,
    MalformedChangelogError,
    SchemaLedgerError,
)


class TestChangeset:
    """Test Changeset validation and identity."""

    def test_key_and_identity(self):
        cs = Changeset(id='1', author='alice', sql='CREATE TABLE t (id INTEGER);')
        assert cs.key == '1::alice'
        assert cs.identity == ('1', 'alice')

    def test_numeric_id_coerced_to_string(self):
        cs = Changeset(id=7, author='alice', sql='SELECT 1')
        assert cs.id == '7'

    def test_blank_rollback_becomes_none(self):
        cs = Changeset(id='1', author='alice', sql='SELECT 1', rollback_sql='   \n')
        assert cs.rollback_sql is None
        assert cs.has_rollback is False

    @pytest.mark.parametrize('kwargs', [
        {'id': '', 'author': 'alice', 'sql': 'SELECT 1'},
        {'id': '1', 'author': ' ', 'sql': 'SELECT 1'},
        {'id': '1', 'author': 'alice', 'sql': '  '},
        {'id': '1', 'author': 'alice', 'sql': 42},
        {'id': '1', 'author': 'alice', 'sql': 'SELECT 1', 'rollback_sql': {'x': 1}},
    ])
    def test_missing_fields_rejected(self, kwargs):
        with pytest.raises(ValueError):
            Changeset(**kwargs)


class TestPrecondition:
    """Test Precondition validation."""

    def test_table_check_requires_table(self):
        with pytest.raises(ValueError, match='requires'):
            Precondition(PreconditionKind.TABLE_EXISTS)

    def test_sql_check_requires_expected(self):
        with pytest.raises(ValueError):
            Precondition(PreconditionKind.SQL_CHECK, sql='SELECT 1')

    def test_default_on_fail_is_halt(self):
        pre = Precondition(PreconditionKind.TABLE_NOT_EXISTS, table='quotes')
        assert pre.on_fail == OnFail.HALT
        assert pre.describe() == 'table_not_exists quotes'


class TestChangelog:
    """Test Changelog lookups."""

    @pytest.fixture
    def changelog(self):
        return Changelog([
            Changeset(id='1', author='alice', sql='SELECT 1'),
            Changeset(id='1', author='bob', sql='SELECT 2'),
            Changeset(id='2', author='alice', sql='SELECT 3'),
        ])

    def test_order_preserved(self, changelog):
        assert [cs.key for cs in changelog] == ['1::alice', '1::bob', '2::alice']
        assert len(changelog) == 3
        assert changelog[2].key == '2::alice'

    def test_get_by_identity(self, changelog):
        assert changelog.get('1', 'bob').sql == 'SELECT 2'
        assert changelog.get('3', 'alice') is None


class TestErrors:
    """Test error codes and structured output."""

    def test_base_error_carries_code(self):
        error = MalformedChangelogError('bad', changeset_id='1', author='alice')
        assert error.code == 'MALFORMED_CHANGELOG'
        assert str(error) == '[MALFORMED_CHANGELOG] bad'
        assert error.changeset_key == '1::alice'
        assert isinstance(error, SchemaLedgerError)

    def test_to_dict(self):
        error = ChecksumDriftError('drift', changeset_id='1', author='alice',
                                   expected='aaa', actual='bbb', details={'source': 'x'})
        data = error.to_dict()
        assert data['code'] == 'CHECKSUM_DRIFT'
        assert data['changeset'] == {'id': '1', 'author': 'alice'}
        assert data['details'] == {'source': 'x'}
        assert error.expected == 'aaa'
        assert error.actual == 'bbb'

    def test_lock_timeout_has_no_changeset(self):
        error = LockTimeoutError('busy', timeout=5.0, locked_by='ops@host:1:abc')
        assert error.changeset_key is None
        assert error.locked_by == 'ops@host:1:abc'
        assert 'changeset' not in error.to_dict()
