#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Command line interface for the migration engine.

Usage:
    schemaledger --config schemaledger.yaml status
    schemaledger --database-url app.db --changelog db/changelog.yaml update
    schemaledger update --count 2 --dry-run
    schemaledger rollback --count 1
    schemaledger rollback --to 3::alice
    schemaledger validate
    schemaledger clear-checksums --yes
    schemaledger history
    schemaledger release-locks

Exit codes:
    0  success / up to date
    1  pending changesets (status only)
    2  execution or validation failure
    3  change lock held by another run
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .changelog import ChangelogLoader
from .checksum import ChecksumValidator, WarningLevel
from .config import Settings, configure_logger, load_settings, parse_log_level
from .database import TargetDatabase
from .errors import LockTimeoutError, SchemaLedgerError
from .executor import MigrationExecutor
from .ledger import MigrationLedger
from .lock import ChangeLock
from .rollback import RollbackEngine
from .status import ChangesetState, StatusReporter

EXIT_OK = 0
EXIT_PENDING = 1
EXIT_FAILURE = 2
EXIT_LOCKED = 3

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='schemaledger',
        description='Apply, track and roll back versioned database changesets',
    )
    parser.add_argument('--config', help='JSON or YAML config file')
    parser.add_argument('--database-url', help='Target database URL or SQLite file path')
    parser.add_argument('--changelog', help='Master changelog file')
    parser.add_argument('--principal', help='Identity recorded in the ledger')
    parser.add_argument('--lock-timeout', type=float,
                        help='Seconds to wait for the change lock')
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: from config, else INFO)'
    )
    parser.add_argument('--json', action='store_true', dest='as_json',
                        help='Print results as JSON')

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    subparsers.add_parser('status', help='Show applied/pending/drifted changesets')

    update = subparsers.add_parser('update', help='Apply pending changesets')
    update.add_argument('--count', type=int, help='Apply at most N pending changesets')
    update.add_argument('--dry-run', action='store_true',
                        help='Execute and roll back without recording anything')

    rollback = subparsers.add_parser('rollback', help='Roll back applied changesets')
    target = rollback.add_mutually_exclusive_group(required=True)
    target.add_argument('--count', type=int, help='Roll back the most recent N changesets')
    target.add_argument('--to', metavar='ID[::AUTHOR]',
                        help='Roll back everything applied after this changeset')
    rollback.add_argument('--dry-run', action='store_true',
                          help='Execute and roll back without recording anything')

    subparsers.add_parser('validate', help='Verify checksums and lint changesets')

    clear = subparsers.add_parser('clear-checksums',
                                  help='Re-baseline stored checksums to the current changelog')
    clear.add_argument('--yes', action='store_true',
                       help='Confirm accepting edits to applied changesets')

    subparsers.add_parser('history', help='Show every ledger entry, including rolled back')
    subparsers.add_parser('release-locks', help='Clear a change lock left by a crashed run')

    return parser


def parse_changeset_ref(value: str) -> tuple:
    """Split 'ID' or 'ID::AUTHOR' into (id, author or None)."""
    changeset_id, sep, author = value.partition('::')
    if not changeset_id or (sep and not author):
        raise ValueError(f"Invalid changeset reference: {value!r} (expected ID or ID::AUTHOR)")
    return changeset_id, author or None


def setup_logging(settings: Settings) -> None:
    """Route package logs through one handler at the configured level."""
    package_logger = logging.getLogger('schemaledger')
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    configure_logger(
        package_logger,
        log_file=settings.log_file,
        log_level=parse_log_level(settings.log_level),
    )


def _emit(args, data, text_lines) -> None:
    if args.as_json:
        print(json.dumps(data, indent=2, default=str))
    else:
        for line in text_lines:
            print(line)


async def cmd_status(args, settings, database, changelog) -> int:
    reporter = StatusReporter(
        database, MigrationLedger(database), ChecksumValidator(settings.normalization)
    )
    report = await reporter.report(changelog)

    lines = []
    for item in report.items:
        marker = {
            ChangesetState.APPLIED: 'applied ',
            ChangesetState.DRIFTED: 'DRIFTED ',
            ChangesetState.PENDING: 'pending ',
        }[item.state]
        lines.append(f"  {marker} {item.changeset.key}")
    for entry in report.unknown:
        lines.append(f"  unknown  {entry.key} (applied, not in changelog)")
    lines.append(
        f"{len(report.applied)} applied, {len(report.pending)} pending, "
        f"{len(report.drifted)} drifted: {report.state.value}"
    )
    _emit(args, report.to_dict(), lines)

    report.raise_for_drift()
    return EXIT_OK if report.is_up_to_date else EXIT_PENDING


def _executor(settings, database) -> MigrationExecutor:
    return MigrationExecutor(
        database,
        MigrationLedger(database),
        ChecksumValidator(settings.normalization),
        principal=settings.principal,
        lock_timeout=settings.lock_timeout,
        lock_poll_interval=settings.lock_poll_interval,
    )


async def cmd_update(args, settings, database, changelog) -> int:
    if args.count is not None and args.count < 1:
        raise ValueError(f"--count must be >= 1, got {args.count}")
    result = await _executor(settings, database).update(
        changelog, count=args.count, dry_run=args.dry_run
    )

    prefix = '[dry run] ' if result.dry_run else ''
    lines = [f"  {prefix}{r.action:<9} {r.changeset.key} ({r.duration_ms}ms)"
             for r in result.records]
    if result.dry_run:
        lines.append(f"Dry run: {len(result.records)} changeset(s) would be applied")
    elif not result.planned:
        lines.append('Database is up to date')
    else:
        lines.append(f"Applied {len(result.applied)} changeset(s)")
    _emit(args, result.to_dict(), lines)
    return EXIT_OK


async def cmd_rollback(args, settings, database, changelog) -> int:
    to_changeset = parse_changeset_ref(args.to) if args.to else None
    engine = RollbackEngine(
        database,
        MigrationLedger(database),
        ChecksumValidator(settings.normalization),
        principal=settings.principal,
        lock_timeout=settings.lock_timeout,
        lock_poll_interval=settings.lock_poll_interval,
    )
    result = await engine.rollback(
        changelog, count=args.count, to_changeset=to_changeset, dry_run=args.dry_run
    )

    prefix = '[dry run] ' if result.dry_run else ''
    lines = [f"  {prefix}rolled back {r.changeset.key} ({r.duration_ms}ms)"
             for r in result.records]
    if not result.planned:
        lines.append('Nothing to roll back')
    elif not result.dry_run:
        lines.append(f"Rolled back {len(result.rolled_back)} changeset(s)")
    _emit(args, result.to_dict(), lines)
    return EXIT_OK


async def cmd_validate(args, settings, database, changelog) -> int:
    result = await _executor(settings, database).validate(changelog)

    lines = [f"  {warning}" for warning in result.warnings]
    for entry in result.unknown:
        lines.append(f"  [WARNING] {entry.key} is applied but not in the changelog")
    errors = [w for w in result.warnings if w.level == WarningLevel.ERROR]
    lines.append(
        f"Checksums OK; {len(result.pending)} pending, "
        f"{len(result.warnings)} lint finding(s) ({len(errors)} error(s))"
    )
    _emit(args, {
        'pending': [cs.key for cs in result.pending],
        'warnings': [w.to_dict() for w in result.warnings],
        'unknown': [entry.to_dict() for entry in result.unknown],
    }, lines)
    return EXIT_OK


async def cmd_clear_checksums(args, settings, database, changelog) -> int:
    if not args.yes:
        print('clear-checksums accepts every edit made to applied changesets; '
              're-run with --yes to confirm', file=sys.stderr)
        return EXIT_FAILURE
    keys = await _executor(settings, database).clear_checksums(changelog)
    lines = [f"  re-baselined {key}" for key in keys]
    lines.append(f"Re-baselined {len(keys)} checksum(s)")
    _emit(args, {'rebaselined': keys}, lines)
    return EXIT_OK


async def cmd_history(args, settings, database, changelog) -> int:
    ledger = MigrationLedger(database)
    await ledger.ensure_tables(settings.lock_timeout, settings.lock_poll_interval)
    async with database.session() as session:
        entries = await ledger.history(session)

    lines = []
    for entry in entries:
        line = (f"  #{entry.order_executed:<4} {entry.status:<11} {entry.key} "
                f"applied {entry.applied_at:%Y-%m-%d %H:%M:%S} by {entry.applied_by}")
        if entry.rolled_back_at:
            line += f"; rolled back {entry.rolled_back_at:%Y-%m-%d %H:%M:%S} by {entry.rolled_back_by}"
        lines.append(line)
    lines.append(f"{len(entries)} ledger entr{'y' if len(entries) == 1 else 'ies'}")
    _emit(args, [entry.to_dict() for entry in entries], lines)
    return EXIT_OK


async def cmd_release_locks(args, settings, database, changelog) -> int:
    await database.ensure_ledger_tables(settings.lock_timeout, settings.lock_poll_interval)
    previous = await ChangeLock(database, principal=settings.principal).force_release()
    text = f"Released change lock held by {previous}" if previous else 'Change lock was not held'
    _emit(args, {'released': previous}, [text])
    return EXIT_OK


COMMANDS = {
    'status': (cmd_status, True),
    'update': (cmd_update, True),
    'rollback': (cmd_rollback, True),
    'validate': (cmd_validate, True),
    'clear-checksums': (cmd_clear_checksums, True),
    'history': (cmd_history, False),
    'release-locks': (cmd_release_locks, False),
}


async def run(args, settings: Settings) -> int:
    """Execute one command against the configured target."""
    handler, needs_changelog = COMMANDS[args.command]
    settings.require('database_url')

    changelog = None
    if needs_changelog:
        settings.require('changelog')
        changelog = ChangelogLoader(default_author=settings.default_author).load(settings.changelog)

    database = TargetDatabase(settings.database_url)
    try:
        return await handler(args, settings, database, changelog)
    finally:
        await database.close()


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(
            args.config,
            database_url=args.database_url,
            changelog=args.changelog,
            principal=args.principal,
            lock_timeout=args.lock_timeout,
            log_level=args.log_level,
        )
        setup_logging(settings)
        return asyncio.run(run(args, settings))
    except LockTimeoutError as e:
        print(f"ERROR [{e.code}] {e.message}", file=sys.stderr)
        return EXIT_LOCKED
    except SchemaLedgerError as e:
        print(f"ERROR [{e.code}] {e.message}", file=sys.stderr)
        return EXIT_FAILURE
    except SQLAlchemyError as e:
        logger.debug('Database error', exc_info=True)
        print(f"ERROR [DATABASE_ERROR] {e}", file=sys.stderr)
        return EXIT_FAILURE
    except ValueError as e:
        print(f"ERROR [INVALID_ARGUMENT] {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
