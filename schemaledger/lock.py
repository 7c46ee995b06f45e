"""
Change lock serializing migration runs against one target.

A single row in ``schemaledger_lock`` is taken with an atomic conditional
UPDATE. Waiters poll until the row frees up or the bounded wait expires.
Stale locks (e.g. from a killed process) are never taken over
automatically; ``release-locks`` clears them explicitly.
"""

import asyncio
import logging
import os
import socket
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from .database import TargetDatabase
from .errors import LockTimeoutError
from .models import LOCK_ROW_ID, ChangeLockRow

logger = logging.getLogger(__name__)


def make_holder_id(principal: str) -> str:
    """Identity written into the lock row: principal@host:pid:nonce."""
    return f"{principal}@{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class ChangeLock:
    """
    Exclusive lock on a target database.

    Usable as an async context manager; the lock is released on exit
    whether the body succeeded or raised.

    Attributes:
        database: Target database holding the lock row
        holder: Identity recorded while the lock is held
        timeout: Seconds to wait before raising LockTimeoutError
        poll_interval: Seconds between acquisition attempts

    Example:
        lock = ChangeLock(database, principal='deploy', timeout=30)
        async with lock:
            ...  # plan and apply
    """

    def __init__(
        self,
        database: TargetDatabase,
        principal: str = 'system',
        timeout: float = 30.0,
        poll_interval: float = 0.5,
    ):
        self.database = database
        self.holder = make_holder_id(principal)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.held = False

    async def _try_acquire(self) -> bool:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    update(ChangeLockRow)
                    .where(
                        ChangeLockRow.id == LOCK_ROW_ID,
                        ChangeLockRow.locked.is_(False),
                    )
                    .values(
                        locked=True,
                        locked_by=self.holder,
                        locked_at=datetime.now(timezone.utc),
                    )
                )
                return result.rowcount == 1
        except OperationalError as e:
            # SQLite reports a concurrent writer as "database is locked"
            logger.debug('Lock attempt hit database contention: %s', e)
            return False

    async def acquire(self) -> None:
        """
        Acquire the lock, waiting up to ``timeout`` seconds.

        Raises:
            LockTimeoutError: If another run still holds the lock
        """
        deadline = time.monotonic() + self.timeout
        waiting_logged = False

        while True:
            if await self._try_acquire():
                self.held = True
                logger.info('Acquired change lock (%s)', self.holder)
                return

            if not waiting_logged:
                holder = await self.current_holder()
                logger.info('Waiting for change lock held by %s', holder)
                waiting_logged = True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                holder = await self.current_holder()
                raise LockTimeoutError(
                    f"Could not acquire change lock within {self.timeout:g}s "
                    f"(held by {holder})",
                    timeout=self.timeout,
                    locked_by=holder,
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def release(self) -> None:
        """Release the lock if this instance holds it."""
        if not self.held:
            return
        async with self.database.session() as session:
            result = await session.execute(
                update(ChangeLockRow)
                .where(
                    ChangeLockRow.id == LOCK_ROW_ID,
                    ChangeLockRow.locked_by == self.holder,
                )
                .values(locked=False, locked_by=None, locked_at=None)
            )
        self.held = False
        if result.rowcount != 1:
            logger.warning('Change lock was no longer held by %s at release', self.holder)
        else:
            logger.info('Released change lock (%s)', self.holder)

    async def current_holder(self) -> Optional[str]:
        """Who holds the lock right now (None if free)."""
        async with self.database.session() as session:
            row = await session.scalar(
                select(ChangeLockRow).where(ChangeLockRow.id == LOCK_ROW_ID)
            )
            if row is None or not row.locked:
                return None
            return row.locked_by

    async def force_release(self) -> Optional[str]:
        """
        Clear the lock regardless of holder.

        Operator action for locks left behind by crashed runs.

        Returns:
            The previous holder (None if the lock was free)
        """
        previous = await self.current_holder()
        async with self.database.session() as session:
            await session.execute(
                update(ChangeLockRow)
                .where(ChangeLockRow.id == LOCK_ROW_ID)
                .values(locked=False, locked_by=None, locked_at=None)
            )
        if previous:
            logger.warning('Forcibly released change lock held by %s', previous)
        return previous

    async def __aenter__(self) -> 'ChangeLock':
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
