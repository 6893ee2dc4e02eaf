"""Stack lock manager built on the store's conditional write.

One lock record per stack at '{stack}/lock':

    {"holder": "...", "token": 7, "acquired_at": ..., "expires_at": ...,
     "released": false}

Acquire succeeds only when no unexpired, unreleased lock exists, and only
through a conditional write against the version it read, so two racing
acquirers cannot both win. The record is never deleted: release marks it
released, which keeps the token sequence monotonic across acquisitions.

A lock whose holder crashed is reclaimable once it expires. Reclaiming
trades safety for liveness: the old holder may still be running, and only
the fencing token on state writes stops it from corrupting state. Every
reclaim is logged as a warning.
"""

import getpass
import logging
import os
import socket
import time
from dataclasses import dataclass
from typing import Callable, Optional

from errors import LockHeldError, LockLostError, OptimisticLockConflictError
from stack_opr.store import StateStore

logger = logging.getLogger(__name__)


def lock_key(stack: str) -> str:
    return f'{stack}/lock'


def default_holder() -> str:
    """Holder identity: user@host:pid."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = 'unknown'
    return f'{user}@{socket.gethostname()}:{os.getpid()}'


@dataclass
class LockRecord:
    """Stored lock state.

    Attributes:
        holder: Identity of the holder
        token: Fencing token issued at acquisition
        acquired_at: Acquisition timestamp
        expires_at: Time after which the lock may be reclaimed
        released: True once the holder released it
    """
    holder: str
    token: int
    acquired_at: float
    expires_at: float
    released: bool = False

    def is_live(self, now: float) -> bool:
        return not self.released and self.expires_at > now

    def to_dict(self) -> dict:
        return {
            'holder': self.holder,
            'token': self.token,
            'acquired_at': self.acquired_at,
            'expires_at': self.expires_at,
            'released': self.released,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LockRecord':
        return cls(
            holder=data.get('holder', 'unknown'),
            token=int(data.get('token', 0)),
            acquired_at=float(data.get('acquired_at', 0)),
            expires_at=float(data.get('expires_at', 0)),
            released=bool(data.get('released', False)),
        )


class LockManager:
    """Acquires, refreshes and releases the lock for one stack.

    Attributes:
        store: Backing StateStore
        stack: Stack name
        holder: Our identity
        expiry_seconds: Lease length; refreshed after every applied resource
    """

    def __init__(
        self,
        store: StateStore,
        stack: str,
        holder: Optional[str] = None,
        expiry_seconds: float = 900.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.stack = stack
        self.holder = holder or default_holder()
        self.expiry_seconds = expiry_seconds
        self.clock = clock
        self._record: Optional[LockRecord] = None
        self._version = 0

    @property
    def key(self) -> str:
        return lock_key(self.stack)

    @property
    def held(self) -> bool:
        return self._record is not None

    @property
    def token(self) -> Optional[int]:
        """Fencing token of the lock we hold, or None."""
        return self._record.token if self._record else None

    def current(self) -> Optional[LockRecord]:
        """Read the stored lock record (held or not)."""
        record = self.store.read(self.key)
        return LockRecord.from_dict(record.data) if record else None

    def acquire(self) -> LockRecord:
        """Acquire the lock with a fresh fencing token.

        Raises:
            LockHeldError: If another holder has an unexpired lock, or won
                a concurrent acquisition
        """
        now = self.clock()
        stored = self.store.read(self.key)
        previous = LockRecord.from_dict(stored.data) if stored else None

        if previous is not None and not previous.released:
            if previous.is_live(now):
                raise LockHeldError(previous.holder, previous.acquired_at, previous.token)
            logger.warning(
                f"Reclaiming expired lock on {self.stack} from '{previous.holder}' "
                f"(token {previous.token}, expired {now - previous.expires_at:.0f}s ago)"
            )

        record = LockRecord(
            holder=self.holder,
            token=(previous.token + 1) if previous else 1,
            acquired_at=now,
            expires_at=now + self.expiry_seconds,
        )
        try:
            self._version = self.store.write(
                self.key, record.to_dict(), expected_version=stored.version if stored else 0
            )
        except OptimisticLockConflictError:
            winner = self.current()
            if winner is None:
                raise
            raise LockHeldError(winner.holder, winner.acquired_at, winner.token)

        self._record = record
        logger.info(f"Acquired lock on {self.stack} (token {record.token})")
        return record

    def acquire_with_retry(self, retries: int = 0, delay: float = 1.0,
                           sleep: Callable[[float], None] = time.sleep) -> LockRecord:
        """Acquire, retrying a held lock with exponential backoff.

        Raises:
            LockHeldError: If the lock is still held after all retries
        """
        attempt = 0
        while True:
            try:
                return self.acquire()
            except LockHeldError as e:
                if attempt >= retries:
                    raise
                wait = delay * (2 ** attempt)
                attempt += 1
                logger.info(f"Lock on {self.stack} held by '{e.holder}', "
                            f"retry {attempt}/{retries} in {wait:.1f}s")
                sleep(wait)

    def _verify_ours(self):
        if self._record is None:
            raise LockLostError(0)
        stored = self.store.read(self.key)
        if stored is None:
            raise LockLostError(self._record.token)
        current = LockRecord.from_dict(stored.data)
        if current.token != self._record.token or current.released:
            raise LockLostError(self._record.token, stored.data)
        return stored

    def refresh(self) -> LockRecord:
        """Extend our lease.

        Raises:
            LockLostError: If the lock was reclaimed or released
        """
        stored = self._verify_ours()
        record = LockRecord(
            holder=self._record.holder,
            token=self._record.token,
            acquired_at=self._record.acquired_at,
            expires_at=self.clock() + self.expiry_seconds,
        )
        try:
            self._version = self.store.write(self.key, record.to_dict(), expected_version=stored.version)
        except OptimisticLockConflictError:
            raise LockLostError(record.token, (self.store.read(self.key) or stored).data)
        self._record = record
        logger.debug(f"Refreshed lock on {self.stack} until {record.expires_at:.0f}")
        return record

    def release(self) -> None:
        """Release our lock.

        Raises:
            LockLostError: If the lock is no longer ours
        """
        stored = self._verify_ours()
        record = LockRecord.from_dict(stored.data)
        record.released = True
        try:
            self.store.write(self.key, record.to_dict(), expected_version=stored.version)
        except OptimisticLockConflictError:
            raise LockLostError(record.token, (self.store.read(self.key) or stored).data)
        self._record = None
        logger.info(f"Released lock on {self.stack} (token {record.token})")

    def force_unlock(self, token: int) -> bool:
        """Release a lock held by anyone, given its token (operator recovery).

        Returns:
            True if a live lock was released, False if nothing was held

        Raises:
            LockLostError: If the stored token differs from `token`
        """
        stored = self.store.read(self.key)
        if stored is None:
            return False
        record = LockRecord.from_dict(stored.data)
        if record.released:
            return False
        if record.token != token:
            raise LockLostError(token, stored.data)
        record.released = True
        self.store.write(self.key, record.to_dict(), expected_version=stored.version)
        logger.warning(f"Force-unlocked {self.stack} (holder '{record.holder}', token {token})")
        return True
