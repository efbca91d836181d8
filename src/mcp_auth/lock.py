"""Cross-process authorization lock.

A lease file keyed by server hash and callback port records which
instance is driving the interactive flow (holder id, pid, host, expiry).
Reads and writes of the lease happen under a short ``fcntl.flock``
critical section on a sibling guard file, so two processes can never
both observe the lock as free and claim it. A lease whose expiry has
passed, or whose holder process on this host is gone, is reclaimable.
"""

import fcntl
import os
import socket
import time
import uuid
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

import psutil
from pydantic import ValidationError

from shared.logging import get_logger
from shared.models import LockLease, ServerIdentity

logger = get_logger(__name__)


class LockState(str, Enum):
    """Observed state of the authorization lock."""
    UNLOCKED = "unlocked"
    HELD_BY_OTHER = "held_by_other"
    HELD_BY_SELF = "held_by_self"


class AuthorizationLock:
    """
    Lease-based mutex meaning "an interactive flow is in progress".

    One instance per process and server; ``holder_id`` is unique per
    instance so two locks in one process still exclude each other.
    """

    def __init__(
        self,
        lock_dir: str | Path,
        identity: ServerIdentity,
        port: int,
        lease_seconds: float = 35.0
    ) -> None:
        self.lock_dir = Path(lock_dir).expanduser()
        self.identity = identity
        self.port = port
        self.lease_seconds = lease_seconds
        self.holder_id = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

        self.lease_file = self.lock_dir / f"{identity.hash}_{port}_lock.json"
        self.guard_file = self.lock_dir / f"{identity.hash}_{port}.lock"

    @contextmanager
    def _guard(self) -> Iterator[None]:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        with open(self.guard_file, "a") as fd:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)

    def _read_lease(self) -> Optional[LockLease]:
        try:
            return LockLease.model_validate_json(self.lease_file.read_text())
        except FileNotFoundError:
            return None
        except ValidationError:
            logger.warning("Discarding unreadable lock lease", path=str(self.lease_file))
            return None

    def _write_lease(self, lease: LockLease) -> None:
        tmp_path = self.lease_file.with_name(f".{self.lease_file.name}.{uuid.uuid4().hex}.tmp")
        tmp_path.write_text(lease.model_dump_json())
        os.replace(tmp_path, self.lease_file)

    def _is_stale(self, lease: LockLease, now: float) -> bool:
        if lease.is_expired(now):
            return True
        if lease.hostname == socket.gethostname() and not psutil.pid_exists(lease.pid):
            return True
        return False

    def _classify(self, lease: Optional[LockLease], now: float) -> LockState:
        if lease is None or self._is_stale(lease, now):
            return LockState.UNLOCKED
        if lease.holder_id == self.holder_id:
            return LockState.HELD_BY_SELF
        return LockState.HELD_BY_OTHER

    def state(self) -> LockState:
        """Inspect the lock without changing it."""
        with self._guard():
            return self._classify(self._read_lease(), time.time())

    def current_lease(self) -> Optional[LockLease]:
        """Return the lease on disk, stale or not."""
        with self._guard():
            return self._read_lease()

    def try_acquire(self) -> bool:
        """
        Attempt to claim the lock.

        Returns:
            True if this instance now holds the lock (including when it
            already did), False if another live holder owns it.
        """
        with self._guard():
            now = time.time()
            lease = self._read_lease()
            current = self._classify(lease, now)

            if current == LockState.HELD_BY_OTHER:
                logger.debug(
                    "Authorization lock held by another instance",
                    holder=lease.holder_id,
                    expires_in=round(lease.expires_at - now, 1)
                )
                return False

            if lease is not None and current == LockState.UNLOCKED:
                logger.info(
                    "Reclaiming stale authorization lock",
                    previous_holder=lease.holder_id,
                    server=self.identity.url
                )

            self._write_lease(LockLease(
                holder_id=self.holder_id,
                pid=os.getpid(),
                hostname=socket.gethostname(),
                port=self.port,
                acquired_at=now,
                expires_at=now + self.lease_seconds,
            ))
            return True

    def release(self) -> bool:
        """
        Release the lock if this instance holds it.

        Returns:
            True if a lease owned by this instance was removed
        """
        with self._guard():
            lease = self._read_lease()
            if lease is None or lease.holder_id != self.holder_id:
                return False
            self.lease_file.unlink(missing_ok=True)
            logger.debug("Authorization lock released", server=self.identity.url)
            return True
