"""Admission lock: a time-boxed claim record per conversation key.

The record is a lease, not a blocking primitive. `acquire` fails fast when a
live record of another owner exists; abandoned records expire after a TTL and
are removed by `reap_stale`. A short `filelock` guard serializes the
read-check-write section so two owners racing on the same key cannot both win.

Example:
    lock = AdmissionLock(root / ".threadlog" / "locks")
    if lock.acquire(key, owner="run-42", ttl=600):
        try:
            ...
        finally:
            lock.release(key, owner="run-42")
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
from collections.abc import Callable
from pathlib import Path

from filelock import FileLock, Timeout
from pydantic import BaseModel, ValidationError

from threadlog.infrastructure.files import atomic_write_text

logger = logging.getLogger(__name__)

_RECORD_SUFFIX = ".lock"
_GUARD_SUFFIX = ".guard"


class LockRecord(BaseModel):
    """Who holds a key and since when (epoch seconds)."""

    owner: str
    acquired_at: float
    pid: int | None = None
    host: str | None = None


class AdmissionLock:
    """Lease records under `locks_dir`, one per conversation key."""

    def __init__(
        self,
        locks_dir: Path,
        guard_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.locks_dir = Path(locks_dir)
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        self._guard_timeout = guard_timeout
        self._clock = clock

    def _record_path(self, key: str) -> Path:
        return self.locks_dir / f"{key}{_RECORD_SUFFIX}"

    def _guard(self, key: str) -> FileLock:
        return FileLock(str(self.locks_dir / f"{key}{_GUARD_SUFFIX}"), timeout=self._guard_timeout)

    def _read(self, path: Path) -> LockRecord | None:
        """Parsed record, or None if missing or unreadable."""
        try:
            return LockRecord.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, ValidationError, UnicodeDecodeError):
            logger.warning("Unreadable lock record %s", path)
            return None

    def _age(self, path: Path, record: LockRecord | None, now: float) -> float | None:
        """Seconds since acquisition; unreadable records are aged by mtime. None if gone."""
        if record is not None:
            return now - record.acquired_at
        try:
            return now - path.stat().st_mtime
        except FileNotFoundError:
            return None

    def holder(self, key: str) -> LockRecord | None:
        """Current record for key, live or not."""
        return self._read(self._record_path(key))

    def acquire(self, key: str, owner: str, ttl: float) -> bool:
        """
        Claim key for owner. Returns False if another owner holds a live record.
        Never waits for the holder to finish.
        """
        self.reap_stale(ttl)
        path = self._record_path(key)
        try:
            with self._guard(key):
                existing = self._read(path)
                now = self._clock()
                age = self._age(path, existing, now)
                if age is not None and age <= ttl:
                    if existing is None:
                        logger.info("Lock for %s is unreadable but fresh; denying %s", key, owner)
                        return False
                    if existing.owner != owner:
                        logger.info(
                            "Lock for %s held by %s (%.0fs old); denying %s",
                            key,
                            existing.owner,
                            age,
                            owner,
                        )
                        return False
                record = LockRecord(
                    owner=owner,
                    acquired_at=now,
                    pid=os.getpid(),
                    host=socket.gethostname(),
                )
                atomic_write_text(path, record.model_dump_json())
        except Timeout:
            logger.warning("Lock guard for %s busy; treating as denied for %s", key, owner)
            return False
        logger.info("Lock acquired for %s by %s", key, owner)
        return True

    def release(self, key: str, owner: str) -> bool:
        """Delete the record only if it still names owner. Returns True if deleted."""
        path = self._record_path(key)
        try:
            with self._guard(key):
                existing = self._read(path)
                if existing is None:
                    logger.info("No lock to release for %s", key)
                    return False
                if existing.owner != owner:
                    logger.warning(
                        "Not releasing lock for %s: held by %s, not %s",
                        key,
                        existing.owner,
                        owner,
                    )
                    return False
                path.unlink(missing_ok=True)
        except Timeout:
            logger.warning("Lock guard for %s busy; release by %s skipped", key, owner)
            return False
        logger.info("Lock released for %s by %s", key, owner)
        return True

    def reap_stale(self, ttl: float) -> int:
        """Remove records older than ttl. Returns the number removed."""
        reaped = 0
        for path in sorted(self.locks_dir.glob(f"*{_RECORD_SUFFIX}")):
            key = path.name[: -len(_RECORD_SUFFIX)]
            try:
                with self._guard(key):
                    record = self._read(path)
                    age = self._age(path, record, self._clock())
                    if age is None or age <= ttl:
                        continue
                    path.unlink(missing_ok=True)
            except Timeout:
                continue
            reaped += 1
            logger.warning(
                "Reaped stale lock for %s (owner=%s, age=%.0fs > ttl=%.0fs)",
                key,
                record.owner if record else "unknown",
                age,
                ttl,
            )
        return reaped
