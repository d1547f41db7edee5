"""Best-effort lock release on SIGTERM/SIGINT."""

from __future__ import annotations

import signal
from pathlib import Path

import pytest

from threadlog.infrastructure.lock import AdmissionLock
from threadlog.orchestration.shutdown import release_on_termination


@pytest.fixture
def lock(tmp_path: Path) -> AdmissionLock:
    lock = AdmissionLock(tmp_path / "locks")
    assert lock.acquire("k1", "run-a", ttl=600)
    return lock


def test_sigterm_releases_lock(lock: AdmissionLock) -> None:
    previous = signal.getsignal(signal.SIGTERM)
    with pytest.raises(SystemExit):
        with release_on_termination(lock, "k1", "run-a"):
            handler = signal.getsignal(signal.SIGTERM)
            assert callable(handler)
            handler(signal.SIGTERM, None)
    assert lock.holder("k1") is None
    assert signal.getsignal(signal.SIGTERM) == previous


def test_sigint_releases_lock_and_interrupts(lock: AdmissionLock) -> None:
    with pytest.raises(KeyboardInterrupt):
        with release_on_termination(lock, "k1", "run-a"):
            signal.getsignal(signal.SIGINT)(signal.SIGINT, None)
    assert lock.holder("k1") is None


def test_normal_exit_leaves_lock_to_caller(lock: AdmissionLock) -> None:
    with release_on_termination(lock, "k1", "run-a"):
        pass
    assert lock.holder("k1").owner == "run-a"


def test_does_not_release_someone_elses_lock(tmp_path: Path) -> None:
    lock = AdmissionLock(tmp_path / "locks")
    lock.acquire("k1", "newer", ttl=600)
    with pytest.raises(SystemExit):
        with release_on_termination(lock, "k1", "superseded"):
            signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)
    assert lock.holder("k1").owner == "newer"
