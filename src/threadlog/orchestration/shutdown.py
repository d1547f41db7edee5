"""Best-effort admission lock release when the process is terminated.

There is no in-band cancellation: a superseded execution is killed from
outside. If SIGTERM/SIGINT or interpreter exit reaches us first, release the
lock so the newer execution need not wait out the TTL. If nothing runs, the
lease expires and reap_stale cleans it up.
"""

from __future__ import annotations

import atexit
import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from threadlog.infrastructure.lock import AdmissionLock

logger = logging.getLogger(__name__)

_SIGNALS = (signal.SIGTERM, signal.SIGINT)


@contextmanager
def release_on_termination(lock: AdmissionLock, key: str, owner: str) -> Iterator[None]:
    """Install SIGTERM/SIGINT and atexit hooks releasing key for owner while the block runs."""
    released = threading.Event()

    def _release() -> None:
        if released.is_set():
            return
        released.set()
        try:
            lock.release(key, owner)
        except OSError as e:
            logger.warning("Could not release lock for %s on shutdown: %s", key, e)

    def _on_signal(signum: int, frame: object) -> None:
        logger.warning("Received signal %d; releasing lock for %s", signum, key)
        _release()
        previous = saved.get(signum)
        if callable(previous):
            previous(signum, frame)
        elif signum == signal.SIGINT:
            raise KeyboardInterrupt
        else:
            raise SystemExit(128 + signum)

    saved: dict[int, object] = {}
    in_main_thread = threading.current_thread() is threading.main_thread()
    if in_main_thread:
        for sig in _SIGNALS:
            saved[sig] = signal.getsignal(sig)
            signal.signal(sig, _on_signal)
    atexit.register(_release)
    try:
        yield
    finally:
        atexit.unregister(_release)
        if in_main_thread:
            for sig, previous in saved.items():
                signal.signal(sig, previous if previous is not None else signal.SIG_DFL)  # type: ignore[arg-type]
