"""Error kinds raised by the transcript store."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from threadlog.infrastructure.sync import SyncResult


class ThreadlogError(Exception):
    """Base class for store errors."""


class KeyResolutionError(ThreadlogError):
    """Event context does not carry enough information to derive a key."""


class LockDenied(ThreadlogError):
    """Another live execution holds the admission lock for this key."""

    def __init__(self, key: str, holder: str | None = None) -> None:
        msg = f"Lock denied for {key!r}"
        if holder:
            msg += f" (held by {holder!r})"
        super().__init__(msg)
        self.key = key
        self.holder = holder


class ReconstructionMismatch(ThreadlogError):
    """Base/delta record counts disagree with what the manifest recorded."""

    def __init__(self, key: str, detail: str) -> None:
        super().__init__(f"Reconstruction mismatch for {key!r}: {detail}")
        self.key = key
        self.detail = detail


class SyncExhausted(ThreadlogError):
    """Push retries ran out; changes are committed locally but not on the remote."""

    def __init__(self, key: str, result: SyncResult) -> None:
        super().__init__(
            f"Sync exhausted for {key!r} after {result.attempts} attempts: {result.error}"
        )
        self.key = key
        self.result = result


class CorruptSegment(ThreadlogError):
    """A segment line is not a JSON object record."""

    def __init__(self, path: Path | None, line_no: int, fragment: str, reason: str) -> None:
        where = f"{path}:{line_no}" if path else f"line {line_no}"
        super().__init__(f"Corrupt record at {where}: {reason}")
        self.path = path
        self.line_no = line_no
        self.fragment = fragment[:200]
        self.reason = reason


class GitCommandError(ThreadlogError):
    """A git invocation exited non-zero."""

    def __init__(self, args: list[str], returncode: int, stdout: str, stderr: str) -> None:
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip() or stdout.strip()}")
        self.args_list = args
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
