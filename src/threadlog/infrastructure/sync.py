"""Commit-push synchronizer: the only component that talks to the shared remote.

1. Stage exactly the given paths and commit them with a deterministic message
2. Push HEAD to the remote branch
3. On rejection: back off, fetch the branch, rebase the local commit onto it,
   run the caller's integrity check, push again
4. Give up after max_attempts and report failure; never drop local commits

Different keys touch disjoint files, so rebasing across other keys' commits
replays cleanly. A conflict on a conversation's own segment files means two
executions wrote the same key and is raised as ReconstructionMismatch.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from threadlog.config.models import SyncConfig
from threadlog.domain.errors import ReconstructionMismatch
from threadlog.infrastructure.backoff import BackoffPolicy, compute_backoff, compute_backoff_sequence
from threadlog.infrastructure.git import GitRunner

logger = logging.getLogger(__name__)

__all__ = ["GitSynchronizer", "SyncResult"]


@dataclass
class SyncResult:
    """Result of one commit_and_push call."""

    success: bool
    """Whether the remote now contains the local commit."""

    sha: str | None = None
    """Local HEAD after the last attempt."""

    attempts: int = 0
    """Push attempts made."""

    committed: bool = False
    """Whether this call created a commit (False when nothing was staged)."""

    error: str | None = None
    """Last push or rebase error if sync failed."""


class _RebaseFailed(Exception):
    pass


class GitSynchronizer:
    """Commits state changes in `root` and pushes them with bounded retries."""

    def __init__(
        self,
        git: GitRunner,
        root: Path,
        config: SyncConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._git = git
        self.root = Path(root).resolve()
        self.config = config or SyncConfig()
        self._policy = BackoffPolicy.from_config(self.config)
        self._sleep = sleep
        self._rng = rng or random.Random()
        logger.debug(
            "Push retry delays before jitter: %s",
            compute_backoff_sequence(self._policy, self.config.max_attempts - 1),
        )

    def _relative(self, path: Path) -> str:
        path = Path(path)
        if path.is_absolute():
            path = path.resolve().relative_to(self.root)
        return path.as_posix()

    async def head(self) -> str | None:
        out = await self._git.run("rev-parse", "HEAD", check=False)
        if out.returncode != 0:
            return None
        return out.stdout.strip() or None

    async def commit(self, paths: Sequence[Path], message: str) -> bool:
        """Stage and commit paths. Returns False when none of them changed."""
        rel = []
        for p in paths:
            full = p if Path(p).is_absolute() else self.root / p
            if Path(full).exists():
                rel.append(self._relative(p))
            else:
                logger.debug("Skipping missing path %s", p)
        if not rel:
            return False

        await self._git.run("add", "-A", "--", *rel)
        staged = await self._git.run("diff", "--cached", "--quiet", "--", *rel, check=False)
        if staged.returncode == 0:
            logger.info("Nothing to commit for %d paths", len(rel))
            return False
        await self._git.run("commit", "-m", message, "--", *rel)
        return True

    async def _rebase(self, protected: Sequence[str], key: str) -> None:
        remote, branch = self.config.remote, self.config.branch
        fetch = await self._git.run("fetch", remote, branch, check=False)
        if fetch.returncode != 0:
            raise _RebaseFailed(f"fetch failed: {fetch.stderr.strip()}")

        rebase = await self._git.run("rebase", "--autostash", "FETCH_HEAD", check=False)
        if rebase.returncode == 0:
            return

        unmerged = await self._git.run("diff", "--name-only", "--diff-filter=U", check=False)
        conflicted = unmerged.stdout.split()
        await self._git.run("rebase", "--abort", check=False)
        ours = [c for c in conflicted if any(c == p or c.startswith(p.rstrip("/") + "/") for p in protected)]
        if ours:
            raise ReconstructionMismatch(
                key,
                f"rebase conflict on conversation files {ours}; another execution wrote this key",
            )
        raise _RebaseFailed(f"rebase failed: {rebase.stderr.strip() or rebase.stdout.strip()}")

    async def commit_and_push(
        self,
        paths: Sequence[Path],
        message: str,
        *,
        key: str = "",
        protected: Sequence[Path] = (),
        verify: Callable[[], object] | None = None,
    ) -> SyncResult:
        """
        Commit paths and push to the configured remote branch.

        Args:
            paths: Files to stage; other working-tree changes are left alone
            message: Commit message
            key: Conversation key, for logging and errors
            protected: Paths whose rebase conflicts mean a same-key race
            verify: Integrity check run after each successful rebase; may raise

        Returns:
            SyncResult; success=False once max_attempts pushes were rejected
        """
        committed = await self.commit(paths, message)
        protected_rel = [self._relative(p) for p in protected]
        remote, branch = self.config.remote, self.config.branch
        max_attempts = self.config.max_attempts
        last_error: str | None = None

        for attempt in range(1, max_attempts + 1):
            push = await self._git.run("push", remote, f"HEAD:{branch}", check=False)
            if push.returncode == 0:
                sha = await self.head()
                logger.info("Pushed %s to %s/%s at %s (attempt %d)", key or "state", remote, branch, sha, attempt)
                return SyncResult(success=True, sha=sha, attempts=attempt, committed=committed)

            last_error = push.stderr.strip() or push.stdout.strip() or f"exit {push.returncode}"
            logger.warning(
                "Push of %s rejected (attempt %d/%d): %s",
                key or "state",
                attempt,
                max_attempts,
                last_error.splitlines()[-1] if last_error else "",
            )
            if attempt == max_attempts:
                break

            delay = compute_backoff(self._policy, attempt, self._rng)
            logger.debug("Backing off %.2fs before rebase and retry", delay)
            await self._sleep(delay)
            try:
                await self._rebase(protected_rel, key)
            except _RebaseFailed as e:
                last_error = str(e)
                logger.warning("Rebase of %s failed: %s", key or "state", e)
                continue
            if verify is not None:
                verify()

        sha = await self.head()
        logger.error(
            "Sync exhausted for %s after %d attempts; local commit %s not on %s/%s",
            key or "state",
            max_attempts,
            sha,
            remote,
            branch,
        )
        return SyncResult(
            success=False,
            sha=sha,
            attempts=max_attempts,
            committed=committed,
            error=last_error,
        )
