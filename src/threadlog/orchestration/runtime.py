"""Conversation runtime: one execution cycle per conversation key."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from threadlog.config.models import StoreConfig
from threadlog.domain.errors import LockDenied, SyncExhausted
from threadlog.domain.keys import validate_key
from threadlog.infrastructure.compactor import Compactor, ConsolidationResult
from threadlog.infrastructure.files import atomic_write_text
from threadlog.infrastructure.git import GitRunner, SubprocessGit
from threadlog.infrastructure.lock import AdmissionLock, LockRecord
from threadlog.infrastructure.pending import PendingSync, PendingSyncMarkers
from threadlog.infrastructure.segments import SegmentManifest, SegmentStore, SplitResult
from threadlog.infrastructure.sync import GitSynchronizer, SyncResult
from threadlog.orchestration.shutdown import release_on_termination

logger = logging.getLogger(__name__)

Runner = Callable[[Path], Awaitable[object]]


class ExecutionSession(BaseModel):
    """Handed to the LLM process: where to read and append, and what it is resuming."""

    key: str
    owner: str
    transcript_path: Path
    is_resuming: bool = Field(..., description="False on the first execution for key")
    pending_sync: PendingSync | None = Field(
        default=None,
        description="Set when the previous execution could not push its state",
    )


class ExecutionResult(BaseModel):
    key: str
    status: Literal["persisted", "denied"]
    split: SplitResult | None = None
    consolidation: ConsolidationResult | None = None
    sha: str | None = None
    attempts: int = 0


class KeyStatus(BaseModel):
    key: str
    exists: bool
    manifest: SegmentManifest | None = None
    delta_size: int = 0
    lock_holder: LockRecord | None = None
    pending_sync: PendingSync | None = None


class ConversationRuntime:
    """Holds config + segment store + lock + synchronizer; runs executions by key."""

    def __init__(
        self,
        config: StoreConfig,
        root: Path,
        git: GitRunner | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.root = Path(root)
        runtime_dir = self.root / config.runtime_dir
        self.store = SegmentStore(self.root / config.state_dir)
        self.compactor = Compactor(self.store)
        self.lock = AdmissionLock(
            runtime_dir / "locks",
            guard_timeout=config.lock.guard_timeout_seconds,
            clock=clock,
        )
        self.pending = PendingSyncMarkers(runtime_dir / "pending")
        self.synchronizer = GitSynchronizer(
            git or SubprocessGit(self.root),
            self.root,
            config.sync,
            sleep=sleep,
            rng=rng,
        )
        self._transcripts_dir = runtime_dir / "transcripts"

    def transcript_path(self, key: str) -> Path:
        return self._transcripts_dir / f"{validate_key(key)}.jsonl"

    async def begin(self, key: str, owner: str, raise_on_denied: bool = False) -> ExecutionSession | None:
        """
        Acquire the key and rebuild its transcript for the LLM process.
        Returns None when another execution holds the key (or raises LockDenied if asked).
        """
        validate_key(key)
        if not self.lock.acquire(key, owner, self.config.lock.ttl_seconds):
            if raise_on_denied:
                holder = self.lock.holder(key)
                raise LockDenied(key, holder.owner if holder else None)
            return None
        try:
            pending = self.pending.load(key)
            if pending is not None:
                logger.warning(
                    "Resuming %s with unsynced state from a previous execution (sha=%s, error=%s)",
                    key,
                    pending.local_sha,
                    pending.error,
                )
            self.compactor.recover(key)
            path = self.transcript_path(key)
            rebuilt = self.store.reconstruct(key, path)
            if rebuilt is None:
                # First execution: the process starts from an empty transcript.
                atomic_write_text(path, "")
        except BaseException:
            self.lock.release(key, owner)
            raise
        return ExecutionSession(
            key=key,
            owner=owner,
            transcript_path=path,
            is_resuming=rebuilt is not None,
            pending_sync=pending,
        )

    async def finish(self, session: ExecutionSession, extra_paths: Sequence[Path] = ()) -> ExecutionResult:
        """
        Persist what the LLM process appended: split, maybe consolidate, commit and push.
        Always releases the lock. Raises SyncExhausted if the push never went through.
        """
        key = session.key
        try:
            split = self.store.split_delta(key, session.transcript_path)
            consolidation = None
            if self.compactor.should_consolidate(key, self.config.consolidation):
                consolidation = self.compactor.consolidate(key)
            result = await self._sync(key, f"threadlog: persist {key}", extra_paths)
            return ExecutionResult(
                key=key,
                status="persisted",
                split=split,
                consolidation=consolidation,
                sha=result.sha,
                attempts=result.attempts,
            )
        finally:
            self.lock.release(key, session.owner)

    async def execute(
        self,
        key: str,
        owner: str,
        runner: Runner,
        extra_paths: Sequence[Path] = (),
        handle_signals: bool = False,
    ) -> ExecutionResult:
        """
        Full cycle around `runner(transcript_path)`, the external LLM process.
        Lock denial is a normal outcome: returns status="denied" without writing.
        """
        session = await self.begin(key, owner)
        if session is None:
            logger.info("Execution for %s by %s skipped: key busy", key, owner)
            return ExecutionResult(key=key, status="denied")

        if handle_signals:
            with release_on_termination(self.lock, key, owner):
                return await self._run_and_finish(session, runner, extra_paths)
        return await self._run_and_finish(session, runner, extra_paths)

    async def _run_and_finish(
        self,
        session: ExecutionSession,
        runner: Runner,
        extra_paths: Sequence[Path],
    ) -> ExecutionResult:
        try:
            await runner(session.transcript_path)
        except BaseException:
            self.lock.release(session.key, session.owner)
            raise
        return await self.finish(session, extra_paths)

    async def consolidate_now(self, key: str, owner: str) -> ExecutionResult:
        """Fold the delta into the base outside the normal threshold, under the lock."""
        validate_key(key)
        if not self.lock.acquire(key, owner, self.config.lock.ttl_seconds):
            return ExecutionResult(key=key, status="denied")
        try:
            recovered = self.compactor.recover(key)
            if self.store.exists(key):
                self.store.verify(key)
            consolidation = recovered if recovered is not None else self.compactor.consolidate(key)
            result = await self._sync(key, f"threadlog: consolidate {key}")
            return ExecutionResult(
                key=key,
                status="persisted",
                consolidation=consolidation,
                sha=result.sha,
                attempts=result.attempts,
            )
        finally:
            self.lock.release(key, owner)

    async def _sync(self, key: str, message: str, extra_paths: Sequence[Path] = ()) -> SyncResult:
        """
        Commit and push the key's segments. Any failure leaves a pending-sync marker
        so the next resume knows local state may not be on the remote.
        """
        segment_paths = self.store.paths(key).committed()
        try:
            result = await self.synchronizer.commit_and_push(
                [*segment_paths, *extra_paths],
                message,
                key=key,
                protected=segment_paths,
                verify=lambda: self.store.verify(key),
            )
        except Exception as e:
            sha = await self.synchronizer.head()
            self.pending.record(key, SyncResult(success=False, sha=sha, error=str(e)))
            raise
        if not result.success:
            self.pending.record(key, result)
            raise SyncExhausted(key, result)
        self.pending.clear(key)
        return result

    def reap(self) -> int:
        return self.lock.reap_stale(self.config.lock.ttl_seconds)

    def status(self, key: str) -> KeyStatus:
        validate_key(key)
        return KeyStatus(
            key=key,
            exists=self.store.exists(key),
            manifest=self.store.load_manifest(key),
            delta_size=self.store.delta_size(key),
            lock_holder=self.lock.holder(key),
            pending_sync=self.pending.load(key),
        )
