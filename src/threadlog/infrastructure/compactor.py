"""Compactor: fold the delta segment into the base and reset the counter."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from threadlog.config.models import ConsolidationPolicy
from threadlog.domain.errors import ReconstructionMismatch
from threadlog.domain.records import iter_lines, read_records, render_records
from threadlog.infrastructure.files import atomic_write_text, sha256_text
from threadlog.infrastructure.segments import SegmentManifest, SegmentStore

logger = logging.getLogger(__name__)


class ConsolidationResult(BaseModel):
    did_consolidate: bool
    new_base_size: int = Field(0, description="Base segment size in bytes afterwards")
    base_records: int = 0


def should_consolidate(
    manifest: SegmentManifest,
    policy: ConsolidationPolicy,
    delta_size: int,
) -> bool:
    """Either threshold suffices: runs since last consolidation, or delta bytes."""
    if manifest.runs_since_consolidation >= policy.after_runs:
        return True
    return delta_size >= policy.max_delta_bytes


def _already_folded(
    manifest: SegmentManifest,
    base_lines: list[str],
    delta_lines: list[str],
    delta_text: str,
) -> bool:
    """Base and manifest already hold this delta; only emptying the delta is left."""
    return (
        bool(delta_lines)
        and manifest.last_fold_sha256 == sha256_text(delta_text)
        and base_lines[-len(delta_lines):] == delta_lines
    )


class Compactor:
    """Folds delta.jsonl onto base.jsonl. Safe to re-run after an interruption."""

    def __init__(self, store: SegmentStore) -> None:
        self.store = store

    def should_consolidate(self, key: str, policy: ConsolidationPolicy) -> bool:
        manifest = self.store.load_manifest(key)
        if manifest is None:
            return False
        return should_consolidate(manifest, policy, self.store.delta_size(key))

    def recover(self, key: str) -> ConsolidationResult | None:
        """
        Finish a consolidation that stopped between its writes.
        Returns None when the segments show no interrupted fold.
        """
        paths = self.store.paths(key)
        if not paths.base.exists():
            return None
        manifest = self.store.load_manifest(key)
        if manifest is None:
            return None
        base_lines = iter_lines(paths.base)
        delta_records = read_records(paths.delta)
        delta_lines = [r.raw for r in delta_records]
        interrupted = len(base_lines) > manifest.base_records or _already_folded(
            manifest, base_lines, delta_lines, render_records(delta_records)
        )
        if not interrupted:
            return None
        logger.warning("Found interrupted consolidation for %s; completing it", key)
        return self.consolidate(key)

    def consolidate(self, key: str) -> ConsolidationResult:
        """
        Append the delta to the base, record the new count, empty the delta.
        Write order is base, manifest (count + counter reset), delta; each write is atomic.
        Raises ReconstructionMismatch without writing if base, manifest and delta disagree.
        """
        paths = self.store.paths(key)
        if not paths.base.exists():
            return ConsolidationResult(did_consolidate=False)
        manifest = self.store.load_manifest(key)
        if manifest is None:
            raise ReconstructionMismatch(key, "base segment has no manifest")

        base_lines = iter_lines(paths.base)
        delta_records = read_records(paths.delta)
        delta_text = render_records(delta_records)
        delta_lines = [r.raw for r in delta_records]
        expected = manifest.base_records

        if len(base_lines) < expected:
            raise ReconstructionMismatch(
                key,
                f"base has {len(base_lines)} records, manifest expects {expected}",
            )

        # Base already written by an interrupted fold, manifest not yet updated.
        folded = base_lines[expected:]
        if folded:
            if delta_lines[: len(folded)] != folded:
                raise ReconstructionMismatch(
                    key,
                    f"{len(folded)} base records beyond the manifest count are not in the delta",
                )
            logger.warning("Resuming interrupted consolidation for %s (%d records already folded)", key, len(folded))
        elif _already_folded(manifest, base_lines, delta_lines, delta_text):
            # Base and manifest updated, delta not yet emptied.
            logger.warning("Delta for %s was already folded; emptying it", key)
            atomic_write_text(paths.delta, "")
            self._reset_counter(key, manifest)
            return ConsolidationResult(
                did_consolidate=False,
                new_base_size=paths.base.stat().st_size,
                base_records=len(base_lines),
            )

        if not delta_lines:
            self._reset_counter(key, manifest)
            return ConsolidationResult(
                did_consolidate=False,
                new_base_size=paths.base.stat().st_size,
                base_records=len(base_lines),
            )

        new_lines = base_lines + delta_lines[len(folded):]
        new_text = "".join(line + "\n" for line in new_lines)
        atomic_write_text(paths.base, new_text)

        manifest.base_records = len(new_lines)
        manifest.base_sha256 = sha256_text(new_text)
        manifest.last_fold_sha256 = sha256_text(delta_text)
        manifest.consolidated_at = datetime.now(timezone.utc)
        manifest.runs_since_consolidation = 0
        self.store.save_manifest(key, manifest)

        atomic_write_text(paths.delta, "")
        size = len(new_text.encode("utf-8"))
        logger.info(
            "Consolidated %s: folded %d records, base now %d records (%d bytes)",
            key,
            len(delta_lines),
            len(new_lines),
            size,
        )
        return ConsolidationResult(did_consolidate=True, new_base_size=size, base_records=len(new_lines))

    def _reset_counter(self, key: str, manifest: SegmentManifest) -> None:
        manifest.runs_since_consolidation = 0
        self.store.save_manifest(key, manifest)
