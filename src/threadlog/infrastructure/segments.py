"""Segmented transcript store: base + delta segments per conversation key.

Layout under `state_dir/<key>/`:
- base.jsonl: frozen prefix of the transcript (changed only by consolidation)
- delta.jsonl: records appended since the base was last updated
- manifest.json: base record count/digest and the consolidation counter

Records are copied as their original line text, so reconstruct(base, delta)
reproduces the appended sequence byte for byte.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from threadlog.domain.errors import ReconstructionMismatch
from threadlog.domain.keys import validate_key
from threadlog.domain.records import iter_lines, read_records, render_records
from threadlog.infrastructure.files import atomic_write_text, file_size, sha256_text

logger = logging.getLogger(__name__)

BASE_NAME = "base.jsonl"
DELTA_NAME = "delta.jsonl"
MANIFEST_NAME = "manifest.json"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SegmentManifest(BaseModel):
    """Recorded alongside the base. Also carries the consolidation counter."""

    base_records: int = Field(default=0, ge=0, description="Record lines currently in base.jsonl")
    base_sha256: str = ""
    last_fold_sha256: str | None = Field(
        default=None,
        description="Digest of the delta content most recently folded into the base",
    )
    runs_since_consolidation: int = Field(default=0, ge=0)
    consolidated_at: datetime | None = None
    updated_at: datetime = Field(default_factory=_now)


class SplitResult(BaseModel):
    """Outcome of split_delta."""

    is_new: bool
    delta_size: int = Field(..., description="Delta segment size in bytes")
    delta_records: int = 0


@dataclass(frozen=True)
class SegmentPaths:
    root: Path
    base: Path
    delta: Path
    manifest: Path

    def committed(self) -> list[Path]:
        return [self.base, self.delta, self.manifest]


class SegmentStore:
    """File-backed segments for every conversation under one state directory."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)

    def paths(self, key: str) -> SegmentPaths:
        root = self.state_dir / validate_key(key)
        return SegmentPaths(
            root=root,
            base=root / BASE_NAME,
            delta=root / DELTA_NAME,
            manifest=root / MANIFEST_NAME,
        )

    def exists(self, key: str) -> bool:
        """True once a base segment has been created for key."""
        return self.paths(key).base.exists()

    def keys(self) -> list[str]:
        if not self.state_dir.exists():
            return []
        return sorted(p.name for p in self.state_dir.iterdir() if (p / BASE_NAME).exists())

    # --- manifest ---

    def load_manifest(self, key: str) -> SegmentManifest | None:
        path = self.paths(key).manifest
        if not path.exists():
            return None
        try:
            return SegmentManifest.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as e:
            raise ReconstructionMismatch(key, f"unreadable manifest ({e})") from e

    def save_manifest(self, key: str, manifest: SegmentManifest) -> None:
        manifest.updated_at = _now()
        atomic_write_text(self.paths(key).manifest, manifest.model_dump_json(indent=2) + "\n")

    def verify(self, key: str) -> SegmentManifest:
        """
        Check the base against its manifest. Returns the manifest.
        Raises ReconstructionMismatch when the record count differs or the manifest is missing.
        """
        paths = self.paths(key)
        manifest = self.load_manifest(key)
        if manifest is None:
            raise ReconstructionMismatch(key, "base segment has no manifest")
        lines = iter_lines(paths.base)
        if len(lines) != manifest.base_records:
            raise ReconstructionMismatch(
                key,
                f"base has {len(lines)} records, manifest expects {manifest.base_records}",
            )
        if manifest.base_sha256 and sha256_text(paths.base.read_text(encoding="utf-8")) != manifest.base_sha256:
            # Same record count, different bytes: damaged lines are skipped on read.
            logger.warning("Base segment for %s differs from its recorded digest", key)
        return manifest

    def delta_size(self, key: str) -> int:
        return file_size(self.paths(key).delta)

    # --- reconstruct / split ---

    def reconstruct(self, key: str, transcript_path: Path) -> Path | None:
        """
        Write base records followed by delta records to transcript_path.
        No base yet (first execution for key) -> no-op, returns None.
        """
        paths = self.paths(key)
        if not paths.base.exists():
            logger.debug("No base segment for %s; nothing to reconstruct", key)
            return None
        self.verify(key)
        base = read_records(paths.base)
        delta = read_records(paths.delta)
        atomic_write_text(Path(transcript_path), render_records(base + delta))
        logger.info(
            "Reconstructed %s: %d base + %d delta records -> %s",
            key,
            len(base),
            len(delta),
            transcript_path,
        )
        return Path(transcript_path)

    def split_delta(self, key: str, transcript_path: Path) -> SplitResult:
        """
        Re-split the transcript after an execution appended to it.
        First call for key: whole transcript becomes the base, delta empty.
        Later calls: records beyond the base go to the delta; the base is untouched.
        """
        paths = self.paths(key)
        current = read_records(Path(transcript_path))

        if not paths.base.exists():
            base_text = render_records(current)
            atomic_write_text(paths.base, base_text)
            atomic_write_text(paths.delta, "")
            self.save_manifest(
                key,
                SegmentManifest(
                    base_records=len(current),
                    base_sha256=sha256_text(base_text),
                    runs_since_consolidation=1,
                ),
            )
            logger.info("Created base segment for %s with %d records", key, len(current))
            return SplitResult(is_new=True, delta_size=0, delta_records=0)

        manifest = self.verify(key)
        base = read_records(paths.base)
        if [r.raw for r in current[: len(base)]] != [r.raw for r in base]:
            raise ReconstructionMismatch(
                key,
                f"transcript does not begin with the {len(base)} base records",
            )

        appended = current[len(base):]
        delta_text = render_records(appended)
        atomic_write_text(paths.delta, delta_text)
        manifest.runs_since_consolidation += 1
        self.save_manifest(key, manifest)
        delta_size = len(delta_text.encode("utf-8"))
        logger.info(
            "Split %s: %d delta records (%d bytes), run %d since consolidation",
            key,
            len(appended),
            delta_size,
            manifest.runs_since_consolidation,
        )
        return SplitResult(is_new=False, delta_size=delta_size, delta_records=len(appended))
