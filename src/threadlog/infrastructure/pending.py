"""Pending-sync markers: explicit local record that a key's last sync did not reach the remote."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from threadlog.infrastructure.files import atomic_write_text
from threadlog.infrastructure.sync import SyncResult

logger = logging.getLogger(__name__)


class PendingSync(BaseModel):
    key: str
    error: str | None = None
    attempts: int = 0
    local_sha: str | None = Field(default=None, description="Local commit not yet on the remote")
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PendingSyncMarkers:
    """One JSON marker per key under `pending_dir`. Never committed."""

    def __init__(self, pending_dir: Path) -> None:
        self.pending_dir = Path(pending_dir)

    def _path(self, key: str) -> Path:
        return self.pending_dir / f"{key}.json"

    def record(self, key: str, result: SyncResult) -> PendingSync:
        marker = PendingSync(key=key, error=result.error, attempts=result.attempts, local_sha=result.sha)
        atomic_write_text(self._path(key), marker.model_dump_json(indent=2) + "\n")
        logger.warning("Recorded pending sync for %s at %s", key, result.sha)
        return marker

    def load(self, key: str) -> PendingSync | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return PendingSync.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError):
            # Still a marker: the content is just unreadable.
            logger.warning("Unreadable pending-sync marker %s", path)
            return PendingSync(key=key, error="unreadable marker")

    def clear(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Cleared pending sync for %s", key)
        return True
