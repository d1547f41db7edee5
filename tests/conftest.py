"""Pytest fixtures: store configs, segment stores, turn factories, scripted git, no-op sleep."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from threadlog.config.models import (
    ConsolidationPolicy,
    LockConfig,
    StoreConfig,
    SyncConfig,
)
from threadlog.domain.records import TextBlock, Turn
from threadlog.infrastructure.git import ScriptedGit
from threadlog.infrastructure.segments import SegmentStore

_EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def store_config() -> StoreConfig:
    """Default thresholds, short lock guard, three push attempts."""
    return StoreConfig(
        consolidation=ConsolidationPolicy(after_runs=10, max_delta_bytes=200 * 1024),
        lock=LockConfig(ttl_seconds=600, guard_timeout_seconds=1),
        sync=SyncConfig(max_attempts=3),
    )


@pytest.fixture
def segment_store(tmp_path: Path) -> SegmentStore:
    return SegmentStore(tmp_path / "conversations")


@pytest.fixture
def make_turn() -> Callable[[int], str]:
    """Turn n as a JSONL line; alternates user/assistant, timestamps increase with n."""

    def make(n: int) -> str:
        turn = Turn(
            role="user" if n % 2 == 0 else "assistant",
            content=[TextBlock(text=f"turn {n}")],
            timestamp=_EPOCH + timedelta(seconds=n),
        )
        return turn.to_line()

    return make


@pytest.fixture
def append_turns(make_turn: Callable[[int], str]) -> Callable[[Path, range], list[str]]:
    """Append turns for each n in the range to a transcript file, as the LLM process would."""

    def append(path: Path, ns: range) -> list[str]:
        lines = [make_turn(n) for n in ns]
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")
        return lines

    return append


@pytest.fixture
def scripted_git() -> ScriptedGit:
    """Git double where every command succeeds until responses are scripted."""
    return ScriptedGit()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def no_sleep(sleeps: list[float]):
    """Async sleep replacement recording requested delays."""

    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    return sleep


@pytest.fixture
def configs_dir() -> Path:
    return Path(__file__).resolve().parent.parent / "configs"
