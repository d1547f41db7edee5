"""Compactor: trigger policy, folding, idempotence under retry and interruption."""

from __future__ import annotations

import random
from pathlib import Path

import pytest

from threadlog.config.models import ConsolidationPolicy
from threadlog.domain.errors import ReconstructionMismatch
from threadlog.domain.records import iter_lines
from threadlog.infrastructure.compactor import Compactor, should_consolidate
from threadlog.infrastructure.files import sha256_text
from threadlog.infrastructure.segments import SegmentManifest, SegmentStore

KEY = "issue-7-abcdefabcdef"


@pytest.fixture
def compactor(segment_store: SegmentStore) -> Compactor:
    return Compactor(segment_store)


def _run(store: SegmentStore, transcript: Path, append_turns, ns: range) -> list[str]:
    """One execution: reconstruct, append, split."""
    store.reconstruct(KEY, transcript)
    lines = append_turns(transcript, ns)
    store.split_delta(KEY, transcript)
    return lines


def test_policy_by_runs() -> None:
    policy = ConsolidationPolicy(after_runs=10, max_delta_bytes=1000)
    assert not should_consolidate(SegmentManifest(runs_since_consolidation=9), policy, delta_size=10)
    assert should_consolidate(SegmentManifest(runs_since_consolidation=10), policy, delta_size=10)


def test_policy_by_bytes() -> None:
    policy = ConsolidationPolicy(after_runs=10, max_delta_bytes=1000)
    assert not should_consolidate(SegmentManifest(runs_since_consolidation=1), policy, delta_size=999)
    assert should_consolidate(SegmentManifest(runs_since_consolidation=1), policy, delta_size=1000)


def test_should_consolidate_unknown_key(compactor: Compactor) -> None:
    assert compactor.should_consolidate(KEY, ConsolidationPolicy()) is False


def test_consolidate_folds_delta(segment_store: SegmentStore, compactor: Compactor, tmp_path: Path, append_turns) -> None:
    transcript = tmp_path / "t.jsonl"
    expected = append_turns(transcript, range(3))
    segment_store.split_delta(KEY, transcript)
    expected += _run(segment_store, transcript, append_turns, range(3, 5))

    result = compactor.consolidate(KEY)

    paths = segment_store.paths(KEY)
    assert result.did_consolidate is True
    assert result.base_records == 5
    assert result.new_base_size == paths.base.stat().st_size
    assert iter_lines(paths.base) == expected
    assert paths.delta.read_text() == ""
    manifest = segment_store.load_manifest(KEY)
    assert manifest.base_records == 5
    assert manifest.runs_since_consolidation == 0
    assert manifest.consolidated_at is not None


def test_consolidate_twice_is_idempotent(
    segment_store: SegmentStore, compactor: Compactor, tmp_path: Path, append_turns
) -> None:
    transcript = tmp_path / "t.jsonl"
    append_turns(transcript, range(2))
    segment_store.split_delta(KEY, transcript)
    _run(segment_store, transcript, append_turns, range(2, 4))
    paths = segment_store.paths(KEY)

    compactor.consolidate(KEY)
    base_after_first = paths.base.read_text()
    second = compactor.consolidate(KEY)

    assert second.did_consolidate is False
    assert paths.base.read_text() == base_after_first
    assert paths.delta.read_text() == ""


def test_interrupted_after_base_write(
    segment_store: SegmentStore, compactor: Compactor, tmp_path: Path, append_turns
) -> None:
    """Base rewritten, manifest still old: re-running must not duplicate turns."""
    transcript = tmp_path / "t.jsonl"
    expected = append_turns(transcript, range(3))
    segment_store.split_delta(KEY, transcript)
    expected += _run(segment_store, transcript, append_turns, range(3, 6))
    paths = segment_store.paths(KEY)
    with open(paths.base, "a") as f:
        f.write(paths.delta.read_text())

    result = compactor.consolidate(KEY)

    assert result.did_consolidate is True
    assert iter_lines(paths.base) == expected
    assert segment_store.load_manifest(KEY).base_records == 6
    assert paths.delta.read_text() == ""


def test_interrupted_after_partial_base_write(
    segment_store: SegmentStore, compactor: Compactor, tmp_path: Path, append_turns
) -> None:
    transcript = tmp_path / "t.jsonl"
    expected = append_turns(transcript, range(2))
    segment_store.split_delta(KEY, transcript)
    delta = _run(segment_store, transcript, append_turns, range(2, 5))
    expected += delta
    paths = segment_store.paths(KEY)
    with open(paths.base, "a") as f:
        f.write(delta[0] + "\n")

    compactor.consolidate(KEY)
    assert iter_lines(paths.base) == expected


def test_interrupted_before_delta_reset(
    segment_store: SegmentStore, compactor: Compactor, tmp_path: Path, append_turns
) -> None:
    """Base and manifest updated, delta still holds the folded records."""
    transcript = tmp_path / "t.jsonl"
    expected = append_turns(transcript, range(2))
    segment_store.split_delta(KEY, transcript)
    expected += _run(segment_store, transcript, append_turns, range(2, 4))
    paths = segment_store.paths(KEY)
    stale_delta = paths.delta.read_text()

    compactor.consolidate(KEY)
    paths.delta.write_text(stale_delta)
    result = compactor.consolidate(KEY)

    assert result.did_consolidate is False
    assert iter_lines(paths.base) == expected
    assert paths.delta.read_text() == ""
    out = tmp_path / "out.jsonl"
    segment_store.reconstruct(KEY, out)
    assert iter_lines(out) == expected


def test_unexplained_base_growth_raises_without_writing(
    segment_store: SegmentStore, compactor: Compactor, tmp_path: Path, append_turns, make_turn
) -> None:
    transcript = tmp_path / "t.jsonl"
    append_turns(transcript, range(2))
    segment_store.split_delta(KEY, transcript)
    _run(segment_store, transcript, append_turns, range(2, 3))
    paths = segment_store.paths(KEY)
    with open(paths.base, "a") as f:
        f.write(make_turn(50) + "\n")
    base_before, delta_before = paths.base.read_text(), paths.delta.read_text()

    with pytest.raises(ReconstructionMismatch):
        compactor.consolidate(KEY)
    assert paths.base.read_text() == base_before
    assert paths.delta.read_text() == delta_before


def test_empty_delta_resets_counter(segment_store: SegmentStore, compactor: Compactor, tmp_path: Path, append_turns) -> None:
    transcript = tmp_path / "t.jsonl"
    append_turns(transcript, range(1))
    segment_store.split_delta(KEY, transcript)
    _run(segment_store, transcript, append_turns, range(1, 1))

    result = compactor.consolidate(KEY)
    assert result.did_consolidate is False
    assert segment_store.load_manifest(KEY).runs_since_consolidation == 0


def test_last_fold_digest_recorded(segment_store: SegmentStore, compactor: Compactor, tmp_path: Path, append_turns) -> None:
    transcript = tmp_path / "t.jsonl"
    append_turns(transcript, range(1))
    segment_store.split_delta(KEY, transcript)
    _run(segment_store, transcript, append_turns, range(1, 3))
    delta_text = segment_store.paths(KEY).delta.read_text()

    compactor.consolidate(KEY)
    assert segment_store.load_manifest(KEY).last_fold_sha256 == sha256_text(delta_text)


@pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
def test_any_split_consolidate_sequence_reconstructs_exactly(
    segment_store: SegmentStore, compactor: Compactor, tmp_path: Path, append_turns, seed: int
) -> None:
    rng = random.Random(seed)
    transcript = tmp_path / "t.jsonl"
    expected = append_turns(transcript, range(rng.randint(0, 3)))
    segment_store.split_delta(KEY, transcript)
    n = len(expected)

    for _ in range(30):
        step = rng.choice(["run", "run", "consolidate", "consolidate_twice"])
        if step == "run":
            count = rng.randint(0, 3)
            expected += _run(segment_store, transcript, append_turns, range(n, n + count))
            n += count
        else:
            compactor.consolidate(KEY)
            if step == "consolidate_twice":
                compactor.consolidate(KEY)

    out = tmp_path / "out.jsonl"
    segment_store.reconstruct(KEY, out)
    assert iter_lines(out) == expected
    assert len(set(expected)) == len(expected)


def test_recover_is_noop_on_consistent_segments(
    compactor: Compactor, segment_store: SegmentStore, tmp_path: Path, append_turns
) -> None:
    transcript = tmp_path / "t.jsonl"
    _run(segment_store, transcript, append_turns, range(2))
    _run(segment_store, transcript, append_turns, range(2, 4))
    assert compactor.recover(KEY) is None
    assert len(iter_lines(segment_store.paths(KEY).delta)) == 2
    assert compactor.recover("issue-8-000000000000") is None


def test_recover_finishes_fold_interrupted_after_manifest_write(
    compactor: Compactor, segment_store: SegmentStore, tmp_path: Path, append_turns, make_turn
) -> None:
    transcript = tmp_path / "t.jsonl"
    _run(segment_store, transcript, append_turns, range(2))
    _run(segment_store, transcript, append_turns, range(2, 4))
    paths = segment_store.paths(KEY)
    stale_delta = paths.delta.read_text()
    compactor.consolidate(KEY)
    paths.delta.write_text(stale_delta)

    assert compactor.recover(KEY) is not None
    assert iter_lines(paths.base) == [make_turn(n) for n in range(4)]
    assert paths.delta.read_text() == ""
