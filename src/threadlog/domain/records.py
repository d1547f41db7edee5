"""Transcript records: one JSON object per line. Turns are immutable once written."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from threadlog.domain.errors import CorruptSegment

logger = logging.getLogger(__name__)

HEADER_TYPES = frozenset({"session", "config_change"})


# --- Content blocks ---


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """Structured tool invocation emitted by the responder."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """Result of a tool invocation, referencing the ToolUseBlock id."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str | list[dict[str, Any]] = ""
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


# --- Records ---


class Turn(BaseModel):
    """One discrete unit of conversational content."""

    type: Literal["turn"] = "turn"
    role: Literal["user", "assistant", "system"] = Field(..., description="originator or responder")
    content: list[ContentBlock] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_line(self) -> str:
        return self.model_dump_json()


class HeaderRecord(BaseModel):
    """Leading session metadata or configuration-change marker. Extra keys are kept."""

    model_config = ConfigDict(extra="allow")

    type: Literal["session", "config_change"]
    timestamp: datetime | None = None

    def to_line(self) -> str:
        return self.model_dump_json(exclude_none=True)


class TranscriptRecord(BaseModel):
    """A parsed line. `raw` is the exact text written back on split/reconstruct."""

    raw: str
    kind: str = Field(..., description="turn | session | config_change | any other type")
    turn: Turn | None = None

    @property
    def is_turn(self) -> bool:
        return self.turn is not None


def parse_line(line: str, path: Path | None = None, line_no: int = 0) -> TranscriptRecord:
    """
    Parse one JSONL line into a TranscriptRecord.
    Raises CorruptSegment if the line is not a JSON object or a turn fails validation.
    """
    raw = line.rstrip("\r\n")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CorruptSegment(path, line_no, raw, f"invalid JSON ({e.msg})") from e
    if not isinstance(data, dict):
        raise CorruptSegment(path, line_no, raw, "record is not an object")

    kind = str(data.get("type") or "unknown")
    turn = None
    try:
        if kind == "turn":
            turn = Turn.model_validate(data)
        elif kind in HEADER_TYPES:
            HeaderRecord.model_validate(data)
    except ValidationError as e:
        raise CorruptSegment(path, line_no, raw, f"invalid {kind} record ({e.error_count()} errors)") from e
    return TranscriptRecord(raw=raw, kind=kind, turn=turn)


def iter_lines(path: Path) -> list[str]:
    """Non-blank lines of a JSONL file, without line terminators. Missing file -> []."""
    if not path.exists():
        return []
    text = path.read_text(encoding="utf-8")
    # Split on \n only; JSON strings may legally contain other line separators.
    return [line.rstrip("\r") for line in text.split("\n") if line.strip()]


def read_records(path: Path) -> list[TranscriptRecord]:
    """
    Read every valid record from a segment or transcript file, in order.
    Corrupt lines are logged and skipped; partial history beats none.
    """
    records: list[TranscriptRecord] = []
    if not path.exists():
        return records
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                records.append(parse_line(line, path, line_no))
            except CorruptSegment as e:
                logger.warning("Skipping corrupt record: %s fragment=%r", e, e.fragment)
    return records


def render_records(records: list[TranscriptRecord]) -> str:
    """JSONL text for records: each raw line followed by a newline."""
    return "".join(r.raw + "\n" for r in records)
