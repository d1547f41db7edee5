"""Conversation key resolution: event context -> stable key. Pure, no I/O."""

from __future__ import annotations

import hashlib
import json
import re

from pydantic import BaseModel, Field

from threadlog.domain.errors import KeyResolutionError

_SLUG_MAX = 40
_HASH_LEN = 12
_NON_SLUG = re.compile(r"[^a-z0-9]+")
_KEY_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,127}$")


class EventContext(BaseModel):
    """What the event layer knows about the conversation an event belongs to."""

    surface: str = Field(default="", description="Origin surface, e.g. issue, pull_request, slack")
    thread_id: str = Field(default="", description="External thread identifier on that surface")
    repository: str | None = Field(default=None, description="Optional owner/name namespace")


def _slug(text: str) -> str:
    return _NON_SLUG.sub("-", text.lower()).strip("-")


def resolve_key(context: EventContext) -> str:
    """
    Derive the conversation key for an event.
    Raises KeyResolutionError when surface or thread_id is missing.
    """
    surface = context.surface.strip()
    thread_id = context.thread_id.strip()
    if not surface or not thread_id:
        raise KeyResolutionError(
            f"Cannot resolve conversation key: surface={surface!r} thread_id={thread_id!r}"
        )

    # Hash the raw identity; the slug alone is lossy. A JSON array keeps field boundaries.
    identity = json.dumps([surface, context.repository or None, thread_id])
    digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()[:_HASH_LEN]
    surface_slug = _slug(surface)[:_SLUG_MAX].strip("-") or "surface"
    thread_slug = _slug(thread_id)[:_SLUG_MAX].strip("-")
    parts = [surface_slug, thread_slug, digest] if thread_slug else [surface_slug, digest]
    return "-".join(parts)


def validate_key(key: str) -> str:
    """Return key unchanged if it is safe to use as a directory name, else raise."""
    if not _KEY_PATTERN.match(key):
        raise KeyResolutionError(f"Invalid conversation key: {key!r}")
    return key
