"""Pydantic models for store configuration. Central contract for IDE and validation."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


# --- Consolidation ---


class ConsolidationPolicy(BaseModel):
    """When to fold the delta segment into the base. Either condition suffices."""

    after_runs: int = Field(
        default=10,
        ge=1,
        description="Consolidate once this many executions happened since the last one",
    )
    max_delta_bytes: int = Field(
        default=200 * 1024,
        ge=1,
        description="Consolidate once the delta segment reaches this size",
    )


# --- Admission lock ---


class LockConfig(BaseModel):
    """Time-boxed admission lock per conversation key."""

    ttl_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Age after which a lock record is considered abandoned",
    )
    # Bounds the read-check-write section of acquire, not the wait for a holder.
    guard_timeout_seconds: float = Field(default=5.0, gt=0)


# --- Commit / push ---


class SyncConfig(BaseModel):
    """Push retry policy: exponential backoff with symmetric jitter."""

    remote: str = Field(default="origin", description="Remote to push to")
    branch: str = Field(default="main", description="Remote branch receiving state commits")
    max_attempts: int = Field(default=4, ge=1, le=10, description="Push attempts before giving up")
    initial_delay_seconds: float = Field(default=1.0, gt=0)
    max_delay_seconds: float = Field(default=16.0, gt=0)
    factor: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.25, ge=0.0, le=1.0, description="Ratio of +/- randomization")

    @model_validator(mode="after")
    def _check_delays(self) -> "SyncConfig":
        if self.max_delay_seconds < self.initial_delay_seconds:
            raise ValueError("max_delay_seconds must be >= initial_delay_seconds")
        return self


# --- Top-level store config ---


class StoreConfig(BaseModel):
    """Full store configuration loaded from YAML. Every section has defaults."""

    state_dir: str = Field(
        default="conversations",
        description="Committed directory holding one subdirectory per key, relative to the repo root",
    )
    runtime_dir: str = Field(
        default=".threadlog",
        description="Uncommitted directory for locks, reconstructed transcripts and pending markers",
    )
    consolidation: ConsolidationPolicy = Field(default_factory=ConsolidationPolicy)
    lock: LockConfig = Field(default_factory=LockConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
