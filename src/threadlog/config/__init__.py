"""Configuration loading and validation."""

from threadlog.config.models import (
    ConsolidationPolicy,
    LockConfig,
    StoreConfig,
    SyncConfig,
)
from threadlog.config.loader import load_config

__all__ = [
    "ConsolidationPolicy",
    "LockConfig",
    "StoreConfig",
    "SyncConfig",
    "load_config",
]
