"""Load and validate store config from YAML."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ValidationError

from threadlog.config.models import StoreConfig


def load_config(path: str | Path | None = None) -> StoreConfig:
    """
    Load YAML file and validate into StoreConfig. No path -> defaults.
    Raises FileNotFoundError, yaml.YAMLError, or ValueError on invalid config.
    """
    if path is None:
        return StoreConfig()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if data is None:
        raise ValueError("Config file is empty")
    if not isinstance(data, dict):
        raise ValueError("Invalid config: top level must be a mapping")

    try:
        return StoreConfig.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid config: {e}") from e
