from __future__ import annotations
from .schemas import Config
from pathlib import Path
from typing import Any
import json

import tomllib

def load_config(path: str | Path) -> Config:
    p = Path(path)
    data = tomllib.loads(p.read_text())
    return Config(**data)

def with_overrides(cfg: Config, section: str, **values: Any) -> Config:
    """
    Return a re-validated copy of `cfg` with cfg.<section> fields replaced.
    None values are ignored so unset CLI flags leave the TOML value alone.
    """
    updates = {k: v for k, v in values.items() if v is not None}
    if not updates:
        return cfg
    data = cfg.model_dump()
    data[section] = {**data[section], **updates}
    return Config(**data)

def snapshot_config_toml(path: str | Path) -> str:
    """Return the raw TOML text for embedding in HDF5 metadata."""
    return Path(path).read_text()

def json_dumps(obj) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
