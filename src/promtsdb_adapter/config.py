from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError


class PathsConfig(BaseModel):
    logs_dir: Path = Field(default=Path("logs"))


class OpenTSDBConfig(BaseModel):
    """Connection settings handed to OpenTSDBClient.

    timeout_s bounds a whole read call (all concurrent queries together) and a
    single write request.
    """

    url: str = Field(default="http://localhost:4242")

    timeout_s: float = Field(default=30.0, gt=0)
    connect_timeout_s: float = Field(default=30.0, gt=0)

    # OpenTSDB historically runs behind self-signed certs in many setups.
    verify_tls: bool = Field(default=False)

    # OpenTSDB rejects empty tag values; this placeholder is stored instead.
    default_tag_value: str = Field(default="_empty_", min_length=1)

    # None = one worker per query.
    max_in_flight: Optional[int] = Field(default=None, ge=1)


class Settings(BaseModel):
    opentsdb: OpenTSDBConfig = Field(default_factory=OpenTSDBConfig)

    paths: PathsConfig = Field(default_factory=PathsConfig)


def load_settings(config_path: Optional[Path]) -> Settings:
    """Load settings from .env + optional YAML.

    Precedence:
      1) defaults
      2) .env / environment (OPENTSDB_URL, OPENTSDB_TIMEOUT_S, OPENTSDB_DEFAULT_TAG_VALUE)
      3) YAML file (if provided)

    Only the project's local `.env` file is read.
    """

    load_dotenv(dotenv_path=Path(".env"), override=False)

    merged: Dict[str, Any] = Settings().model_dump(mode="python")

    env_url = _getenv("OPENTSDB_URL")
    env_timeout = _getenv("OPENTSDB_TIMEOUT_S")
    env_default_tag_value = _getenv("OPENTSDB_DEFAULT_TAG_VALUE")

    if env_url is not None:
        merged["opentsdb"]["url"] = env_url
    if env_timeout is not None:
        # pydantic coerces the string
        merged["opentsdb"]["timeout_s"] = env_timeout
    if env_default_tag_value is not None:
        merged["opentsdb"]["default_tag_value"] = env_default_tag_value

    if config_path is not None:
        cfg = _load_yaml(config_path)
        merged = _deep_merge(merged, cfg)

    try:
        return Settings.model_validate(merged)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def _getenv(key: str) -> Optional[str]:
    import os

    value = os.getenv(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(str(path))
    raw = path.read_text(encoding="utf-8")
    parsed = yaml.safe_load(raw) or {}
    if not isinstance(parsed, dict):
        raise ValueError("YAML config must be a mapping/object at the top level")
    return parsed


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out
