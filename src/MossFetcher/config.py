# === NAVMAP v1 ===
# {
#   "module": "MossFetcher.config",
#   "purpose": "Fetcher configuration model and file/env/override composition.",
#   "sections": [
#     {"id": "fetcherconfig", "name": "FetcherConfig", "anchor": "class-fetcherconfig", "kind": "class"},
#     {"id": "read-file", "name": "_read_file", "anchor": "function-read-file", "kind": "function"},
#     {"id": "coerce-env-value", "name": "_coerce_env_value", "anchor": "function-coerce-env-value", "kind": "function"},
#     {"id": "load-config", "name": "load_config", "anchor": "function-load-config", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""
Fetcher Configuration

Pydantic v2 model holding every tunable the controller, workers, and shared
transfer state read. Composition follows three levels:

1. **File level** (YAML/JSON) - base configuration
2. **Environment level** - ``MOSS_FETCHER_*`` variables override the file
3. **Override level** - programmatic/CLI overrides win

Example:
    MOSS_FETCHER_WORKERS=4  →  workers=4
    MOSS_FETCHER_READ_TIMEOUT_S=null  →  read_timeout_s=None
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar, Optional

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from . import __version__

__all__ = ["FetcherConfig", "load_config", "ENV_PREFIX"]

_LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "MOSS_FETCHER_"


class FetcherConfig(BaseModel):
    """Tunables for a fetch run."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid", frozen=True)

    workers: Optional[int] = Field(
        default=None, description="Worker thread count (None = CPU count - 1, min 1)"
    )

    # Timeouts
    connect_timeout_s: float = Field(default=10.0, description="Connection timeout in seconds")
    read_timeout_s: Optional[float] = Field(
        default=60.0, description="Read timeout in seconds (None = wait indefinitely)"
    )
    write_timeout_s: float = Field(default=60.0, description="Write timeout in seconds")
    pool_timeout_s: Optional[float] = Field(
        default=None, description="Seconds to wait for a free pooled connection"
    )

    # Shared transfer state
    max_connections: int = Field(default=32, description="Connection pool size")
    max_keepalive_connections: int = Field(default=16, description="Idle connections kept")
    keepalive_expiry_s: float = Field(default=30.0, description="Idle connection lifetime")
    connect_retries: int = Field(default=0, description="Retries on connection failure only")
    dns_cache_ttl_s: float = Field(default=60.0, description="DNS cache lifetime (0 disables)")
    verify_tls: bool = Field(default=True, description="Verify TLS certificates")

    # Requests
    user_agent: str = Field(default=f"moss-fetcher/{__version__}", description="User-Agent")
    follow_redirects: bool = Field(default=True, description="Follow 3xx redirects")
    max_redirects: int = Field(default=10, description="Maximum redirect hops")

    # Writes
    chunk_size_bytes: int = Field(default=1 << 16, description="Stream chunk size")
    verify_size: bool = Field(
        default=False, description="Fail when bytes written differ from a non-zero expected size"
    )
    fsync: bool = Field(default=True, description="fsync completed files before rename")

    @field_validator("workers")
    @classmethod
    def validate_workers(cls, v: Optional[int]) -> Optional[int]:
        # Non-positive counts are clamped later, not rejected.
        if v is not None and v < 1:
            return 1
        return v

    @field_validator("connect_timeout_s", "write_timeout_s", "keepalive_expiry_s")
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("read_timeout_s", "pool_timeout_s")
    @classmethod
    def validate_optional_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("must be > 0 or None")
        return v

    @field_validator("max_connections", "max_redirects", "chunk_size_bytes")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("max_keepalive_connections", "connect_retries")
    @classmethod
    def validate_non_negative_int(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("dns_cache_ttl_s")
    @classmethod
    def validate_ttl(cls, v: float) -> float:
        if v < 0:
            raise ValueError("dns_cache_ttl_s must be >= 0")
        return v

    def timeout(self) -> httpx.Timeout:
        """Return the per-request timeout budget."""
        return httpx.Timeout(
            connect=self.connect_timeout_s,
            read=self.read_timeout_s,
            write=self.write_timeout_s,
            pool=self.pool_timeout_s,
        )


def _read_file(path: str | os.PathLike[str]) -> dict[str, Any]:
    """Read a YAML or JSON config file.

    Raises:
        ValueError: If the file is missing, unreadable, malformed, or of an
            unsupported type
    """
    p = Path(path)
    if not p.exists():
        raise ValueError(f"Config file not found: {p}")
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ValueError(f"Cannot read config file {p}: {e}") from e

    suffix = p.suffix.lower()
    if suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {p}: {e}") from e
    elif suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {p}: {e}") from e
    else:
        raise ValueError(f"Unsupported file format: {suffix}. Use .yaml or .json")

    if not isinstance(data, dict):
        raise ValueError(f"Config file {p} must contain a mapping at top level")
    return data


def _coerce_env_value(value: str) -> Any:
    """JSON-decode ``value`` when possible; otherwise return it unchanged."""
    try:
        return json.loads(value)
    except ValueError:
        return value


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    known = set(FetcherConfig.model_fields)
    data: dict[str, Any] = {}
    for env_key, env_value in env.items():
        if not env_key.startswith(ENV_PREFIX):
            continue
        field = env_key[len(ENV_PREFIX) :].lower()
        if field not in known:
            _LOGGER.warning("Ignoring unknown environment override %s", env_key)
            continue
        data[field] = _coerce_env_value(env_value)
        _LOGGER.debug("Environment override: %s → %s = %r", env_key, field, data[field])
    return data


def load_config(
    path: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> FetcherConfig:
    """Compose a :class:`FetcherConfig` from file < environment < overrides.

    Args:
        path: Optional YAML/JSON file
        env: Environment mapping (defaults to ``os.environ``)
        overrides: Explicit values that win over everything else; ``None``
            values are ignored so unset CLI options do not clobber the file

    Raises:
        ValueError: If the config file cannot be read
        pydantic.ValidationError: If the composed values are invalid
    """
    data: dict[str, Any] = {}
    if path is not None:
        data.update(_read_file(path))
    data.update(_env_overrides(os.environ if env is None else env))
    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})
    return FetcherConfig.model_validate(data)
