"""
Configuration from environment variables.

Usage:
    from ucluster.config import get_settings

    settings = get_settings()
    print(settings.redis_url, [n.host for n in settings.nodes])
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Optional

from pydantic import ValidationError

from ucluster.exceptions import UClusterConfigError
from ucluster.models import NodeConfig


def _env_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(name: str, default: str, cast: Any) -> Any:
    raw = os.getenv(name, default)
    try:
        value = cast(raw)
    except ValueError as exc:
        raise UClusterConfigError(
            f"{name} must be a number", details={"value": raw}
        ) from exc
    if value <= 0:
        raise UClusterConfigError(f"{name} must be positive", details={"value": raw})
    return value


def parse_nodes(payload: Any) -> List[NodeConfig]:
    """Validate a decoded node list into NodeConfig objects."""
    if not isinstance(payload, list):
        raise UClusterConfigError("node configuration must be a JSON list")
    try:
        return [NodeConfig.model_validate(item) for item in payload]
    except ValidationError as exc:
        raise UClusterConfigError(
            "invalid node configuration", details={"errors": exc.errors()}
        ) from exc


def _load_nodes() -> List[NodeConfig]:
    inline = os.getenv("UCLUSTER_NODES")
    path = os.getenv("UCLUSTER_NODES_FILE")
    if inline:
        raw, source = inline, "UCLUSTER_NODES"
    elif path:
        try:
            raw = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise UClusterConfigError(
                f"cannot read node file: {path}", details={"reason": str(exc)}
            ) from exc
        source = path
    else:
        return []
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise UClusterConfigError(
            f"{source} is not valid JSON", details={"reason": str(exc)}
        ) from exc
    return parse_nodes(payload)


class Settings:
    """Cluster configuration loaded from environment variables."""

    def __init__(self) -> None:
        # Fleet
        self.nodes: List[NodeConfig] = _load_nodes()

        # Location cache
        self.redis_url: str = os.getenv("UCLUSTER_REDIS_URL", "redis://localhost:6379/0")
        self.key_prefix: str = os.getenv("UCLUSTER_KEY_PREFIX", "utorrent:")
        self.cache_ttl_seconds: int = _env_number(
            "UCLUSTER_CACHE_TTL_SECONDS", "300", int
        )

        # Node RPC
        self.rpc_timeout_seconds: float = _env_number(
            "UCLUSTER_RPC_TIMEOUT_SECONDS", "10", float
        )

        # Fan-out policies
        self.exclude_failed_nodes: bool = _env_truthy(
            os.getenv("UCLUSTER_EXCLUDE_FAILED_NODES")
        )
        self.strict_scatter: bool = _env_truthy(os.getenv("UCLUSTER_STRICT_SCATTER"))

        self.log_level: str = os.getenv("UCLUSTER_LOG_LEVEL", "WARNING")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()
