"""Pytest configuration: project root on sys.path, settings cache reset per test."""

import sys
from pathlib import Path

import pytest

# Ensure the project root is in sys.path so tests.nodes helpers import
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from ucluster.config import reset_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    for name in (
        "UCLUSTER_NODES",
        "UCLUSTER_NODES_FILE",
        "UCLUSTER_REDIS_URL",
        "UCLUSTER_KEY_PREFIX",
        "UCLUSTER_CACHE_TTL_SECONDS",
        "UCLUSTER_RPC_TIMEOUT_SECONDS",
        "UCLUSTER_EXCLUDE_FAILED_NODES",
        "UCLUSTER_STRICT_SCATTER",
        "UCLUSTER_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()
