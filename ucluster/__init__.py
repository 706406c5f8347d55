"""
ucluster - route hash-addressed torrent operations across a fleet of uTorrent nodes.

Usage:
    from ucluster import ClusterDirectory

    async with ClusterDirectory.from_settings() as directory:
        owner = await directory.locate_owner(info_hash)
        result = await directory.add("magnet:?xt=urn:btih:...")
        await directory.remove_data(result.hash)

Custom wiring (tests, multiple clusters in one process):
    from ucluster import ClusterDirectory, LocationCache, NodeHandle

    fleet = (NodeHandle("10.0.0.1", client_a), NodeHandle("10.0.0.2", client_b))
    directory = ClusterDirectory(fleet, LocationCache(redis_client))
"""

from ucluster.cache import LocationCache  # noqa: F401
from ucluster.config import Settings, get_settings, reset_settings  # noqa: F401
from ucluster.directory import ClusterDirectory  # noqa: F401
from ucluster.exceptions import (  # noqa: F401
    CacheUnavailableError,
    CorruptCacheEntryError,
    DescriptorInvalidError,
    InfrastructureError,
    NoNodesAvailableError,
    NodeTimeoutError,
    NodeUnavailableError,
    RemoteOperationError,
    UClusterConfigError,
    UClusterError,
)
from ucluster.metadata import MetadataParser  # noqa: F401
from ucluster.metrics import ClusterMetrics  # noqa: F401
from ucluster.models import AddResult, NodeConfig, TaskStatus  # noqa: F401
from ucluster.nodes import NodeHandle, NodeRPCClient, UTorrentClient, build_fleet  # noqa: F401
from ucluster.placement import LeastLoadedSelector  # noqa: F401
from ucluster.resolver import ScatterResolver  # noqa: F401

__version__ = "0.1.0"
