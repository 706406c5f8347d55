from ucluster.nodes.protocol import NodeRPCClient
from ucluster.nodes.utorrent import UTorrentClient
from ucluster.nodes.handle import Fleet, NodeHandle, build_fleet, make_fleet

__all__ = [
    # Protocol
    "NodeRPCClient",
    # Clients
    "UTorrentClient",
    # Fleet
    "Fleet",
    "NodeHandle",
    "build_fleet",
    "make_fleet",
]
