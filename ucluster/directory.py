"""
Cluster directory: hash-addressed operations over a fleet of download nodes.

Nodes do not know about each other. The directory keeps an implicit
ownership table in the location cache and falls back to asking every node
when the cache has nothing usable.

Usage:
    from ucluster import ClusterDirectory

    async with ClusterDirectory.from_settings() as directory:
        result = await directory.add("magnet:?xt=urn:btih:...")
        status = await directory.get(result.hash)
        await directory.remove(result.hash)

Request flow:
    locate_owner: cache lookup -> (miss, stale or corrupt) -> scatter search
    add:          parse -> locate_owner, re-checking a cached owner -> resume
                  on owner, or least-loaded placement -> node add -> cache record
    remove:       locate_owner -> cache invalidate -> node remove

Consistency:
    Cache entries are hints. Two concurrent add() calls for the same new
    hash can both miss and both place the task; the cache then keeps the
    last writer. Callers that need at-most-once placement must serialize
    adds per hash above this layer.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ucluster.cache import LocationCache
from ucluster.config import Settings, get_settings
from ucluster.exceptions import (
    CorruptCacheEntryError,
    NodeUnavailableError,
    UClusterError,
)
from ucluster.metadata import MetadataParser, normalize_hash
from ucluster.metrics import ClusterMetrics
from ucluster.models import AddResult, TaskStatus
from ucluster.nodes.handle import Fleet, NodeHandle, build_fleet, make_fleet
from ucluster.placement import LeastLoadedSelector
from ucluster.resolver import ScatterResolver

logger = logging.getLogger(__name__)


class ClusterDirectory:
    """
    Routes hash-addressed requests to the node that owns each hash.

    All collaborators are passed in; nothing is process-global, so several
    independent directories can coexist (one per test, for instance).
    """

    def __init__(
        self,
        fleet: Fleet,
        cache: LocationCache,
        *,
        parser: Optional[MetadataParser] = None,
        metrics: Optional[ClusterMetrics] = None,
        exclude_failed_nodes: bool = False,
        strict_scatter: bool = False,
    ) -> None:
        """
        Create a directory.

        Args:
            fleet: Node handles in fleet order. Never modified afterwards.
            cache: Location cache shared by every operation.
            parser: Descriptor -> info hash resolver used by add().
            metrics: Counter sink (default: a private ClusterMetrics).
            exclude_failed_nodes: Placement skips nodes whose load query
                fails instead of aborting.
            strict_scatter: Scatter search raises when no node was reachable.
        """
        self.fleet: Fleet = make_fleet(fleet)
        self.cache = cache
        self.parser = parser or MetadataParser()
        self.metrics = metrics or ClusterMetrics()
        self.resolver = ScatterResolver(
            self.fleet, cache, strict=strict_scatter, metrics=self.metrics
        )
        self.selector = LeastLoadedSelector(
            exclude_failed=exclude_failed_nodes, metrics=self.metrics
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ClusterDirectory":
        """Production wiring: uTorrent nodes and a Redis-backed cache."""
        settings = settings or get_settings()
        metrics = ClusterMetrics()
        fleet = build_fleet(settings.nodes, timeout=settings.rpc_timeout_seconds)
        cache = LocationCache.from_url(
            settings.redis_url,
            ttl_seconds=settings.cache_ttl_seconds,
            key_prefix=settings.key_prefix,
            metrics=metrics,
        )
        return cls(
            fleet,
            cache,
            parser=MetadataParser(timeout=settings.rpc_timeout_seconds),
            metrics=metrics,
            exclude_failed_nodes=settings.exclude_failed_nodes,
            strict_scatter=settings.strict_scatter,
        )

    def _matching(self, node_id: str) -> List[NodeHandle]:
        return [node for node in self.fleet if node.identifier == node_id]

    async def locate_owner(self, info_hash: str) -> Optional[NodeHandle]:
        """
        Find the node that owns a hash, or None if no node has it.

        Raises:
            CacheUnavailableError: The cache store could not be read.
        """
        info_hash = _canonical(info_hash)
        owner = await self._cached_owner(info_hash)
        if owner is not None:
            self.metrics.cache_hits.inc()
            return owner
        return await self.resolver.resolve(info_hash)

    async def _cached_owner(self, info_hash: str) -> Optional[NodeHandle]:
        try:
            cached = await self.cache.lookup(info_hash)
        except CorruptCacheEntryError as exc:
            self.metrics.cache_corrupt.inc()
            logger.warning("Ignoring corrupt cache entry for %s: %s", info_hash, exc)
            return None
        if cached is None:
            self.metrics.cache_misses.inc()
            return None

        matches = self._matching(cached)
        if not matches:
            self.metrics.cache_stale.inc()
            logger.info("Cached owner %r of %s is not in the fleet", cached, info_hash)
            return None
        if len(matches) > 1:
            logger.warning(
                "%d nodes share identifier %r; using the first",
                len(matches),
                cached,
            )
        return matches[0]

    async def _confirmed_owner(self, info_hash: str) -> Optional[NodeHandle]:
        """Like locate_owner, but a cached owner must still hold the task."""
        owner = await self._cached_owner(info_hash)
        if owner is not None:
            try:
                holds = await owner.has_task(info_hash)
            except Exception as exc:
                # Unconfirmed, not disproved: the entry stays
                self.metrics.node_errors.inc(owner.identifier)
                logger.warning(
                    "Could not confirm %s on cached owner %s: %s",
                    info_hash,
                    owner.identifier,
                    exc,
                )
            else:
                if holds:
                    self.metrics.cache_hits.inc()
                    return owner
                self.metrics.cache_stale.inc()
                logger.info(
                    "Cached owner %s no longer holds %s", owner.identifier, info_hash
                )
                await self.cache.invalidate(info_hash)
        return await self.resolver.resolve(info_hash)

    async def get(self, info_hash: str) -> Optional[TaskStatus]:
        """Task status from the owning node, or None if nobody owns it."""
        info_hash = _canonical(info_hash)
        owner = await self.locate_owner(info_hash)
        if owner is None:
            return None
        return await owner.get_task(info_hash)

    async def add(self, descriptor: str) -> AddResult:
        """
        Add a task to the cluster, or resume it where it already lives.

        Raises:
            DescriptorInvalidError: The descriptor does not resolve to a hash.
            NoNodesAvailableError: No node could be chosen for placement.
            NodeUnavailableError / RemoteOperationError: The node call failed;
                nothing is cached in that case.
        """
        info_hash = await self.parser.parse(descriptor)

        owner = await self._confirmed_owner(info_hash)
        if owner is not None:
            await owner.resume_task(info_hash)
            self.metrics.resumes.inc()
            logger.info("%s already on %s; resumed", info_hash, owner.identifier)
            return AddResult(hash=info_hash, node=owner.identifier, resumed=True)

        node = await self.selector.select(self.fleet)
        task = await node.add_task(descriptor, info_hash)
        self.cache.record(info_hash, node.identifier)
        self.metrics.placements.inc(node.identifier)
        return AddResult(hash=info_hash, node=node.identifier, task=task)

    async def remove(self, info_hash: str) -> None:
        """Remove a task, keeping its data. No-op when nobody owns it."""
        info_hash = _canonical(info_hash)
        owner = await self.locate_owner(info_hash)
        if owner is None:
            return
        await self.cache.invalidate(info_hash)
        await owner.remove_task(info_hash)

    async def remove_data(self, info_hash: str) -> None:
        """Remove a task and its downloaded data. No-op when nobody owns it."""
        info_hash = _canonical(info_hash)
        owner = await self.locate_owner(info_hash)
        if owner is None:
            return
        await self.cache.invalidate(info_hash)
        await owner.remove_task_and_data(info_hash)

    async def loads(self) -> Dict[str, Any]:
        """Task count per node; failed nodes map to their error dict."""
        report: Dict[str, Any] = {}
        for node, result in await self.selector.loads(self.fleet):
            if isinstance(result, UClusterError):
                report[node.identifier] = result.to_dict()
            elif isinstance(result, Exception):
                report[node.identifier] = NodeUnavailableError(
                    f"Load query on {node.identifier} failed: {result}",
                    node=node.identifier,
                ).to_dict()
            elif isinstance(result, BaseException):
                raise result
            else:
                report[node.identifier] = result
        return report

    def stats(self) -> Dict[str, Any]:
        return {
            "nodes": [node.identifier for node in self.fleet],
            "cache_ttl_seconds": self.cache.ttl_seconds,
            "metrics": self.metrics.snapshot(),
        }

    async def aclose(self) -> None:
        """Flush pending cache writes and release every connection."""
        try:
            await self.cache.aclose()
        finally:
            for node in self.fleet:
                await node.aclose()

    async def __aenter__(self) -> "ClusterDirectory":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()


def _canonical(info_hash: str) -> str:
    # Unrecognised shapes pass through; the nodes decide they are unknown
    return normalize_hash(info_hash) or info_hash.strip().lower()
