"""
Scatter search: ask every node whether it holds a hash, first "yes" wins.

Used when the location cache has nothing usable for a hash. A node that
errors or times out counts as a "no"; one unreachable node never fails the
search. Once a winner is known the outstanding queries are cancelled and
the winner is written back to the location cache.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from ucluster.cache import LocationCache
from ucluster.exceptions import NoNodesAvailableError
from ucluster.metrics import ClusterMetrics
from ucluster.nodes.handle import Fleet, NodeHandle

logger = logging.getLogger(__name__)


class ScatterResolver:
    """Resolve a hash's owner by querying the whole fleet concurrently."""

    def __init__(
        self,
        fleet: Fleet,
        cache: LocationCache,
        *,
        strict: bool = False,
        metrics: Optional[ClusterMetrics] = None,
    ) -> None:
        """
        Args:
            fleet: Nodes to query, in fleet order.
            cache: Receives the winner of a successful search.
            strict: Raise NoNodesAvailableError when every node errored,
                instead of reporting "no owner".
            metrics: Counters for found / not found / unreachable outcomes.
        """
        self._fleet = fleet
        self._cache = cache
        self._strict = strict
        self._metrics = metrics or ClusterMetrics()

    async def resolve(self, info_hash: str) -> Optional[NodeHandle]:
        if not self._fleet:
            self._metrics.scatter_not_found.inc()
            logger.debug("Scatter for %s skipped: empty fleet", info_hash)
            return None

        queries: Dict[asyncio.Task, NodeHandle] = {
            asyncio.ensure_future(node.has_task(info_hash)): node
            for node in self._fleet
        }
        pending = set(queries)
        failures = 0
        winner: Optional[NodeHandle] = None

        try:
            while pending and winner is None:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                # Several answers can land together; prefer fleet order
                for task in [t for t in queries if t in done]:
                    node = queries[task]
                    try:
                        owns = task.result()
                    except Exception as exc:
                        failures += 1
                        self._metrics.node_errors.inc(node.identifier)
                        logger.warning(
                            "Ownership check for %s on %s failed: %s",
                            info_hash,
                            node.identifier,
                            exc,
                        )
                        continue
                    if owns and winner is None:
                        winner = node
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if winner is not None:
            self._cache.record(info_hash, winner.identifier)
            self._metrics.scatter_found.inc()
            logger.debug("Scatter found %s on %s", info_hash, winner.identifier)
            return winner

        if failures == len(self._fleet):
            self._metrics.scatter_unreachable.inc()
            logger.warning(
                "Scatter for %s reached none of %d nodes", info_hash, failures
            )
            if self._strict:
                raise NoNodesAvailableError(
                    "No node answered the ownership check",
                    details={"hash": info_hash, "nodes": failures},
                )
            return None

        self._metrics.scatter_not_found.inc()
        logger.debug(
            "Scatter for %s: no owner among %d nodes (%d unreachable)",
            info_hash,
            len(self._fleet),
            failures,
        )
        return None
