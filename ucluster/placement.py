from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Tuple

from ucluster.exceptions import NoNodesAvailableError
from ucluster.metrics import ClusterMetrics
from ucluster.nodes.handle import Fleet, NodeHandle

logger = logging.getLogger(__name__)


class LeastLoadedSelector:
    """
    Pick the node holding the fewest tasks. Ties go to the earliest node in
    fleet order.

    Load is always read fresh from every node; it changes continuously, so it
    is never cached.

    By default one failing node aborts the whole selection. With
    ``exclude_failed=True`` failing nodes are left out of the comparison and
    only an all-failed fleet raises.
    """

    def __init__(
        self,
        *,
        exclude_failed: bool = False,
        metrics: Optional[ClusterMetrics] = None,
    ) -> None:
        self.exclude_failed = exclude_failed
        self._metrics = metrics or ClusterMetrics()

    async def loads(self, fleet: Fleet) -> List[Tuple[NodeHandle, object]]:
        """Current task count per node, or the exception it raised."""
        results = await asyncio.gather(
            *(node.get_active_task_count() for node in fleet),
            return_exceptions=True,
        )
        return list(zip(fleet, results))

    async def select(self, fleet: Fleet) -> NodeHandle:
        if not fleet:
            raise NoNodesAvailableError("No nodes configured for placement")

        counts: List[Tuple[NodeHandle, int]] = []
        for node, result in await self.loads(fleet):
            if isinstance(result, BaseException):
                # Cancellation and interpreter exits are not node failures
                if not isinstance(result, Exception):
                    raise result
                self._metrics.node_errors.inc(node.identifier)
                logger.warning("Load query on %s failed: %s", node.identifier, result)
                if not self.exclude_failed:
                    raise NoNodesAvailableError(
                        f"Load query failed on {node.identifier}",
                        details={"node": node.identifier, "reason": str(result)},
                    ) from result
                continue
            counts.append((node, result))

        if not counts:
            raise NoNodesAvailableError(
                "No node answered the load query", details={"nodes": len(fleet)}
            )

        # min() keeps the first of equal keys, which is fleet order
        node, count = min(counts, key=lambda pair: pair[1])
        logger.info("Selected %s for placement (%d tasks)", node.identifier, count)
        return node
