from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Iterable, Optional, Tuple, TypeVar

from ucluster.exceptions import NodeTimeoutError
from ucluster.models import NodeConfig, TaskStatus
from ucluster.nodes.protocol import NodeRPCClient
from ucluster.nodes.utorrent import UTorrentClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

Fleet = Tuple["NodeHandle", ...]


@dataclass(eq=False)
class NodeHandle:
    """
    Stable reference to one worker node.

    Every call goes through a bounded timeout; an unresponsive node raises
    NodeTimeoutError instead of stalling the caller.
    """

    identifier: str
    client: NodeRPCClient
    download_dir: str = "/"
    timeout: Optional[float] = 10.0
    _closed: bool = field(default=False, repr=False)

    async def _bounded(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise NodeTimeoutError(
                f"{operation} on {self.identifier} exceeded {self.timeout}s",
                node=self.identifier,
                details={"operation": operation},
            ) from exc

    async def add_task(self, descriptor: str, info_hash: str) -> Optional[TaskStatus]:
        return await self._bounded("add_task", self.client.add_task(descriptor, info_hash))

    async def remove_task(self, info_hash: str) -> None:
        await self._bounded("remove_task", self.client.remove_task(info_hash))

    async def remove_task_and_data(self, info_hash: str) -> None:
        await self._bounded(
            "remove_task_and_data", self.client.remove_task_and_data(info_hash)
        )

    async def resume_task(self, info_hash: str) -> None:
        await self._bounded("resume_task", self.client.resume_task(info_hash))

    async def get_task(self, info_hash: str) -> Optional[TaskStatus]:
        return await self._bounded("get_task", self.client.get_task(info_hash))

    async def has_task(self, info_hash: str) -> bool:
        return await self._bounded("has_task", self.client.has_task(info_hash))

    async def get_active_task_count(self) -> int:
        return await self._bounded(
            "get_active_task_count", self.client.get_active_task_count()
        )

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.client.aclose()


def make_fleet(handles: Iterable[NodeHandle]) -> Fleet:
    """Freeze handles into a fleet, warning about duplicate identifiers."""
    fleet = tuple(handles)
    seen = set()
    for handle in fleet:
        if handle.identifier in seen:
            logger.warning(
                "Duplicate node identifier %r; cache hits resolve to the first one",
                handle.identifier,
            )
        seen.add(handle.identifier)
    return fleet


def build_fleet(configs: Iterable[NodeConfig], *, timeout: float = 10.0) -> Fleet:
    """Create one UTorrentClient-backed handle per configured node."""
    return tuple(
        NodeHandle(
            identifier=config.host,
            client=UTorrentClient(config, timeout=timeout),
            download_dir=config.download_dir,
            timeout=timeout,
        )
        for config in configs
    )
