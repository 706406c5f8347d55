from __future__ import annotations

from typing import Optional, Protocol

from ucluster.models import TaskStatus


class NodeRPCClient(Protocol):
    """Task operations against a single worker node.

    Every method is a remote call and may raise NodeUnavailableError
    (transport) or RemoteOperationError (the node refused).
    """

    async def add_task(self, descriptor: str, info_hash: str) -> Optional[TaskStatus]:
        ...

    async def remove_task(self, info_hash: str) -> None:
        ...

    async def remove_task_and_data(self, info_hash: str) -> None:
        ...

    async def resume_task(self, info_hash: str) -> None:
        ...

    async def get_task(self, info_hash: str) -> Optional[TaskStatus]:
        ...

    async def has_task(self, info_hash: str) -> bool:
        ...

    async def get_active_task_count(self) -> int:
        ...

    async def aclose(self) -> None:
        ...
