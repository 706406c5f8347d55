"""
uTorrent WebUI client.

One client per node. Talks to the node's ``/gui/`` endpoint:
    - GET /gui/token.html          CSRF token (tied to the GUID cookie)
    - GET /gui/?list=1             every torrent as a positional row
    - GET /gui/?action=add-url     add by remote URL or magnet URI
    - POST /gui/?action=add-file   add by uploading a local .torrent
    - GET /gui/?action=remove|removedata|start&hash=...

SECURITY:
    - Credentials are sent as HTTP basic auth on every request
    - Use https:// (scheme="https") when nodes are not on a private network
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from ucluster.exceptions import (
    NodeTimeoutError,
    NodeUnavailableError,
    RemoteOperationError,
)
from ucluster.metadata import local_file
from ucluster.models import NodeConfig, TaskStatus

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"<div[^>]*id=['\"]token['\"][^>]*>([^<]+)</div>")


class UTorrentClient:
    """Async WebUI client for a single uTorrent node."""

    def __init__(
        self,
        config: NodeConfig,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        auth = None
        if config.username is not None:
            auth = httpx.BasicAuth(config.username, config.password or "")
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            auth=auth,
            timeout=timeout,
            transport=transport,
        )
        self._token: Optional[str] = None

    @property
    def node(self) -> str:
        return self.config.host

    async def _fetch_token(self) -> str:
        response = await self._send("GET", "/gui/token.html")
        match = _TOKEN_RE.search(response.text)
        if not match:
            raise RemoteOperationError(
                "WebUI token page did not contain a token",
                node=self.node,
                status_code=response.status_code,
            )
        self._token = match.group(1).strip()
        return self._token

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise NodeTimeoutError(
                f"Timed out talking to {self.node}", node=self.node
            ) from exc
        except httpx.TransportError as exc:
            raise NodeUnavailableError(
                f"Cannot reach {self.node}: {exc}", node=self.node
            ) from exc
        if response.status_code >= 400:
            raise RemoteOperationError(
                f"{self.node} answered {response.status_code} for {url}",
                node=self.node,
                status_code=response.status_code,
            )
        return response

    async def _call(
        self,
        params: Dict[str, Any],
        *,
        files: Optional[Dict[str, Any]] = None,
    ) -> Any:
        token = self._token or await self._fetch_token()
        method = "POST" if files else "GET"
        try:
            response = await self._send(
                method, "/gui/", params={"token": token, **params}, files=files
            )
        except RemoteOperationError as exc:
            # uTorrent answers 400 once the token or its GUID cookie expired
            if exc.status_code not in (400, 401):
                raise
            logger.debug("Refreshing WebUI token for %s", self.node)
            token = await self._fetch_token()
            response = await self._send(
                method, "/gui/", params={"token": token, **params}, files=files
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteOperationError(
                f"{self.node} returned a non-JSON body", node=self.node
            ) from exc
        if isinstance(payload, dict) and payload.get("error"):
            raise RemoteOperationError(
                f"{self.node}: {payload['error']}", node=self.node
            )
        return payload

    async def list_tasks(self) -> List[TaskStatus]:
        payload = await self._call({"list": 1})
        rows = (payload.get("torrents") or []) if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            raise RemoteOperationError(
                f"{self.node} returned an unexpected torrent list", node=self.node
            )
        tasks = []
        for row in rows:
            try:
                tasks.append(TaskStatus.from_row(row))
            except (ValueError, TypeError):
                logger.warning("Skipping malformed torrent row from %s", self.node)
        return tasks

    async def add_task(self, descriptor: str, info_hash: str) -> Optional[TaskStatus]:
        params: Dict[str, Any] = {}
        if self.config.download_dir not in ("", "/"):
            params.update({"download_dir": 0, "path": self.config.download_dir})

        local = local_file(descriptor)
        if local is not None:
            content = local.read_bytes()
            await self._call(
                {"action": "add-file", **params},
                files={"torrent_file": (local.name, content, "application/x-bittorrent")},
            )
        else:
            await self._call({"action": "add-url", "s": descriptor, **params})

        logger.info("Added %s on %s", info_hash, self.node)
        # The node may not list the torrent until it has loaded it
        return await self.get_task(info_hash)

    async def remove_task(self, info_hash: str) -> None:
        await self._call({"action": "remove", "hash": info_hash.upper()})

    async def remove_task_and_data(self, info_hash: str) -> None:
        await self._call({"action": "removedata", "hash": info_hash.upper()})

    async def resume_task(self, info_hash: str) -> None:
        await self._call({"action": "start", "hash": info_hash.upper()})

    async def get_task(self, info_hash: str) -> Optional[TaskStatus]:
        wanted = info_hash.lower()
        for task in await self.list_tasks():
            if task.hash == wanted:
                return task
        return None

    async def has_task(self, info_hash: str) -> bool:
        return await self.get_task(info_hash) is not None

    async def get_active_task_count(self) -> int:
        """Number of torrents the node currently holds, in any state."""
        return len(await self.list_tasks())

    async def aclose(self) -> None:
        await self._client.aclose()
