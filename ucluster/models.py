from __future__ import annotations

from enum import IntFlag
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TorrentState(IntFlag):
    """uTorrent WebUI status bitfield (second column of a list row)."""

    STARTED = 1
    CHECKING = 2
    START_AFTER_CHECK = 4
    CHECKED = 8
    ERROR = 16
    PAUSED = 32
    QUEUED = 64
    LOADED = 128


class NodeConfig(BaseModel):
    """
    Connection settings for one worker node.

    The host doubles as the node identifier stored in the location cache,
    so it must be unique within a fleet.
    """

    model_config = ConfigDict(extra="forbid")

    host: str = Field(min_length=1)
    port: int = Field(default=8080, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[str] = None
    download_dir: str = "/"
    scheme: str = Field(default="http", pattern="^https?$")

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


class TaskStatus(BaseModel):
    """Snapshot of one download task as reported by its node."""

    hash: str
    name: str = ""
    status: int = 0
    size: int = 0
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    downloaded: int = 0
    uploaded: int = 0
    ratio: float = 0.0
    upload_speed: int = 0
    download_speed: int = 0
    eta: int = 0
    label: str = ""

    @field_validator("hash")
    @classmethod
    def _lowercase_hash(cls, value: str) -> str:
        return value.lower()

    @property
    def state(self) -> TorrentState:
        return TorrentState(self.status)

    @property
    def is_started(self) -> bool:
        return bool(self.state & TorrentState.STARTED)

    @property
    def is_paused(self) -> bool:
        return bool(self.state & TorrentState.PAUSED)

    @property
    def is_complete(self) -> bool:
        return self.progress >= 1.0

    @classmethod
    def from_row(cls, row: List[Any]) -> "TaskStatus":
        """Build from a WebUI ``list=1`` torrent row.

        Progress and ratio are reported in per mil.
        """
        if len(row) < 12:
            raise ValueError(f"torrent row too short: {len(row)} columns")
        return cls(
            hash=row[0],
            status=int(row[1]),
            name=row[2] or "",
            size=int(row[3]),
            progress=min(1.0, max(0.0, int(row[4]) / 1000.0)),
            downloaded=int(row[5]),
            uploaded=int(row[6]),
            ratio=int(row[7]) / 1000.0,
            upload_speed=int(row[8]),
            download_speed=int(row[9]),
            eta=int(row[10]),
            label=row[11] or "",
        )


class AddResult(BaseModel):
    """Outcome of ClusterDirectory.add()."""

    hash: str
    node: str
    resumed: bool = False
    task: Optional[TaskStatus] = None
