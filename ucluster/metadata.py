"""
Resolve a task descriptor to its canonical info hash.

Accepted descriptors:
    - a bare info hash (40 hex chars, or 32 base32 chars)
    - a magnet URI carrying ``xt=urn:btih:<hash>``
    - an http(s) URL pointing at a .torrent file
    - a path to a local .torrent file

For .torrent content the info hash is the SHA-1 of the bencoded ``info``
dictionary exactly as it appears in the file.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
from pathlib import Path
from typing import List, Optional
from urllib.parse import parse_qs, urlparse

import httpx
from fastbencode import bdecode, bencode

from ucluster.exceptions import DescriptorInvalidError

_HEX_HASH = re.compile(r"^[0-9a-fA-F]{40}$")
_B32_HASH = re.compile(r"^[A-Za-z2-7]{32}$")

MAX_TORRENT_BYTES = 10 * 1024 * 1024


def local_file(descriptor: str) -> Optional[Path]:
    """The descriptor as an existing file path, or None."""
    if urlparse(descriptor).scheme in ("magnet", "http", "https"):
        return None
    path = Path(descriptor)
    try:
        return path if path.is_file() else None
    except OSError:
        # e.g. a name longer than the filesystem allows
        return None


def normalize_hash(value: str) -> Optional[str]:
    """Lowercase hex form of a hex or base32 info hash, or None."""
    value = value.strip()
    if _HEX_HASH.match(value):
        return value.lower()
    if _B32_HASH.match(value):
        try:
            return base64.b32decode(value.upper()).hex()
        except binascii.Error:
            return None
    return None


class BencodeError(ValueError):
    pass


def info_hash_from_torrent(data: bytes) -> str:
    """SHA-1 of the bencoded ``info`` dictionary of a .torrent file.

    The decoder only accepts canonical bencode (sorted dictionary keys), so
    re-encoding the decoded ``info`` reproduces the bytes in the file.
    """
    try:
        meta = bdecode(data)
    except (ValueError, TypeError, RecursionError) as exc:
        raise BencodeError(f"malformed torrent: {exc}") from exc
    if not isinstance(meta, dict):
        raise BencodeError("torrent is not a bencoded dictionary")
    info = meta.get(b"info")
    if not isinstance(info, dict):
        raise BencodeError("torrent has no info dictionary")
    return hashlib.sha1(bencode(info)).hexdigest()


class MetadataParser:
    """Turns descriptors into info hashes; every failure is DescriptorInvalidError."""

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    async def parse(self, descriptor: str) -> str:
        if not descriptor or not descriptor.strip():
            raise DescriptorInvalidError(descriptor, "descriptor is empty")
        descriptor = descriptor.strip()

        bare = normalize_hash(descriptor)
        if bare:
            return bare

        scheme = urlparse(descriptor).scheme.lower()
        if scheme == "magnet":
            return self._from_magnet(descriptor)
        if scheme in ("http", "https"):
            return self._from_bytes(descriptor, await self._fetch(descriptor))

        path = local_file(descriptor)
        if path is not None:
            try:
                data = path.read_bytes()
            except OSError as exc:
                raise DescriptorInvalidError(descriptor, str(exc)) from exc
            return self._from_bytes(descriptor, data)

        raise DescriptorInvalidError(
            descriptor, "not a hash, magnet URI, URL or torrent file"
        )

    def _from_magnet(self, descriptor: str) -> str:
        query = parse_qs(urlparse(descriptor).query)
        for topic in query.get("xt", []):
            if topic.lower().startswith("urn:btih:"):
                found = normalize_hash(topic[len("urn:btih:"):])
                if found:
                    return found
                raise DescriptorInvalidError(descriptor, "magnet btih is malformed")
        raise DescriptorInvalidError(descriptor, "magnet URI has no btih topic")

    def _from_bytes(self, descriptor: str, data: bytes) -> str:
        try:
            return info_hash_from_torrent(data)
        except BencodeError as exc:
            raise DescriptorInvalidError(descriptor, str(exc)) from exc

    async def _fetch(self, url: str) -> bytes:
        chunks: List[bytes] = []
        size = 0
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    async for chunk in response.aiter_bytes():
                        size += len(chunk)
                        if size > MAX_TORRENT_BYTES:
                            raise DescriptorInvalidError(url, "torrent file too large")
                        chunks.append(chunk)
        except httpx.HTTPStatusError as exc:
            raise DescriptorInvalidError(
                url, f"fetch returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DescriptorInvalidError(url, f"fetch failed: {exc}") from exc
        return b"".join(chunks)
