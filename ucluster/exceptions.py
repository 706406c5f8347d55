"""
Typed exceptions for ucluster.

Provides structured error handling with:
- UClusterError: Base exception for all ucluster errors
- InfrastructureError: Cache store or node transport unreachable
- CorruptCacheEntryError: Cache holds a value that cannot be decoded
- DescriptorInvalidError: A task descriptor could not be resolved to a hash
- NoNodesAvailableError: No node can take or answer for the request
- RemoteOperationError: A node answered with an application-level failure

"Not found" is never raised: lookups return None for an unknown hash.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class UClusterError(Exception):
    """Base exception for all ucluster errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
    """

    default_code = "ucluster_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or CLI output."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class UClusterConfigError(UClusterError):
    """Invalid or missing configuration (node list, store URL, limits)."""

    default_code = "config_error"


class InfrastructureError(UClusterError):
    """Something the core depends on could not be reached.

    Distinct from "no owner": callers must not read this as a miss.
    """

    default_code = "infrastructure_error"


class CacheUnavailableError(InfrastructureError):
    """The location cache store failed a get/set/delete."""

    default_code = "cache_unavailable"


class NodeUnavailableError(InfrastructureError):
    """Transport-level failure talking to one node.

    Attributes:
        node: Identifier of the node that could not be reached
    """

    default_code = "node_unavailable"

    def __init__(
        self,
        message: str,
        *,
        node: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if node:
            details["node"] = node
        self.node = node
        super().__init__(message, code=code, details=details)


class NodeTimeoutError(NodeUnavailableError):
    """A node call exceeded its per-call timeout."""

    default_code = "node_timeout"


class CorruptCacheEntryError(UClusterError):
    """A cache entry exists but its value cannot be decoded.

    Attributes:
        key: The content hash whose entry is corrupt
        raw: The undecodable value (truncated)
    """

    default_code = "corrupt_cache_entry"

    def __init__(self, message: str, *, key: str, raw: Any = None) -> None:
        self.key = key
        self.raw = raw
        details: Dict[str, Any] = {"key": key}
        if raw is not None:
            details["raw"] = repr(raw)[:200]
        super().__init__(message, details=details)


class DescriptorInvalidError(UClusterError):
    """A task descriptor could not be resolved to a content hash.

    Attributes:
        descriptor: The descriptor as supplied by the caller
        reason: The parser's diagnostic
    """

    default_code = "descriptor_invalid"

    def __init__(self, descriptor: str, reason: str) -> None:
        self.descriptor = descriptor
        self.reason = reason
        super().__init__(
            f"Cannot resolve descriptor: {reason}",
            details={"descriptor": descriptor, "reason": reason},
        )


class NoNodesAvailableError(UClusterError):
    """The fleet is empty or could not answer a fleet-wide query."""

    default_code = "no_nodes_available"


class RemoteOperationError(UClusterError):
    """A node rejected an operation (disk full, bad request, ...).

    Attributes:
        node: Identifier of the node that failed
        status_code: HTTP status code if available
    """

    default_code = "remote_operation_failed"

    def __init__(
        self,
        message: str,
        *,
        node: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if node:
            details["node"] = node
        if status_code:
            details["status_code"] = status_code
        self.node = node
        self.status_code = status_code
        super().__init__(message, code=code, details=details)


__all__ = [
    "UClusterError",
    "UClusterConfigError",
    "InfrastructureError",
    "CacheUnavailableError",
    "NodeUnavailableError",
    "NodeTimeoutError",
    "CorruptCacheEntryError",
    "DescriptorInvalidError",
    "NoNodesAvailableError",
    "RemoteOperationError",
]
