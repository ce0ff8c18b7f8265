"""Agent endpoint state shared by the transport, bridge and registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping, Optional

from .manifest import CapabilityDescriptor

if TYPE_CHECKING:
    from .bridge import CallableOperation

DEFAULT_MANIFEST_PATH = "agent-card.json"


def normalize_address(address: str) -> str:
    """Canonical form of an endpoint base address (no trailing slash)."""
    normalized = address.strip().rstrip("/")
    if not normalized:
        raise ValueError("endpoint address must not be empty")
    return normalized


def _join(base: str, path: str) -> str:
    path = path.strip()
    if not path:
        return base
    return f"{base}/{path.lstrip('/')}"


@dataclass(frozen=True)
class EndpointSnapshot:
    """Immutable view of an endpoint's capabilities at one refresh.

    Refresh builds a new snapshot and swaps it in with one assignment, so a
    reader holding a snapshot always sees a complete descriptor set.
    """

    descriptors: Mapping[str, CapabilityDescriptor]
    operations: Mapping[str, "CallableOperation"]
    last_refreshed_at: datetime
    version: int = 1

    @classmethod
    def build(
        cls,
        descriptors: Mapping[str, CapabilityDescriptor],
        operations: Mapping[str, "CallableOperation"],
        version: int,
    ) -> "EndpointSnapshot":
        return cls(
            descriptors=MappingProxyType(dict(descriptors)),
            operations=MappingProxyType(dict(operations)),
            last_refreshed_at=datetime.now(timezone.utc),
            version=version,
        )

    @classmethod
    def empty(cls) -> "EndpointSnapshot":
        return cls.build({}, {}, version=0)


@dataclass
class AgentEndpoint:
    """A registered Specialist endpoint.

    Attributes:
        base_address: Normalised base URI of the Specialist
        manifest_fetch_path: Path of the manifest relative to base_address
        rpc_path: Path receiving JSON-RPC requests ("" posts to base_address)
        name: Agent name, taken from the manifest when not configured
        api_key: Optional bearer token sent with every request
        headers: Extra HTTP headers for this endpoint
        timeout_seconds: Per-call timeout override for this endpoint
        registered_at: When the endpoint was first registered
        snapshot: Current capability snapshot (replaced wholesale by refresh)
    """

    base_address: str
    manifest_fetch_path: str = DEFAULT_MANIFEST_PATH
    rpc_path: str = ""
    name: Optional[str] = None
    api_key: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    snapshot: EndpointSnapshot = field(default_factory=EndpointSnapshot.empty)

    def __post_init__(self) -> None:
        self.base_address = normalize_address(self.base_address)

    @property
    def manifest_url(self) -> str:
        return _join(self.base_address, self.manifest_fetch_path)

    @property
    def rpc_url(self) -> str:
        return _join(self.base_address, self.rpc_path)

    @property
    def descriptors(self) -> Mapping[str, CapabilityDescriptor]:
        return self.snapshot.descriptors

    @property
    def operations(self) -> Mapping[str, "CallableOperation"]:
        return self.snapshot.operations

    @property
    def last_refreshed_at(self) -> datetime:
        return self.snapshot.last_refreshed_at

    def to_dict(self) -> dict[str, object]:
        """Summary used in logs and diagnostics."""
        return {
            "base_address": self.base_address,
            "name": self.name,
            "manifest_url": self.manifest_url,
            "rpc_url": self.rpc_url,
            "skills": sorted(self.snapshot.descriptors),
            "version": self.snapshot.version,
            "registered_at": self.registered_at.isoformat().replace("+00:00", "Z"),
            "last_refreshed_at": self.last_refreshed_at.isoformat().replace("+00:00", "Z"),
        }
