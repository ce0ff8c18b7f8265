"""Capability Registry: the Coordinator's view of registered Specialists.

Registering an endpoint fetches its manifest, parses it, and synthesizes one
CallableOperation per advertised skill. ``refresh`` re-fetches the manifest
and swaps in a new immutable snapshot:

- unchanged skills keep the same operation object
- added skills get new operations
- removed skills have their operations invalidated (REMOVED)
- changed skills get new operations; the old ones are invalidated (CHANGED)

A failed fetch or parse leaves the previous snapshot in place. Invocations
already in flight keep the descriptor they captured at dispatch.

Usage:
    settings = create_bridge_settings(get_settings())
    registry = create_registry(settings)
    async with registry.lifespan():
        await registry.register_configured(settings)
        multiply = registry.get_operation("http://math.local", "multiply_numbers")
        product = await multiply(a=10, b=5)
"""

from __future__ import annotations

import asyncio
from asyncio import Lock
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog

from .bridge import CallableOperation, CapabilityBridge
from .config import BridgeSettings, EndpointConfig
from .endpoint import DEFAULT_MANIFEST_PATH, AgentEndpoint, EndpointSnapshot, normalize_address
from .errors import (
    BridgeError,
    CapabilityErrorKind,
    ManifestError,
    UnknownEndpointError,
    UnknownSkillError,
)
from .manifest import CapabilityDescriptorStore, diff_descriptors
from .transport import HttpJsonRpcTransport, ManifestFetcher, TransportAdapter

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RefreshResult:
    """Outcome of one successful refresh.

    Attributes:
        address: Endpoint that was refreshed
        added: Skill ids that appeared
        removed: Skill ids that disappeared
        changed: Skill ids whose descriptor changed
        unchanged: Skill ids whose operation was kept as-is
        version: Snapshot version after the refresh
    """

    address: str
    added: frozenset[str]
    removed: frozenset[str]
    changed: frozenset[str]
    unchanged: frozenset[str]
    version: int

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.changed)


class CapabilityRegistry:
    """Registry of Specialist endpoints and their synthesized operations.

    Mutations (register, refresh swap, deregister) are serialized with an
    asyncio lock. Manifest fetches happen outside that lock; refreshes of
    one endpoint queue behind a per-endpoint lock, so a slow fetch never
    overwrites a newer snapshot. Readers use the endpoint's current
    snapshot and never lock.
    """

    def __init__(
        self,
        bridge: CapabilityBridge,
        fetcher: Optional[ManifestFetcher] = None,
        store: Optional[CapabilityDescriptorStore] = None,
        *,
        manifest_path: str = DEFAULT_MANIFEST_PATH,
        refresh_interval_seconds: float = 0.0,
    ) -> None:
        """Initialize the registry.

        Args:
            bridge: Bridge that synthesizes and dispatches operations
            fetcher: Manifest source (defaults to the bridge's transport)
            store: Descriptor store (a fresh one by default)
            manifest_path: Manifest path used when registration gives none
            refresh_interval_seconds: Period of the background refresh (0 disables)

        Raises:
            ValueError: If no fetcher is given and the transport cannot fetch manifests
        """
        if fetcher is None:
            if not isinstance(bridge.transport, ManifestFetcher):
                raise ValueError(
                    f"transport {bridge.transport.name!r} cannot fetch manifests; pass a fetcher"
                )
            fetcher = bridge.transport
        if refresh_interval_seconds < 0:
            raise ValueError("refresh_interval_seconds must be >= 0")

        self.bridge = bridge
        self._fetcher = fetcher
        self._store = store or CapabilityDescriptorStore()
        self._manifest_path = manifest_path
        self._refresh_interval_seconds = refresh_interval_seconds
        self._endpoints: dict[str, AgentEndpoint] = {}
        self._lock = Lock()
        # Held across fetch and swap so refreshes of one endpoint apply in order
        self._refresh_locks: dict[str, Lock] = {}
        self._refresh_task: Optional[asyncio.Task[None]] = None

    # ==================== Registration Operations ====================

    async def register_endpoint(
        self,
        address: str,
        *,
        manifest_path: Optional[str] = None,
        rpc_path: Optional[str] = None,
        name: Optional[str] = None,
        api_key: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> AgentEndpoint:
        """Register a Specialist: fetch, parse and synthesize its skills.

        Registering an address that is already registered returns the
        existing endpoint unchanged; use ``refresh`` to pick up changes.

        Returns:
            The registered AgentEndpoint

        Raises:
            ManifestError: If the manifest cannot be fetched or parsed
            ValueError: If the address is empty
        """
        base_address = normalize_address(address)
        existing = self._endpoints.get(base_address)
        if existing is not None:
            return existing

        endpoint = AgentEndpoint(
            base_address=base_address,
            manifest_fetch_path=manifest_path or self._manifest_path,
            rpc_path=rpc_path or "",
            name=name,
            api_key=api_key,
            headers=dict(headers or {}),
            timeout_seconds=timeout_seconds,
        )
        raw = await self._fetcher.fetch_manifest(endpoint)
        manifest = self._store.parse(raw)

        async with self._lock:
            existing = self._endpoints.get(base_address)
            if existing is not None:
                # Registered concurrently while this manifest was being fetched
                return existing

            self._store.remember(base_address, manifest)
            endpoint.name = name or manifest.name
            operations = {
                skill_id: self.bridge.synthesize(descriptor, endpoint)
                for skill_id, descriptor in manifest.descriptors.items()
            }
            endpoint.snapshot = EndpointSnapshot.build(manifest.descriptors, operations, version=1)
            self._endpoints[base_address] = endpoint

        logger.info(
            "bridge_endpoint_registered",
            endpoint=base_address,
            agent=endpoint.name,
            skills=sorted(operations),
        )
        return endpoint

    async def register_configured(self, settings: BridgeSettings) -> list[AgentEndpoint]:
        """Register every endpoint listed in ``settings``.

        A failing endpoint is logged and skipped.
        """
        registered: list[AgentEndpoint] = []
        for config in settings.endpoints:
            try:
                registered.append(await self._register_config(config, settings))
            except (BridgeError, ValueError) as exc:
                logger.warning(
                    "bridge_endpoint_registration_failed",
                    endpoint=config.address,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        return registered

    async def _register_config(
        self,
        config: EndpointConfig,
        settings: BridgeSettings,
    ) -> AgentEndpoint:
        return await self.register_endpoint(
            config.address,
            manifest_path=config.manifest_path or settings.manifest_path,
            rpc_path=config.rpc_path,
            name=config.name,
            api_key=config.api_key,
            headers=config.headers,
            timeout_seconds=config.timeout_seconds,
        )

    async def deregister(self, address: str) -> bool:
        """Remove an endpoint, invalidating its operations.

        Pending requests addressed to the endpoint are cancelled.

        Returns:
            True if the endpoint was registered
        """
        base_address = normalize_address(address)
        async with self._lock:
            endpoint = self._endpoints.pop(base_address, None)
            if endpoint is None:
                return False
            for operation in endpoint.operations.values():
                operation.invalidate(CapabilityErrorKind.REMOVED)
            endpoint.snapshot = EndpointSnapshot.build({}, {}, version=endpoint.snapshot.version + 1)
            self._store.forget(base_address)
            self._refresh_locks.pop(base_address, None)

        cancelled = self.bridge.cancel_endpoint(base_address)
        logger.info(
            "bridge_endpoint_deregistered",
            endpoint=base_address,
            cancelled_requests=cancelled,
        )
        return True

    # ==================== Lookup ====================

    def _require(self, address: str) -> AgentEndpoint:
        base_address = normalize_address(address)
        endpoint = self._endpoints.get(base_address)
        if endpoint is None:
            raise UnknownEndpointError(base_address, sorted(self._endpoints))
        return endpoint

    def list_endpoints(self) -> list[AgentEndpoint]:
        return list(self._endpoints.values())

    def get_endpoint(self, address: str) -> AgentEndpoint:
        """Raises UnknownEndpointError if ``address`` is not registered."""
        return self._require(address)

    def list_operations(self, address: str) -> set[str]:
        """Skill ids currently invocable on ``address``."""
        return set(self._require(address).operations)

    def get_operation(self, address: str, skill_id: str) -> CallableOperation:
        """Return the current operation for ``skill_id`` on ``address``.

        Raises:
            UnknownEndpointError: If the address is not registered
            UnknownSkillError: If the endpoint does not advertise the skill
        """
        endpoint = self._require(address)
        operation = endpoint.operations.get(skill_id)
        if operation is None:
            raise UnknownSkillError(endpoint.base_address, skill_id, sorted(endpoint.operations))
        return operation

    # ==================== Refresh ====================

    async def refresh(self, address: str) -> RefreshResult:
        """Re-fetch the manifest for ``address`` and apply the differences.

        Raises:
            UnknownEndpointError: If the address is not registered
            ManifestError: If the manifest cannot be fetched or parsed; the
                previous snapshot stays in place
        """
        endpoint = self._require(address)
        refresh_lock = self._refresh_locks.setdefault(endpoint.base_address, Lock())
        async with refresh_lock:
            return await self._refresh_locked(endpoint)

    async def _refresh_locked(self, endpoint: AgentEndpoint) -> RefreshResult:
        base_address = endpoint.base_address
        if self._endpoints.get(base_address) is not endpoint:
            # Deregistered while waiting behind another refresh
            raise UnknownEndpointError(base_address, sorted(self._endpoints))

        try:
            raw = await self._fetcher.fetch_manifest(endpoint)
            manifest = self._store.parse(raw)
        except ManifestError as exc:
            logger.warning(
                "bridge_refresh_failed",
                endpoint=base_address,
                kind=exc.kind.value,
                error=exc.message,
            )
            raise

        async with self._lock:
            if self._endpoints.get(base_address) is not endpoint:
                raise UnknownEndpointError(base_address, sorted(self._endpoints))

            current = endpoint.snapshot
            diff = diff_descriptors(current.descriptors, manifest.descriptors)

            descriptors = {}
            operations = {}
            for skill_id, descriptor in manifest.descriptors.items():
                if skill_id in diff.unchanged:
                    descriptors[skill_id] = current.descriptors[skill_id]
                    operations[skill_id] = current.operations[skill_id]
                else:
                    descriptors[skill_id] = descriptor
                    operations[skill_id] = self.bridge.synthesize(descriptor, endpoint)

            version = current.version if diff.is_empty else current.version + 1
            endpoint.snapshot = EndpointSnapshot.build(descriptors, operations, version=version)
            self._store.remember(base_address, manifest)

            for skill_id in diff.removed:
                current.operations[skill_id].invalidate(CapabilityErrorKind.REMOVED)
            for skill_id in diff.changed:
                current.operations[skill_id].invalidate(CapabilityErrorKind.CHANGED)

        result = RefreshResult(
            address=base_address,
            added=diff.added,
            removed=diff.removed,
            changed=diff.changed,
            unchanged=diff.unchanged,
            version=version,
        )
        if result.has_changes:
            logger.info(
                "bridge_endpoint_refreshed",
                endpoint=base_address,
                added=sorted(diff.added),
                removed=sorted(diff.removed),
                changed=sorted(diff.changed),
                version=version,
            )
        else:
            logger.debug("bridge_endpoint_unchanged", endpoint=base_address, version=version)
        return result

    async def refresh_all(self) -> dict[str, RefreshResult]:
        """Refresh every registered endpoint.

        Failures are logged per endpoint and do not stop the others.

        Returns:
            Results keyed by address, for the endpoints that refreshed
        """
        addresses = list(self._endpoints)
        outcomes = await asyncio.gather(
            *(self.refresh(address) for address in addresses),
            return_exceptions=True,
        )

        results: dict[str, RefreshResult] = {}
        for address, outcome in zip(addresses, outcomes):
            if isinstance(outcome, RefreshResult):
                results[address] = outcome
            elif isinstance(outcome, BridgeError):
                logger.warning(
                    "bridge_endpoint_refresh_skipped",
                    endpoint=address,
                    error=outcome.message,
                    error_type=type(outcome).__name__,
                )
            elif isinstance(outcome, BaseException):
                raise outcome
        return results

    async def _periodic_refresh_task(self) -> None:
        """Background task refreshing all endpoints on an interval."""
        try:
            while True:
                await asyncio.sleep(self._refresh_interval_seconds)
                await self.refresh_all()
        except asyncio.CancelledError:
            return

    async def start_refresh_task(self) -> None:
        """Start background refresh (no-op when the interval is 0)."""
        if self._refresh_interval_seconds <= 0:
            return
        if self._refresh_task and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._periodic_refresh_task())
        logger.info(
            "bridge_refresh_started",
            interval_seconds=self._refresh_interval_seconds,
        )

    async def stop_refresh_task(self) -> None:
        """Stop background refresh."""
        if not self._refresh_task:
            return
        self._refresh_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._refresh_task
        self._refresh_task = None
        logger.info("bridge_refresh_stopped")

    # ==================== Lifecycle ====================

    async def close(self) -> None:
        """Stop refreshing, deregister every endpoint and close the bridge.

        Should be called during application shutdown.
        """
        await self.stop_refresh_task()
        for address in list(self._endpoints):
            await self.deregister(address)
        await self.bridge.close()

    @asynccontextmanager
    async def lifespan(self) -> AsyncIterator["CapabilityRegistry"]:
        """Context manager for registry lifecycle.

        Example:
            async with registry.lifespan() as r:
                await r.register_endpoint("http://math.local")
        """
        await self.start_refresh_task()
        try:
            yield self
        finally:
            await self.close()


def create_registry(
    settings: BridgeSettings,
    transport: Optional[TransportAdapter] = None,
) -> CapabilityRegistry:
    """Create a CapabilityRegistry wired from BridgeSettings.

    Args:
        settings: Bridge settings (see ``create_bridge_settings``)
        transport: Transport to use (defaults to HTTP with the configured timeout)

    Returns:
        CapabilityRegistry instance; endpoints are not registered yet
    """
    if transport is None:
        transport = HttpJsonRpcTransport(timeout_seconds=settings.http_timeout_seconds)
    bridge = CapabilityBridge(
        transport,
        default_timeout_seconds=settings.call_timeout_seconds,
        strict_unknown_fields=settings.strict_unknown_fields,
    )
    return CapabilityRegistry(
        bridge,
        manifest_path=settings.manifest_path,
        refresh_interval_seconds=settings.refresh_interval_seconds,
    )
