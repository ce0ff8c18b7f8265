"""Shared fixtures: the math Specialist wired to a bridge and registry."""

from __future__ import annotations

from typing import AsyncIterator

import pytest
import pytest_asyncio

from capability_bridge.bridge import CapabilityBridge
from capability_bridge.loopback import LoopbackTransport, SpecialistHost
from capability_bridge.registry import CapabilityRegistry
from tests.support import MATH_ADDRESS, build_math_host


@pytest.fixture
def math_host() -> SpecialistHost:
    """Math Specialist with multiply_numbers and add."""
    return build_math_host()


@pytest_asyncio.fixture
async def loopback(math_host: SpecialistHost) -> AsyncIterator[LoopbackTransport]:
    transport = LoopbackTransport({MATH_ADDRESS: math_host})
    yield transport
    await transport.close()


@pytest_asyncio.fixture
async def bridge(loopback: LoopbackTransport) -> AsyncIterator[CapabilityBridge]:
    bridge = CapabilityBridge(loopback, default_timeout_seconds=5.0)
    yield bridge
    await bridge.close()


@pytest_asyncio.fixture
async def registry(bridge: CapabilityBridge) -> AsyncIterator[CapabilityRegistry]:
    registry = CapabilityRegistry(bridge)
    await registry.register_endpoint(MATH_ADDRESS)
    yield registry
    await registry.close()
