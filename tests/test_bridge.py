"""Tests for the Capability Bridge over the loopback Specialist."""

import asyncio

import pytest

from capability_bridge.bridge import CapabilityBridge
from capability_bridge.endpoint import AgentEndpoint
from capability_bridge.errors import (
    CorrelationCancelledError,
    CorrelationTimeoutError,
    MissingFieldError,
    RemoteError,
    SkillRemovedError,
    TransportUnreachableError,
    TypeMismatchError,
    UnknownFieldError,
    UnknownSkillError,
    ValidationError,
)
from capability_bridge.jsonrpc import INVALID_PARAMS, SERVER_ERROR, decode_request
from capability_bridge.loopback import LoopbackTransport, SpecialistError, SpecialistHost
from capability_bridge.manifest import CapabilityDescriptor
from capability_bridge.registry import CapabilityRegistry

from tests.support import MATH_ADDRESS, NUMBER_PAIR_SCHEMA


class TestInvocation:
    """Happy-path and validation behaviour of callable operations."""

    @pytest.mark.asyncio
    async def test_multiply_round_trip(self, registry: CapabilityRegistry) -> None:
        multiply = registry.get_operation(MATH_ADDRESS, "multiply_numbers")

        assert await multiply(a=10, b=5) == 50

    @pytest.mark.asyncio
    async def test_async_handler(self, registry: CapabilityRegistry) -> None:
        add = registry.get_operation(MATH_ADDRESS, "add")

        assert await add.invoke({"a": 2, "b": 3.5}) == 5.5

    @pytest.mark.asyncio
    async def test_missing_argument_never_reaches_transport(
        self, registry: CapabilityRegistry, loopback: LoopbackTransport
    ) -> None:
        multiply = registry.get_operation(MATH_ADDRESS, "multiply_numbers")

        with pytest.raises(MissingFieldError) as excinfo:
            await multiply(a=10)

        assert excinfo.value.field == "b"
        assert loopback.send_count == 0
        assert registry.bridge.in_flight == 0

    @pytest.mark.asyncio
    async def test_unknown_argument_rejected(
        self, registry: CapabilityRegistry, loopback: LoopbackTransport
    ) -> None:
        multiply = registry.get_operation(MATH_ADDRESS, "multiply_numbers")

        with pytest.raises(UnknownFieldError):
            await multiply(a=1, b=2, c=3)

        assert loopback.send_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    async def test_non_finite_number_never_reaches_transport(
        self, registry: CapabilityRegistry, loopback: LoopbackTransport, value: float
    ) -> None:
        multiply = registry.get_operation(MATH_ADDRESS, "multiply_numbers")

        with pytest.raises(ValidationError):
            await multiply(a=value, b=1)

        assert loopback.send_count == 0
        assert registry.bridge.in_flight == 0
        assert registry.bridge.correlator.unclaimed_count == 0

    @pytest.mark.asyncio
    async def test_wrong_type_rejected(self, registry: CapabilityRegistry) -> None:
        multiply = registry.get_operation(MATH_ADDRESS, "multiply_numbers")

        with pytest.raises(TypeMismatchError) as excinfo:
            await multiply(a="ten", b=5)

        assert excinfo.value.field == "a"

    @pytest.mark.asyncio
    async def test_non_mapping_arguments_rejected(self, registry: CapabilityRegistry) -> None:
        multiply = registry.get_operation(MATH_ADDRESS, "multiply_numbers")

        with pytest.raises(TypeMismatchError) as excinfo:
            await multiply.invoke([10, 5])  # type: ignore[arg-type]

        assert excinfo.value.field == "$"

    @pytest.mark.asyncio
    async def test_try_invoke_returns_typed_failure(self, registry: CapabilityRegistry) -> None:
        multiply = registry.get_operation(MATH_ADDRESS, "multiply_numbers")

        result = await multiply.try_invoke({"a": 1})

        assert not result.is_success
        assert result.correlation_id is None
        assert isinstance(result.error, MissingFieldError)

    @pytest.mark.asyncio
    async def test_try_invoke_success_carries_correlation_id(
        self, registry: CapabilityRegistry
    ) -> None:
        multiply = registry.get_operation(MATH_ADDRESS, "multiply_numbers")

        result = await multiply.try_invoke({"a": 3, "b": 4})

        assert result.is_success
        assert result.value == 12
        assert result.correlation_id

    @pytest.mark.asyncio
    async def test_thread_id_travels_in_meta(
        self, registry: CapabilityRegistry, loopback: LoopbackTransport
    ) -> None:
        add = registry.get_operation(MATH_ADDRESS, "add")

        await add.invoke({"a": 1, "b": 1}, thread_id="session-42")

        request = decode_request(loopback.sent[0])
        assert request.meta is not None
        assert request.meta.thid == "session-42"
        assert request.method == "add"


class TestFailures:
    """Remote, transport and correlation failures."""

    @pytest.mark.asyncio
    async def test_specialist_error_becomes_remote_error(
        self, math_host: SpecialistHost, registry: CapabilityRegistry
    ) -> None:
        @math_host.skill("divide", input_schema=NUMBER_PAIR_SCHEMA)
        def divide(a: float, b: float) -> float:
            if b == 0:
                raise SpecialistError(-32001, "division by zero", {"b": b})
            return a / b

        await registry.refresh(MATH_ADDRESS)
        divide_op = registry.get_operation(MATH_ADDRESS, "divide")

        with pytest.raises(RemoteError) as excinfo:
            await divide_op(a=1, b=0)

        assert excinfo.value.code == -32001
        assert excinfo.value.data == {"b": 0}
        assert excinfo.value.skill_id == "divide"

    @pytest.mark.asyncio
    async def test_handler_crash_becomes_server_error(
        self, math_host: SpecialistHost, registry: CapabilityRegistry
    ) -> None:
        @math_host.skill("explode")
        def explode() -> None:
            raise RuntimeError("boom")

        await registry.refresh(MATH_ADDRESS)

        with pytest.raises(RemoteError) as excinfo:
            await registry.get_operation(MATH_ADDRESS, "explode")()

        assert excinfo.value.code == SERVER_ERROR
        assert "boom" in excinfo.value.error_message

    @pytest.mark.asyncio
    async def test_specialist_validates_its_own_params(
        self, math_host: SpecialistHost, bridge: CapabilityBridge
    ) -> None:
        # A stale descriptor that no longer matches what the Specialist expects
        stale = CapabilityDescriptor.create("multiply_numbers", input_schema={"type": "object"})
        operation = bridge.synthesize(stale, AgentEndpoint(MATH_ADDRESS))

        with pytest.raises(RemoteError) as excinfo:
            await operation.invoke({})

        assert excinfo.value.code == INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_output_schema_violation(
        self, math_host: SpecialistHost, registry: CapabilityRegistry
    ) -> None:
        @math_host.skill("bad_number", output_schema={"type": "number"})
        def bad_number() -> str:
            return "fifty"

        await registry.refresh(MATH_ADDRESS)

        with pytest.raises(ValidationError) as excinfo:
            await registry.get_operation(MATH_ADDRESS, "bad_number")()

        assert not isinstance(excinfo.value, RemoteError)
        assert excinfo.value.phase == "result"

    @pytest.mark.asyncio
    async def test_timeout_releases_pending_entry(
        self, registry: CapabilityRegistry, loopback: LoopbackTransport
    ) -> None:
        loopback.delays["multiply_numbers"] = 5.0
        multiply = registry.get_operation(MATH_ADDRESS, "multiply_numbers")

        with pytest.raises(CorrelationTimeoutError):
            await multiply.invoke({"a": 1, "b": 2}, timeout_seconds=0.05)

        assert registry.bridge.in_flight == 0

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(self, bridge: CapabilityBridge) -> None:
        operation = bridge.synthesize(
            CapabilityDescriptor.create("ping"), AgentEndpoint("http://nowhere.local")
        )

        with pytest.raises(TransportUnreachableError):
            await operation.invoke()

        assert bridge.in_flight == 0

    @pytest.mark.asyncio
    async def test_cancel_pending_invocation(
        self, registry: CapabilityRegistry, loopback: LoopbackTransport
    ) -> None:
        loopback.delays["add"] = 5.0
        pending = registry.get_operation(MATH_ADDRESS, "add").submit({"a": 1, "b": 2})

        assert pending.cancel()

        result = await pending.outcome()
        assert isinstance(result.error, CorrelationCancelledError)
        assert pending.done
        assert registry.bridge.in_flight == 0

    @pytest.mark.asyncio
    async def test_cancelling_the_caller_releases_entry(
        self, registry: CapabilityRegistry, loopback: LoopbackTransport
    ) -> None:
        loopback.delays["add"] = 5.0
        add = registry.get_operation(MATH_ADDRESS, "add")
        task = asyncio.create_task(add(a=1, b=2))
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert registry.bridge.in_flight == 0

    @pytest.mark.asyncio
    async def test_close_cancels_in_flight_calls(
        self, registry: CapabilityRegistry, loopback: LoopbackTransport
    ) -> None:
        loopback.delays["add"] = 5.0
        pending = registry.get_operation(MATH_ADDRESS, "add").submit({"a": 1, "b": 2})
        await asyncio.sleep(0)

        await registry.bridge.close()

        result = await pending.outcome()
        assert isinstance(result.error, CorrelationCancelledError)


class TestReceivePath:
    """Pushed responses arriving through handle_incoming."""

    @pytest.mark.asyncio
    async def test_garbage_is_discarded(self, bridge: CapabilityBridge) -> None:
        assert bridge.handle_incoming(b"not json") is False

    @pytest.mark.asyncio
    async def test_unknown_id_is_discarded(self, bridge: CapabilityBridge) -> None:
        assert bridge.handle_incoming(b'{"jsonrpc": "2.0", "id": "stray", "result": 1}') is False

    @pytest.mark.asyncio
    async def test_out_of_order_responses_reach_their_callers(
        self, registry: CapabilityRegistry, loopback: LoopbackTransport
    ) -> None:
        loopback.delays["multiply_numbers"] = 0.1
        multiply = registry.get_operation(MATH_ADDRESS, "multiply_numbers")
        add = registry.get_operation(MATH_ADDRESS, "add")
        finished: list[str] = []

        async def call(name: str, operation, **arguments: float) -> float:
            value = await operation(**arguments)
            finished.append(name)
            return value

        product, total = await asyncio.gather(
            call("multiply", multiply, a=6, b=7),
            call("add", add, a=6, b=7),
        )

        assert (product, total) == (42, 13)
        assert finished == ["add", "multiply"]
        assert registry.bridge.in_flight == 0

    @pytest.mark.asyncio
    async def test_many_concurrent_calls(self, registry: CapabilityRegistry) -> None:
        add = registry.get_operation(MATH_ADDRESS, "add")

        results = await asyncio.gather(*(add(a=i, b=i) for i in range(25)))

        assert results == [2 * i for i in range(25)]
        assert registry.bridge.in_flight == 0
        assert registry.bridge.correlator.unclaimed_count == 0


class TestCapabilityChanges:
    """Invoking operations after the manifest changed."""

    @pytest.mark.asyncio
    async def test_removed_skill(
        self, math_host: SpecialistHost, registry: CapabilityRegistry
    ) -> None:
        add = registry.get_operation(MATH_ADDRESS, "add")
        math_host.remove_skill("add")

        result = await registry.refresh(MATH_ADDRESS)

        assert result.removed == {"add"}
        assert not add.is_available
        with pytest.raises(SkillRemovedError):
            await add(a=1, b=2)
        with pytest.raises(UnknownSkillError):
            registry.get_operation(MATH_ADDRESS, "add")
