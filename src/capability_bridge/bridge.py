"""Capability Bridge: turns advertised skills into locally callable operations.

``CapabilityBridge.synthesize`` builds a ``CallableOperation`` for one
descriptor on one endpoint. Invoking it:

1. validates the arguments against the skill's input schema (no network
   call on failure)
2. registers a pending request with the shared RequestCorrelator
3. encodes a JSON-RPC request using the correlation id as the wire id
4. starts the transport send; transport failures resolve the request
5. resolves the request when a response arrives, either from the send
   itself or pushed through ``handle_incoming``
6. waits once, on the correlator, then checks a successful value against
   the skill's output schema

Usage:
    transport = HttpJsonRpcTransport()
    bridge = CapabilityBridge(transport)
    multiply = bridge.synthesize(descriptor, endpoint)
    product = await multiply(a=10, b=5)
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Mapping, Optional

import structlog

from .correlator import InvocationResult, RequestCorrelator
from .endpoint import AgentEndpoint
from .errors import (
    BridgeError,
    CapabilityErrorKind,
    ConstraintViolationError,
    CorrelationError,
    ProtocolViolationError,
    RemoteError,
    SkillChangedError,
    SkillRemovedError,
    TransportError,
    TransportUnreachableError,
    TypeMismatchError,
    ValidationError,
)
from .jsonrpc import JsonRpcResponse, decode_response, encode_request
from .manifest import CapabilityDescriptor
from .schema import SchemaValidator, json_type_name
from .transport import TransportAdapter

logger = structlog.get_logger(__name__)


class CallableOperation:
    """A remote skill bound to an endpoint, invocable like a local coroutine.

    Operations are values: they hold the descriptor they were synthesized
    from, the endpoint, and the bridge that dispatches for them. A refresh
    that drops or redefines the skill invalidates the operation rather than
    mutating it.
    """

    def __init__(
        self,
        bridge: "CapabilityBridge",
        endpoint: AgentEndpoint,
        descriptor: CapabilityDescriptor,
    ) -> None:
        self._bridge = bridge
        self.endpoint = endpoint
        self.descriptor = descriptor
        self._invalidated: Optional[CapabilityErrorKind] = None

    @property
    def skill_id(self) -> str:
        return self.descriptor.skill_id

    @property
    def description(self) -> str:
        return self.descriptor.description

    @property
    def address(self) -> str:
        return self.endpoint.base_address

    @property
    def is_available(self) -> bool:
        return self._invalidated is None

    def invalidate(self, kind: CapabilityErrorKind = CapabilityErrorKind.REMOVED) -> None:
        """Mark the operation unusable; later invocations raise a CapabilityError."""
        self._invalidated = kind

    def _ensure_available(self) -> None:
        if self._invalidated is None:
            return
        if self._invalidated == CapabilityErrorKind.CHANGED:
            raise SkillChangedError(self.address, self.skill_id)
        raise SkillRemovedError(self.address, self.skill_id)

    def submit(
        self,
        arguments: Optional[Mapping[str, Any]] = None,
        *,
        timeout_seconds: Optional[float] = None,
        thread_id: Optional[str] = None,
    ) -> "PendingInvocation":
        """Validate and dispatch, returning a handle to the in-flight call.

        Raises:
            CapabilityError: If the operation was invalidated by a refresh
            ValidationError: If the arguments fail the input schema
        """
        self._ensure_available()
        return self._bridge.dispatch(
            self,
            {} if arguments is None else arguments,
            timeout_seconds=timeout_seconds,
            thread_id=thread_id,
        )

    async def invoke(
        self,
        arguments: Optional[Mapping[str, Any]] = None,
        *,
        timeout_seconds: Optional[float] = None,
        thread_id: Optional[str] = None,
    ) -> Any:
        """Invoke the skill and return its decoded result, raising BridgeError on failure."""
        pending = self.submit(arguments, timeout_seconds=timeout_seconds, thread_id=thread_id)
        return await pending.result()

    async def try_invoke(
        self,
        arguments: Optional[Mapping[str, Any]] = None,
        *,
        timeout_seconds: Optional[float] = None,
        thread_id: Optional[str] = None,
    ) -> InvocationResult:
        """Invoke the skill, returning every failure as a typed InvocationResult."""
        try:
            pending = self.submit(arguments, timeout_seconds=timeout_seconds, thread_id=thread_id)
        except BridgeError as exc:
            return InvocationResult.failure(None, exc)
        return await pending.outcome()

    async def __call__(self, **arguments: Any) -> Any:
        return await self.invoke(arguments)

    def __repr__(self) -> str:
        state = "available" if self._invalidated is None else self._invalidated.value
        return f"<CallableOperation {self.skill_id}@{self.address} {state}>"


class PendingInvocation:
    """Handle to one dispatched call.

    Awaiting the handle (or ``result()``) returns the value or raises the
    typed failure; ``outcome()`` returns an InvocationResult instead.
    """

    def __init__(
        self,
        bridge: "CapabilityBridge",
        operation: CallableOperation,
        descriptor: CapabilityDescriptor,
        correlation_id: str,
        send_task: asyncio.Task[None],
    ) -> None:
        self._bridge = bridge
        self.operation = operation
        self.descriptor = descriptor
        self.correlation_id = correlation_id
        self._send_task = send_task
        self._outcome: Optional[InvocationResult] = None

    @property
    def skill_id(self) -> str:
        return self.descriptor.skill_id

    @property
    def done(self) -> bool:
        return self._outcome is not None or not self._bridge.correlator.is_pending(
            self.correlation_id
        )

    async def outcome(self) -> InvocationResult:
        if self._outcome is not None:
            return self._outcome

        try:
            result = await self._bridge.correlator.await_response(self.correlation_id)
        except asyncio.CancelledError:
            self._bridge.abort_send(self.correlation_id)
            raise

        if isinstance(result.error, CorrelationError) or not self._send_task.done():
            # Settled without a response; stop whatever is still in flight
            self._bridge.abort_send(self.correlation_id)

        if self._outcome is None:
            self._outcome = self._bridge.decode_output(self.descriptor, result)
        return self._outcome

    async def result(self) -> Any:
        return (await self.outcome()).unwrap()

    def cancel(self, reason: str = "cancelled by caller") -> bool:
        """Cancel the call; the waiter receives a Cancelled outcome."""
        return self._bridge.cancel(self.correlation_id, reason)

    def __await__(self) -> Any:
        return self.result().__await__()


class CapabilityBridge:
    """Synthesizes callable operations and routes their calls over a transport.

    The correlator is shared by every operation this bridge synthesizes and
    is the only state mutated by concurrent invocations.
    """

    def __init__(
        self,
        transport: TransportAdapter,
        correlator: Optional[RequestCorrelator] = None,
        *,
        default_timeout_seconds: Optional[float] = None,
        strict_unknown_fields: bool = True,
        validator: Optional[SchemaValidator] = None,
    ) -> None:
        self.transport = transport
        if correlator is None:
            correlator = (
                RequestCorrelator(default_timeout_seconds)
                if default_timeout_seconds is not None
                else RequestCorrelator()
            )
        self.correlator = correlator
        self.default_timeout_seconds = default_timeout_seconds
        self.validator = validator or SchemaValidator(strict_unknown_fields=strict_unknown_fields)
        self._send_tasks: dict[str, asyncio.Task[None]] = {}
        transport.set_receiver(self.handle_incoming)

    def synthesize(
        self,
        descriptor: CapabilityDescriptor,
        endpoint: AgentEndpoint,
    ) -> CallableOperation:
        """Build the callable operation for ``descriptor`` on ``endpoint``."""
        return CallableOperation(self, endpoint, descriptor)

    # ==================== Dispatch ====================

    def dispatch(
        self,
        operation: CallableOperation,
        arguments: Mapping[str, Any],
        *,
        timeout_seconds: Optional[float] = None,
        thread_id: Optional[str] = None,
    ) -> PendingInvocation:
        """Validate, register and start sending one call.

        Must run inside the event loop. Validation failures raise before any
        correlation id is issued or any byte is sent.
        """
        descriptor = operation.descriptor
        endpoint = operation.endpoint

        if not isinstance(arguments, Mapping):
            raise TypeMismatchError("$", expected="object", actual=json_type_name(arguments))
        params = dict(arguments)
        self.validator.validate(descriptor.input_schema, params)

        timeout = (
            timeout_seconds
            if timeout_seconds is not None
            else endpoint.timeout_seconds
            if endpoint.timeout_seconds is not None
            else self.default_timeout_seconds
        )
        correlation_id = self.correlator.register(
            descriptor.skill_id,
            timeout,
            endpoint=endpoint.base_address,
        )

        try:
            payload = encode_request(descriptor.skill_id, params, correlation_id, thread_id)
        except (TypeError, ValueError) as exc:
            # NaN and infinities are rejected here too; they are not JSON
            self.correlator.discard(correlation_id)
            raise ConstraintViolationError(
                "$", reason=f"arguments are not JSON serializable ({exc})"
            ) from exc

        task = asyncio.get_running_loop().create_task(
            self._send(endpoint, descriptor, correlation_id, payload),
            name=f"bridge-send-{correlation_id}",
        )
        self._send_tasks[correlation_id] = task
        task.add_done_callback(lambda _t: self._send_tasks.pop(correlation_id, None))

        logger.debug(
            "bridge_dispatch",
            skill_id=descriptor.skill_id,
            correlation_id=correlation_id,
            endpoint=endpoint.base_address,
            thread_id=thread_id,
        )
        return PendingInvocation(self, operation, descriptor, correlation_id, task)

    async def _send(
        self,
        endpoint: AgentEndpoint,
        descriptor: CapabilityDescriptor,
        correlation_id: str,
        payload: bytes,
    ) -> None:
        try:
            raw = await self.transport.send(endpoint, payload, correlation_id)
        except TransportError as exc:
            self._fail_send(correlation_id, descriptor, exc)
            return
        except Exception as exc:
            logger.exception(
                "bridge_transport_unexpected_error",
                skill_id=descriptor.skill_id,
                correlation_id=correlation_id,
            )
            self._fail_send(
                correlation_id,
                descriptor,
                TransportUnreachableError(endpoint.rpc_url, f"{type(exc).__name__}: {exc}"),
            )
            return

        if raw is None:
            # Push binding: the response arrives through handle_incoming
            return

        try:
            response = decode_response(raw)
        except ProtocolViolationError as exc:
            self._fail_send(correlation_id, descriptor, exc)
            return

        if response.id != correlation_id:
            self._fail_send(
                correlation_id,
                descriptor,
                ProtocolViolationError(
                    "response id does not match request id",
                    {"expected": correlation_id, "received": response.id},
                ),
            )
            return

        self.correlator.resolve(
            correlation_id, self._to_result(correlation_id, response, descriptor.skill_id)
        )

    def _fail_send(
        self,
        correlation_id: str,
        descriptor: CapabilityDescriptor,
        error: BridgeError,
    ) -> None:
        if not self.correlator.is_pending(correlation_id):
            logger.debug(
                "bridge_send_failure_after_settle",
                correlation_id=correlation_id,
                error_type=type(error).__name__,
            )
            return
        logger.warning(
            "bridge_send_failed",
            skill_id=descriptor.skill_id,
            correlation_id=correlation_id,
            error=error.message,
            error_type=type(error).__name__,
        )
        self.correlator.resolve(correlation_id, InvocationResult.failure(correlation_id, error))

    # ==================== Receive ====================

    def handle_incoming(self, raw: bytes) -> bool:
        """Receive path for pushed responses.

        Undecodable envelopes and unmatched ids are logged and dropped; this
        never raises into the transport.

        Returns:
            True if the response settled a pending request
        """
        try:
            response = decode_response(raw)
        except ProtocolViolationError as exc:
            logger.warning("bridge_incoming_discarded", reason=exc.reason)
            return False

        correlation_id = str(response.id)
        pending = self.correlator.get_pending(correlation_id)
        skill_id = pending.skill_id if pending is not None else None
        return self.correlator.resolve(
            correlation_id, self._to_result(correlation_id, response, skill_id)
        )

    @staticmethod
    def _to_result(
        correlation_id: str,
        response: JsonRpcResponse,
        skill_id: Optional[str],
    ) -> InvocationResult:
        if response.error is not None:
            return InvocationResult.failure(
                correlation_id,
                RemoteError(
                    code=response.error.code,
                    error_message=response.error.message,
                    data=response.error.data,
                    skill_id=skill_id,
                ),
            )
        return InvocationResult.success(correlation_id, response.result)

    def decode_output(
        self,
        descriptor: CapabilityDescriptor,
        result: InvocationResult,
    ) -> InvocationResult:
        """Check a successful value against the skill's output schema."""
        if not result.is_success or not descriptor.has_output_schema:
            return result
        try:
            self.validator.validate(descriptor.output_schema, result.value, phase="result")
        except ValidationError as exc:
            logger.warning(
                "bridge_result_rejected",
                skill_id=descriptor.skill_id,
                correlation_id=result.correlation_id,
                field=exc.field,
                kind=exc.kind.value,
            )
            return replace(result, value=None, error=exc)
        return result

    # ==================== Cancellation ====================

    def abort_send(self, correlation_id: str) -> None:
        """Best-effort abort of the network side of a call."""
        self.transport.abort(correlation_id)
        task = self._send_tasks.get(correlation_id)
        if task is not None and not task.done():
            task.cancel()

    def cancel(self, correlation_id: str, reason: str = "cancelled by caller") -> bool:
        """Cancel an in-flight call, releasing its pending entry."""
        cancelled = self.correlator.cancel(correlation_id, reason)
        self.abort_send(correlation_id)
        return cancelled

    def cancel_endpoint(self, address: str, reason: str = "endpoint deregistered") -> int:
        """Cancel every in-flight call addressed to ``address``."""
        cancelled = 0
        for correlation_id in self.correlator.pending_ids():
            entry = self.correlator.get_pending(correlation_id)
            if entry is None or entry.endpoint != address:
                continue
            if self.cancel(correlation_id, reason):
                cancelled += 1
        return cancelled

    @property
    def in_flight(self) -> int:
        return self.correlator.pending_count

    async def close(self) -> None:
        """Cancel all in-flight calls and close the transport."""
        self.correlator.cancel_all(reason="bridge closed")
        tasks = [task for task in self._send_tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.transport.set_receiver(None)
        await self.transport.close()
        logger.info("bridge_closed", cancelled_sends=len(tasks))
