"""Capability bridge between a Coordinator and Specialist agents.

A Specialist advertises its skills in a manifest (its agent card). The
registry fetches the manifest, and the bridge turns each skill into a local
async operation. Arguments are validated against the skill's input schema.
Calls travel as JSON-RPC envelopes and concurrent responses are matched
back to their callers by correlation id.

Example usage:
    from capability_bridge import (
        create_bridge_settings, create_registry, get_settings
    )

    settings = create_bridge_settings(get_settings())
    registry = create_registry(settings)

    async with registry.lifespan():
        await registry.register_endpoint("http://localhost:8001")
        multiply = registry.get_operation("http://localhost:8001", "multiply_numbers")
        product = await multiply(a=10, b=5)
"""

from capability_bridge.bridge import CallableOperation, CapabilityBridge, PendingInvocation
from capability_bridge.config import (
    BridgeSettings,
    EndpointConfig,
    Settings,
    create_bridge_settings,
    get_settings,
    load_settings,
)
from capability_bridge.correlator import InvocationResult, PendingRequest, RequestCorrelator
from capability_bridge.endpoint import AgentEndpoint, EndpointSnapshot
from capability_bridge.errors import (
    BridgeError,
    CapabilityError,
    CapabilityErrorKind,
    ConstraintViolationError,
    CorrelationCancelledError,
    CorrelationError,
    CorrelationErrorKind,
    CorrelationTimeoutError,
    DuplicateCorrelationError,
    DuplicateSkillError,
    MalformedManifestError,
    ManifestError,
    ManifestErrorKind,
    ManifestUnavailableError,
    MissingFieldError,
    ProtocolViolationError,
    RemoteError,
    SkillChangedError,
    SkillRemovedError,
    TransportAbortedError,
    TransportError,
    TransportErrorKind,
    TransportUnreachableError,
    TypeMismatchError,
    UnknownCorrelationError,
    UnknownEndpointError,
    UnknownFieldError,
    UnknownSkillError,
    ValidationError,
    ValidationErrorKind,
)
from capability_bridge.jsonrpc import (
    JsonRpcErrorObject,
    JsonRpcRequest,
    JsonRpcResponse,
    RequestMeta,
    decode_request,
    decode_response,
    encode_error,
    encode_request,
    encode_result,
)
from capability_bridge.loopback import LoopbackTransport, SpecialistError, SpecialistHost
from capability_bridge.manifest import (
    CapabilityDescriptor,
    CapabilityDescriptorStore,
    CapabilityManifest,
    parse_manifest,
)
from capability_bridge.registry import CapabilityRegistry, RefreshResult, create_registry
from capability_bridge.retry import RetryPolicy, invoke_with_retry
from capability_bridge.schema import SchemaValidator
from capability_bridge.transport import HttpJsonRpcTransport, ManifestFetcher, TransportAdapter

__all__ = [
    # Bridge
    "CallableOperation",
    "CapabilityBridge",
    "PendingInvocation",
    # Registry
    "CapabilityRegistry",
    "RefreshResult",
    "create_registry",
    # Descriptors
    "CapabilityDescriptor",
    "CapabilityDescriptorStore",
    "CapabilityManifest",
    "parse_manifest",
    "SchemaValidator",
    # Correlation
    "InvocationResult",
    "PendingRequest",
    "RequestCorrelator",
    # Endpoints and transports
    "AgentEndpoint",
    "EndpointSnapshot",
    "HttpJsonRpcTransport",
    "LoopbackTransport",
    "ManifestFetcher",
    "SpecialistError",
    "SpecialistHost",
    "TransportAdapter",
    # Wire protocol
    "JsonRpcErrorObject",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "RequestMeta",
    "decode_request",
    "decode_response",
    "encode_error",
    "encode_request",
    "encode_result",
    # Configuration
    "BridgeSettings",
    "EndpointConfig",
    "Settings",
    "create_bridge_settings",
    "get_settings",
    "load_settings",
    # Retry
    "RetryPolicy",
    "invoke_with_retry",
    # Errors
    "BridgeError",
    "CapabilityError",
    "CapabilityErrorKind",
    "ConstraintViolationError",
    "CorrelationCancelledError",
    "CorrelationError",
    "CorrelationErrorKind",
    "CorrelationTimeoutError",
    "DuplicateCorrelationError",
    "DuplicateSkillError",
    "MalformedManifestError",
    "ManifestError",
    "ManifestErrorKind",
    "ManifestUnavailableError",
    "MissingFieldError",
    "ProtocolViolationError",
    "RemoteError",
    "SkillChangedError",
    "SkillRemovedError",
    "TransportAbortedError",
    "TransportError",
    "TransportErrorKind",
    "TransportUnreachableError",
    "TypeMismatchError",
    "UnknownCorrelationError",
    "UnknownEndpointError",
    "UnknownFieldError",
    "UnknownSkillError",
    "ValidationError",
    "ValidationErrorKind",
]
