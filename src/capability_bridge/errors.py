"""Error taxonomy for the capability bridge.

Every failure surfaced to a caller is a ``BridgeError`` subclass carrying a
human-readable message, a ``details`` dict for structured logging, and a
``kind`` from the family's enum. Families mirror the bridge's components:

- ManifestError: the Specialist's capability manifest is unusable
- ValidationError: arguments or results do not match the declared schema
- TransportError: the wire binding could not deliver or read an envelope
- CorrelationError: the pending request ended without a response
- CapabilityError: the requested operation is not (or no longer) available
- RemoteError: the Specialist reported a failure of its own
"""

from enum import Enum
from typing import Any, Optional


class BridgeError(Exception):
    """Base exception for capability bridge errors."""

    retryable: bool = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logs and result envelopes."""
        payload: dict[str, Any] = {
            "type": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }
        kind = getattr(self, "kind", None)
        if kind is not None:
            payload["kind"] = kind.value
        return payload


# ==================== Manifest ====================


class ManifestErrorKind(str, Enum):
    MALFORMED = "malformed"
    DUPLICATE_SKILL = "duplicate_skill"
    UNAVAILABLE = "unavailable"


class ManifestError(BridgeError):
    """Raised when a capability manifest cannot be fetched or parsed."""

    def __init__(
        self,
        kind: ManifestErrorKind,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.kind = kind
        super().__init__(message, details)


class MalformedManifestError(ManifestError):
    """Raised when a manifest violates the expected structure."""

    def __init__(self, reason: str, details: Optional[dict[str, Any]] = None) -> None:
        self.reason = reason
        super().__init__(
            ManifestErrorKind.MALFORMED,
            f"Malformed capability manifest: {reason}",
            {"reason": reason, **(details or {})},
        )


class DuplicateSkillError(ManifestError):
    """Raised when two skills in one manifest share an id."""

    def __init__(self, skill_id: str) -> None:
        self.skill_id = skill_id
        super().__init__(
            ManifestErrorKind.DUPLICATE_SKILL,
            f"Duplicate skill id in manifest: '{skill_id}'",
            {"skill_id": skill_id},
        )


class ManifestUnavailableError(ManifestError):
    """Raised when the manifest could not be retrieved from the endpoint."""

    def __init__(self, address: str, reason: str) -> None:
        self.address = address
        self.reason = reason
        super().__init__(
            ManifestErrorKind.UNAVAILABLE,
            f"Capability manifest unavailable at '{address}': {reason}",
            {"address": address, "reason": reason},
        )


# ==================== Validation ====================


class ValidationErrorKind(str, Enum):
    MISSING_FIELD = "missing_field"
    TYPE_MISMATCH = "type_mismatch"
    UNKNOWN_FIELD = "unknown_field"
    CONSTRAINT = "constraint"


class ValidationError(BridgeError):
    """Raised when a value does not conform to a skill's declared schema.

    ``phase`` is ``"arguments"`` for the pre-dispatch gate and ``"result"``
    when a successful payload fails the skill's output schema.
    """

    def __init__(
        self,
        kind: ValidationErrorKind,
        field: str,
        message: str,
        phase: str = "arguments",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.kind = kind
        self.field = field
        self.phase = phase
        super().__init__(
            message,
            {"field": field, "phase": phase, **(details or {})},
        )


class MissingFieldError(ValidationError):
    """Raised when a required field is absent."""

    def __init__(self, field: str, phase: str = "arguments", **details: Any) -> None:
        super().__init__(
            ValidationErrorKind.MISSING_FIELD,
            field,
            f"Missing required field: '{field}'",
            phase=phase,
            details=details,
        )


class TypeMismatchError(ValidationError):
    """Raised when a field holds a value of the wrong type."""

    def __init__(
        self,
        field: str,
        expected: str,
        actual: str,
        phase: str = "arguments",
        **details: Any,
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            ValidationErrorKind.TYPE_MISMATCH,
            field,
            f"Field '{field}' expected {expected}, got {actual}",
            phase=phase,
            details={"expected": expected, "actual": actual, **details},
        )


class UnknownFieldError(ValidationError):
    """Raised when a field is not declared by the schema."""

    def __init__(self, field: str, phase: str = "arguments", **details: Any) -> None:
        super().__init__(
            ValidationErrorKind.UNKNOWN_FIELD,
            field,
            f"Unknown field: '{field}'",
            phase=phase,
            details=details,
        )


class ConstraintViolationError(ValidationError):
    """Raised for schema keywords other than required/type/additionalProperties."""

    def __init__(
        self,
        field: str,
        reason: str,
        phase: str = "arguments",
        **details: Any,
    ) -> None:
        self.reason = reason
        super().__init__(
            ValidationErrorKind.CONSTRAINT,
            field,
            f"Field '{field}' violates schema: {reason}",
            phase=phase,
            details={"reason": reason, **details},
        )


# ==================== Transport ====================


class TransportErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    PROTOCOL_VIOLATION = "protocol_violation"
    ABORTED = "aborted"


class TransportError(BridgeError):
    """Raised when the wire binding fails to deliver a request or read a reply."""

    def __init__(
        self,
        kind: TransportErrorKind,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.kind = kind
        super().__init__(message, details)


class TransportUnreachableError(TransportError):
    """Raised when the endpoint cannot be reached."""

    retryable = True

    def __init__(self, address: str, reason: str) -> None:
        self.address = address
        self.reason = reason
        super().__init__(
            TransportErrorKind.UNREACHABLE,
            f"Endpoint '{address}' unreachable: {reason}",
            {"address": address, "reason": reason},
        )


class ProtocolViolationError(TransportError):
    """Raised when a response envelope is malformed."""

    def __init__(self, reason: str, details: Optional[dict[str, Any]] = None) -> None:
        self.reason = reason
        super().__init__(
            TransportErrorKind.PROTOCOL_VIOLATION,
            f"JSON-RPC protocol violation: {reason}",
            {"reason": reason, **(details or {})},
        )


class TransportAbortedError(TransportError):
    """Raised when an in-flight send was aborted."""

    def __init__(self, address: str, correlation_id: Optional[str] = None) -> None:
        self.address = address
        self.correlation_id = correlation_id
        super().__init__(
            TransportErrorKind.ABORTED,
            f"Request to '{address}' was aborted",
            {"address": address, "correlation_id": correlation_id},
        )


# ==================== Correlation ====================


class CorrelationErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    UNMATCHED = "unmatched"
    DUPLICATE_ID = "duplicate_id"


class CorrelationError(BridgeError):
    """Raised when a pending request ends without a matched response."""

    def __init__(
        self,
        kind: CorrelationErrorKind,
        correlation_id: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.kind = kind
        self.correlation_id = correlation_id
        super().__init__(
            message,
            {"correlation_id": correlation_id, **(details or {})},
        )


class CorrelationTimeoutError(CorrelationError):
    """Raised when no response arrived before the request deadline."""

    retryable = True

    def __init__(self, correlation_id: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            CorrelationErrorKind.TIMEOUT,
            correlation_id,
            f"Request '{correlation_id}' timed out after {timeout_seconds}s",
            {"timeout_seconds": timeout_seconds},
        )


class CorrelationCancelledError(CorrelationError):
    """Raised when a pending request was cancelled before completing."""

    def __init__(self, correlation_id: str, reason: str = "") -> None:
        self.reason = reason
        super().__init__(
            CorrelationErrorKind.CANCELLED,
            correlation_id,
            f"Request '{correlation_id}' was cancelled"
            + (f": {reason}" if reason else ""),
            {"reason": reason},
        )


class UnknownCorrelationError(CorrelationError):
    """Raised when waiting on a correlation id the correlator never issued."""

    def __init__(self, correlation_id: str) -> None:
        super().__init__(
            CorrelationErrorKind.UNMATCHED,
            correlation_id,
            f"No pending request for correlation id '{correlation_id}'",
        )


class DuplicateCorrelationError(CorrelationError):
    """Raised when registering an id that is still pending."""

    def __init__(self, correlation_id: str) -> None:
        super().__init__(
            CorrelationErrorKind.DUPLICATE_ID,
            correlation_id,
            f"Correlation id '{correlation_id}' is already pending",
        )


# ==================== Capability ====================


class CapabilityErrorKind(str, Enum):
    UNKNOWN_SKILL = "unknown_skill"
    REMOVED = "removed"
    CHANGED = "changed"
    UNKNOWN_ENDPOINT = "unknown_endpoint"


class CapabilityError(BridgeError):
    """Raised when an operation is not available on an endpoint."""

    def __init__(
        self,
        kind: CapabilityErrorKind,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.kind = kind
        super().__init__(message, details)


class UnknownSkillError(CapabilityError):
    """Raised when an endpoint does not advertise the requested skill."""

    def __init__(self, address: str, skill_id: str, available: list[str]) -> None:
        self.address = address
        self.skill_id = skill_id
        self.available = available
        super().__init__(
            CapabilityErrorKind.UNKNOWN_SKILL,
            f"Skill '{skill_id}' not advertised by '{address}'",
            {"address": address, "skill_id": skill_id, "available": available},
        )


class SkillRemovedError(CapabilityError):
    """Raised when invoking an operation whose skill was removed by a refresh."""

    def __init__(self, address: str, skill_id: str) -> None:
        self.address = address
        self.skill_id = skill_id
        super().__init__(
            CapabilityErrorKind.REMOVED,
            f"Skill '{skill_id}' was removed from '{address}'",
            {"address": address, "skill_id": skill_id},
        )


class SkillChangedError(CapabilityError):
    """Raised when invoking an operation whose skill was redefined by a refresh."""

    def __init__(self, address: str, skill_id: str) -> None:
        self.address = address
        self.skill_id = skill_id
        super().__init__(
            CapabilityErrorKind.CHANGED,
            f"Skill '{skill_id}' on '{address}' was redefined; fetch the operation again",
            {"address": address, "skill_id": skill_id},
        )


class UnknownEndpointError(CapabilityError):
    """Raised when an endpoint is not registered."""

    def __init__(self, address: str, registered: list[str]) -> None:
        self.address = address
        self.registered = registered
        super().__init__(
            CapabilityErrorKind.UNKNOWN_ENDPOINT,
            f"Unknown endpoint: '{address}'",
            {"address": address, "registered": registered},
        )


# ==================== Remote ====================


class RemoteError(BridgeError):
    """Raised when the Specialist reports a failure in a JSON-RPC error object."""

    def __init__(
        self,
        code: int,
        error_message: str,
        data: Optional[Any] = None,
        skill_id: Optional[str] = None,
    ) -> None:
        self.code = code
        self.error_message = error_message
        self.data = data
        self.skill_id = skill_id
        super().__init__(
            f"Remote error {code}: {error_message}",
            {
                "code": code,
                "error_message": error_message,
                "data": data,
                "skill_id": skill_id,
            },
        )
