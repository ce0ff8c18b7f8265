"""Opt-in retry for bridge invocations.

The bridge never retries on its own. Callers that know a skill is safe to
repeat wrap the call with ``invoke_with_retry``. Only transient failures are
retried: an unreachable transport and a correlation timeout. Validation,
capability, protocol and remote errors are raised on the first attempt.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from .errors import CorrelationTimeoutError, TransportUnreachableError

if TYPE_CHECKING:
    from .bridge import CallableOperation

logger = structlog.get_logger(__name__)

RETRYABLE_ERRORS = (TransportUnreachableError, CorrelationTimeoutError)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings for ``invoke_with_retry``.

    Attributes:
        max_attempts: Total attempts including the first
        initial_delay_seconds: Delay before the first retry
        max_delay_seconds: Upper bound for a single delay
        jitter_seconds: Maximum random jitter added to each delay
    """

    max_attempts: int = 3
    initial_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    jitter_seconds: float = 0.5

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0 or self.jitter_seconds < 0:
            raise ValueError("retry delays must be >= 0")


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "bridge_invoke_retry",
        attempt=retry_state.attempt_number,
        error=str(error) if error else None,
        error_type=type(error).__name__ if error else None,
    )


async def invoke_with_retry(
    operation: "CallableOperation",
    arguments: Optional[Mapping[str, Any]] = None,
    policy: Optional[RetryPolicy] = None,
    **kwargs: Any,
) -> Any:
    """Invoke ``operation``, retrying transient failures per ``policy``.

    Each attempt is a fresh invocation with its own correlation id.

    Args:
        operation: Operation to invoke
        arguments: Argument object for the skill
        policy: Backoff settings (defaults to RetryPolicy())
        **kwargs: Passed to ``operation.invoke`` (timeout_seconds, thread_id)

    Returns:
        The decoded result of the first successful attempt

    Raises:
        BridgeError: The last error once attempts are exhausted, or the first
            non-retryable error
    """
    policy = policy or RetryPolicy()
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential_jitter(
            initial=policy.initial_delay_seconds,
            max=policy.max_delay_seconds,
            jitter=policy.jitter_seconds,
        ),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        before_sleep=_log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation.invoke(arguments, **kwargs)
