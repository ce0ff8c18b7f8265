"""Transport adapters: move encoded JSON-RPC envelopes to and from a Specialist.

Adapters only understand the envelope. They return the raw response bytes
for request/response bindings (HTTP), or ``None`` when the response will be
pushed later through the receiver installed with ``set_receiver``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from types import TracebackType
from typing import Callable, Optional, Protocol, runtime_checkable

import httpx
import structlog

from .endpoint import AgentEndpoint
from .errors import (
    ManifestUnavailableError,
    ProtocolViolationError,
    TransportAbortedError,
    TransportUnreachableError,
)
from .jsonrpc import decode_response

logger = structlog.get_logger(__name__)

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0

ResponseReceiver = Callable[[bytes], object]


@runtime_checkable
class ManifestFetcher(Protocol):
    """Collaborator that retrieves a Specialist's manifest bytes."""

    async def fetch_manifest(self, endpoint: AgentEndpoint) -> bytes:
        ...


class TransportAdapter(ABC):
    """Base class for wire bindings."""

    name = "abstract"

    def __init__(self) -> None:
        self._receiver: Optional[ResponseReceiver] = None

    def set_receiver(self, receiver: Optional[ResponseReceiver]) -> None:
        """Install the callback that receives pushed response envelopes."""
        self._receiver = receiver

    def _deliver(self, raw: bytes) -> None:
        if self._receiver is None:
            logger.warning("bridge_response_without_receiver", transport=self.name)
            return
        self._receiver(raw)

    @abstractmethod
    async def send(
        self,
        endpoint: AgentEndpoint,
        payload: bytes,
        correlation_id: str,
    ) -> Optional[bytes]:
        """Send an encoded request.

        Returns:
            Raw response bytes, or None if the response arrives via the receiver

        Raises:
            TransportUnreachableError, ProtocolViolationError, TransportAbortedError
        """

    def abort(self, correlation_id: str) -> bool:
        """Best-effort abort of the network operation for ``correlation_id``."""
        return False

    async def close(self) -> None:
        """Release transport resources."""


class HttpJsonRpcTransport(TransportAdapter):
    """JSON-RPC over HTTP POST, the reference binding.

    Also serves as the manifest fetcher (``GET <base>/agent-card.json``).
    The adapter never retries; retry policy belongs to the caller.
    """

    name = "http"

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__()
        if http_client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout_seconds),
                follow_redirects=True,
            )
            self._owns_client = True
        else:
            self._client = http_client
            self._owns_client = False
        self._inflight: dict[str, asyncio.Task[object]] = {}
        self._aborted: set[str] = set()
        self._closed = False

    def _build_headers(self, endpoint: AgentEndpoint) -> dict[str, str]:
        """Build HTTP headers for requests to ``endpoint``."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **endpoint.headers,
        }
        if endpoint.api_key:
            headers["Authorization"] = f"Bearer {endpoint.api_key}"
        return headers

    def _timeout_for(self, endpoint: AgentEndpoint) -> Optional[httpx.Timeout]:
        if endpoint.timeout_seconds is None:
            return None
        return httpx.Timeout(endpoint.timeout_seconds)

    async def send(
        self,
        endpoint: AgentEndpoint,
        payload: bytes,
        correlation_id: str,
    ) -> Optional[bytes]:
        url = endpoint.rpc_url
        if self._closed:
            raise TransportAbortedError(url, correlation_id)

        task = asyncio.current_task()
        if task is not None:
            self._inflight[correlation_id] = task

        try:
            kwargs: dict[str, object] = {
                "content": payload,
                "headers": self._build_headers(endpoint),
            }
            timeout = self._timeout_for(endpoint)
            if timeout is not None:
                kwargs["timeout"] = timeout
            response = await self._client.post(url, **kwargs)
        except asyncio.CancelledError:
            if correlation_id in self._aborted:
                raise TransportAbortedError(url, correlation_id) from None
            raise
        except httpx.TimeoutException as exc:
            logger.warning("bridge_http_timeout", url=url, correlation_id=correlation_id)
            raise TransportUnreachableError(url, f"timeout ({type(exc).__name__})") from exc
        except httpx.RequestError as exc:
            logger.warning(
                "bridge_http_unreachable",
                url=url,
                correlation_id=correlation_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise TransportUnreachableError(url, str(exc) or type(exc).__name__) from exc
        finally:
            self._inflight.pop(correlation_id, None)
            self._aborted.discard(correlation_id)

        return self._check_status(url, response)

    def _check_status(self, url: str, response: httpx.Response) -> bytes:
        status = response.status_code
        if status < 400:
            return response.content

        # Some servers send a JSON-RPC error object with a non-2xx status
        try:
            envelope = decode_response(response.content)
        except ProtocolViolationError:
            envelope = None
        if envelope is not None and envelope.is_error:
            return response.content

        if status >= 500:
            logger.warning("bridge_http_server_error", url=url, status_code=status)
            raise TransportUnreachableError(url, f"HTTP {status}")

        logger.error("bridge_http_client_error", url=url, status_code=status)
        raise ProtocolViolationError(f"HTTP {status}", {"url": url, "status_code": status})

    def abort(self, correlation_id: str) -> bool:
        task = self._inflight.get(correlation_id)
        if task is None or task.done():
            return False
        self._aborted.add(correlation_id)
        task.cancel()
        logger.debug("bridge_http_aborted", correlation_id=correlation_id)
        return True

    async def fetch_manifest(self, endpoint: AgentEndpoint) -> bytes:
        """Fetch the manifest document for ``endpoint``.

        Raises:
            ManifestUnavailableError: On network failure or non-2xx status
        """
        url = endpoint.manifest_url
        headers = self._build_headers(endpoint)
        headers.pop("Content-Type", None)
        try:
            response = await self._client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise ManifestUnavailableError(url, str(exc) or type(exc).__name__) from exc

        if response.status_code >= 400:
            raise ManifestUnavailableError(url, f"HTTP {response.status_code}")
        logger.debug("bridge_manifest_fetched", url=url, size=len(response.content))
        return response.content

    async def close(self) -> None:
        self._closed = True
        for correlation_id in list(self._inflight):
            self.abort(correlation_id)
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpJsonRpcTransport":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
