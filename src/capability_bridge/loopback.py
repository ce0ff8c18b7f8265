"""In-process Specialist hosting and a push-style loopback transport.

``SpecialistHost`` serves JSON-RPC requests from plain Python handlers and
publishes the matching manifest. ``LoopbackTransport`` connects bridges to
hosts in the same process: ``send`` returns immediately and the response
is pushed back through the bridge's receive path, like a long-lived
connection would. Per-skill delays make responses arrive out of order.

Example:
    host = SpecialistHost("math-specialist")

    @host.skill(
        "multiply_numbers",
        description="Multiply two numbers",
        input_schema={
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
            "required": ["a", "b"],
        },
    )
    def multiply(a: float, b: float) -> float:
        return a * b

    transport = LoopbackTransport({"http://math.local": host})
"""

from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

import structlog

from .endpoint import AgentEndpoint, normalize_address
from .errors import (
    ManifestUnavailableError,
    ProtocolViolationError,
    TransportAbortedError,
    TransportUnreachableError,
    ValidationError,
)
from .jsonrpc import (
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    SERVER_ERROR,
    RawMessage,
    decode_request,
    encode_error,
    encode_result,
)
from .manifest import CapabilityDescriptor
from .schema import SchemaValidator
from .transport import TransportAdapter

logger = structlog.get_logger(__name__)

SkillHandler = Callable[..., Any]


class SpecialistError(Exception):
    """Raised by a skill handler to return a specific JSON-RPC error."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(message)


@dataclass(frozen=True)
class HostedSkill:
    descriptor: CapabilityDescriptor
    handler: SkillHandler


class SpecialistHost:
    """Serves skills over JSON-RPC envelopes without any network server."""

    def __init__(
        self,
        name: str,
        description: str = "",
        version: Optional[str] = None,
    ) -> None:
        self.name = name
        self.description = description
        self.version = version
        self._skills: dict[str, HostedSkill] = {}
        self._validator = SchemaValidator()

    @property
    def skill_ids(self) -> list[str]:
        return list(self._skills)

    def add_skill(
        self,
        skill_id: str,
        handler: SkillHandler,
        description: str = "",
        input_schema: Optional[dict[str, Any]] = None,
        output_schema: Optional[dict[str, Any]] = None,
    ) -> None:
        self._skills[skill_id] = HostedSkill(
            descriptor=CapabilityDescriptor.create(
                skill_id, description, input_schema, output_schema
            ),
            handler=handler,
        )

    def skill(
        self,
        skill_id: str,
        description: str = "",
        input_schema: Optional[dict[str, Any]] = None,
        output_schema: Optional[dict[str, Any]] = None,
    ) -> Callable[[SkillHandler], SkillHandler]:
        """Decorator registering a sync or async handler as a skill."""

        def decorator(handler: SkillHandler) -> SkillHandler:
            self.add_skill(skill_id, handler, description, input_schema, output_schema)
            return handler

        return decorator

    def remove_skill(self, skill_id: str) -> bool:
        return self._skills.pop(skill_id, None) is not None

    def agent_card(self) -> dict[str, Any]:
        """Manifest document advertising the hosted skills."""
        card: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "skills": [skill.descriptor.to_dict() for skill in self._skills.values()],
        }
        if self.version:
            card["version"] = self.version
        return card

    def agent_card_bytes(self) -> bytes:
        return json.dumps(self.agent_card()).encode("utf-8")

    async def handle(self, raw: RawMessage) -> bytes:
        """Serve one JSON-RPC request and return the encoded response."""
        try:
            request = decode_request(raw)
        except ProtocolViolationError as exc:
            return encode_error(None, exc.details.get("code", PARSE_ERROR), exc.reason)

        skill = self._skills.get(request.method)
        if skill is None:
            return encode_error(request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}")

        try:
            self._validator.validate(skill.descriptor.input_schema, request.params)
        except ValidationError as exc:
            return encode_error(request.id, INVALID_PARAMS, exc.message, exc.details)

        try:
            value = skill.handler(**request.params)
            if inspect.isawaitable(value):
                value = await value
        except SpecialistError as exc:
            return encode_error(request.id, exc.code, exc.message, exc.data)
        except Exception as exc:
            logger.exception(
                "bridge_specialist_handler_failed",
                agent=self.name,
                skill_id=request.method,
            )
            return encode_error(request.id, SERVER_ERROR, str(exc) or type(exc).__name__)

        try:
            return encode_result(request.id, value)
        except (TypeError, ValueError) as exc:
            logger.warning(
                "bridge_specialist_result_unencodable",
                agent=self.name,
                skill_id=request.method,
                error=str(exc),
            )
            return encode_error(request.id, SERVER_ERROR, "result is not JSON serializable")


class LoopbackTransport(TransportAdapter):
    """Push-style transport delivering to in-process SpecialistHosts.

    Attributes:
        delays: Seconds to hold the response, keyed by skill id
        sent: Every payload handed to a host, in send order
    """

    name = "loopback"

    def __init__(
        self,
        hosts: Optional[Mapping[str, SpecialistHost]] = None,
        delays: Optional[Mapping[str, float]] = None,
    ) -> None:
        super().__init__()
        self._hosts: dict[str, SpecialistHost] = {}
        for address, host in (hosts or {}).items():
            self.mount(address, host)
        self.delays: dict[str, float] = dict(delays or {})
        self.sent: list[bytes] = []
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._closed = False

    @property
    def send_count(self) -> int:
        return len(self.sent)

    def mount(self, address: str, host: SpecialistHost) -> None:
        self._hosts[normalize_address(address)] = host

    def unmount(self, address: str) -> None:
        self._hosts.pop(normalize_address(address), None)

    def _host_for(self, endpoint: AgentEndpoint) -> Optional[SpecialistHost]:
        return self._hosts.get(endpoint.base_address)

    async def send(
        self,
        endpoint: AgentEndpoint,
        payload: bytes,
        correlation_id: str,
    ) -> Optional[bytes]:
        if self._closed:
            raise TransportAbortedError(endpoint.base_address, correlation_id)
        host = self._host_for(endpoint)
        if host is None:
            raise TransportUnreachableError(endpoint.base_address, "no specialist mounted")

        self.sent.append(payload)
        task = asyncio.get_running_loop().create_task(self._serve(host, payload))
        self._tasks[correlation_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(correlation_id, None))
        return None

    async def _serve(self, host: SpecialistHost, payload: bytes) -> None:
        try:
            method = decode_request(payload).method
        except ProtocolViolationError:
            method = ""
        delay = self.delays.get(method, 0.0)
        if delay > 0:
            await asyncio.sleep(delay)
        response = await host.handle(payload)
        self._deliver(response)

    def abort(self, correlation_id: str) -> bool:
        task = self._tasks.get(correlation_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def fetch_manifest(self, endpoint: AgentEndpoint) -> bytes:
        host = self._host_for(endpoint)
        if host is None:
            raise ManifestUnavailableError(endpoint.manifest_url, "no specialist mounted")
        return host.agent_card_bytes()

    async def drain(self) -> None:
        """Wait until every scheduled response has been delivered."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
