"""Capability Descriptor Store.

Parses a Specialist's advertised manifest (its agent card) into immutable
CapabilityDescriptor values keyed by skill id. The store never performs
network I/O; manifest bytes come from a ManifestFetcher.

Manifest document shape::

    {
        "name": "math-specialist",
        "skills": [
            {
                "id": "multiply_numbers",
                "description": "Multiply two numbers",
                "input_schema": {"type": "object", ...},
                "output_schema": {"type": "number"}
            }
        ]
    }
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import DuplicateSkillError, MalformedManifestError
from .schema import json_type_name, schema_fingerprint, schema_problems

logger = structlog.get_logger(__name__)

ManifestInput = Union[bytes, bytearray, str, Mapping[str, Any]]


# ==================== Wire Models ====================


class SkillEntry(BaseModel):
    """One skill as advertised in the manifest."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1, description="Skill id, unique within the manifest")
    description: str = Field(default="", description="Human-readable description")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object"},
        alias="inputSchema",
        description="JSON Schema for the argument object",
    )
    output_schema: Optional[dict[str, Any]] = Field(
        default=None,
        alias="outputSchema",
        description="JSON Schema for the result value",
    )


class ManifestDocument(BaseModel):
    """Top-level manifest document."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    description: str = ""
    version: Optional[str] = None
    skills: list[SkillEntry] = Field(default_factory=list)


# ==================== Descriptors ====================


@dataclass(frozen=True, eq=False)
class CapabilityDescriptor:
    """Parsed, immutable representation of one advertised skill.

    Schemas are deep-copied on construction and on access, so neither the
    manifest source nor a caller can mutate a descriptor after parsing.
    Equality and hashing use a content fingerprint.
    """

    skill_id: str
    description: str
    _input_schema: dict[str, Any]
    _output_schema: Optional[dict[str, Any]] = None
    fingerprint: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_input_schema", copy.deepcopy(self._input_schema))
        object.__setattr__(self, "_output_schema", copy.deepcopy(self._output_schema))
        object.__setattr__(
            self,
            "fingerprint",
            schema_fingerprint(
                {
                    "skill_id": self.skill_id,
                    "description": self.description,
                    "input_schema": self._input_schema,
                    "output_schema": self._output_schema,
                }
            ),
        )

    @classmethod
    def create(
        cls,
        skill_id: str,
        description: str = "",
        input_schema: Optional[dict[str, Any]] = None,
        output_schema: Optional[dict[str, Any]] = None,
    ) -> "CapabilityDescriptor":
        return cls(skill_id, description, input_schema or {"type": "object"}, output_schema)

    @property
    def input_schema(self) -> dict[str, Any]:
        return copy.deepcopy(self._input_schema)

    @property
    def output_schema(self) -> Optional[dict[str, Any]]:
        return copy.deepcopy(self._output_schema)

    @property
    def has_output_schema(self) -> bool:
        return self._output_schema is not None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CapabilityDescriptor):
            return NotImplemented
        return self.fingerprint == other.fingerprint

    def __hash__(self) -> int:
        return hash(self.fingerprint)

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to manifest skill-entry format."""
        result: dict[str, Any] = {
            "id": self.skill_id,
            "description": self.description,
            "input_schema": self.input_schema,
        }
        if self._output_schema is not None:
            result["output_schema"] = self.output_schema
        return result


@dataclass(frozen=True)
class CapabilityManifest:
    """A parsed manifest: agent identity plus descriptors keyed by skill id."""

    name: str
    descriptors: Mapping[str, CapabilityDescriptor]
    description: str = ""
    version: Optional[str] = None
    parsed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def skill_ids(self) -> set[str]:
        return set(self.descriptors)


@dataclass(frozen=True)
class DescriptorDiff:
    """Difference between two descriptor sets, by skill id."""

    added: frozenset[str]
    removed: frozenset[str]
    changed: frozenset[str]
    unchanged: frozenset[str]

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


def diff_descriptors(
    old: Mapping[str, CapabilityDescriptor],
    new: Mapping[str, CapabilityDescriptor],
) -> DescriptorDiff:
    """Compare two descriptor mappings."""
    old_ids = set(old)
    new_ids = set(new)
    common = old_ids & new_ids
    changed = {skill_id for skill_id in common if old[skill_id] != new[skill_id]}
    return DescriptorDiff(
        added=frozenset(new_ids - old_ids),
        removed=frozenset(old_ids - new_ids),
        changed=frozenset(changed),
        unchanged=frozenset(common - changed),
    )


# ==================== Parsing ====================


def _decode(manifest: ManifestInput) -> Any:
    if isinstance(manifest, Mapping):
        return dict(manifest)
    try:
        text = manifest.decode("utf-8") if isinstance(manifest, (bytes, bytearray)) else manifest
        return json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedManifestError(f"not valid JSON ({exc})") from exc


def _pydantic_reason(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "manifest"
    return f"{location}: {first.get('msg', 'invalid value')}"


def _check_skill_schemas(entry: SkillEntry, skill_id: str) -> None:
    problems = schema_problems(entry.input_schema)
    if problems:
        raise MalformedManifestError(
            f"skill '{skill_id}' input_schema: {problems[0]}",
            {"skill_id": skill_id, "problems": problems},
        )

    declared = entry.input_schema.get("type", "object")
    if declared != "object":
        raise MalformedManifestError(
            f"skill '{skill_id}' input_schema must describe an object, got {declared!r}",
            {"skill_id": skill_id},
        )

    if entry.output_schema is not None:
        problems = schema_problems(entry.output_schema)
        if problems:
            raise MalformedManifestError(
                f"skill '{skill_id}' output_schema: {problems[0]}",
                {"skill_id": skill_id, "problems": problems},
            )


def parse_manifest(manifest: ManifestInput) -> CapabilityManifest:
    """Parse and validate a capability manifest.

    Args:
        manifest: Raw manifest bytes/text, or an already-decoded mapping

    Returns:
        CapabilityManifest with one descriptor per advertised skill

    Raises:
        MalformedManifestError: On structural or schema violations
        DuplicateSkillError: If two skills share an id
    """
    data = _decode(manifest)
    if not isinstance(data, dict):
        raise MalformedManifestError(f"expected a JSON object, got {json_type_name(data)}")

    try:
        document = ManifestDocument.model_validate(data)
    except PydanticValidationError as exc:
        raise MalformedManifestError(_pydantic_reason(exc)) from exc

    descriptors: dict[str, CapabilityDescriptor] = {}
    for entry in document.skills:
        skill_id = entry.id
        if not skill_id.strip():
            raise MalformedManifestError("skill id must not be blank")
        if skill_id != skill_id.strip():
            # The id is the wire method name; it is never rewritten
            raise MalformedManifestError(
                f"skill id {skill_id!r} has surrounding whitespace", {"skill_id": skill_id}
            )
        if skill_id in descriptors:
            raise DuplicateSkillError(skill_id)
        _check_skill_schemas(entry, skill_id)
        descriptors[skill_id] = CapabilityDescriptor(
            skill_id=skill_id,
            description=entry.description,
            _input_schema=entry.input_schema,
            _output_schema=entry.output_schema,
        )

    return CapabilityManifest(
        name=document.name,
        description=document.description,
        version=document.version,
        descriptors=descriptors,
    )


class CapabilityDescriptorStore:
    """Parses manifests and remembers the latest one per endpoint.

    The registry uses the remembered manifest as the baseline when diffing
    a refresh.
    """

    def __init__(self) -> None:
        self._manifests: dict[str, CapabilityManifest] = {}

    @staticmethod
    def parse(manifest: ManifestInput) -> CapabilityManifest:
        return parse_manifest(manifest)

    def load(self, address: str, manifest: ManifestInput) -> CapabilityManifest:
        """Parse ``manifest`` and record it as the current one for ``address``."""
        parsed = parse_manifest(manifest)
        self.remember(address, parsed)
        return parsed

    def remember(self, address: str, manifest: CapabilityManifest) -> None:
        """Record an already-parsed manifest as the current one for ``address``."""
        self._manifests[address] = manifest
        logger.debug(
            "bridge_manifest_parsed",
            endpoint=address,
            agent=manifest.name,
            skills=sorted(manifest.descriptors),
        )

    def get(self, address: str) -> Optional[CapabilityManifest]:
        return self._manifests.get(address)

    def forget(self, address: str) -> None:
        self._manifests.pop(address, None)
