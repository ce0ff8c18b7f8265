"""Structural validation of skill arguments and results.

Schemas are JSON Schema (draft 2020-12) documents as advertised in a
Specialist's manifest. Validation runs locally before any request is
dispatched, so a caller mistake never crosses the network.

Object schemas that do not say otherwise are closed: fields not listed in
``properties`` are rejected as unknown.
"""

from __future__ import annotations

import copy
import hashlib
import json
import re
from collections import OrderedDict
from typing import Any, Iterable, Optional

import structlog
from jsonschema import Draft202012Validator
from jsonschema import exceptions as jsonschema_exceptions

from .errors import (
    ConstraintViolationError,
    MissingFieldError,
    TypeMismatchError,
    UnknownFieldError,
    ValidationError,
    ValidationErrorKind,
)

logger = structlog.get_logger(__name__)

ROOT_FIELD = "$"
VALIDATOR_CACHE_MAX_SIZE = 256

# Lower sorts first when a value has several violations
_KIND_PRIORITY = {
    ValidationErrorKind.MISSING_FIELD: 0,
    ValidationErrorKind.TYPE_MISMATCH: 1,
    ValidationErrorKind.UNKNOWN_FIELD: 2,
    ValidationErrorKind.CONSTRAINT: 3,
}

# Any of these means the schema already states its own unknown-field policy
_OPEN_KEYWORDS = ("additionalProperties", "patternProperties", "unevaluatedProperties")


def json_type_name(value: Any) -> str:
    """Return the JSON type name for a decoded JSON value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def schema_fingerprint(schema: Any) -> str:
    """Stable sha256 over the canonical JSON encoding of a schema."""
    canonical = json.dumps(schema, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _is_object_schema(schema: dict[str, Any]) -> bool:
    declared = schema.get("type")
    if declared == "object":
        return True
    if isinstance(declared, list) and "object" in declared:
        return True
    return declared is None and "properties" in schema


def close_object_schemas(schema: Any) -> Any:
    """Return a copy of ``schema`` with ``additionalProperties: false`` on open objects.

    Subschemas under ``allOf`` are not closed themselves (each branch would
    reject the others' properties), but their nested properties are.
    """
    return _close(copy.deepcopy(schema), close_here=True)


def _close(node: Any, close_here: bool) -> Any:
    if not isinstance(node, dict):
        return node

    if close_here and _is_object_schema(node):
        if not any(keyword in node for keyword in _OPEN_KEYWORDS):
            node["additionalProperties"] = False

    for key in ("properties", "$defs", "definitions", "patternProperties"):
        children = node.get(key)
        if isinstance(children, dict):
            for name, child in children.items():
                children[name] = _close(child, close_here=True)

    for key in ("items", "additionalProperties", "not", "if", "then", "else"):
        child = node.get(key)
        if isinstance(child, dict):
            node[key] = _close(child, close_here=True)

    for key in ("prefixItems", "anyOf", "oneOf"):
        children = node.get(key)
        if isinstance(children, list):
            node[key] = [_close(child, close_here=True) for child in children]

    all_of = node.get("allOf")
    if isinstance(all_of, list):
        node["allOf"] = [_close(child, close_here=False) for child in all_of]

    return node


def _iter_refs(node: Any) -> Iterable[str]:
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str):
            yield ref
        for value in node.values():
            yield from _iter_refs(value)
    elif isinstance(node, list):
        for item in node:
            yield from _iter_refs(item)


def _resolve_pointer(root: Any, ref: str) -> bool:
    pointer = ref[1:]
    if not pointer:
        return True
    if not pointer.startswith("/"):
        return False
    current = root
    for token in pointer[1:].split("/"):
        token = token.replace("~1", "/").replace("~0", "~")
        if isinstance(current, dict) and token in current:
            current = current[token]
        elif isinstance(current, list) and token.isdigit() and int(token) < len(current):
            current = current[int(token)]
        else:
            return False
    return True


def schema_problems(schema: Any) -> list[str]:
    """List the reasons ``schema`` is not usable, empty if it is well formed.

    Checks the schema against the draft 2020-12 metaschema (which rejects
    unknown type names) and requires every ``$ref`` to be a local pointer
    that resolves inside the schema itself.
    """
    if not isinstance(schema, dict):
        return [f"schema must be an object, got {json_type_name(schema)}"]

    problems: list[str] = []
    try:
        Draft202012Validator.check_schema(schema)
    except jsonschema_exceptions.SchemaError as exc:
        location = "/".join(str(part) for part in exc.absolute_path) or ROOT_FIELD
        problems.append(f"invalid schema at {location}: {exc.message}")

    for ref in _iter_refs(schema):
        if not ref.startswith("#"):
            problems.append(f"external $ref not supported: '{ref}'")
        elif not _resolve_pointer(schema, ref):
            problems.append(f"unresolved $ref '{ref}'")
    return problems


def _field_path(parts: Iterable[Any], leaf: Optional[str] = None) -> str:
    names = [str(part) for part in parts]
    if leaf is not None:
        names.append(leaf)
    return ".".join(names) if names else ROOT_FIELD


class SchemaValidator:
    """Validate values against skill schemas, raising typed ValidationErrors.

    Compiled validators are cached by schema fingerprint, so repeated calls
    to the same skill do not recompile its schema. The cache is LRU-bounded
    by ``cache_max_size``.
    """

    def __init__(
        self,
        strict_unknown_fields: bool = True,
        cache_max_size: int = VALIDATOR_CACHE_MAX_SIZE,
    ) -> None:
        if cache_max_size < 1:
            raise ValueError("cache_max_size must be >= 1")
        self.strict_unknown_fields = strict_unknown_fields
        self.cache_max_size = cache_max_size
        self._cache: OrderedDict[str, Draft202012Validator] = OrderedDict()

    def _compile(self, schema: dict[str, Any]) -> Draft202012Validator:
        key = schema_fingerprint(schema)
        validator = self._cache.get(key)
        if validator is not None:
            self._cache.move_to_end(key)
            return validator

        effective = close_object_schemas(schema) if self.strict_unknown_fields else schema
        validator = Draft202012Validator(effective)
        while len(self._cache) >= self.cache_max_size:
            self._cache.popitem(last=False)
        self._cache[key] = validator
        return validator

    def validate(
        self,
        schema: Optional[dict[str, Any]],
        value: Any,
        *,
        phase: str = "arguments",
    ) -> None:
        """Validate ``value`` against ``schema``.

        Raises:
            MissingFieldError, TypeMismatchError, UnknownFieldError or
            ConstraintViolationError for the highest-priority violation;
            every violation is listed under ``details["violations"]``.
        """
        if not schema:
            return

        validator = self._compile(schema)
        violations: list[ValidationError] = []
        for error in validator.iter_errors(value):
            violations.extend(self._translate(error, phase))

        if not violations:
            return

        violations.sort(key=lambda v: (_KIND_PRIORITY[v.kind], v.field))
        primary = violations[0]
        primary.details["violations"] = [
            {"kind": v.kind.value, "field": v.field, "message": v.message}
            for v in violations
        ]
        logger.debug(
            "bridge_schema_rejected",
            phase=phase,
            kind=primary.kind.value,
            field=primary.field,
            violation_count=len(violations),
        )
        raise primary

    def _translate(
        self,
        error: jsonschema_exceptions.ValidationError,
        phase: str,
    ) -> list[ValidationError]:
        path = list(error.absolute_path)
        keyword = error.validator

        if keyword == "required" and isinstance(error.instance, dict):
            return [
                MissingFieldError(_field_path(path, name), phase=phase)
                for name in error.validator_value
                if name not in error.instance
            ]

        if keyword == "type":
            expected = error.validator_value
            if isinstance(expected, list):
                expected = " or ".join(expected)
            return [
                TypeMismatchError(
                    _field_path(path),
                    expected=str(expected),
                    actual=json_type_name(error.instance),
                    phase=phase,
                )
            ]

        if keyword == "additionalProperties" and isinstance(error.instance, dict):
            declared = error.schema.get("properties", {})
            patterns = error.schema.get("patternProperties", {})
            extras = [
                name
                for name in error.instance
                if name not in declared
                and not any(re.search(pattern, name) for pattern in patterns)
            ]
            if extras:
                return [UnknownFieldError(_field_path(path, name), phase=phase) for name in extras]

        return [
            ConstraintViolationError(
                _field_path(path),
                reason=error.message,
                phase=phase,
                keyword=str(keyword),
            )
        ]
