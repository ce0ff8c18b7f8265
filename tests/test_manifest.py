"""Tests for manifest parsing and the Capability Descriptor Store."""

import json

import pytest

from capability_bridge.errors import (
    DuplicateSkillError,
    MalformedManifestError,
    ManifestErrorKind,
)
from capability_bridge.manifest import (
    CapabilityDescriptor,
    CapabilityDescriptorStore,
    diff_descriptors,
    parse_manifest,
)

MULTIPLY_SKILL = {
    "id": "multiply_numbers",
    "description": "Multiply two numbers",
    "input_schema": {
        "type": "object",
        "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
        "required": ["a", "b"],
    },
    "output_schema": {"type": "number"},
}


def _manifest(*skills: dict) -> dict:
    return {"name": "math-specialist", "skills": list(skills)}


class TestParseManifest:
    """Tests for parse_manifest."""

    def test_parses_bytes(self) -> None:
        raw = json.dumps(_manifest(MULTIPLY_SKILL)).encode("utf-8")

        manifest = parse_manifest(raw)

        assert manifest.name == "math-specialist"
        assert manifest.skill_ids == {"multiply_numbers"}
        descriptor = manifest.descriptors["multiply_numbers"]
        assert descriptor.description == "Multiply two numbers"
        assert descriptor.input_schema["required"] == ["a", "b"]
        assert descriptor.output_schema == {"type": "number"}

    def test_accepts_camel_case_schema_keys(self) -> None:
        skill = {
            "id": "echo",
            "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}},
        }

        manifest = parse_manifest(_manifest(skill))

        assert "text" in manifest.descriptors["echo"].input_schema["properties"]

    def test_missing_input_schema_defaults_to_object(self) -> None:
        manifest = parse_manifest(_manifest({"id": "ping"}))

        assert manifest.descriptors["ping"].input_schema == {"type": "object"}
        assert not manifest.descriptors["ping"].has_output_schema

    def test_empty_skill_list(self) -> None:
        assert parse_manifest(_manifest()).descriptors == {}

    def test_duplicate_skill_id(self) -> None:
        with pytest.raises(DuplicateSkillError) as excinfo:
            parse_manifest(_manifest(MULTIPLY_SKILL, MULTIPLY_SKILL))

        assert excinfo.value.kind == ManifestErrorKind.DUPLICATE_SKILL
        assert excinfo.value.skill_id == "multiply_numbers"

    @pytest.mark.parametrize(
        "raw",
        [
            b"{not json",
            b"[1, 2, 3]",
            json.dumps({"skills": []}),
            json.dumps(_manifest({"description": "no id"})),
            json.dumps(_manifest({"id": "   "})),
            json.dumps(_manifest({"id": "bad", "input_schema": {"type": "string"}})),
            json.dumps(_manifest({"id": "bad", "input_schema": {"type": "integr"}})),
            json.dumps(_manifest({"id": "bad", "output_schema": {"type": "nope"}})),
        ],
    )
    def test_malformed_manifests(self, raw: object) -> None:
        with pytest.raises(MalformedManifestError) as excinfo:
            parse_manifest(raw)

        assert excinfo.value.kind == ManifestErrorKind.MALFORMED

    @pytest.mark.parametrize("skill_id", [" multiply_numbers", "multiply_numbers\n"])
    def test_skill_id_is_not_rewritten(self, skill_id: str) -> None:
        with pytest.raises(MalformedManifestError) as excinfo:
            parse_manifest(_manifest({**MULTIPLY_SKILL, "id": skill_id}))

        assert excinfo.value.details["skill_id"] == skill_id

    def test_source_mutation_does_not_leak_into_descriptor(self) -> None:
        source = _manifest(json.loads(json.dumps(MULTIPLY_SKILL)))
        manifest = parse_manifest(source)

        source["skills"][0]["input_schema"]["required"].append("c")
        returned = manifest.descriptors["multiply_numbers"].input_schema
        returned["required"].append("d")

        assert manifest.descriptors["multiply_numbers"].input_schema["required"] == ["a", "b"]


class TestCapabilityDescriptor:
    """Tests for descriptor identity and diffing."""

    def test_equal_content_is_equal(self) -> None:
        first = CapabilityDescriptor.create("echo", "Echo", {"type": "object"})
        second = CapabilityDescriptor.create("echo", "Echo", {"type": "object"})

        assert first == second
        assert hash(first) == hash(second)
        assert first != CapabilityDescriptor.create("echo", "Echo text", {"type": "object"})

    def test_descriptor_is_frozen(self) -> None:
        descriptor = CapabilityDescriptor.create("echo")

        with pytest.raises(AttributeError):
            descriptor.skill_id = "other"  # type: ignore[misc]

    def test_to_dict_round_trips_through_parser(self) -> None:
        descriptor = parse_manifest(_manifest(MULTIPLY_SKILL)).descriptors["multiply_numbers"]

        reparsed = parse_manifest(_manifest(descriptor.to_dict()))

        assert reparsed.descriptors["multiply_numbers"] == descriptor

    def test_diff_descriptors(self) -> None:
        keep = CapabilityDescriptor.create("keep")
        old = {
            "keep": keep,
            "drop": CapabilityDescriptor.create("drop"),
            "edit": CapabilityDescriptor.create("edit", "v1"),
        }
        new = {
            "keep": CapabilityDescriptor.create("keep"),
            "edit": CapabilityDescriptor.create("edit", "v2"),
            "new": CapabilityDescriptor.create("new"),
        }

        diff = diff_descriptors(old, new)

        assert diff.added == {"new"}
        assert diff.removed == {"drop"}
        assert diff.changed == {"edit"}
        assert diff.unchanged == {"keep"}
        assert not diff.is_empty
        assert diff_descriptors(old, old).is_empty


class TestCapabilityDescriptorStore:
    """Tests for CapabilityDescriptorStore."""

    def test_load_records_latest_manifest(self) -> None:
        store = CapabilityDescriptorStore()

        store.load("http://math.local", _manifest(MULTIPLY_SKILL))

        assert store.get("http://math.local").skill_ids == {"multiply_numbers"}
        assert store.get("http://other.local") is None

    def test_failed_load_keeps_previous_manifest(self) -> None:
        store = CapabilityDescriptorStore()
        store.load("http://math.local", _manifest(MULTIPLY_SKILL))

        with pytest.raises(MalformedManifestError):
            store.load("http://math.local", b"garbage")

        assert store.get("http://math.local").skill_ids == {"multiply_numbers"}

    def test_forget(self) -> None:
        store = CapabilityDescriptorStore()
        store.load("http://math.local", _manifest(MULTIPLY_SKILL))

        store.forget("http://math.local")

        assert store.get("http://math.local") is None
