"""Unit tests for the schema validator (forgeflow.document.validator)."""

from __future__ import annotations

import copy
from typing import Any

import pytest

from forgeflow.document import validate_document, validate_section


def _valid_raw_document() -> dict[str, Any]:
    return {
        "version": "1.0",
        "created": "2026-01-01T00:00:00+00:00",
        "lastUpdated": None,
        "project": {"name": "demo", "path": "/tmp/demo"},
        "functional": {
            "timestamp": "2026-01-01T00:00:00+00:00",
            "producedBy": "functional",
            "data": {"requirements": [{"text": "Do a thing"}]},
        },
        "executionLog": [],
        "kpis": {},
    }


class TestValidateSection:
    @pytest.mark.unit
    def test_valid_functional(self, functional_data):
        result = validate_section("functional", functional_data)
        assert result.valid
        assert result.errors == []

    @pytest.mark.unit
    def test_empty_requirements_names_the_field(self):
        result = validate_section("functional", {"requirements": []})
        assert not result.valid
        assert result.fields == ["requirements"]

    @pytest.mark.unit
    def test_collects_every_violation(self):
        data = {"requirements": [{"text": ""}, {"type": "bullet"}, "nope"]}
        result = validate_section("functional", data)
        assert not result.valid
        assert "requirements.0.text" in result.fields
        assert "requirements.1.text" in result.fields
        assert any(f.startswith("requirements.2") for f in result.fields)

    @pytest.mark.unit
    def test_implementation_file_needs_path(self):
        result = validate_section("implementation", {"files": [{"type": "source"}]})
        assert result.fields == ["files.0.path"]

    @pytest.mark.unit
    def test_generic_sections_accept_any_object(self):
        assert validate_section("review", {"anything": [1, 2, 3]}).valid

    @pytest.mark.unit
    def test_non_object_data_is_invalid(self):
        result = validate_section("review", ["not", "an", "object"])
        assert not result.valid
        assert result.fields == ["data"]

    @pytest.mark.unit
    def test_unknown_section_is_trivially_valid(self):
        assert validate_section("marketing", {"whatever": None}).valid

    @pytest.mark.unit
    def test_is_pure(self, functional_data):
        before = copy.deepcopy(functional_data)
        validate_section("functional", functional_data)
        assert functional_data == before


class TestValidateDocument:
    @pytest.mark.unit
    def test_valid_document(self):
        assert validate_document(_valid_raw_document()).valid

    @pytest.mark.unit
    def test_accepts_document_model(self, empty_document):
        assert validate_document(empty_document).valid

    @pytest.mark.unit
    def test_missing_top_level_fields_all_reported(self):
        raw = _valid_raw_document()
        del raw["version"]
        del raw["created"]
        raw["project"]["name"] = ""
        result = validate_document(raw)
        assert not result.valid
        assert {"version", "created", "project.name"} <= set(result.fields)

    @pytest.mark.unit
    def test_section_data_errors_are_prefixed(self):
        raw = _valid_raw_document()
        raw["functional"]["data"]["requirements"] = []
        result = validate_document(raw)
        assert result.fields == ["functional.data.requirements"]

    @pytest.mark.unit
    def test_non_object_document(self):
        result = validate_document(["not", "a", "document"])
        assert not result.valid
        assert result.fields == ["document"]


class TestFreshDocumentIsValid:
    @pytest.mark.unit
    def test_created_document_validates(self, store):
        doc = store.load_or_create("req-001", {"name": "hello-world"})
        result = validate_document(doc.to_dict())
        assert result.valid
        assert result.errors == []
