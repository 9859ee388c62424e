"""Structural contract checks for the document and its sections.

Schemas are expressed as Pydantic v2 models. Validation is pure: inputs are
never mutated and nothing is persisted. Every violated constraint is
reported in a single pass so a caller can surface all problems at once.
"""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import SECTION_NAMES, Document


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class SchemaError(BaseModel):
    """A single violated constraint."""
    field: str = Field(..., description="Dotted path of the offending field")
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class ValidationResult(BaseModel):
    """Outcome of a validation call."""
    valid: bool
    errors: list[SchemaError] = Field(default_factory=list)

    @property
    def fields(self) -> list[str]:
        return [e.field for e in self.errors]


# ---------------------------------------------------------------------------
# Section data schemas
# ---------------------------------------------------------------------------

class _Open(BaseModel):
    model_config = ConfigDict(extra="allow")


class RequirementItem(_Open):
    """One extracted functional requirement."""
    text: str = Field(..., min_length=1)
    type: str = ""
    section: str = ""


class FunctionalData(_Open):
    requirements: list[RequirementItem] = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    sections: dict[str, Any] = Field(default_factory=dict)


class TechnicalData(_Open):
    apis: list[dict[str, Any]] = Field(default_factory=list)
    components: list[dict[str, Any]] = Field(default_factory=list)


class GeneratedFile(_Open):
    path: str = Field(..., min_length=1)
    type: str = ""


class ImplementationData(_Open):
    files: list[GeneratedFile] = Field(default_factory=list)


class GenericData(_Open):
    """Any object is acceptable."""


SECTION_SCHEMAS: dict[str, type[BaseModel]] = {
    "functional": FunctionalData,
    "technical": TechnicalData,
    "architecture": GenericData,
    "testing": GenericData,
    "implementation": ImplementationData,
    "review": GenericData,
    "documentation": GenericData,
    "deployment": GenericData,
}


# ---------------------------------------------------------------------------
# Document-level schema
# ---------------------------------------------------------------------------

class _ProjectSchema(_Open):
    name: str = Field(..., min_length=1)
    path: Optional[str] = None


class _SectionEnvelope(_Open):
    timestamp: str
    produced_by: str = Field(..., alias="producedBy")
    data: dict[str, Any]


class _DocumentSchema(_Open):
    version: str
    created: str
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    project: _ProjectSchema
    functional: Optional[_SectionEnvelope] = None
    technical: Optional[_SectionEnvelope] = None
    architecture: Optional[_SectionEnvelope] = None
    testing: Optional[_SectionEnvelope] = None
    implementation: Optional[_SectionEnvelope] = None
    review: Optional[_SectionEnvelope] = None
    documentation: Optional[_SectionEnvelope] = None
    deployment: Optional[_SectionEnvelope] = None
    execution_log: list[dict[str, Any]] = Field(default_factory=list, alias="executionLog")
    kpis: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _errors_from(exc: ValidationError, prefix: str, root: str) -> list[SchemaError]:
    errors: list[SchemaError] = []
    for err in exc.errors():
        path = ".".join(str(part) for part in err["loc"])
        if prefix:
            path = f"{prefix}.{path}" if path else prefix
        errors.append(SchemaError(field=path or root, message=err["msg"]))
    return errors


def validate_section(name: str, data: Any) -> ValidationResult:
    """Check a section's ``data`` against the schema registered for *name*.

    Unknown section names are trivially valid.
    """
    schema = SECTION_SCHEMAS.get(name)
    if schema is None:
        return ValidationResult(valid=True)
    try:
        schema.model_validate(data)
    except ValidationError as exc:
        return ValidationResult(valid=False, errors=_errors_from(exc, "", "data"))
    return ValidationResult(valid=True)


def validate_document(doc: Union[Document, dict[str, Any]]) -> ValidationResult:
    """Check the top-level document structure and every present section."""
    raw = doc.to_dict() if isinstance(doc, Document) else doc

    errors: list[SchemaError] = []
    try:
        _DocumentSchema.model_validate(raw)
    except ValidationError as exc:
        errors.extend(_errors_from(exc, "", "document"))

    if isinstance(raw, dict):
        for name in SECTION_NAMES:
            section = raw.get(name)
            if not isinstance(section, dict) or not isinstance(section.get("data"), dict):
                continue
            result = validate_section(name, section["data"])
            for err in result.errors:
                errors.append(
                    SchemaError(field=f"{name}.data.{err.field}", message=err.message)
                )

    return ValidationResult(valid=not errors, errors=errors)
