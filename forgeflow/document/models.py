"""Pydantic v2 models for the requirement document (RVD).

The document is the single source of truth for one requirement run. It is
persisted as JSON with camelCase keys, one top-level entry per fixed
section name. All models here are frozen: a section is only ever replaced
wholesale, and the execution log is a tuple that can only grow by building
a new document.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class SectionName(str, Enum):
    """Fixed section names, in pipeline order."""
    FUNCTIONAL = "functional"
    TECHNICAL = "technical"
    ARCHITECTURE = "architecture"
    TESTING = "testing"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    DOCUMENTATION = "documentation"
    DEPLOYMENT = "deployment"


SECTION_NAMES: tuple[str, ...] = tuple(s.value for s in SectionName)


class RunStatus(str, Enum):
    """Lifecycle of a whole pipeline run (and of a document's summary)."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PhaseStatus(str, Enum):
    """Lifecycle of a single phase within a run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class LogStatus(str, Enum):
    """Status recorded on an execution-log entry."""
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    RESET = "reset"


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

class CamelModel(BaseModel):
    """Base for persisted models: snake_case in Python, camelCase on disk."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )


class ProjectMeta(CamelModel):
    """Project the requirement belongs to."""
    name: str = Field(..., description="Project name, must be non-empty")
    path: str = Field(default="", description="Project working directory")


class Section(CamelModel):
    """Validated output of exactly one phase."""
    timestamp: str = Field(..., description="When the section was produced (ISO-8601)")
    produced_by: str = Field(..., description="Producing phase / agent")
    data: dict[str, Any] = Field(..., description="Phase-specific payload")


class ExecutionLogEntry(CamelModel):
    """One append-only audit record."""
    phase: str
    status: str
    timestamp: str
    detail: str = ""


class Kpis(CamelModel):
    """Aggregate counters and timings; values are only ever added or overwritten."""
    timings: dict[str, float] = Field(default_factory=dict)
    counts: dict[str, Any] = Field(default_factory=dict)
    orchestration: dict[str, Any] = Field(default_factory=dict)
    tokens_used: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

class Document(CamelModel):
    """The requirement document (RVD).

    Sections are stored as individual fields so that the persisted form has
    one top-level key per section; :attr:`sections` offers the mapping view.
    """

    version: str = Field(default="1.0")
    created: str
    last_updated: Optional[str] = None
    project: ProjectMeta

    functional: Optional[Section] = None
    technical: Optional[Section] = None
    architecture: Optional[Section] = None
    testing: Optional[Section] = None
    implementation: Optional[Section] = None
    review: Optional[Section] = None
    documentation: Optional[Section] = None
    deployment: Optional[Section] = None

    execution_log: tuple[ExecutionLogEntry, ...] = Field(default_factory=tuple)
    kpis: Kpis = Field(default_factory=Kpis)

    @property
    def sections(self) -> dict[str, Optional[Section]]:
        """Mapping of every fixed section name to its section (or ``None``)."""
        return {name: getattr(self, name) for name in SECTION_NAMES}

    @property
    def completed_sections(self) -> list[str]:
        """Names of the sections that have been produced, in pipeline order."""
        return [name for name, section in self.sections.items() if section is not None]

    def to_dict(self) -> dict[str, Any]:
        """The persisted (camelCase, JSON-compatible) representation."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Document":
        return cls.model_validate(data)
