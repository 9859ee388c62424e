"""Ordered phase descriptors.

Each phase produces exactly one document section and may only consume
sections produced by earlier phases. The table is declared statically and
checked once by :func:`validate_phase_order`, so a mis-ordered pipeline is
rejected before any phase runs.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from forgeflow.errors import PhaseOrderError


class PhaseDescriptor(BaseModel):
    """Static contract of one pipeline phase."""

    model_config = ConfigDict(frozen=True)

    name: str
    output_section: str
    input_sections: tuple[str, ...] = ()
    required_fields: dict[str, tuple[str, ...]] = Field(
        default_factory=dict,
        description="Dotted paths that must be non-empty in each consumed section",
    )
    apply_rules: bool = False
    description: str = ""


PHASES: tuple[PhaseDescriptor, ...] = (
    PhaseDescriptor(
        name="functional",
        output_section="functional",
        description="Extract functional requirements from the input text",
    ),
    PhaseDescriptor(
        name="technical",
        output_section="technical",
        input_sections=("functional",),
        required_fields={"functional": ("requirements",)},
        description="Derive APIs and components",
    ),
    PhaseDescriptor(
        name="architecture",
        output_section="architecture",
        input_sections=("functional", "technical"),
        required_fields={"functional": ("requirements",)},
        description="Lay out modules and dependencies",
    ),
    PhaseDescriptor(
        name="testing",
        output_section="testing",
        input_sections=("functional", "technical"),
        required_fields={"functional": ("requirements",)},
        description="Plan unit, integration and e2e tests",
    ),
    PhaseDescriptor(
        name="implementation",
        output_section="implementation",
        input_sections=("technical", "testing"),
        apply_rules=True,
        description="Generate source files",
    ),
    PhaseDescriptor(
        name="review",
        output_section="review",
        input_sections=("implementation",),
        required_fields={"implementation": ("files",)},
        apply_rules=True,
        description="Score the implementation",
    ),
    PhaseDescriptor(
        name="documentation",
        output_section="documentation",
        input_sections=("technical", "implementation"),
        description="Write user and API documentation",
    ),
    PhaseDescriptor(
        name="deployment",
        output_section="deployment",
        input_sections=("implementation", "documentation"),
        apply_rules=True,
        description="Describe build and release steps",
    ),
)


def validate_phase_order(descriptors: Sequence[PhaseDescriptor]) -> None:
    """Reject phase lists with forward, cyclic or dangling dependencies.

    Raises:
        PhaseOrderError: If a phase consumes a section produced at or after
            its own position, a section is produced twice, a consumed
            section is never produced, or a required field names a section
            that is not consumed.
    """
    position: dict[str, int] = {}
    for index, phase in enumerate(descriptors):
        if phase.output_section in position:
            raise PhaseOrderError(
                f"Section '{phase.output_section}' is produced by more than one phase"
            )
        position[phase.output_section] = index

    for index, phase in enumerate(descriptors):
        for section in phase.input_sections:
            if section not in position:
                raise PhaseOrderError(
                    f"Phase '{phase.name}' consumes '{section}', which no phase produces"
                )
            if position[section] >= index:
                raise PhaseOrderError(
                    f"Phase '{phase.name}' consumes '{section}', which is produced "
                    f"by '{descriptors[position[section]].name}' at or after it"
                )
        for section in phase.required_fields:
            if section not in phase.input_sections:
                raise PhaseOrderError(
                    f"Phase '{phase.name}' requires fields of '{section}' without consuming it"
                )


def get_phase(name: str) -> PhaseDescriptor:
    for phase in PHASES:
        if phase.name == name:
            return phase
    raise KeyError(f"Unknown phase: {name}")


def phase_number(name: str) -> int:
    """1-based position of *name* in :data:`PHASES`."""
    return PHASES.index(get_phase(name)) + 1


def resolve_field(data: Any, dotted: str) -> Optional[Any]:
    """Walk *dotted* through nested mappings, returning ``None`` when absent."""
    value = data
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, tuple, dict)) and len(value) == 0)


validate_phase_order(PHASES)
