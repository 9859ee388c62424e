"""Exception hierarchy for forgeflow.

Every error raised by the core derives from :class:`ForgeflowError` and
carries the structured details a caller needs to point at the root cause
(missing field, producing phase, violated constraints) without parsing
the message text.
"""

from __future__ import annotations

from typing import Any


class ForgeflowError(Exception):
    """Base class for all forgeflow errors."""


# ---------------------------------------------------------------------------
# Document store
# ---------------------------------------------------------------------------


class NotFoundError(ForgeflowError):
    """Raised when a load-only request targets a document that does not exist."""

    def __init__(self, document_id: str, path: Any = None) -> None:
        self.document_id = document_id
        self.path = path
        location = f" ({path})" if path is not None else ""
        super().__init__(f"Document not found: {document_id}{location}")


class DocumentCorruptError(ForgeflowError):
    """Raised when a persisted document cannot be parsed or is structurally invalid."""

    def __init__(self, document_id: str, reason: str) -> None:
        self.document_id = document_id
        self.reason = reason
        super().__init__(f"Document {document_id} is corrupt: {reason}")


# ---------------------------------------------------------------------------
# Phase contracts
# ---------------------------------------------------------------------------


class MissingInputError(ForgeflowError):
    """A phase's required input is absent, empty, or structurally invalid.

    Attributes:
        field: Name of the missing or invalid field (e.g. ``requirements``).
        phase: The phase that needed the input.
        producer: The phase responsible for producing the input.
    """

    def __init__(self, field: str, phase: str, producer: str, reason: str = "") -> None:
        self.field = field
        self.phase = phase
        self.producer = producer
        self.reason = reason
        message = (
            f"Phase '{phase}' is missing required input '{field}' "
            f"(expected from phase '{producer}')"
        )
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ContractViolationError(ForgeflowError):
    """A phase's output failed schema validation.

    ``errors`` lists every violated constraint, not just the first one.
    """

    def __init__(self, section: str, errors: list[Any]) -> None:
        self.section = section
        self.errors = list(errors)
        fields = ", ".join(str(getattr(e, "field", e)) for e in self.errors) or "?"
        super().__init__(
            f"Section '{section}' violates its contract ({len(self.errors)} error(s)): {fields}"
        )

    @property
    def fields(self) -> list[str]:
        """Dotted paths of every violated field."""
        return [str(getattr(e, "field", e)) for e in self.errors]


# ---------------------------------------------------------------------------
# Rule engine
# ---------------------------------------------------------------------------


class RuleEngineLoadError(ForgeflowError):
    """The declared rule set could not be loaded or parsed. Fatal."""

    def __init__(self, message: str, source: Any = None) -> None:
        self.source = source
        prefix = f"{source}: " if source is not None else ""
        super().__init__(f"Failed to load rules: {prefix}{message}")


class AbortSignal(ForgeflowError):
    """Raised by an ``abort-with-error`` action to stop the current phase."""

    def __init__(self, rule_id: str, message: str) -> None:
        self.rule_id = rule_id
        self.message = message
        super().__init__(f"Rule {rule_id} aborted the phase: {message}")


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class PhaseOrderError(ForgeflowError):
    """The declared phase list has a forward or cyclic input dependency."""


class PhaseTransitionError(ForgeflowError):
    """An illegal phase or run state transition was attempted."""

    def __init__(self, subject: str, current: str, target: str) -> None:
        self.subject = subject
        self.current = current
        self.target = target
        super().__init__(f"Illegal transition for {subject}: {current} -> {target}")
