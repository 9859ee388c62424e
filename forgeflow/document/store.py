"""Persistence and section bookkeeping for requirement documents.

A :class:`DocumentStore` is rooted at a directory and maps a document id to
``<root>/<id>.json``. Every mutating operation returns a *new* document;
the execution log only ever grows, and saving replaces the file atomically.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from forgeflow.errors import ContractViolationError, DocumentCorruptError, NotFoundError
from forgeflow.utils import load_json, save_json, utc_now

from .models import (
    SECTION_NAMES,
    Document,
    ExecutionLogEntry,
    Kpis,
    LogStatus,
    ProjectMeta,
    RunStatus,
    Section,
)
from .validator import validate_section


class SectionStatus(BaseModel):
    """Per-section entry of a :class:`DocumentSummary`."""
    completed: bool
    timestamp: Optional[str] = None
    produced_by: Optional[str] = None


class DocumentSummary(BaseModel):
    """Derived, read-only view of a document. Never persisted."""
    project: str
    completed_count: int
    total_phases: int
    status: RunStatus
    sections: dict[str, SectionStatus] = Field(default_factory=dict)
    log_entries: int = 0
    last_updated: Optional[str] = None


class DocumentStore:
    """Load, create, update and atomically save requirement documents.

    Args:
        root: Directory holding the persisted documents. Created lazily on
            first save.
    """

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def path_for(self, document_id: str) -> Path:
        """Location of the persisted representation of *document_id*."""
        return self.root / f"{document_id}.json"

    def exists(self, document_id: str) -> bool:
        return self.path_for(document_id).exists()

    # ------------------------------------------------------------------
    # Loading / saving
    # ------------------------------------------------------------------

    def load(self, document_id: str) -> Document:
        """Load a persisted document.

        Raises:
            NotFoundError: No document is persisted under *document_id*.
            DocumentCorruptError: The file is not valid JSON or not a document.
        """
        path = self.path_for(document_id)
        if not path.exists():
            raise NotFoundError(document_id, path)
        try:
            raw = load_json(path)
        except json.JSONDecodeError as exc:
            raise DocumentCorruptError(document_id, f"invalid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise DocumentCorruptError(document_id, "top-level value is not an object")
        try:
            return Document.from_dict(raw)
        except ValidationError as exc:
            raise DocumentCorruptError(document_id, str(exc)) from exc

    def load_or_create(
        self,
        document_id: str,
        project_meta: Union[ProjectMeta, dict[str, Any], None] = None,
    ) -> Document:
        """Load *document_id*, or build a fresh document with every section empty.

        The fresh document is *not* saved; call :meth:`save` to persist it.
        """
        if self.exists(document_id):
            return self.load(document_id)

        if project_meta is None:
            project = ProjectMeta(name=document_id, path=str(self.root))
        elif isinstance(project_meta, ProjectMeta):
            project = project_meta
        else:
            project = ProjectMeta(**project_meta)

        now = utc_now()
        return Document(version="1.0", created=now, last_updated=now, project=project)

    async def save(self, document: Document, document_id: str) -> Path:
        """Atomically overwrite the persisted representation of *document*."""
        path = self.path_for(document_id)
        await save_json(document.to_dict(), path)
        return path

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    @staticmethod
    def get_section(document: Document, name: str) -> Optional[Section]:
        if name not in SECTION_NAMES:
            raise KeyError(f"Unknown section: {name}")
        return getattr(document, name)

    def set_section(
        self,
        document: Document,
        name: str,
        data: dict[str, Any],
        produced_by: str,
    ) -> Document:
        """Return a new document with section *name* replaced wholesale.

        The data is validated first; on failure nothing changes and
        :class:`ContractViolationError` lists every violated field. On
        success exactly one ``completed`` entry is appended to the log.
        """
        if name not in SECTION_NAMES:
            raise KeyError(f"Unknown section: {name}")

        result = validate_section(name, data)
        if not result.valid:
            raise ContractViolationError(name, result.errors)

        now = utc_now()
        section = Section(timestamp=now, produced_by=produced_by, data=copy.deepcopy(data))
        entry = ExecutionLogEntry(
            phase=name,
            status=LogStatus.COMPLETED.value,
            timestamp=now,
            detail=f"{produced_by} produced section '{name}'",
        )
        return document.model_copy(
            update={
                name: section,
                "last_updated": now,
                "execution_log": document.execution_log + (entry,),
            }
        )

    def reset_sections(self, document: Document, mode: Union[str, Iterable[str]]) -> Document:
        """Clear sections so a run can resume from an earlier phase.

        Modes:
            ``"downstream"``: every section after ``functional``.
            ``"all"``: every section.
            comma-separated string or iterable: the named sections.

        The execution log is kept; one ``reset`` entry is appended.
        """
        if isinstance(mode, str) and mode == "downstream":
            targets = list(SECTION_NAMES[1:])
        elif isinstance(mode, str) and mode == "all":
            targets = list(SECTION_NAMES)
        elif isinstance(mode, str):
            targets = [s.strip() for s in mode.split(",") if s.strip()]
        else:
            targets = list(mode)

        unknown = [t for t in targets if t not in SECTION_NAMES]
        if unknown:
            raise KeyError(f"Unknown section(s): {', '.join(unknown)}")

        now = utc_now()
        entry = ExecutionLogEntry(
            phase=",".join(targets) or "-",
            status=LogStatus.RESET.value,
            timestamp=now,
            detail=f"Cleared {len(targets)} section(s)",
        )
        update: dict[str, Any] = {t: None for t in targets}
        update["last_updated"] = now
        update["execution_log"] = document.execution_log + (entry,)
        return document.model_copy(update=update)

    # ------------------------------------------------------------------
    # Log and KPIs
    # ------------------------------------------------------------------

    @staticmethod
    def append_log(document: Document, phase: str, status: str, detail: str = "") -> Document:
        """Return a new document with one more execution-log entry."""
        entry = ExecutionLogEntry(phase=phase, status=status, timestamp=utc_now(), detail=detail)
        return document.model_copy(update={"execution_log": document.execution_log + (entry,)})

    @staticmethod
    def record_kpis(
        document: Document,
        *,
        timings: Optional[dict[str, float]] = None,
        counts: Optional[dict[str, Any]] = None,
        orchestration: Optional[dict[str, Any]] = None,
        tokens_used: int = 0,
    ) -> Document:
        """Accumulate KPI values into a new document.

        Timings, counts and orchestration entries are merged key by key;
        ``tokens_used`` is added to the running total.
        """
        current = document.kpis
        kpis = Kpis(
            timings={**current.timings, **(timings or {})},
            counts={**current.counts, **copy.deepcopy(counts or {})},
            orchestration={**current.orchestration, **(orchestration or {})},
            tokens_used=current.tokens_used + tokens_used,
        )
        return document.model_copy(update={"kpis": kpis})

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    @staticmethod
    def summary(document: Document) -> DocumentSummary:
        """Compute the read-only status view of *document*."""
        sections = {
            name: SectionStatus(
                completed=section is not None,
                timestamp=section.timestamp if section else None,
                produced_by=section.produced_by if section else None,
            )
            for name, section in document.sections.items()
        }
        completed = sum(1 for s in sections.values() if s.completed)
        total = len(SECTION_NAMES)

        last = document.execution_log[-1] if document.execution_log else None
        if last is not None and last.status == LogStatus.FAILED.value:
            status = RunStatus.FAILED
        elif completed == total:
            status = RunStatus.COMPLETED
        elif completed == 0:
            status = RunStatus.PENDING
        else:
            status = RunStatus.IN_PROGRESS

        return DocumentSummary(
            project=document.project.name,
            completed_count=completed,
            total_phases=total,
            status=status,
            sections=sections,
            log_entries=len(document.execution_log),
            last_updated=document.last_updated,
        )
