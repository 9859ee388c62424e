"""forgeflow -- requirement document (RVD) layer.

The document is the canonical state object for one requirement run. This
package holds its models, the schema validator, and the persistent store.

Usage::

    from forgeflow.document import DocumentStore

    store = DocumentStore("./forgeflow-work/documents")
    doc = store.load_or_create("hello-world", {"name": "hello-world"})
    doc = store.set_section(doc, "functional", {"requirements": [...]}, "functional")
    await store.save(doc, "hello-world")
"""

from .models import (
    SECTION_NAMES,
    Document,
    ExecutionLogEntry,
    Kpis,
    LogStatus,
    PhaseStatus,
    ProjectMeta,
    RunStatus,
    Section,
    SectionName,
)
from .store import DocumentStore, DocumentSummary, SectionStatus
from .validator import SchemaError, ValidationResult, validate_document, validate_section

__all__ = [
    # Models
    "Document",
    "Section",
    "ExecutionLogEntry",
    "Kpis",
    "ProjectMeta",
    "SectionName",
    "SECTION_NAMES",
    "RunStatus",
    "PhaseStatus",
    "LogStatus",
    # Store
    "DocumentStore",
    "DocumentSummary",
    "SectionStatus",
    # Validator
    "validate_document",
    "validate_section",
    "ValidationResult",
    "SchemaError",
]
