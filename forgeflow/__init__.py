"""forgeflow -- requirement-driven software lifecycle pipeline.

One requirement document (RVD) carries a run through eight phases, from
functional requirements to deployment. Each phase consumes earlier
sections, produces exactly one new section, and is checked against its
contract before anything is persisted. A declarative rule engine is
consulted along the way.

Usage::

    import asyncio
    from forgeflow import Config, PipelineOrchestrator

    orchestrator = PipelineOrchestrator(Config(work_dir="./work"))
    run = asyncio.run(orchestrator.run("hello-world", requirements_text))
"""

from forgeflow.config import Config
from forgeflow.document import Document, DocumentStore, validate_document, validate_section
from forgeflow.errors import (
    AbortSignal,
    ContractViolationError,
    DocumentCorruptError,
    ForgeflowError,
    MissingInputError,
    NotFoundError,
    PhaseOrderError,
    PhaseTransitionError,
    RuleEngineLoadError,
)
from forgeflow.phases import PHASES, PhaseDescriptor, validate_phase_order
from forgeflow.pipeline import PipelineOrchestrator, PipelineRun
from forgeflow.rules import RuleEngine

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "Config",
    # Document
    "Document",
    "DocumentStore",
    "validate_document",
    "validate_section",
    # Rules
    "RuleEngine",
    # Pipeline
    "PHASES",
    "PhaseDescriptor",
    "validate_phase_order",
    "PipelineOrchestrator",
    "PipelineRun",
    # Errors
    "ForgeflowError",
    "NotFoundError",
    "DocumentCorruptError",
    "MissingInputError",
    "ContractViolationError",
    "RuleEngineLoadError",
    "AbortSignal",
    "PhaseOrderError",
    "PhaseTransitionError",
]
