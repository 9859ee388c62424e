"""forgeflow pipeline orchestrator.

Drives one requirement through the eight lifecycle phases:

Phase 1: FUNCTIONAL     -- Extract requirements from the input text.
Phase 2: TECHNICAL      -- Derive APIs and components.
Phase 3: ARCHITECTURE   -- Lay out modules.
Phase 4: TESTING        -- Plan the test suite.
Phase 5: IMPLEMENTATION -- Generate files (rules consulted).
Phase 6: REVIEW         -- Score the implementation (rules consulted).
Phase 7: DOCUMENTATION  -- Write docs.
Phase 8: DEPLOYMENT     -- Describe the release (rules consulted).

Every phase reads only the sections it declares, and its output is
validated before it is written. The document is saved after each
completed phase, so a failed run leaves it at the last good phase and can
be resumed with ``--from``.

Usage::

    python -m forgeflow run requirements.md --id hello-world
    python -m forgeflow run requirements.md --id hello-world --from implementation
    python -m forgeflow summary hello-world
    python -m forgeflow suggest-fix "ReferenceError: require is not defined"
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import sys
import time
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, Field
from rich.markup import escape
from rich.panel import Panel

from forgeflow.config import Config
from forgeflow.document import (
    Document,
    DocumentStore,
    PhaseStatus,
    ProjectMeta,
    RunStatus,
    validate_section,
)
from forgeflow.errors import (
    ContractViolationError,
    ForgeflowError,
    MissingInputError,
    PhaseTransitionError,
)
from forgeflow.phases import (
    PHASES,
    PhaseDescriptor,
    get_phase,
    is_empty,
    resolve_field,
    validate_phase_order,
)
from forgeflow.producers import DEFAULT_PRODUCERS, Producer, extract_project_name
from forgeflow.reporter import export_markdown, write_kpi_report
from forgeflow.rules import FixSuggestion, RuleApplicationReport, RuleEngine
from forgeflow.utils import (
    console,
    err_console,
    format_duration,
    print_error,
    print_phase_header,
    print_success,
    print_summary_table,
    print_warning,
    sanitize_name,
    save_json,
    set_quiet,
    utc_now,
)

# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------

_PHASE_TRANSITIONS: dict[PhaseStatus, frozenset[PhaseStatus]] = {
    PhaseStatus.PENDING: frozenset({PhaseStatus.RUNNING, PhaseStatus.SKIPPED}),
    PhaseStatus.RUNNING: frozenset({PhaseStatus.COMPLETED, PhaseStatus.FAILED}),
    PhaseStatus.COMPLETED: frozenset(),
    PhaseStatus.FAILED: frozenset(),
    PhaseStatus.SKIPPED: frozenset(),
}

_RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.IN_PROGRESS}),
    RunStatus.IN_PROGRESS: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class PhaseRecord(BaseModel):
    """Run-time state of one phase."""

    name: str
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    rules: Optional[RuleApplicationReport] = None


class PipelineRun(BaseModel):
    """Run-time state of one pipeline execution.

    Transitions are checked: phases go ``pending -> running -> completed |
    failed`` (or ``pending -> skipped``) and the run goes ``pending ->
    in-progress -> completed | failed``. Anything else raises
    :class:`PhaseTransitionError`.
    """

    document_id: str
    status: RunStatus = RunStatus.PENDING
    phases: dict[str, PhaseRecord] = Field(default_factory=dict)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def create(cls, document_id: str, phase_names: Iterable[str]) -> "PipelineRun":
        return cls(
            document_id=document_id,
            phases={name: PhaseRecord(name=name) for name in phase_names},
        )

    @property
    def success(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def names_with(self, status: PhaseStatus) -> list[str]:
        return [name for name, record in self.phases.items() if record.status is status]

    def transition(self, target: RunStatus, error: Optional[str] = None) -> None:
        if target not in _RUN_TRANSITIONS[self.status]:
            raise PhaseTransitionError("run", self.status.value, target.value)
        self.status = target
        if target is RunStatus.IN_PROGRESS:
            self.started_at = utc_now()
        else:
            self.finished_at = utc_now()
            self.error = error

    def transition_phase(
        self, name: str, target: PhaseStatus, error: Optional[str] = None
    ) -> PhaseRecord:
        record = self.phases[name]
        if target not in _PHASE_TRANSITIONS[record.status]:
            raise PhaseTransitionError(f"phase '{name}'", record.status.value, target.value)
        record.status = target
        if target is PhaseStatus.RUNNING:
            record.started_at = utc_now()
        elif target in (PhaseStatus.COMPLETED, PhaseStatus.FAILED):
            record.finished_at = utc_now()
            record.error = error
        return record


# ---------------------------------------------------------------------------
# KPI helpers
# ---------------------------------------------------------------------------


def section_counts(name: str, document: Document) -> dict[str, Any]:
    """KPI counts contributed by section *name* once it has been produced."""
    section = document.sections.get(name)
    data: dict[str, Any] = section.data if section is not None else {}

    if name == "functional":
        return {"functionalRequirements": len(data.get("requirements") or [])}
    if name == "technical":
        return {"technicalApis": len(data.get("apis") or [])}
    if name == "testing":
        return {
            "tests": {
                "unit": (data.get("unitTests") or {}).get("count", 0),
                "integration": (data.get("integrationTests") or {}).get("count", 0),
                "e2e": (data.get("e2eTests") or {}).get("count", 0),
            }
        }
    if name == "implementation":
        files = data.get("files") or []
        root = Path(document.project.path or ".")
        size = 0
        loc = 0
        by_type: dict[str, int] = {}
        for entry in files:
            path = root / entry.get("path", "")
            if entry.get("path") and path.is_file():
                size += path.stat().st_size
                loc += len(path.read_text(encoding="utf-8", errors="replace").splitlines())
            kind = entry.get("type") or "other"
            by_type[kind] = by_type.get(kind, 0) + 1
        return {
            "implementation": {
                "files": data.get("filesGenerated") or len(files),
                "bytes": size,
                "loc": {"total": loc, "avgPerFile": round(loc / len(files)) if files else 0},
                "byType": by_type,
            }
        }
    if name == "review":
        findings = len((data.get("codeQuality") or {}).get("findings") or []) + len(
            (data.get("architecture") or {}).get("findings") or []
        )
        return {
            "review": {
                "overallScore": data.get("overallScore", 0),
                "findings": findings,
                "issues": len((data.get("security") or {}).get("issues") or []),
                "recommendations": len(data.get("recommendations") or []),
            }
        }
    return {}


# ---------------------------------------------------------------------------
# Pipeline Orchestrator
# ---------------------------------------------------------------------------


class PipelineOrchestrator:
    """Sequences phases against one requirement document.

    Attributes:
        config: Global configuration.
        store: Document persistence.
        rule_engine: Consulted for phases flagged ``apply_rules``; ``None``
            disables rule checks.
        producers: Phase name to producer callable (sync or async).
        run_state: State of the current (or last) :meth:`run`.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        store: Optional[DocumentStore] = None,
        rule_engine: Optional[RuleEngine] = None,
        producers: Optional[Mapping[str, Producer]] = None,
        phases: Sequence[PhaseDescriptor] = PHASES,
    ) -> None:
        self.config = config or Config()
        validate_phase_order(phases)
        self.phases: tuple[PhaseDescriptor, ...] = tuple(phases)
        self.store = store or DocumentStore(self.config.documents_path)
        if rule_engine is None and self.config.rules.enabled:
            rule_engine = RuleEngine(
                self.config.rules.rules_dir,
                self.config.rules.templates_dir,
                self.config.rules.validation_timeout,
            )
        self.rule_engine = rule_engine
        self.producers: dict[str, Producer] = {**DEFAULT_PRODUCERS, **(producers or {})}
        self.run_state: Optional[PipelineRun] = None
        self._requirement = ""
        self._source: Optional[str] = None

    # ------------------------------------------------------------------
    # Phase selection
    # ------------------------------------------------------------------

    def _selected(self, start_from: Optional[str]) -> list[str]:
        names = [phase.name for phase in self.phases]
        selected = list(self.config.phases) or names
        unknown = [name for name in selected if name not in names]
        if unknown:
            raise ValueError(f"Unknown phase(s): {', '.join(unknown)}")
        if start_from is not None:
            if start_from not in names:
                raise ValueError(f"Unknown phase: {start_from}")
            selected = [name for name in selected if names.index(name) >= names.index(start_from)]
        return selected

    def _producer_of(self, section: str) -> str:
        for phase in self.phases:
            if phase.output_section == section:
                return phase.name
        return section

    # ------------------------------------------------------------------
    # Single phase
    # ------------------------------------------------------------------

    def resolve_inputs(self, document: Document, phase: PhaseDescriptor) -> dict[str, Any]:
        """Collect deep copies of the sections *phase* consumes.

        Raises:
            MissingInputError: A consumed section is absent or invalid, or a
                required field is empty.
        """
        inputs: dict[str, Any] = {}
        for name in phase.input_sections:
            producer = self._producer_of(name)
            section = document.sections.get(name)
            if section is None:
                raise MissingInputError(name, phase.name, producer, "section has not been produced")

            result = validate_section(name, section.data)
            if not result.valid:
                first = result.errors[0]
                raise MissingInputError(first.field, phase.name, producer, first.message)

            for dotted in phase.required_fields.get(name, ()):
                if is_empty(resolve_field(section.data, dotted)):
                    raise MissingInputError(dotted, phase.name, producer, "field is empty")

            inputs[name] = copy.deepcopy(section.data)
        return inputs

    async def _consult_rules(
        self, document: Document, phase: PhaseDescriptor, data: Any
    ) -> Optional[RuleApplicationReport]:
        if not phase.apply_rules or self.rule_engine is None:
            return None

        context = {
            "phase": phase.name,
            "project": document.project.name,
            "project_path": document.project.path,
            "data": data,
        }
        report = await self.rule_engine.apply_rules(phase.name, context)
        console.print(
            f"  Rules: {report.rules_checked} checked, "
            f"{report.rules_applied} applied, {report.rules_failed} failed"
        )
        for failure in report.failures:
            print_warning(f"  [{failure.severity.value}] {failure.rule_id}: {failure.message}")
        return report

    async def run_phase(
        self, document: Document, phase: Union[str, PhaseDescriptor]
    ) -> Document:
        """Run one phase against an in-memory document and return the new document.

        Nothing is persisted here.

        Raises:
            MissingInputError: The phase's inputs are not satisfied.
            ContractViolationError: The producer's output fails validation.
            AbortSignal: A rule aborted the phase.
        """
        descriptor = get_phase(phase) if isinstance(phase, str) else phase

        if descriptor.input_sections:
            inputs = self.resolve_inputs(document, descriptor)
        else:
            inputs = {"requirement": self._requirement, "source": self._source}

        producer = self.producers[descriptor.name]
        data = producer(inputs)
        if inspect.isawaitable(data):
            data = await data

        # Rules only ever see output that satisfies its section contract.
        checked = validate_section(descriptor.output_section, data)
        if not checked.valid:
            raise ContractViolationError(descriptor.output_section, checked.errors)

        report = await self._consult_rules(document, descriptor, data)
        if report is not None:
            if self.run_state is not None and descriptor.name in self.run_state.phases:
                self.run_state.phases[descriptor.name].rules = report
            rules = dict(document.kpis.counts.get("rules") or {})
            rules[descriptor.name] = {
                "checked": report.rules_checked,
                "applied": report.rules_applied,
                "failed": report.rules_failed,
            }
            document = self.store.record_kpis(document, counts={"rules": rules})

        return self.store.set_section(document, descriptor.output_section, data, descriptor.name)

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    async def run(
        self,
        document_id: str,
        requirement: str,
        project_meta: Union[ProjectMeta, dict[str, Any], None] = None,
        start_from: Optional[str] = None,
        reset: Union[str, Iterable[str], None] = None,
        source: Union[str, Path, None] = None,
    ) -> PipelineRun:
        """Execute the selected phases for *document_id*.

        Args:
            document_id: Identifier of the persisted document.
            requirement: Requirement text handed to the ``functional`` producer.
            project_meta: Project name/path for a newly created document.
            start_from: Skip every phase before this one (resume).
            reset: Sections to clear first (``downstream``, ``all`` or names).
            source: Where *requirement* was read from, if anywhere.

        Returns:
            The completed :class:`PipelineRun`.

        Raises:
            ForgeflowError: Any phase failure, after the run state has been
                marked failed. The persisted document keeps the last
                completed phase.
        """
        selected = self._selected(start_from)
        run = PipelineRun.create(document_id, [phase.name for phase in self.phases])
        self.run_state = run
        self._requirement = requirement
        self._source = str(source) if source is not None else None
        pipeline_start = time.monotonic()

        console.print(
            Panel(
                f"[bold bright_cyan]forgeflow pipeline[/bold bright_cyan]\n"
                f"Document : {document_id}\n"
                f"Store    : {self.store.path_for(document_id)}\n"
                f"Phases   : {', '.join(selected)}",
                title="[bold]Pipeline Start[/bold]",
                border_style="bright_cyan",
            )
        )

        run.transition(RunStatus.IN_PROGRESS)
        try:
            document = self.store.load_or_create(document_id, project_meta)
            if reset:
                document = self.store.reset_sections(document, reset)
                await self.store.save(document, document_id)
                console.print(f"  Reset sections: {reset if isinstance(reset, str) else ', '.join(reset)}")
        except ForgeflowError as exc:
            run.transition(RunStatus.FAILED, str(exc))
            print_error(f"Could not prepare document {document_id}: {exc}")
            await self._save_run_state(run)
            raise

        for number, phase in enumerate(self.phases, start=1):
            if phase.name not in selected:
                run.transition_phase(phase.name, PhaseStatus.SKIPPED)
                continue

            print_phase_header(number, phase.name)
            run.transition_phase(phase.name, PhaseStatus.RUNNING)
            phase_start = time.monotonic()
            try:
                document = await self.run_phase(document, phase)
                elapsed = time.monotonic() - phase_start
                document = self.store.record_kpis(
                    document,
                    timings={phase.name: int(elapsed * 1000)},
                    counts=section_counts(phase.output_section, document),
                )
                await self.store.save(document, document_id)
            except Exception as exc:
                elapsed = time.monotonic() - phase_start
                record = run.transition_phase(phase.name, PhaseStatus.FAILED, str(exc))
                record.duration_ms = int(elapsed * 1000)
                run.transition(RunStatus.FAILED, f"{phase.name}: {exc}")
                print_error(
                    f"Phase {number} ({phase.name}) FAILED after {format_duration(elapsed)}: {exc}"
                )
                await self._save_run_state(run)
                self._print_final_summary(run, time.monotonic() - pipeline_start)
                raise

            record = run.transition_phase(phase.name, PhaseStatus.COMPLETED)
            record.duration_ms = int(elapsed * 1000)
            print_success(f"Phase {number} ({phase.name}) completed in {format_duration(elapsed)}")

        total_elapsed = time.monotonic() - pipeline_start
        document = self.store.record_kpis(
            document,
            orchestration={
                "totalDurationMs": int(total_elapsed * 1000),
                "startedAt": run.started_at,
                "finishedAt": utc_now(),
                "phasesCompleted": run.names_with(PhaseStatus.COMPLETED),
                "phasesSkipped": run.names_with(PhaseStatus.SKIPPED),
            },
        )
        await self.store.save(document, document_id)
        run.transition(RunStatus.COMPLETED)
        await self._save_run_state(run)

        if self.config.report.enabled:
            md_path, csv_path = write_kpi_report(
                document, self.config.report.report_dir, self.store.path_for(document_id)
            )
            console.print(f"  KPI report: {md_path} / {csv_path.name}")

        self._print_final_summary(run, total_elapsed)
        return run

    def suggest_fix(
        self, error_message: str, context: Optional[Mapping[str, Any]] = None
    ) -> Optional[FixSuggestion]:
        """Ask the rule engine for a fix; ``None`` when no engine or no match."""
        if self.rule_engine is None:
            return None
        return self.rule_engine.suggest_fix(error_message, context)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def _save_run_state(self, run: PipelineRun) -> None:
        await save_json(run.model_dump(mode="json"), self.config.run_state_path(run.document_id))

    def _print_final_summary(self, run: PipelineRun, total_elapsed: float) -> None:
        if run.success:
            border_style = "bold green"
            status_text = "[bold green]PIPELINE SUCCEEDED[/bold green]"
        else:
            border_style = "bold red"
            status_text = "[bold red]PIPELINE FAILED[/bold red]"

        detail_lines = [
            status_text,
            "",
            f"Duration  : {format_duration(total_elapsed)}",
            f"Completed : {', '.join(run.names_with(PhaseStatus.COMPLETED)) or 'none'}",
        ]
        skipped = run.names_with(PhaseStatus.SKIPPED)
        if skipped:
            detail_lines.append(f"Skipped   : {', '.join(skipped)}")
        failed = run.names_with(PhaseStatus.FAILED)
        if failed:
            detail_lines.append(f"Failed    : {', '.join(failed)}")
        detail_lines.extend(["", f"Document  : {self.store.path_for(run.document_id)}"])

        console.print()
        console.print(
            Panel(
                "\n".join(detail_lines),
                title="[bold]Pipeline Complete[/bold]",
                border_style=border_style,
            )
        )


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _build_config(args: Any) -> Config:
    config = Config.from_env()
    if getattr(args, "work_dir", None):
        config.work_dir = Path(args.work_dir)
    if getattr(args, "rules_dir", None):
        config.rules.rules_dir = Path(args.rules_dir)
    if getattr(args, "no_rules", False):
        config.rules.enabled = False
    if getattr(args, "report", False):
        config.report.enabled = True
    if getattr(args, "report_dir", None):
        config.report.report_dir = Path(args.report_dir)
    if getattr(args, "phases", None):
        config.phases = [p.strip() for p in args.phases.split(",") if p.strip()]
    if getattr(args, "quiet", False):
        config.verbose = False
    return config


def _cmd_run(args: Any, config: Config) -> int:
    req_path = Path(args.requirements)
    if not req_path.exists():
        print_error(f"Requirements file not found: {req_path}")
        return 1
    requirement = req_path.read_text(encoding="utf-8")

    project_name = args.project_name or config.project_name or extract_project_name(requirement)
    document_id = args.id or sanitize_name(project_name) or "requirement"
    project = ProjectMeta(name=project_name, path=str(Path(args.project_path or ".").resolve()))

    config.ensure_directories()
    orchestrator = PipelineOrchestrator(config)
    run = asyncio.run(
        orchestrator.run(
            document_id,
            requirement,
            project,
            start_from=args.start_from,
            reset=args.reset,
            source=req_path.resolve(),
        )
    )
    return 0 if run.success else 1


def _cmd_summary(args: Any, config: Config) -> int:
    store = DocumentStore(config.documents_path)
    document = store.load(args.id)
    summary = store.summary(document)
    rows: dict[str, Any] = {
        "Project": summary.project,
        "Status": summary.status.value,
        "Progress": f"{summary.completed_count}/{summary.total_phases}",
        "Log entries": summary.log_entries,
    }
    for name, status in summary.sections.items():
        rows[name] = status.timestamp if status.completed else "-"
    print_summary_table(rows, title=f"Document {args.id}")
    return 0


def _cmd_suggest_fix(args: Any, config: Config) -> int:
    engine = RuleEngine(config.rules.rules_dir, config.rules.templates_dir, config.rules.validation_timeout)
    suggestion = engine.suggest_fix(args.error)
    if suggestion is None:
        print_warning("No matching fix found.")
        return 1
    lines = [
        f"[bold]{suggestion.rule_name}[/bold] ({suggestion.severity.value})",
        "",
        f"search  : {escape(suggestion.fix.search)}",
        f"replace : {escape(suggestion.fix.replace)}",
    ]
    for example in suggestion.examples:
        lines.extend(["", f"[red]- {escape(example.wrong)}[/red]", f"[green]+ {escape(example.correct)}[/green]"])
    console.print(Panel("\n".join(lines), title=f"[bold]{suggestion.rule_id}[/bold]", border_style="cyan"))
    return 0


def _cmd_report(args: Any, config: Config) -> int:
    store = DocumentStore(config.documents_path)
    document = store.load(args.id)
    if args.markdown:
        console.print(export_markdown(document), markup=False, highlight=False)
        return 0
    md_path, csv_path = write_kpi_report(document, config.report.report_dir, store.path_for(args.id))
    print_success(f"KPI report written: {md_path}")
    print_success(f"KPI CSV written: {csv_path}")
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for ``forgeflow`` / ``python -m forgeflow``."""
    import argparse

    parser = argparse.ArgumentParser(
        prog="forgeflow",
        description="forgeflow -- requirement-driven software lifecycle pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  forgeflow run requirements.md --id hello-world\n"
            "  forgeflow run requirements.md --id hello-world --from implementation\n"
            "  forgeflow summary hello-world\n"
            '  forgeflow suggest-fix "ReferenceError: require is not defined"\n'
        ),
    )
    parser.add_argument("--work-dir", "-w", default=None, help="Work directory (default: ./forgeflow-work)")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print errors")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Run the pipeline for a requirements file")
    run_p.add_argument("requirements", help="Path to the requirements markdown file")
    run_p.add_argument("--id", default=None, help="Document id (default: derived from project name)")
    run_p.add_argument("--project-name", default=None, help="Override the project name")
    run_p.add_argument("--project-path", default=None, help="Project working directory (default: .)")
    run_p.add_argument("--from", dest="start_from", default=None, help="Resume from this phase")
    run_p.add_argument("--reset", default=None, help="Clear sections first: downstream, all, or a,b,c")
    run_p.add_argument("--phases", default=None, help="Comma-separated phase names to run")
    run_p.add_argument("--rules-dir", default=None, help="Directory holding the rule sets")
    run_p.add_argument("--no-rules", action="store_true", help="Do not consult the rule engine")
    run_p.add_argument("--report", action="store_true", help="Write a KPI report when done")
    run_p.add_argument("--report-dir", default=None, help="KPI report directory (default: ./reports)")

    summary_p = sub.add_parser("summary", help="Show the status of a document")
    summary_p.add_argument("id", help="Document id")

    fix_p = sub.add_parser("suggest-fix", help="Suggest a fix for an error message")
    fix_p.add_argument("error", help="Error message text")
    fix_p.add_argument("--rules-dir", default=None, help="Directory holding the rule sets")

    report_p = sub.add_parser("report", help="Write the KPI report of a document")
    report_p.add_argument("id", help="Document id")
    report_p.add_argument("--report-dir", default=None, help="Output directory (default: ./reports)")
    report_p.add_argument("--markdown", action="store_true", help="Print a status report instead")

    args = parser.parse_args(argv)
    config = _build_config(args)
    set_quiet(not config.verbose)

    handlers = {
        "run": _cmd_run,
        "summary": _cmd_summary,
        "suggest-fix": _cmd_suggest_fix,
        "report": _cmd_report,
    }
    try:
        code = handlers[args.command](args, config)
    except (ForgeflowError, ValueError) as exc:
        err_console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
