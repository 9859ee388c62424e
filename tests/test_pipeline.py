"""Unit tests for the pipeline orchestrator (forgeflow.pipeline).

Tests cover:
- PipelineRun / PhaseRecord state transitions
- resolve_inputs and run_phase contract enforcement
- Full runs, resume (start_from), reset, and phase selection
- Failure handling: run state, persisted document, re-raised errors
- Rule consultation and abort
- KPI accounting
- The CLI entry point
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from forgeflow.config import Config, RulesConfig
from forgeflow.document import Document, DocumentStore, LogStatus, PhaseStatus, RunStatus
from forgeflow.errors import (
    AbortSignal,
    ContractViolationError,
    MissingInputError,
    PhaseOrderError,
    PhaseTransitionError,
)
from forgeflow.phases import PhaseDescriptor
from forgeflow.pipeline import PipelineOrchestrator, PipelineRun, main, section_counts
from forgeflow.rules import RuleEngine
from forgeflow.utils import load_json

DOC_ID = "task-manager"


@pytest.fixture
def orchestrator(config: Config) -> PipelineOrchestrator:
    return PipelineOrchestrator(config)


# ---------------------------------------------------------------------------
# Run state machine
# ---------------------------------------------------------------------------


class TestPipelineRun:
    @pytest.mark.unit
    def test_create_starts_pending(self):
        run = PipelineRun.create("doc", ["a", "b"])
        assert run.status is RunStatus.PENDING
        assert run.names_with(PhaseStatus.PENDING) == ["a", "b"]
        assert not run.success

    @pytest.mark.unit
    def test_happy_path_transitions(self):
        run = PipelineRun.create("doc", ["a", "b"])
        run.transition(RunStatus.IN_PROGRESS)
        assert run.started_at is not None
        run.transition_phase("a", PhaseStatus.RUNNING)
        record = run.transition_phase("a", PhaseStatus.COMPLETED)
        assert record.finished_at is not None
        run.transition_phase("b", PhaseStatus.SKIPPED)
        run.transition(RunStatus.COMPLETED)
        assert run.success
        assert run.names_with(PhaseStatus.COMPLETED) == ["a"]
        assert run.names_with(PhaseStatus.SKIPPED) == ["b"]

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "path",
        [
            [PhaseStatus.COMPLETED],
            [PhaseStatus.FAILED],
            [PhaseStatus.RUNNING, PhaseStatus.SKIPPED],
            [PhaseStatus.RUNNING, PhaseStatus.COMPLETED, PhaseStatus.RUNNING],
            [PhaseStatus.SKIPPED, PhaseStatus.RUNNING],
        ],
    )
    def test_illegal_phase_transitions(self, path):
        run = PipelineRun.create("doc", ["a"])
        for target in path[:-1]:
            run.transition_phase("a", target)
        with pytest.raises(PhaseTransitionError) as exc_info:
            run.transition_phase("a", path[-1])
        assert exc_info.value.target == path[-1].value

    @pytest.mark.unit
    def test_illegal_run_transitions(self):
        run = PipelineRun.create("doc", [])
        with pytest.raises(PhaseTransitionError):
            run.transition(RunStatus.COMPLETED)
        run.transition(RunStatus.IN_PROGRESS)
        run.transition(RunStatus.FAILED, "boom")
        assert run.error == "boom"
        with pytest.raises(PhaseTransitionError):
            run.transition(RunStatus.COMPLETED)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    @pytest.mark.unit
    def test_rules_disabled_means_no_engine(self, orchestrator: PipelineOrchestrator):
        assert orchestrator.rule_engine is None

    @pytest.mark.unit
    def test_enabled_rules_load_bundled_engine(self, tmp_path: Path):
        orch = PipelineOrchestrator(Config(work_dir=tmp_path))
        assert orch.rule_engine is not None
        assert orch.rule_engine.total_rules > 0

    @pytest.mark.unit
    def test_store_defaults_to_work_dir(self, config: Config, orchestrator: PipelineOrchestrator):
        assert orchestrator.store.root == config.documents_path

    @pytest.mark.unit
    def test_misordered_phase_table_rejected(self, config: Config):
        phases = [
            PhaseDescriptor(name="functional", output_section="functional", input_sections=("technical",)),
            PhaseDescriptor(name="technical", output_section="technical"),
        ]
        with pytest.raises(PhaseOrderError):
            PipelineOrchestrator(config, phases=phases)


# ---------------------------------------------------------------------------
# Single phase
# ---------------------------------------------------------------------------


class TestRunPhase:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_requirements_name_the_missing_field(
        self, orchestrator, empty_document: Document, make_section
    ):
        doc = empty_document.model_copy(update={"functional": make_section({"requirements": []}, "functional")})
        with pytest.raises(MissingInputError) as exc_info:
            await orchestrator.run_phase(doc, "technical")
        err = exc_info.value
        assert err.field == "requirements"
        assert err.phase == "technical"
        assert err.producer == "functional"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_absent_section_names_the_section(self, orchestrator, empty_document: Document):
        with pytest.raises(MissingInputError) as exc_info:
            await orchestrator.run_phase(empty_document, "technical")
        assert exc_info.value.field == "functional"
        assert exc_info.value.producer == "functional"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_required_field(self, orchestrator, empty_document: Document, make_section):
        doc = empty_document.model_copy(update={"implementation": make_section({"files": []})})
        with pytest.raises(MissingInputError) as exc_info:
            await orchestrator.run_phase(doc, "review")
        assert exc_info.value.field == "files"
        assert exc_info.value.producer == "implementation"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_producer_sees_only_declared_inputs_as_copies(
        self, config, empty_document: Document, make_section, functional_data
    ):
        seen: dict[str, Any] = {}

        def technical(inputs):
            seen.update(inputs)
            inputs["functional"]["requirements"].clear()
            return {"apis": []}

        orch = PipelineOrchestrator(config, producers={"technical": technical})
        doc = empty_document.model_copy(update={"functional": make_section(functional_data)})
        updated = await orch.run_phase(doc, "technical")

        assert set(seen) == {"functional"}
        assert len(doc.functional.data["requirements"]) == 2
        assert updated.technical.data == {"apis": []}
        assert updated.technical.produced_by == "technical"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_async_producer(self, config, empty_document: Document, functional_data):
        async def functional(inputs):
            return functional_data

        orch = PipelineOrchestrator(config, producers={"functional": functional})
        updated = await orch.run_phase(empty_document, "functional")
        assert updated.functional.data == functional_data

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_contract_violation_leaves_document_untouched(
        self, config, empty_document: Document, make_section, functional_data
    ):
        orch = PipelineOrchestrator(config, producers={"technical": lambda inputs: {"apis": "nope"}})
        doc = empty_document.model_copy(update={"functional": make_section(functional_data)})
        with pytest.raises(ContractViolationError) as exc_info:
            await orch.run_phase(doc, "technical")
        assert exc_info.value.fields == ["apis"]
        assert doc.technical is None


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------


class TestRun:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_run_completes_every_section(
        self, config, orchestrator, project_meta, sample_requirements_text
    ):
        run = await orchestrator.run(DOC_ID, sample_requirements_text, project_meta, source="req.md")

        assert run.success
        assert run.names_with(PhaseStatus.COMPLETED) == [p.name for p in orchestrator.phases]
        assert all(r.duration_ms is not None for r in run.phases.values())

        doc = orchestrator.store.load(DOC_ID)
        assert len(doc.completed_sections) == 8
        assert doc.functional.data["source"] == "req.md"
        assert [e.status for e in doc.execution_log] == [LogStatus.COMPLETED.value] * 8
        assert doc.project.name == "test-project"

        state = load_json(config.run_state_path(DOC_ID))
        assert state["status"] == RunStatus.COMPLETED.value
        assert state["phases"]["deployment"]["status"] == "completed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_kpis_are_recorded(self, orchestrator, project_meta, sample_requirements_text):
        await orchestrator.run(DOC_ID, sample_requirements_text, project_meta)
        kpis = orchestrator.store.load(DOC_ID).kpis

        assert set(kpis.timings) == {p.name for p in orchestrator.phases}
        assert kpis.counts["functionalRequirements"] == 5
        assert kpis.counts["technicalApis"] == 5
        assert kpis.counts["tests"] == {"unit": 5, "integration": 5, "e2e": 1}
        assert kpis.counts["implementation"]["files"] == 4
        assert kpis.counts["review"]["overallScore"] == 90
        assert kpis.orchestration["phasesCompleted"] == [p.name for p in orchestrator.phases]
        assert kpis.orchestration["phasesSkipped"] == []
        assert "totalDurationMs" in kpis.orchestration

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_phase_failure_persists_last_good_state(
        self, config, project_meta, sample_requirements_text
    ):
        orch = PipelineOrchestrator(config, producers={"architecture": lambda inputs: ["not", "a", "dict"]})
        with pytest.raises(ContractViolationError):
            await orch.run(DOC_ID, sample_requirements_text, project_meta)

        run = orch.run_state
        assert run.status is RunStatus.FAILED
        assert run.phases["architecture"].status is PhaseStatus.FAILED
        assert run.phases["architecture"].error
        assert run.phases["testing"].status is PhaseStatus.PENDING
        assert "architecture" in run.error

        doc = orch.store.load(DOC_ID)
        assert doc.completed_sections == ["functional", "technical"]
        assert all(e.status == LogStatus.COMPLETED.value for e in doc.execution_log)

        state = load_json(config.run_state_path(DOC_ID))
        assert state["status"] == "failed"
        assert state["phases"]["architecture"]["status"] == "failed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_phase_does_not_touch_the_file(
        self, config, orchestrator, project_meta, sample_requirements_text
    ):
        await orchestrator.run(DOC_ID, sample_requirements_text, project_meta)
        path = orchestrator.store.path_for(DOC_ID)
        before = path.read_bytes()

        def review(inputs):
            raise RuntimeError("agent crashed")

        failing = PipelineOrchestrator(config, producers={"review": review})
        with pytest.raises(RuntimeError, match="agent crashed"):
            await failing.run(DOC_ID, sample_requirements_text, start_from="review")

        assert path.read_bytes() == before
        assert failing.run_state.phases["review"].status is PhaseStatus.FAILED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resume_skips_earlier_phases(
        self, orchestrator, project_meta, sample_requirements_text
    ):
        await orchestrator.run(DOC_ID, sample_requirements_text, project_meta)
        first = orchestrator.store.load(DOC_ID)

        run = await orchestrator.run(DOC_ID, sample_requirements_text, start_from="review")
        second = orchestrator.store.load(DOC_ID)

        assert run.names_with(PhaseStatus.SKIPPED) == [
            "functional", "technical", "architecture", "testing", "implementation",
        ]
        assert run.names_with(PhaseStatus.COMPLETED) == ["review", "documentation", "deployment"]
        assert second.functional == first.functional
        assert second.review.timestamp >= first.review.timestamp
        assert len(second.execution_log) == len(first.execution_log) + 3
        assert second.kpis.orchestration["phasesSkipped"] == run.names_with(PhaseStatus.SKIPPED)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resume_without_inputs_fails(self, orchestrator, project_meta, sample_requirements_text):
        with pytest.raises(MissingInputError) as exc_info:
            await orchestrator.run(DOC_ID, sample_requirements_text, project_meta, start_from="technical")
        assert exc_info.value.field == "functional"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reset_downstream(self, orchestrator, project_meta, sample_requirements_text):
        await orchestrator.run(DOC_ID, sample_requirements_text, project_meta)
        run = await orchestrator.run(
            DOC_ID, sample_requirements_text, reset="downstream", start_from="technical"
        )
        assert run.success
        doc = orchestrator.store.load(DOC_ID)
        statuses = [e.status for e in doc.execution_log]
        assert statuses.count(LogStatus.RESET.value) == 1
        assert statuses.index(LogStatus.RESET.value) == 8
        assert len(doc.completed_sections) == 8

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_start_phase(self, orchestrator, sample_requirements_text):
        with pytest.raises(ValueError, match="Unknown phase"):
            await orchestrator.run(DOC_ID, sample_requirements_text, start_from="marketing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_configured_phase_subset(self, config, project_meta, sample_requirements_text):
        config.phases = ["functional", "technical"]
        orch = PipelineOrchestrator(config)
        run = await orch.run(DOC_ID, sample_requirements_text, project_meta)
        assert run.names_with(PhaseStatus.COMPLETED) == ["functional", "technical"]
        assert len(run.names_with(PhaseStatus.SKIPPED)) == 6
        assert orch.store.load(DOC_ID).completed_sections == ["functional", "technical"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_report_written_when_enabled(self, config, project_meta, sample_requirements_text, tmp_path):
        config.report.enabled = True
        config.report.report_dir = tmp_path / "reports"
        await PipelineOrchestrator(config).run(DOC_ID, sample_requirements_text, project_meta)
        names = sorted(p.suffix for p in (tmp_path / "reports").iterdir())
        assert names == [".csv", ".md"]


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class TestRuleConsultation:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rule_counts_recorded(
        self, config, project_meta, sample_requirements_text, make_rule
    ):
        engine = RuleEngine.from_rules(
            {
                "code-generation": [make_rule("style", phase=["implementation", "review"])],
                "validation": [
                    make_rule(
                        "lint",
                        severity="HIGH",
                        action={"type": "run-validation", "params": {"command": "exit 1"}},
                    )
                ],
            }
        )
        orch = PipelineOrchestrator(config, rule_engine=engine)
        run = await orch.run(DOC_ID, sample_requirements_text, project_meta)

        assert run.success
        report = run.phases["implementation"].rules
        assert report.rules_checked == 2
        assert report.rules_failed == 1
        assert run.phases["documentation"].rules is None

        rules = orch.store.load(DOC_ID).kpis.counts["rules"]
        assert rules["implementation"] == {"checked": 2, "applied": 1, "failed": 1}
        assert rules["review"] == {"checked": 1, "applied": 1, "failed": 0}
        assert rules["deployment"] == {"checked": 0, "applied": 0, "failed": 0}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rules_see_phase_output(self, config, project_meta, sample_requirements_text, make_rule):
        engine = RuleEngine.from_rules(
            {
                "validation": [
                    make_rule(
                        "needs-tests",
                        phase="review",
                        condition={"type": "context-match", "check": "No test files generated"},
                    )
                ]
            }
        )
        orch = PipelineOrchestrator(
            config,
            rule_engine=engine,
            producers={"testing": lambda inputs: {"unitTests": {"count": 0}}},
        )
        run = await orch.run(DOC_ID, sample_requirements_text, project_meta)
        assert [d.rule_id for d in run.phases["review"].rules.details] == ["needs-tests"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_abort_fails_the_phase(self, config, project_meta, sample_requirements_text, make_rule):
        engine = RuleEngine.from_rules(
            {
                "validation": [
                    make_rule(
                        "stop",
                        severity="CRITICAL",
                        action={"type": "abort-with-error", "params": {"message": "forbidden pattern"}},
                    )
                ]
            }
        )
        orch = PipelineOrchestrator(config, rule_engine=engine)
        with pytest.raises(AbortSignal) as exc_info:
            await orch.run(DOC_ID, sample_requirements_text, project_meta)

        assert exc_info.value.rule_id == "stop"
        assert orch.run_state.phases["implementation"].status is PhaseStatus.FAILED
        assert orch.store.load(DOC_ID).completed_sections == [
            "functional", "technical", "architecture", "testing",
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_output_is_rejected_before_rules_run(
        self, config, project_meta, sample_requirements_text, make_rule, tmp_path
    ):
        marker = tmp_path / "validation-ran"
        engine = RuleEngine.from_rules(
            {
                "validation": [
                    make_rule(
                        "stop",
                        severity="CRITICAL",
                        action={"type": "abort-with-error", "params": {"message": "stop"}},
                    ),
                    make_rule(
                        "touch",
                        action={"type": "run-validation", "params": {"command": f"touch {marker}"}},
                    ),
                ]
            }
        )
        orch = PipelineOrchestrator(
            config,
            rule_engine=engine,
            producers={"implementation": lambda inputs: {"files": "not-a-list"}},
        )
        with pytest.raises(ContractViolationError) as exc_info:
            await orch.run(DOC_ID, sample_requirements_text, project_meta)

        assert exc_info.value.section == "implementation"
        assert "files" in exc_info.value.fields
        assert orch.run_state.phases["implementation"].rules is None
        assert not marker.exists()

    @pytest.mark.unit
    def test_suggest_fix_passthrough(self, config, esm_fix_rule):
        assert PipelineOrchestrator(config).suggest_fix("require is not defined") is None

        engine = RuleEngine.from_rules({"error-resolution": [esm_fix_rule]})
        orch = PipelineOrchestrator(config, rule_engine=engine)
        assert orch.suggest_fix("ReferenceError: require is not defined").rule_id == "rule-err-esm"


# ---------------------------------------------------------------------------
# KPI helpers
# ---------------------------------------------------------------------------


class TestSectionCounts:
    @pytest.mark.unit
    def test_implementation_measures_files_on_disk(
        self, empty_document: Document, make_section, tmp_project_dir: Path
    ):
        (tmp_project_dir / "src").mkdir()
        (tmp_project_dir / "src" / "index.js").write_text("a\nb\n", encoding="utf-8")
        data = {"files": [{"path": "src/index.js", "type": "source"}, {"path": "missing.js", "type": "test"}]}
        doc = empty_document.model_copy(update={"implementation": make_section(data)})

        counts = section_counts("implementation", doc)["implementation"]
        assert counts["files"] == 2
        assert counts["bytes"] == 4
        assert counts["loc"] == {"total": 2, "avgPerFile": 1}
        assert counts["byType"] == {"source": 1, "test": 1}

    @pytest.mark.unit
    def test_sections_without_counts(self, empty_document: Document):
        assert section_counts("documentation", empty_document) == {}
        assert section_counts("functional", empty_document) == {"functionalRequirements": 0}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestCli:
    @pytest.fixture
    def requirements_file(self, tmp_path: Path, sample_requirements_text: str) -> Path:
        path = tmp_path / "requirements.md"
        path.write_text(sample_requirements_text, encoding="utf-8")
        return path

    def _run(self, work_dir: Path, requirements_file: Path, project_dir: Path, *extra: str) -> None:
        main([
            "--work-dir", str(work_dir), "--quiet",
            "run", str(requirements_file),
            "--project-path", str(project_dir),
            "--no-rules",
            *extra,
        ])

    @pytest.mark.unit
    def test_run_derives_id_from_front_matter(self, tmp_path, requirements_file, tmp_project_dir):
        work = tmp_path / "work"
        self._run(work, requirements_file, tmp_project_dir)
        doc = DocumentStore(work / "documents").load("task-manager")
        assert doc.project.name == "Task Manager"
        assert len(doc.completed_sections) == 8
        assert (work / "runs" / "task-manager.json").is_file()

    @pytest.mark.unit
    def test_run_with_explicit_id_and_phases(self, tmp_path, requirements_file, tmp_project_dir):
        work = tmp_path / "work"
        self._run(work, requirements_file, tmp_project_dir, "--id", "cli-doc", "--phases", "functional,technical")
        doc = DocumentStore(work / "documents").load("cli-doc")
        assert doc.completed_sections == ["functional", "technical"]

    @pytest.mark.unit
    def test_run_missing_requirements_file_exits(self, tmp_path, tmp_project_dir):
        with pytest.raises(SystemExit) as exc_info:
            self._run(tmp_path / "work", tmp_path / "nope.md", tmp_project_dir)
        assert exc_info.value.code == 1

    @pytest.mark.unit
    def test_failed_run_exits_nonzero(self, tmp_path, requirements_file, tmp_project_dir):
        with pytest.raises(SystemExit) as exc_info:
            self._run(tmp_path / "work", requirements_file, tmp_project_dir, "--from", "technical")
        assert exc_info.value.code == 1

    @pytest.mark.unit
    def test_summary(self, tmp_path, requirements_file, tmp_project_dir, capsys):
        work = tmp_path / "work"
        self._run(work, requirements_file, tmp_project_dir, "--id", "cli-doc")
        capsys.readouterr()

        main(["--work-dir", str(work), "summary", "cli-doc"])
        out = capsys.readouterr().out
        assert "Task Manager" in out
        assert "8/8" in out

    @pytest.mark.unit
    def test_summary_of_unknown_document_exits(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--work-dir", str(tmp_path), "summary", "ghost"])
        assert exc_info.value.code == 1

    @pytest.mark.unit
    def test_quiet_still_reports_errors(self, tmp_path, capsys):
        with pytest.raises(SystemExit):
            main(["--work-dir", str(tmp_path), "--quiet", "summary", "ghost"])
        captured = capsys.readouterr()
        assert "Document not found: ghost" in captured.err
        assert captured.out == ""

    @pytest.mark.unit
    def test_suggest_fix(self, capsys):
        main(["suggest-fix", "ReferenceError: require is not defined in ES module scope"])
        assert "rule-err-001" in capsys.readouterr().out

    @pytest.mark.unit
    def test_suggest_fix_without_match_exits(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["--quiet", "suggest-fix", "a perfectly healthy log line"])
        assert exc_info.value.code == 1

    @pytest.mark.unit
    def test_report(self, tmp_path, requirements_file, tmp_project_dir, capsys):
        work = tmp_path / "work"
        reports = tmp_path / "reports"
        self._run(work, requirements_file, tmp_project_dir, "--id", "cli-doc")

        main(["--work-dir", str(work), "--quiet", "report", "cli-doc", "--report-dir", str(reports)])
        assert sorted(p.suffix for p in reports.iterdir()) == [".csv", ".md"]

        capsys.readouterr()
        main(["--work-dir", str(work), "report", "cli-doc", "--markdown"])
        out = capsys.readouterr().out
        assert "# Task Manager" in out
        assert "| deployment | done |" in out
