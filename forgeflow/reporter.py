"""KPI and status reports for a requirement document.

Renders the KPI block of a document as Markdown and CSV, writes both to a
report directory, and exports a human-readable status report of the whole
document. Rendering is pure; only :func:`write_kpi_report` touches disk.
"""

from __future__ import annotations

import csv
import io
from pathlib import Path
from typing import Any, Optional, Union

from forgeflow.document import SECTION_NAMES, Document, DocumentStore
from forgeflow.utils import sanitize_name, utc_now, write_text_atomic

# (label, dotted path into kpis.counts) in report order.
COUNT_METRICS: tuple[tuple[str, str], ...] = (
    ("functionalRequirements", "functionalRequirements"),
    ("technicalApis", "technicalApis"),
    ("tests.unit", "tests.unit"),
    ("tests.integration", "tests.integration"),
    ("tests.e2e", "tests.e2e"),
    ("implementation.files", "implementation.files"),
    ("implementation.bytes", "implementation.bytes"),
    ("implementation.loc.total", "implementation.loc.total"),
    ("implementation.loc.avgPerFile", "implementation.loc.avgPerFile"),
    ("review.overallScore", "review.overallScore"),
    ("review.findings", "review.findings"),
    ("review.issues", "review.issues"),
    ("review.recommendations", "review.recommendations"),
)


def _lookup(data: Any, dotted: str, default: Any = 0) -> Any:
    value = data
    for part in dotted.split("."):
        if not isinstance(value, dict) or part not in value:
            return default
        value = value[part]
    return value if value is not None else default


def kpi_rows(document: Document) -> list[tuple[str, Any]]:
    """Flat ``(metric, value)`` rows covering counts, timings and orchestration."""
    kpis = document.kpis
    rows: list[tuple[str, Any]] = [
        (label, _lookup(kpis.counts, path)) for label, path in COUNT_METRICS
    ]
    rows.extend((f"timings.{name}", kpis.timings.get(name, 0)) for name in SECTION_NAMES)
    rows.append(("orchestration.totalDurationMs", kpis.orchestration.get("totalDurationMs", 0)))
    rows.append(("tokensUsed", kpis.tokens_used))
    return rows


def render_kpi_markdown(
    document: Document,
    document_path: Union[str, Path, None] = None,
    generated_at: Optional[str] = None,
) -> str:
    """Markdown KPI report for *document*."""
    counts = document.kpis.counts
    timings = document.kpis.timings

    lines = [
        f"# Orchestration KPIs - {document.project.name}",
        "",
        f"- Date: {generated_at or utc_now()}",
    ]
    if document_path is not None:
        lines.append(f"- Document: {document_path}")

    lines.extend([
        "",
        "## Counts",
        f"- Functional Requirements: {_lookup(counts, 'functionalRequirements')}",
        f"- Technical APIs: {_lookup(counts, 'technicalApis')}",
        (
            f"- Tests: unit={_lookup(counts, 'tests.unit')}, "
            f"integration={_lookup(counts, 'tests.integration')}, e2e={_lookup(counts, 'tests.e2e')}"
        ),
        f"- Implementation Files: {_lookup(counts, 'implementation.files')}",
        f"- Implementation Size: {_lookup(counts, 'implementation.bytes')} bytes",
        (
            f"- Implementation LOC: total={_lookup(counts, 'implementation.loc.total')}, "
            f"avgPerFile={_lookup(counts, 'implementation.loc.avgPerFile')}"
        ),
        f"- Review Score: {_lookup(counts, 'review.overallScore')}",
        f"- Review Findings: {_lookup(counts, 'review.findings')}",
        f"- Review Issues: {_lookup(counts, 'review.issues')}",
        f"- Review Recommendations: {_lookup(counts, 'review.recommendations')}",
        "",
        "## Timings (ms)",
    ])
    lines.extend(f"- {name.capitalize()}: {timings.get(name, 0)}" for name in SECTION_NAMES)
    lines.extend([
        "",
        "## Orchestration",
        f"- Total Duration: {document.kpis.orchestration.get('totalDurationMs', 0)} ms",
        f"- Tokens Used: {document.kpis.tokens_used}",
    ])

    by_type = _lookup(counts, "implementation.byType", {})
    if by_type:
        lines.extend(["", "## Implementation Breakdown"])
        lines.extend(f"- {kind}: {count}" for kind, count in by_type.items())

    rules = counts.get("rules") or {}
    if rules:
        lines.extend(["", "## Rules", "", "| Phase | Checked | Applied | Failed |", "|---|---|---|---|"])
        for phase, stats in rules.items():
            lines.append(
                f"| {phase} | {stats.get('checked', 0)} | {stats.get('applied', 0)} | {stats.get('failed', 0)} |"
            )

    return "\n".join(lines) + "\n"


def render_kpi_csv(document: Document) -> str:
    """Two-column ``metric,value`` CSV of :func:`kpi_rows`."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["metric", "value"])
    writer.writerows(kpi_rows(document))
    return buffer.getvalue()


def write_kpi_report(
    document: Document,
    report_dir: Union[str, Path],
    document_path: Union[str, Path, None] = None,
) -> tuple[Path, Path]:
    """Write the Markdown and CSV KPI reports; returns their paths."""
    out = Path(report_dir)
    out.mkdir(parents=True, exist_ok=True)
    generated_at = utc_now()
    slug = sanitize_name(document.project.name) or "project"
    stamp = generated_at.replace(":", "-").replace(".", "-").replace("+", "-")
    md_path = out / f"orchestrate-{slug}-{stamp}.md"
    csv_path = out / f"orchestrate-{slug}-{stamp}.csv"
    write_text_atomic(md_path, render_kpi_markdown(document, document_path, generated_at))
    write_text_atomic(csv_path, render_kpi_csv(document))
    return md_path, csv_path


def export_markdown(document: Document) -> str:
    """Human-readable status report: progress, sections and execution log."""
    summary = DocumentStore.summary(document)
    lines = [
        f"# {document.project.name}",
        "",
        f"- Status: {summary.status.value}",
        f"- Progress: {summary.completed_count}/{summary.total_phases} sections",
        f"- Created: {document.created}",
        f"- Last updated: {document.last_updated or '-'}",
        "",
        "## Sections",
        "",
        "| Section | Status | Produced by | Timestamp |",
        "|---|---|---|---|",
    ]
    for name, status in summary.sections.items():
        mark = "done" if status.completed else "pending"
        lines.append(f"| {name} | {mark} | {status.produced_by or '-'} | {status.timestamp or '-'} |")

    lines.extend(["", "## Execution log", ""])
    if not document.execution_log:
        lines.append("_No entries._")
    for entry in document.execution_log:
        detail = f": {entry.detail}" if entry.detail else ""
        lines.append(f"- `{entry.timestamp}` **{entry.phase}** {entry.status}{detail}")

    return "\n".join(lines) + "\n"
