"""forgeflow configuration.

Centralised, typed configuration for the pipeline. All settings use
Pydantic v2 models so they can be validated at construction time and
serialised to/from JSON or environment variables without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

# Bundled rule sets and templates shipped inside the package.
KNOWLEDGE_DIR = Path(__file__).resolve().parent / "knowledge"


class RulesConfig(BaseModel):
    """Where the rule engine loads its rule sets and templates from."""

    rules_dir: Path = Field(default=KNOWLEDGE_DIR / "rules")
    templates_dir: Path = Field(default=KNOWLEDGE_DIR)
    validation_timeout: float = Field(
        default=30.0, gt=0, description="Default timeout for run-validation actions, in seconds"
    )
    enabled: bool = Field(default=True, description="Consult the rule engine during phases")


class ReportConfig(BaseModel):
    """KPI report output."""

    enabled: bool = Field(default=False)
    report_dir: Path = Field(default=Path("./reports"))


class Config(BaseModel):
    """Global forgeflow configuration.

    Instances are typically created once by the CLI entry point and then
    passed to :class:`~forgeflow.pipeline.PipelineOrchestrator`.
    """

    project_name: str = Field(default="")
    work_dir: Path = Field(default=Path("./forgeflow-work"))
    documents_dir: str = Field(default="documents")
    verbose: bool = Field(default=True)
    rules: RulesConfig = Field(default_factory=RulesConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)

    # Phase control: names of the phases to execute, in pipeline order.
    # Empty means all phases.
    phases: list[str] = Field(default_factory=list)

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def documents_path(self) -> Path:
        """Directory holding one persisted document per requirement."""
        return self.work_dir / self.documents_dir

    @property
    def config_path(self) -> Path:
        """Default location of the saved configuration snapshot."""
        return self.work_dir / "config.json"

    def run_state_path(self, document_id: str) -> Path:
        """Where the state of the last run for *document_id* is recorded."""
        return self.work_dir / "runs" / f"{document_id}.json"

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<work_dir>/config.json``.

        Returns:
            The resolved path where the file was written.
        """
        target = path or self.config_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            FORGEFLOW_PROJECT_NAME, FORGEFLOW_WORK_DIR, FORGEFLOW_PHASES,
            FORGEFLOW_VERBOSE, FORGEFLOW_RULES_DIR, FORGEFLOW_TEMPLATES_DIR,
            FORGEFLOW_VALIDATION_TIMEOUT, FORGEFLOW_RULES_ENABLED,
            FORGEFLOW_REPORT, FORGEFLOW_REPORT_DIR.
        """
        rules_kwargs: dict[str, Any] = {}
        if os.environ.get("FORGEFLOW_RULES_DIR"):
            rules_kwargs["rules_dir"] = Path(os.environ["FORGEFLOW_RULES_DIR"])
        if os.environ.get("FORGEFLOW_TEMPLATES_DIR"):
            rules_kwargs["templates_dir"] = Path(os.environ["FORGEFLOW_TEMPLATES_DIR"])
        if os.environ.get("FORGEFLOW_VALIDATION_TIMEOUT"):
            rules_kwargs["validation_timeout"] = float(os.environ["FORGEFLOW_VALIDATION_TIMEOUT"])
        if os.environ.get("FORGEFLOW_RULES_ENABLED"):
            rules_kwargs["enabled"] = _env_flag(os.environ["FORGEFLOW_RULES_ENABLED"])

        report_kwargs: dict[str, Any] = {}
        if os.environ.get("FORGEFLOW_REPORT"):
            report_kwargs["enabled"] = _env_flag(os.environ["FORGEFLOW_REPORT"])
        if os.environ.get("FORGEFLOW_REPORT_DIR"):
            report_kwargs["report_dir"] = Path(os.environ["FORGEFLOW_REPORT_DIR"])

        phases_str = os.environ.get("FORGEFLOW_PHASES", "")
        phases = [p.strip() for p in phases_str.split(",") if p.strip()]

        return cls(
            project_name=os.environ.get("FORGEFLOW_PROJECT_NAME", ""),
            work_dir=Path(os.environ.get("FORGEFLOW_WORK_DIR", "./forgeflow-work")),
            verbose=_env_flag(os.environ.get("FORGEFLOW_VERBOSE", "1")),
            rules=RulesConfig(**rules_kwargs),
            report=ReportConfig(**report_kwargs),
            phases=phases,
        )

    def ensure_directories(self) -> None:
        """Create all derived directories that must exist before the pipeline runs."""
        self.documents_path.mkdir(parents=True, exist_ok=True)
        (self.work_dir / "runs").mkdir(parents=True, exist_ok=True)
        if self.report.enabled:
            self.report.report_dir.mkdir(parents=True, exist_ok=True)


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")
