"""Shared pytest fixtures for the forgeflow test suite.

Provides reusable fixtures for:
- Temporary work directories and document stores
- Sample requirements text
- Valid section payloads and pre-built documents
- A rule factory for building in-memory rule engines
"""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any, Callable

import pytest

from forgeflow.config import Config, RulesConfig
from forgeflow.document import Document, DocumentStore, ProjectMeta, Section
from forgeflow.utils import set_quiet


# ---------------------------------------------------------------------------
# Paths & configuration
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """Temporary directory standing in for a generated project."""
    project_dir = tmp_path / "test-project"
    project_dir.mkdir()
    yield project_dir


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config rooted in a temp work dir with the rule engine disabled."""
    return Config(
        project_name="test-project",
        work_dir=tmp_path / "work",
        verbose=False,
        rules=RulesConfig(enabled=False),
    )


@pytest.fixture
def store(tmp_path: Path) -> DocumentStore:
    return DocumentStore(tmp_path / "documents")


# ---------------------------------------------------------------------------
# Requirements
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_requirements_text() -> str:
    """A small requirements document with front matter and two sections."""
    return textwrap.dedent("""\
        ---
        name: "Task Manager"
        version: 1
        ---
        # Task Manager

        A simple task management application.

        ## Tasks

        - [ ] Create a task with a title
        - List all tasks
        - Delete a task

        ## Users

        1. Register a user account
        2. View the user profile
    """)


@pytest.fixture
def project_meta(tmp_project_dir: Path) -> ProjectMeta:
    return ProjectMeta(name="test-project", path=str(tmp_project_dir))


# ---------------------------------------------------------------------------
# Section payloads & documents
# ---------------------------------------------------------------------------

@pytest.fixture
def functional_data() -> dict[str, Any]:
    return {
        "requirements": [
            {"text": "Create a task", "type": "bullet", "section": "tasks"},
            {"text": "List all tasks", "type": "bullet", "section": "tasks"},
        ],
        "metadata": {"name": "Task Manager"},
    }


@pytest.fixture
def empty_document(project_meta: ProjectMeta) -> Document:
    now = "2026-01-01T00:00:00+00:00"
    return Document(created=now, last_updated=now, project=project_meta)


@pytest.fixture
def make_section() -> Callable[..., Section]:
    def factory(data: dict[str, Any], produced_by: str = "test") -> Section:
        return Section(timestamp="2026-01-01T00:00:00+00:00", produced_by=produced_by, data=data)

    return factory


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@pytest.fixture
def make_rule() -> Callable[..., dict[str, Any]]:
    """Factory for raw rule dicts in the on-disk (camelCase) shape.

    Usage::

        def test_something(make_rule):
            rule = make_rule("r1", severity="CRITICAL")
    """

    def factory(
        rule_id: str,
        *,
        phase: Any = "implementation",
        severity: str = "MEDIUM",
        condition: dict[str, Any] | None = None,
        action: dict[str, Any] | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        rule: dict[str, Any] = {
            "id": rule_id,
            "name": f"Rule {rule_id}",
            "category": "test",
            "phase": phase,
            "severity": severity,
            "condition": condition or {"type": "always"},
            "action": action
            or {"type": "enforce-pattern", "params": {"enforce": f"pattern-{rule_id}"}},
        }
        rule.update(extra)
        return rule

    return factory


@pytest.fixture
def esm_fix_rule(make_rule) -> dict[str, Any]:
    """Error-resolution rule for the CommonJS-in-ESM error."""
    return make_rule(
        "rule-err-esm",
        severity="CRITICAL",
        condition={"type": "custom", "check": {"pattern": "require is not defined"}},
        action={
            "type": "apply-fix",
            "params": {
                "fix": {
                    "search": "const (\\w+) = require\\(['\"](.+?)['\"]\\)",
                    "replace": "import $1 from '$2'",
                }
            },
        },
        examples=[{"wrong": "const x = require('x')", "correct": "import x from 'x'"}],
    )


@pytest.fixture(autouse=True)
def _restore_console():
    """Undo any ``set_quiet`` performed by the code under test."""
    yield
    set_quiet(False)
