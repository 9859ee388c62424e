"""Default phase producers.

A producer turns the data of a phase's consumed sections into the data of
its own section. The orchestrator treats producers as opaque collaborators
and only enforces their contracts, so these defaults are deliberately
minimal: a markdown requirement reader for ``functional`` and small,
deterministic derivations for the other phases. Real agents plug in
through :class:`~forgeflow.pipeline.PipelineOrchestrator`'s ``producers``
argument.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Union

import yaml

from forgeflow.utils import sanitize_name

Producer = Callable[[dict[str, Any]], Union[dict[str, Any], Awaitable[dict[str, Any]]]]

_FRONT_MATTER_RE = re.compile(r"^---\n(.*?)\n---\n?", re.DOTALL)
_HEADING_RE = re.compile(r"^(#{2,})\s+(.+?)\s*$")
_TITLE_RE = re.compile(r"^#\s+(.+?)\s*$", re.MULTILINE)
_ITEM_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^\s*[-*]\s+\[[ xX]\]\s+(.+)$"), "checkbox"),
    (re.compile(r"^\s*[-*]\s+(.+)$"), "bullet"),
    (re.compile(r"^\s*\d+[.)]\s+(.+)$"), "numbered"),
)

_READ_WORDS = ("list", "view", "show", "display", "get", "read", "search", "see")


# ---------------------------------------------------------------------------
# Functional: markdown requirement reader
# ---------------------------------------------------------------------------


def extract_front_matter(text: str) -> dict[str, Any]:
    """YAML front matter of a markdown document, or ``{}``."""
    match = _FRONT_MATTER_RE.match(text)
    if not match:
        return {}
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        return {}
    return data if isinstance(data, dict) else {}


def extract_project_name(text: str) -> str:
    """Project name from front matter ``name``, then the first ``#`` heading."""
    name = extract_front_matter(text).get("name")
    if name:
        return str(name)
    match = _TITLE_RE.search(_FRONT_MATTER_RE.sub("", text, count=1))
    if match:
        return match.group(1)
    return "unknown-project"


def parse_requirements(text: str) -> dict[str, Any]:
    """Extract list items under markdown headings as requirements.

    Each item becomes ``{text, type, section}`` where ``type`` is the list
    style (checkbox, bullet, numbered) and ``section`` the lower-cased
    heading it appears under.
    """
    metadata = extract_front_matter(text)
    body = _FRONT_MATTER_RE.sub("", text, count=1)

    requirements: list[dict[str, str]] = []
    sections: dict[str, list[str]] = {}
    current = "general"

    for line in body.splitlines():
        heading = _HEADING_RE.match(line)
        if heading:
            current = heading.group(2).lower()
            sections.setdefault(current, [])
            continue
        for pattern, kind in _ITEM_PATTERNS:
            item = pattern.match(line)
            if item:
                item_text = item.group(1).strip()
                if item_text:
                    requirements.append({"text": item_text, "type": kind, "section": current})
                    sections.setdefault(current, []).append(item_text)
                break

    return {"requirements": requirements, "metadata": metadata, "sections": sections}


def produce_functional(inputs: dict[str, Any]) -> dict[str, Any]:
    data = parse_requirements(str(inputs.get("requirement") or ""))
    if inputs.get("source"):
        data["source"] = str(inputs["source"])
    return data


# ---------------------------------------------------------------------------
# Derived phases
# ---------------------------------------------------------------------------


def _requirements(inputs: Mapping[str, Any]) -> list[dict[str, Any]]:
    return list((inputs.get("functional") or {}).get("requirements") or [])


def _slug(text: str, limit: int = 40) -> str:
    return sanitize_name(text)[:limit].strip("-") or "item"


def produce_technical(inputs: dict[str, Any]) -> dict[str, Any]:
    apis = []
    components: dict[str, dict[str, Any]] = {}
    for req in _requirements(inputs):
        slug = _slug(req["text"])
        method = "GET" if req["text"].lower().startswith(_READ_WORDS) else "POST"
        apis.append({"name": slug, "method": method, "path": f"/api/{slug}", "requirement": req["text"]})
        section = req.get("section") or "general"
        component = components.setdefault(section, {"name": _slug(section), "apis": []})
        component["apis"].append(slug)
    return {"apis": apis, "components": list(components.values())}


def produce_architecture(inputs: dict[str, Any]) -> dict[str, Any]:
    components = (inputs.get("technical") or {}).get("components") or []
    modules = [
        {"name": c["name"], "layer": "service", "dependsOn": ["core"]} for c in components
    ]
    return {
        "pattern": "layered",
        "layers": ["api", "service", "core"],
        "modules": [{"name": "core", "layer": "core", "dependsOn": []}, *modules],
    }


def produce_testing(inputs: dict[str, Any]) -> dict[str, Any]:
    requirements = _requirements(inputs)
    apis = (inputs.get("technical") or {}).get("apis") or []
    cases = [{"name": f"test_{_slug(r['text']).replace('-', '_')}", "requirement": r["text"]} for r in requirements]
    return {
        "unitTests": {"count": len(cases), "cases": cases},
        "integrationTests": {"count": len(apis)},
        "e2eTests": {"count": 1 if requirements else 0},
    }


def produce_implementation(inputs: dict[str, Any]) -> dict[str, Any]:
    components = (inputs.get("technical") or {}).get("components") or []
    files = [{"path": f"src/{c['name']}.js", "type": "source"} for c in components]
    files.append({"path": "src/index.js", "type": "source"})
    unit_count = ((inputs.get("testing") or {}).get("unitTests") or {}).get("count", 0)
    if unit_count:
        files.append({"path": "tests/unit.test.js", "type": "test"})
    return {"files": files, "filesGenerated": len(files)}


def produce_review(inputs: dict[str, Any]) -> dict[str, Any]:
    files = (inputs.get("implementation") or {}).get("files") or []
    has_tests = any(f.get("type") == "test" for f in files)
    findings = [] if has_tests else [{"severity": "MEDIUM", "message": "No test files generated"}]
    return {
        "overallScore": 90 if has_tests else 70,
        "codeQuality": {"findings": findings},
        "architecture": {"findings": []},
        "security": {"issues": []},
        "recommendations": [f["message"] for f in findings],
    }


def produce_documentation(inputs: dict[str, Any]) -> dict[str, Any]:
    apis = (inputs.get("technical") or {}).get("apis") or []
    files = (inputs.get("implementation") or {}).get("files") or []
    lines = ["# API", ""]
    lines.extend(f"- `{api['method']} {api['path']}`: {api['requirement']}" for api in apis)
    return {
        "readme": "\n".join(lines) + "\n",
        "apiDocs": [api["path"] for api in apis],
        "filesDocumented": len(files),
    }


def produce_deployment(inputs: dict[str, Any]) -> dict[str, Any]:
    files = (inputs.get("implementation") or {}).get("files") or []
    return {
        "strategy": "container",
        "steps": ["install", "test", "build", "release"],
        "artifacts": [f["path"] for f in files if f.get("type") == "source"],
    }


DEFAULT_PRODUCERS: dict[str, Producer] = {
    "functional": produce_functional,
    "technical": produce_technical,
    "architecture": produce_architecture,
    "testing": produce_testing,
    "implementation": produce_implementation,
    "review": produce_review,
    "documentation": produce_documentation,
    "deployment": produce_deployment,
}
