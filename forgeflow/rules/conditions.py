"""Pure evaluators for rule conditions.

A context is an opaque mapping. The keys read here are:

``files``
    Optional snapshot of the project tree as ``{relative_path: content}``.
    When present, file conditions are answered from it alone.
``project_path``
    Directory used for file conditions when no snapshot is given.
``error``
    Error text matched by ``custom`` conditions.

Evaluation never depends on wall-clock time or global mutable state; the
same ``(condition, context)`` pair always yields the same answer.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Any, Optional

from .models import (
    AlwaysCondition,
    Condition,
    ContextMatchCondition,
    CustomCondition,
    FileContainsCondition,
    FileExistsCondition,
    PackageConfigCondition,
    PatternCheck,
    compile_pattern,
)


@lru_cache(maxsize=512)
def _pattern(pattern: str, flags: int) -> re.Pattern[str]:
    return compile_pattern(pattern, flags)


def _snapshot(context: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    files = context.get("files")
    return files if isinstance(files, Mapping) else None


def _normalise(rel: str) -> str:
    return str(PurePosixPath(rel.replace("\\", "/")))


def _disk_path(context: Mapping[str, Any], rel: str) -> Path:
    return Path(str(context.get("project_path") or ".")) / rel


def file_exists(context: Mapping[str, Any], rel: str) -> bool:
    snapshot = _snapshot(context)
    if snapshot is not None:
        wanted = _normalise(rel)
        return any(_normalise(str(key)) == wanted for key in snapshot)
    return _disk_path(context, rel).exists()


def read_file(context: Mapping[str, Any], rel: str) -> Optional[str]:
    """Content of *rel* from the snapshot or disk, or ``None`` if unavailable."""
    snapshot = _snapshot(context)
    if snapshot is not None:
        wanted = _normalise(rel)
        for key, content in snapshot.items():
            if _normalise(str(key)) == wanted:
                return content if isinstance(content, str) else json.dumps(content)
        return None

    path = _disk_path(context, rel)
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _package_config(context: Mapping[str, Any], field: str, expected: Any) -> bool:
    content = read_file(context, "package.json")
    if content is None:
        return False
    try:
        value: Any = json.loads(content)
    except json.JSONDecodeError:
        return False

    for part in field.split("."):
        value = value.get(part) if isinstance(value, dict) else None

    if isinstance(expected, str) and expected.startswith("!"):
        return value != expected[1:]
    return value == expected


def serialise_context(context: Mapping[str, Any]) -> str:
    """Stable JSON view of the context used by ``context-match``.

    Mapping keys are stringified first so that mixed key types still sort.
    """
    return json.dumps(_string_keys(context), sort_keys=True, default=str)


def _string_keys(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _string_keys(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_string_keys(item) for item in value]
    return value


def evaluate(condition: Condition, context: Mapping[str, Any]) -> bool:
    """Decide whether *condition* holds for *context*."""
    if isinstance(condition, AlwaysCondition):
        return True

    if isinstance(condition, FileExistsCondition):
        return file_exists(context, condition.check.file)

    if isinstance(condition, FileContainsCondition):
        content = read_file(context, condition.check.file)
        if content is None:
            return False
        return _pattern(condition.check.pattern, 0).search(content) is not None

    if isinstance(condition, PackageConfigCondition):
        return _package_config(context, condition.check.field, condition.check.value)

    if isinstance(condition, ContextMatchCondition):
        serialised = serialise_context(context)
        if isinstance(condition.check, PatternCheck):
            return _pattern(condition.check.pattern, re.IGNORECASE).search(serialised) is not None
        return condition.check.lower() in serialised.lower()

    if isinstance(condition, CustomCondition):
        error = context.get("error")
        if not error:
            return False
        return _pattern(condition.check.pattern, re.IGNORECASE).search(str(error)) is not None

    return False
