"""Declarative rule engine.

Loads WHEN-THEN rules once per instance from three rule-set files
(code generation, validation, error resolution), evaluates their
conditions against a runtime context and executes their actions.

Rule-level failures (missing template, failed or timed-out validation
command, missed post-condition) are reported as data. Only two things
escape as exceptions: :class:`~forgeflow.errors.RuleEngineLoadError` while
loading, and :class:`~forgeflow.errors.AbortSignal` from an
``abort-with-error`` action.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import ValidationError

from forgeflow.errors import AbortSignal, RuleEngineLoadError
from forgeflow.utils import CommandResult, CommandStatus, console, print_warning, run_command

from . import conditions
from .templates import TemplateRenderer
from .models import (
    ACTION_TYPES,
    CONDITION_TYPES,
    AbortWithErrorAction,
    ActionResult,
    ApplyFixAction,
    CustomCondition,
    EnforcePatternAction,
    FixSuggestion,
    Rule,
    RuleApplicationReport,
    RuleOutcome,
    RuleSetCategory,
    RuleValidation,
    RunValidationAction,
    UseTemplateAction,
)

RULE_SET_FILES: dict[RuleSetCategory, str] = {
    RuleSetCategory.CODE_GENERATION: "code-generation-rules",
    RuleSetCategory.VALIDATION: "validation-rules",
    RuleSetCategory.ERROR_RESOLUTION: "error-resolution-rules",
}

_EXTENSIONS = (".json", ".yaml", ".yml")

DEFAULT_VALIDATION_TIMEOUT = 30.0

Context = Mapping[str, Any]
RawRules = Iterable[Union[Rule, Mapping[str, Any]]]


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------


def _find_rule_file(rules_dir: Path, stem: str) -> Path:
    for ext in _EXTENSIONS:
        candidate = rules_dir / f"{stem}{ext}"
        if candidate.is_file():
            return candidate
    raise RuleEngineLoadError(
        f"rule set '{stem}' not found (tried {', '.join(_EXTENSIONS)})", source=rules_dir
    )


def _read_rule_file(path: Path) -> list[Any]:
    try:
        text = path.read_text(encoding="utf-8")
        if path.suffix == ".json":
            body = json.loads(text)
        else:
            body = yaml.safe_load(text)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise RuleEngineLoadError(str(exc), source=path) from exc

    if isinstance(body, dict):
        body = body.get("rules")
    if not isinstance(body, list):
        raise RuleEngineLoadError("expected a list of rules or an object with 'rules'", source=path)
    return body


def _variant_type(raw: Mapping[str, Any], key: str) -> Optional[str]:
    block = raw.get(key)
    if isinstance(block, Mapping) and isinstance(block.get("type"), str):
        return block["type"]
    return None


def _parse_rule(raw: Any, category: RuleSetCategory, source: Any) -> Optional[Rule]:
    """Validate one raw rule. Returns ``None`` for rules with an unknown variant type."""
    if isinstance(raw, Rule):
        return raw.model_copy(update={"rule_set": category})
    if not isinstance(raw, Mapping):
        raise RuleEngineLoadError(f"rule entry is not an object: {raw!r}", source=source)

    rule_id = raw.get("id", "?")
    cond_type = _variant_type(raw, "condition")
    action_type = _variant_type(raw, "action")
    if cond_type is not None and cond_type not in CONDITION_TYPES:
        print_warning(f"Skipping rule {rule_id}: unknown condition type '{cond_type}'")
        return None
    if action_type is not None and action_type not in ACTION_TYPES:
        print_warning(f"Skipping rule {rule_id}: unknown action type '{action_type}'")
        return None

    try:
        return Rule.model_validate({**raw, "ruleSet": category.value})
    except ValidationError as exc:
        raise RuleEngineLoadError(f"rule {rule_id}: {exc}", source=source) from exc


# ---------------------------------------------------------------------------
# RuleEngine
# ---------------------------------------------------------------------------


class RuleEngine:
    """Evaluates and executes declarative rules.

    Args:
        rules_dir: Directory containing ``code-generation-rules``,
            ``validation-rules`` and ``error-resolution-rules`` files
            (``.json``, ``.yaml`` or ``.yml``).
        templates_dir: Base directory for ``use-template`` actions. Defaults
            to the parent of *rules_dir*.
        validation_timeout: Default timeout in seconds for ``run-validation``.

    Raises:
        RuleEngineLoadError: If any rule set is missing, unparsable, holds a
            malformed rule, or repeats a rule id.
    """

    def __init__(
        self,
        rules_dir: Union[str, Path],
        templates_dir: Union[str, Path, None] = None,
        validation_timeout: float = DEFAULT_VALIDATION_TIMEOUT,
    ) -> None:
        rules_path = Path(rules_dir)
        if not rules_path.is_dir():
            raise RuleEngineLoadError("rules directory does not exist", source=rules_path)

        raw_sets: dict[RuleSetCategory, tuple[Any, list[Any]]] = {}
        for category, stem in RULE_SET_FILES.items():
            path = _find_rule_file(rules_path, stem)
            raw_sets[category] = (path, _read_rule_file(path))

        self.templates_dir = Path(templates_dir) if templates_dir else rules_path.parent
        self._renderer = TemplateRenderer(self.templates_dir)
        self.validation_timeout = validation_timeout
        self._rules = self._build(raw_sets)
        console.print(f"[dim]Rule engine loaded {self.total_rules} rule(s) from {rules_path}[/dim]")

    @classmethod
    def from_rules(
        cls,
        rule_sets: Mapping[Union[str, RuleSetCategory], RawRules],
        templates_dir: Union[str, Path, None] = None,
        validation_timeout: float = DEFAULT_VALIDATION_TIMEOUT,
    ) -> "RuleEngine":
        """Build an engine from in-memory rules, keyed by rule-set category.

        The same checks as file loading apply; categories not given are empty.
        """
        raw_sets: dict[RuleSetCategory, tuple[Any, list[Any]]] = {}
        for key, rules in rule_sets.items():
            try:
                category = RuleSetCategory(key)
            except ValueError as exc:
                raise RuleEngineLoadError(f"unknown rule-set category '{key}'") from exc
            raw_sets[category] = (f"<{category.value}>", list(rules))

        engine = cls.__new__(cls)
        engine.templates_dir = Path(templates_dir) if templates_dir else Path(".")
        engine._renderer = TemplateRenderer(engine.templates_dir)
        engine.validation_timeout = validation_timeout
        engine._rules = engine._build(raw_sets)
        return engine

    @staticmethod
    def _build(
        raw_sets: Mapping[RuleSetCategory, tuple[Any, list[Any]]],
    ) -> dict[RuleSetCategory, tuple[Rule, ...]]:
        seen: dict[str, Any] = {}
        built: dict[RuleSetCategory, tuple[Rule, ...]] = {}
        for category in RuleSetCategory:
            source, raws = raw_sets.get(category, (None, []))
            enabled: list[Rule] = []
            for raw in raws:
                rule = _parse_rule(raw, category, source)
                if rule is None:
                    continue
                if rule.id in seen:
                    raise RuleEngineLoadError(
                        f"duplicate rule id '{rule.id}' (also in {seen[rule.id]})", source=source
                    )
                seen[rule.id] = source
                if rule.enabled:
                    enabled.append(rule)
            built[category] = tuple(enabled)
        return built

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def total_rules(self) -> int:
        return sum(len(rules) for rules in self._rules.values())

    def rules(self, rule_set: Union[str, RuleSetCategory, None] = None) -> list[Rule]:
        """Every enabled rule, optionally restricted to one rule set."""
        if rule_set is not None:
            return list(self._rules[RuleSetCategory(rule_set)])
        return [rule for category in RuleSetCategory for rule in self._rules[category]]

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return next((rule for rule in self.rules() if rule.id == rule_id), None)

    def rules_for_phase(self, phase: str, category: Optional[str] = None) -> list[Rule]:
        """Enabled rules for *phase*, most severe first.

        The sort is stable, so rules of equal severity keep load order.
        """
        matching = [
            rule
            for rule in self.rules()
            if phase in rule.phase and (category is None or rule.category == category)
        ]
        return sorted(matching, key=lambda rule: rule.severity_rank)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_condition(self, rule: Rule, context: Optional[Context] = None) -> bool:
        """Pure, deterministic check of *rule*'s condition against *context*."""
        return conditions.evaluate(rule.condition, context or {})

    def render_template(self, template: str, context: Optional[Context] = None) -> str:
        """Render *template* with the scalar values of *context*.

        Raises:
            FileNotFoundError: If the template does not exist.
            ValueError: If the template cannot be parsed.
        """
        return self._renderer.render(template, context or {})

    async def execute_action(self, rule: Rule, context: Optional[Context] = None) -> ActionResult:
        """Execute *rule*'s action.

        Raises:
            AbortSignal: For ``abort-with-error`` actions.
        """
        ctx = context or {}
        action = rule.action

        if isinstance(action, UseTemplateAction):
            try:
                rendered = self.render_template(action.params.template, ctx)
            except (OSError, ValueError) as exc:
                return ActionResult(rule_id=rule.id, success=False, message=str(exc))
            except Exception as exc:
                # Errors raised while a template's expressions are evaluated.
                return ActionResult(
                    rule_id=rule.id,
                    success=False,
                    message=f"Template {action.params.template} failed: {exc}",
                )
            return ActionResult(
                rule_id=rule.id,
                success=True,
                message=f"Template {action.params.template} loaded",
                data=rendered,
            )

        if isinstance(action, EnforcePatternAction):
            params = action.params
            return ActionResult(
                rule_id=rule.id,
                success=True,
                message=f"Pattern enforcement: {params.enforce}",
                data={
                    "enforce": params.enforce,
                    "required": list(params.required),
                    "forbidden": list(params.forbidden),
                },
            )

        if isinstance(action, RunValidationAction):
            timeout = action.params.timeout or self.validation_timeout
            result = await run_command(
                action.params.command, cwd=ctx.get("project_path") or None, timeout=timeout
            )
            return ActionResult(
                rule_id=rule.id,
                success=result.succeeded,
                message=_describe_validation(result, timeout),
                data=result.as_dict(),
            )

        if isinstance(action, ApplyFixAction):
            fix = action.params.fix
            return ActionResult(
                rule_id=rule.id,
                success=True,
                message=f"Fix pattern available: {fix.search} -> {fix.replace}",
                data={
                    "fix": fix.model_dump(),
                    "examples": [example.model_dump() for example in rule.examples],
                },
            )

        if isinstance(action, AbortWithErrorAction):
            raise AbortSignal(rule.id, action.params.message)

        return ActionResult(
            rule_id=rule.id, success=False, message=f"Unknown action type: {action.type}"
        )

    async def _check_post_condition(
        self, validation: RuleValidation, context: Context
    ) -> tuple[bool, str]:
        result = await run_command(
            validation.command,
            cwd=context.get("project_path") or None,
            timeout=self.validation_timeout,
        )
        if result.status is not CommandStatus.OK:
            return False, _describe_validation(result, self.validation_timeout)
        if result.exit_code != validation.expected_exit_code:
            return False, (
                f"Post-condition failed: exit code {result.exit_code}, "
                f"expected {validation.expected_exit_code}"
            )
        if validation.expected_output is not None and validation.expected_output not in result.stdout:
            return False, f"Post-condition failed: output lacks '{validation.expected_output}'"
        return True, ""

    async def apply_rules(
        self,
        phase: str,
        context: Optional[Context] = None,
        category: Optional[str] = None,
    ) -> RuleApplicationReport:
        """Evaluate every applicable rule in severity order and run matching actions.

        Rule-level failures are captured in ``details``; only
        :class:`AbortSignal` propagates.
        """
        ctx = context or {}
        report = RuleApplicationReport(phase=phase)

        for rule in self.rules_for_phase(phase, category):
            report.rules_checked += 1
            if not self.evaluate_condition(rule, ctx):
                continue

            result = await self.execute_action(rule, ctx)
            success, message = result.success, result.message
            if success and rule.validation is not None:
                success, failure = await self._check_post_condition(rule.validation, ctx)
                if not success:
                    message = failure

            report.details.append(
                RuleOutcome(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    severity=rule.severity,
                    success=success,
                    message=message,
                    data=result.data,
                )
            )
            if success:
                report.rules_applied += 1
            else:
                report.rules_failed += 1

        return report

    async def validate_generated_code(self, project_path: Union[str, Path]) -> RuleApplicationReport:
        """Apply the implementation-phase rules to a generated project."""
        return await self.apply_rules("implementation", {"project_path": str(project_path)})

    def suggest_fix(
        self, error_message: str, context: Optional[Context] = None
    ) -> Optional[FixSuggestion]:
        """Best fix for *error_message*, or ``None`` when no rule matches.

        A pure query: neither *context* nor the rule set is modified.
        """
        ctx = {**(context or {}), "error": error_message}
        candidates = [
            rule
            for rule in self._rules[RuleSetCategory.ERROR_RESOLUTION]
            if isinstance(rule.condition, CustomCondition)
            and isinstance(rule.action, ApplyFixAction)
            and self.evaluate_condition(rule, ctx)
        ]
        if not candidates:
            return None

        rule = min(candidates, key=lambda r: r.severity_rank)
        assert isinstance(rule.action, ApplyFixAction)
        return FixSuggestion(
            rule_id=rule.id,
            rule_name=rule.name,
            severity=rule.severity,
            fix=rule.action.params.fix,
            examples=list(rule.examples),
            message=f"Suggested fix for: {rule.name}",
        )


def _describe_validation(result: CommandResult, timeout: float) -> str:
    if result.status is CommandStatus.TIMED_OUT:
        return f"Validation timed out after {timeout}s"
    if result.status is CommandStatus.SPAWN_ERROR:
        return f"Validation command could not start: {result.stderr}"
    if result.exit_code == 0:
        return "Validation passed"
    return f"Validation failed (exit code {result.exit_code})"
