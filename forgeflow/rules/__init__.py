"""forgeflow -- declarative rule engine.

Rules are WHEN-THEN units loaded from three rule-set files. Conditions are
pure checks against a context; actions render templates, describe patterns,
run validation commands, propose fixes, or abort the current phase.

Usage::

    from forgeflow.rules import RuleEngine

    engine = RuleEngine("forgeflow/knowledge/rules")
    report = await engine.apply_rules("implementation", {"project_path": "./out"})
    fix = engine.suggest_fix("ReferenceError: require is not defined")
"""

from .engine import RULE_SET_FILES, RuleEngine
from .models import (
    Action,
    ActionResult,
    Condition,
    FixDescriptor,
    FixExample,
    FixSuggestion,
    Rule,
    RuleApplicationReport,
    RuleOutcome,
    RuleSetCategory,
    Severity,
)

__all__ = [
    "RuleEngine",
    "RULE_SET_FILES",
    # Models
    "Rule",
    "Condition",
    "Action",
    "Severity",
    "RuleSetCategory",
    "FixDescriptor",
    "FixExample",
    # Results
    "ActionResult",
    "RuleOutcome",
    "RuleApplicationReport",
    "FixSuggestion",
]
