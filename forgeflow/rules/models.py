"""Pydantic v2 models for declarative WHEN-THEN rules.

Conditions and actions are closed tagged unions discriminated on ``type``,
so the shape of each variant's ``check`` / ``params`` is enforced when the
rule set is loaded rather than when a rule is evaluated.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    """Rule priority. CRITICAL is evaluated and reported first."""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


SEVERITY_ORDER: dict[Severity, int] = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
    Severity.INFO: 4,
}


class RuleSetCategory(str, Enum):
    """The rule-set file a rule was loaded from."""
    CODE_GENERATION = "code-generation"
    VALIDATION = "validation"
    ERROR_RESOLUTION = "error-resolution"


_FLAG_LETTERS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
_LITERAL_RE = re.compile(r"^/(.*)/([a-z]*)$", re.DOTALL)


def compile_pattern(pattern: str, flags: int = 0) -> re.Pattern[str]:
    """Compile *pattern*, accepting ``/body/flags`` literals as well as bare regexes."""
    match = _LITERAL_RE.match(pattern)
    if match:
        body, letters = match.groups()
        for letter in letters:
            flags |= _FLAG_LETTERS.get(letter, 0)
        return re.compile(body, flags)
    return re.compile(pattern, flags)


class _RuleModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# ---------------------------------------------------------------------------
# Condition variants
# ---------------------------------------------------------------------------

class FileCheck(_RuleModel):
    file: str = Field(..., min_length=1)


class PatternCheck(_RuleModel):
    pattern: str = Field(..., min_length=1)

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        try:
            compile_pattern(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression: {exc}") from exc
        return value


class FilePatternCheck(PatternCheck):
    file: str = Field(..., min_length=1)


class PackageConfigCheck(_RuleModel):
    field: str = Field(..., min_length=1, description="Dotted path inside package.json")
    value: Any = Field(..., description="Expected value; a leading '!' negates")


class AlwaysCondition(_RuleModel):
    type: Literal["always"]
    check: Optional[dict[str, Any]] = None


class FileExistsCondition(_RuleModel):
    type: Literal["file-exists"]
    check: FileCheck


class FileContainsCondition(_RuleModel):
    type: Literal["file-contains"]
    check: FilePatternCheck


class PackageConfigCondition(_RuleModel):
    type: Literal["package-config"]
    check: PackageConfigCheck


class ContextMatchCondition(_RuleModel):
    type: Literal["context-match"]
    check: Union[PatternCheck, str]


class CustomCondition(_RuleModel):
    """Matches ``context["error"]`` against a regex; used for fix lookup."""
    type: Literal["custom"]
    check: PatternCheck


Condition = Annotated[
    Union[
        AlwaysCondition,
        FileExistsCondition,
        FileContainsCondition,
        PackageConfigCondition,
        ContextMatchCondition,
        CustomCondition,
    ],
    Field(discriminator="type"),
]

CONDITION_TYPES: frozenset[str] = frozenset(
    {"always", "file-exists", "file-contains", "package-config", "context-match", "custom"}
)


# ---------------------------------------------------------------------------
# Action variants
# ---------------------------------------------------------------------------

class TemplateParams(_RuleModel):
    template: str = Field(..., min_length=1, description="Template path relative to the templates dir")


class EnforcePatternParams(_RuleModel):
    enforce: str = Field(..., min_length=1)
    required: tuple[str, ...] = ()
    forbidden: tuple[str, ...] = ()


class RunValidationParams(_RuleModel):
    command: str = Field(..., min_length=1)
    timeout: Optional[float] = Field(default=None, gt=0)


class FixDescriptor(_RuleModel):
    """A search/replace fix the caller may apply."""
    search: str
    replace: str
    flags: str = ""


class ApplyFixParams(_RuleModel):
    fix: FixDescriptor


class AbortParams(_RuleModel):
    message: str = "Rule triggered abort"


class UseTemplateAction(_RuleModel):
    type: Literal["use-template"]
    params: TemplateParams


class EnforcePatternAction(_RuleModel):
    type: Literal["enforce-pattern"]
    params: EnforcePatternParams


class RunValidationAction(_RuleModel):
    type: Literal["run-validation"]
    params: RunValidationParams


class ApplyFixAction(_RuleModel):
    type: Literal["apply-fix"]
    params: ApplyFixParams


class AbortWithErrorAction(_RuleModel):
    type: Literal["abort-with-error"]
    params: AbortParams = Field(default_factory=AbortParams)


Action = Annotated[
    Union[
        UseTemplateAction,
        EnforcePatternAction,
        RunValidationAction,
        ApplyFixAction,
        AbortWithErrorAction,
    ],
    Field(discriminator="type"),
]

ACTION_TYPES: frozenset[str] = frozenset(
    {"use-template", "enforce-pattern", "run-validation", "apply-fix", "abort-with-error"}
)


# ---------------------------------------------------------------------------
# Rule
# ---------------------------------------------------------------------------

class RuleValidation(_RuleModel):
    """Post-condition confirming an action succeeded."""
    command: str = Field(..., min_length=1)
    expected_exit_code: int = 0
    expected_output: Optional[str] = None


class FixExample(_RuleModel):
    wrong: str
    correct: str


class Rule(_RuleModel):
    """A declarative WHEN-THEN unit. Immutable once loaded."""

    id: str = Field(..., min_length=1)
    name: str
    category: str = ""
    phase: tuple[str, ...] = Field(..., min_length=1)
    severity: Severity = Severity.MEDIUM
    enabled: bool = True
    description: str = ""
    condition: Condition
    action: Action
    validation: Optional[RuleValidation] = None
    examples: tuple[FixExample, ...] = ()
    rule_set: Optional[RuleSetCategory] = None

    @field_validator("phase", mode="before")
    @classmethod
    def _single_phase(cls, value: Any) -> Any:
        if isinstance(value, str):
            return (value,)
        return value

    @property
    def severity_rank(self) -> int:
        return SEVERITY_ORDER[self.severity]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class ActionResult(BaseModel):
    """Outcome of executing one rule's action."""
    rule_id: str
    success: bool
    message: str = ""
    data: Any = None


class RuleOutcome(ActionResult):
    """An :class:`ActionResult` annotated with the rule it came from."""
    rule_name: str
    severity: Severity


class RuleApplicationReport(BaseModel):
    """Aggregate of :meth:`RuleEngine.apply_rules`."""
    phase: str
    rules_checked: int = 0
    rules_applied: int = 0
    rules_failed: int = 0
    details: list[RuleOutcome] = Field(default_factory=list)

    @property
    def failures(self) -> list[RuleOutcome]:
        return [d for d in self.details if not d.success]


class FixSuggestion(BaseModel):
    """Best remediation for an error message."""
    rule_id: str
    rule_name: str
    severity: Severity
    fix: FixDescriptor
    examples: list[FixExample] = Field(default_factory=list)
    message: str = ""
