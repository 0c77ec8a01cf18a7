"""Heuristic health scoring for a unified configuration."""

import re
from dataclasses import dataclass, field

from doorman.core.models import (
    ActionType,
    FieldType,
    HealthIssue,
    HealthScore,
    IssueSeverity,
    Operator,
    UnifiedConfig,
)
from doorman.utils.naming import RULE_ID_PREFIX

MAX_RECOMMENDED_IPS = 100
BLOCKING_ACTIONS = frozenset({ActionType.DENY, ActionType.BLOCK})
# Patterns that make regex evaluation expensive.
SLOW_REGEX = re.compile(r"^\.\*|\(\.\*\)\+|\(\.\+\)\+|\.\*\.\*")

RECOMMENDATIONS = {
    "coverage": "Add rules for the traffic you want to control, starting from a template.",
    "documentation": "Add descriptions so future readers know why each rule exists.",
    "maintenance": "Remove rules that stay disabled instead of keeping them around.",
    "rate-limiting": "Add a rate_limit rule for login and API endpoints.",
    "naming": "Let doorman repair rule ids to the rule_<name> form on the next sync.",
    "performance": "Anchor regular expressions and avoid leading or nested '.*'.",
    "safety": "Narrow rules that deny the root path; they block the whole site.",
    "ip-management": "Consolidate large IP lists into CIDR ranges.",
    "ip-blocking": "Block known abusive addresses with IP rules.",
    "rule-limit": "Merge related rules to stay below the provider rule limit.",
    "consistency": "Give every rule a unique name.",
    "metadata": "Run 'doorman sync' to record the remote version locally.",
}

GRADES = ((80, "excellent"), (60, "good"), (40, "fair"))


def grade_for(score: int) -> str:
    """Return the grade label for a score."""
    for threshold, grade in GRADES:
        if score >= threshold:
            return grade
    return "poor"


@dataclass
class HealthReport:
    """Accumulates deductions and issues before producing a score."""

    score: int = 100
    issues: list[HealthIssue] = field(default_factory=list)

    def penalize(
        self,
        points: int,
        severity: IssueSeverity,
        category: str,
        message: str,
        rule_id: str | None = None,
    ) -> None:
        self.score -= points
        self.issues.append(
            HealthIssue(severity=severity, category=category, message=message, rule_id=rule_id)
        )

    def build(self) -> HealthScore:
        score = max(0, min(100, self.score))
        categories: list[str] = []
        for issue in self.issues:
            if issue.category not in categories:
                categories.append(issue.category)
        return HealthScore(
            score=score,
            grade=grade_for(score),
            issues=self.issues,
            recommendations=[RECOMMENDATIONS[c] for c in categories if c in RECOMMENDATIONS],
        )


def assess(config: UnifiedConfig, report: HealthReport | None = None) -> HealthReport:
    """Apply the provider-neutral heuristics to a config."""
    report = report or HealthReport()

    if not config.rules:
        report.penalize(20, IssueSeverity.WARNING, "coverage", "No rules are configured")

    names: set[str] = set()
    for rule in config.rules:
        label = rule.id or rule.name
        if not rule.description:
            report.penalize(5, IssueSeverity.INFO, "documentation", f"Rule '{rule.name}' has no description", label)
        if not rule.enabled:
            report.penalize(5, IssueSeverity.INFO, "maintenance", f"Rule '{rule.name}' is disabled", label)
        if rule.id and not rule.id.startswith(RULE_ID_PREFIX):
            report.penalize(
                2,
                IssueSeverity.INFO,
                "naming",
                f"Rule id '{rule.id}' does not follow the {RULE_ID_PREFIX}<name> convention",
                label,
            )
        if rule.name.strip().lower() in names:
            report.penalize(10, IssueSeverity.ERROR, "consistency", f"Duplicate rule name '{rule.name}'", label)
        names.add(rule.name.strip().lower())

        for condition in rule.conditions:
            if condition.operator == Operator.MATCHES and SLOW_REGEX.search(str(condition.value)):
                report.penalize(
                    3,
                    IssueSeverity.WARNING,
                    "performance",
                    f"Rule '{rule.name}' uses a slow regular expression: {condition.value}",
                    label,
                )
            if (
                rule.enabled
                and rule.action.type in BLOCKING_ACTIONS
                and condition.field == FieldType.PATH
                and condition.operator == Operator.EQ
                and not condition.negate
                and condition.value == "/"
                and (len(rule.conditions) == 1 or rule.condition_logic.value == "OR")
            ):
                report.penalize(
                    25,
                    IssueSeverity.ERROR,
                    "safety",
                    f"Rule '{rule.name}' denies the root path",
                    label,
                )

    if len(config.ips) > MAX_RECOMMENDED_IPS:
        report.penalize(
            5,
            IssueSeverity.WARNING,
            "ip-management",
            f"{len(config.ips)} IP rules configured (more than {MAX_RECOMMENDED_IPS})",
        )

    if config.metadata.version is None:
        report.penalize(0, IssueSeverity.INFO, "metadata", "No remote version recorded")

    return report


def compute_health(config: UnifiedConfig) -> HealthScore:
    """Score a config using only the provider-neutral heuristics."""
    return assess(config).build()
