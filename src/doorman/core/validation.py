"""Single-pass configuration validation.

Structural problems (pydantic) and semantic problems (duplicates, value
domains, payload presence) are reported together as path-tagged issues.
"""

import ipaddress
import re
from typing import Any

from pydantic import ValidationError

from doorman.core.models import (
    LIST_OPERATORS,
    NUMERIC_OPERATORS,
    PRESENCE_OPERATORS,
    ActionType,
    FieldType,
    IssueSeverity,
    Operator,
    UnifiedCondition,
    UnifiedConfig,
    UnifiedRule,
    ValidationIssue,
    ValidationResult,
)

MAX_ASN = 4294967295
PATH_OPERATORS = frozenset({Operator.EQ, Operator.NE, Operator.STARTS_WITH})


def format_path(location: tuple[Any, ...]) -> str:
    """Render a pydantic error location as ``rules[0].action.type``."""
    path = ""
    for part in location:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path


def issues_from_pydantic(error: ValidationError) -> list[ValidationIssue]:
    """Convert every pydantic error into a validation issue."""
    return [
        ValidationIssue(
            path=format_path(tuple(e["loc"])),
            message=e["msg"],
            code=e["type"],
        )
        for e in error.errors()
    ]


def validate_ip(value: str) -> str | None:
    """Return an error message if value is not a valid IP or CIDR."""
    try:
        if "/" in value:
            address, prefix = value.split("/", 1)
            parsed = ipaddress.ip_address(address)
            if not prefix.isdigit() or int(prefix) > parsed.max_prefixlen:
                return (
                    f"Invalid CIDR prefix '/{prefix}' for IPv{parsed.version} "
                    f"(0-{parsed.max_prefixlen})"
                )
        else:
            ipaddress.ip_address(value)
    except ValueError:
        return f"Invalid IP address: {value}"
    return None


def validate_config_data(raw: Any) -> tuple[UnifiedConfig | None, ValidationResult]:
    """Parse and validate a raw configuration mapping.

    Args:
        raw: Decoded JSON content.

    Returns:
        The parsed config (None when it does not parse) and every issue found.
    """
    if not isinstance(raw, dict):
        issue = ValidationIssue(path="", message="Configuration must be a JSON object", code="type_error")
        return None, ValidationResult(issues=[issue])
    try:
        config = UnifiedConfig.model_validate(raw)
    except ValidationError as e:
        return None, ValidationResult(issues=issues_from_pydantic(e))
    return config, validate_config(config)


def validate_config(config: UnifiedConfig) -> ValidationResult:
    """Run semantic checks over a parsed configuration."""
    issues: list[ValidationIssue] = []

    seen_names: dict[str, int] = {}
    for index, rule in enumerate(config.rules):
        key = rule.name.strip().lower()
        if key in seen_names:
            issues.append(
                ValidationIssue(
                    path=f"rules[{index}].name",
                    message=f"Duplicate rule name '{rule.name}' (also rules[{seen_names[key]}])",
                    code="duplicate_name",
                )
            )
        else:
            seen_names[key] = index
        issues.extend(_rule_issues(rule, f"rules[{index}]"))

    seen_ips: dict[tuple[str, str], int] = {}
    for index, ip_rule in enumerate(config.ips):
        path = f"ips[{index}]"
        error = validate_ip(ip_rule.ip)
        if error:
            issues.append(ValidationIssue(path=f"{path}.ip", message=error, code="invalid_ip"))
        key = (ip_rule.ip, ip_rule.hostname or "")
        if key in seen_ips:
            issues.append(
                ValidationIssue(
                    path=f"{path}.ip",
                    message=f"Duplicate IP rule for {ip_rule.ip} (also ips[{seen_ips[key]}])",
                    code="duplicate_ip",
                )
            )
        else:
            seen_ips[key] = index

    return ValidationResult(issues=issues)


def _rule_issues(rule: UnifiedRule, path: str) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []

    if not rule.conditions:
        issues.append(
            ValidationIssue(
                path=f"{path}.conditions",
                message=f"Rule '{rule.name}' has no conditions and matches every request",
                code="empty_conditions",
                severity=IssueSeverity.WARNING,
            )
        )
    for index, condition in enumerate(rule.conditions):
        issues.extend(_condition_issues(condition, f"{path}.conditions[{index}]"))

    action = rule.action
    if action.type == ActionType.RATE_LIMIT and action.rate_limit is None:
        issues.append(
            ValidationIssue(
                path=f"{path}.action.rateLimit",
                message="rate_limit actions require a rateLimit payload",
                code="missing_rate_limit",
            )
        )
    if action.type == ActionType.REDIRECT:
        if action.redirect is None:
            issues.append(
                ValidationIssue(
                    path=f"{path}.action.redirect",
                    message="redirect actions require a redirect payload",
                    code="missing_redirect",
                )
            )
        elif not (
            action.redirect.location.startswith("/")
            or re.match(r"^https?://", action.redirect.location)
        ):
            issues.append(
                ValidationIssue(
                    path=f"{path}.action.redirect.location",
                    message="Redirect location must be an absolute URL or start with '/'",
                    code="invalid_redirect",
                )
            )
    return issues


def _condition_issues(condition: UnifiedCondition, path: str) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    value = condition.value
    operator = condition.operator

    def error(message: str, code: str = "invalid_value", at: str = ".value") -> None:
        issues.append(ValidationIssue(path=f"{path}{at}", message=message, code=code))

    if condition.field in (FieldType.HEADER, FieldType.COOKIE) and not condition.key:
        error(f"{condition.field.value} conditions require a key", code="missing_key", at=".key")

    if operator in PRESENCE_OPERATORS:
        if value is not None:
            error(f"Operator '{operator.value}' does not take a value")
        return issues
    if value is None:
        error(f"Operator '{operator.value}' requires a value", code="missing_value")
        return issues
    if operator in LIST_OPERATORS:
        if not isinstance(value, list) or not value:
            error(f"Operator '{operator.value}' requires a non-empty list value")
            return issues
        values = list(value)
    else:
        if isinstance(value, list):
            error(f"Operator '{operator.value}' requires a single value, not a list")
            return issues
        values = [value]

    if operator in NUMERIC_OPERATORS and not all(isinstance(v, (int, float)) for v in values):
        error(f"Operator '{operator.value}' requires a numeric value")

    if condition.field == FieldType.IP and operator in (Operator.EQ, Operator.NE, *LIST_OPERATORS):
        for item in values:
            message = validate_ip(str(item))
            if message:
                error(message, code="invalid_ip")
    elif condition.field == FieldType.ASN:
        for item in values:
            if not str(item).isdigit() or not 1 <= int(item) <= MAX_ASN:
                error(f"ASN must be between 1 and {MAX_ASN}, got {item}")
    elif condition.field == FieldType.PATH and operator in PATH_OPERATORS:
        for item in values:
            text = str(item)
            if not text.startswith("/") or " " in text:
                error(f"Path '{text}' must start with '/' and contain no spaces", code="invalid_path")
    elif operator == Operator.MATCHES:
        try:
            re.compile(str(value))
        except re.error as e:
            error(f"Invalid regular expression: {e}", code="invalid_regex")
    return issues
