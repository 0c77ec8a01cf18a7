"""Vercel Firewall rule translation."""

from typing import Any

from doorman.core.models import (
    ActionType,
    ConditionLogic,
    FieldType,
    IPAction,
    Operator,
    ProviderType,
    RateLimitConfig,
    RedirectConfig,
    UnifiedAction,
    UnifiedCondition,
    UnifiedIPRule,
    UnifiedRule,
)
from doorman.errors import TranslationError
from doorman.translation.base import RuleTranslator, Translation

# Unified operators written as their positive native form plus the neg flag.
NEGATED_OPERATORS = frozenset({Operator.NE, Operator.NOT_CONTAINS, Operator.NOT_IN})

REFERER_HEADER = "referer"
ALL_HOSTS = "*"


class VercelTranslator(RuleTranslator):
    """Translate between unified rules and Vercel's conditionGroup schema.

    AND rules become a single condition group. OR rules become one group
    per condition, since Vercel ORs groups together and ANDs the
    conditions within a group.
    """

    provider = ProviderType.VERCEL

    def to_provider(self, rule: UnifiedRule) -> Translation[dict[str, Any]]:
        warnings: list[str] = []
        context = f"Rule '{rule.name}'"

        conditions = [self._condition_to_native(c, context, warnings) for c in rule.conditions]
        if not conditions:
            groups: list[dict[str, Any]] = []
        elif rule.condition_logic == ConditionLogic.OR:
            self._option("conditionLogic.or", context, warnings)
            groups = [{"conditions": [c]} for c in conditions]
        else:
            self._option("conditionLogic.and", context, warnings)
            groups = [{"conditions": conditions}]

        if rule.priority is not None:
            self._option("priority", context, warnings)
        if rule.categories:
            self._option("categories", context, warnings)

        native: dict[str, Any] = {
            "name": rule.name,
            "active": rule.enabled,
            "conditionGroup": groups,
            "action": {"mitigate": self._action_to_native(rule.action, context, warnings)},
        }
        if rule.id:
            native["id"] = rule.id
        if rule.description:
            self._option("description", context, warnings)
            native["description"] = rule.description
        return Translation(native, warnings)

    def _condition_to_native(
        self, condition: UnifiedCondition, context: str, warnings: list[str]
    ) -> dict[str, Any]:
        native_type = self._field(condition.field, context, warnings)
        native_op = self._operator(condition.operator, context, warnings)
        negate = condition.negate != (condition.operator in NEGATED_OPERATORS)

        native: dict[str, Any] = {"type": native_type, "op": native_op}
        if negate:
            native["neg"] = True

        if condition.field == FieldType.REFERER:
            native["key"] = REFERER_HEADER
        elif condition.key is not None:
            if condition.field == FieldType.QUERY:
                self._option("query.key", context, warnings)
            native["key"] = condition.key

        if condition.value is not None:
            native["value"] = condition.value
        return native

    def _action_to_native(
        self, action: UnifiedAction, context: str, warnings: list[str]
    ) -> dict[str, Any]:
        mitigate: dict[str, Any] = {"action": self._action(action.type, context, warnings)}

        if action.type == ActionType.RATE_LIMIT:
            if action.rate_limit is None:
                raise TranslationError(
                    self.provider.value, "rateLimit", f"{context}: rate_limit action requires rateLimit"
                )
            limit = action.rate_limit
            mitigate["rateLimit"] = {"requests": limit.requests, "window": limit.window}
            if limit.characteristics:
                self._option("rateLimit.characteristics", context, warnings)
            if limit.mitigation_timeout is not None:
                self._option("rateLimit.mitigationTimeout", context, warnings)
            if limit.counting_expression:
                self._option("rateLimit.countingExpression", context, warnings)
        elif action.rate_limit is not None:
            warnings.append(f"{context}: rateLimit is ignored for action '{action.type.value}'")

        if action.type == ActionType.REDIRECT:
            if action.redirect is None:
                raise TranslationError(
                    self.provider.value, "redirect", f"{context}: redirect action requires redirect"
                )
            redirect = action.redirect
            mitigate["redirect"] = {"location": redirect.location, "permanent": redirect.permanent}
            if redirect.status_code is not None:
                self._option("redirect.statusCode", context, warnings)
            if redirect.preserve_query_string is not None:
                self._option("redirect.preserveQueryString", context, warnings)
        elif action.redirect is not None:
            warnings.append(f"{context}: redirect is ignored for action '{action.type.value}'")

        if action.response is not None:
            self._option("response", context, warnings)
        if action.duration:
            support = self._option("duration", context, warnings)
            mitigate[support.native or "actionDuration"] = action.duration
        return mitigate

    def to_unified(self, native: dict[str, Any]) -> Translation[UnifiedRule]:
        warnings: list[str] = []
        name = native.get("name") or native.get("id") or "unnamed"
        context = f"Rule '{name}'"

        groups = [g.get("conditions", []) for g in native.get("conditionGroup") or []]
        groups = [g for g in groups if g]
        if len(groups) <= 1:
            logic = ConditionLogic.AND
            flat = groups[0] if groups else []
        else:
            logic = ConditionLogic.OR
            flat = [c for g in groups for c in g]
            if any(len(g) > 1 for g in groups):
                warnings.append(
                    f"{context}: nested condition groups cannot be represented; "
                    "conditions were flattened to OR"
                )

        conditions = [self._condition_to_unified(c, context) for c in flat]
        mitigate = (native.get("action") or {}).get("mitigate") or {}

        rule = UnifiedRule(
            id=native.get("id") or None,
            name=name,
            description=native.get("description") or None,
            enabled=native.get("active", True),
            conditions=conditions,
            condition_logic=logic,
            action=self._action_to_unified(mitigate, context),
        )
        return Translation(rule, warnings)

    def _condition_to_unified(self, native: dict[str, Any], context: str) -> UnifiedCondition:
        field_type = self.matrix.field_from_native(native.get("type", ""), self.provider)
        if field_type is None:
            raise TranslationError(
                self.provider.value,
                f"condition type '{native.get('type')}'",
                f"{context}: condition type '{native.get('type')}' has no unified equivalent",
            )
        operator = self.matrix.operator_from_native(native.get("op", ""), self.provider)
        if operator is None:
            raise TranslationError(
                self.provider.value,
                f"operator '{native.get('op')}'",
                f"{context}: operator '{native.get('op')}' has no unified equivalent",
            )
        return UnifiedCondition(
            field=field_type,
            operator=operator,
            value=native.get("value"),
            negate=bool(native.get("neg", False)),
            key=native.get("key"),
        )

    def _action_to_unified(self, mitigate: dict[str, Any], context: str) -> UnifiedAction:
        native_action = mitigate.get("action", "")
        action_type = self.matrix.action_from_native(native_action, self.provider)
        if action_type is None:
            raise TranslationError(
                self.provider.value,
                f"action '{native_action}'",
                f"{context}: action '{native_action}' has no unified equivalent",
            )

        rate_limit = None
        if action_type == ActionType.RATE_LIMIT and mitigate.get("rateLimit"):
            native_limit = mitigate["rateLimit"]
            window = native_limit.get("window")
            if isinstance(window, int):
                window = f"{window}s"
            rate_limit = RateLimitConfig(requests=native_limit["requests"], window=window)

        redirect = None
        if action_type == ActionType.REDIRECT and mitigate.get("redirect"):
            native_redirect = mitigate["redirect"]
            redirect = RedirectConfig(
                location=native_redirect["location"],
                permanent=bool(native_redirect.get("permanent", False)),
            )

        return UnifiedAction(
            type=action_type,
            rate_limit=rate_limit,
            redirect=redirect,
            duration=mitigate.get("actionDuration") or None,
        )

    def ip_to_provider(self, rule: UnifiedIPRule) -> Translation[dict[str, Any]]:
        warnings: list[str] = []
        native: dict[str, Any] = {
            "ip": rule.ip,
            "hostname": rule.hostname or ALL_HOSTS,
            "action": self._ip_action(rule.action, f"IP rule '{rule.ip}'", warnings),
        }
        if rule.id:
            native["id"] = rule.id
        if rule.notes:
            native["notes"] = rule.notes
        return Translation(native, warnings)

    def ip_to_unified(self, native: dict[str, Any]) -> Translation[UnifiedIPRule]:
        hostname = native.get("hostname")
        native_action = native.get("action", "deny")
        action = next(
            (a for a, s in self.matrix.ip_actions[self.provider].items() if s.native == native_action),
            IPAction.DENY,
        )
        rule = UnifiedIPRule(
            id=native.get("id") or None,
            ip=native["ip"],
            hostname=None if hostname in (None, "", ALL_HOSTS) else hostname,
            notes=native.get("notes") or None,
            action=action,
        )
        return Translation(rule)
