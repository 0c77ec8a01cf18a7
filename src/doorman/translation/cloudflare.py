"""Cloudflare WAF custom rule translation."""

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
    ResponseConfig,
    UnifiedAction,
    UnifiedCondition,
    UnifiedIPRule,
    UnifiedRule,
    window_to_seconds,
)
from doorman.errors import TranslationError
from doorman.translation import expression as expr
from doorman.translation.base import RuleTranslator, Translation
from doorman.utils.naming import IP_RULE_PREFIX, canonical_ip_ref, canonical_rule_id

DEFAULT_CHARACTERISTICS = ["ip.src"]
DESCRIPTION_SEPARATOR = " | "
HTTPS = "https"
HTTP = "http"
IP_FIELD = "ip.src"
HOST_FIELD = "http.host"

# Unified operators written as their positive form wrapped in not (...).
NEGATED_OPERATORS = {Operator.NOT_CONTAINS: Operator.CONTAINS, Operator.NOT_IN: Operator.IN}


def is_ip_rule_ref(ref: str | None) -> bool:
    """Whether a custom rule ref marks an IP rule."""
    return bool(ref) and ref.startswith(IP_RULE_PREFIX)  # type: ignore[union-attr]


class CloudflareTranslator(RuleTranslator):
    """Translate between unified rules and Cloudflare custom rules.

    Conditions become a wirefilter expression. The rule's canonical id is
    stored in ``ref``; Cloudflare's own rule ids stay inside the service.
    The rule name travels in the description as ``"name | description"``.
    """

    provider = ProviderType.CLOUDFLARE

    def to_provider(self, rule: UnifiedRule) -> Translation[dict[str, Any]]:
        warnings: list[str] = []
        context = f"Rule '{rule.name}'"

        if not rule.conditions:
            raise TranslationError(
                self.provider.value,
                "rules without conditions",
                f"{context}: Cloudflare rules need at least one condition",
            )
        if DESCRIPTION_SEPARATOR in rule.name:
            raise TranslationError(
                self.provider.value,
                "rule names containing the description separator",
                f"{context}: names cannot contain '{DESCRIPTION_SEPARATOR}' on Cloudflare",
            )
        option ="conditionLogic.or" if rule.condition_logic == ConditionLogic.OR else "conditionLogic.and"
        logic = self._option(option, context, warnings).native or "and"
        parts = [self._condition_to_expression(c, context, warnings) for c in rule.conditions]

        description = rule.name
        if rule.description:
            self._option("description", context, warnings)
            description = f"{rule.name}{DESCRIPTION_SEPARATOR}{rule.description}"

        native: dict[str, Any] = {
            "ref": canonical_rule_id(rule.name),
            "action": self._action(rule.action.type, context, warnings),
            "expression": expr.join(parts, logic),
            "description": description,
            "enabled": rule.enabled,
        }
        if rule.priority is not None:
            self._option("priority", context, warnings)
        if rule.categories:
            self._option("categories", context, warnings)
            native["categories"] = list(rule.categories)

        self._action_payloads(rule.action, native, context, warnings)
        return Translation(native, warnings)

    def _condition_to_expression(
        self, condition: UnifiedCondition, context: str, warnings: list[str]
    ) -> str:
        field_name = self._field(condition.field, context, warnings)

        if condition.field == FieldType.SCHEME:
            return self._scheme_expression(condition, context)

        negate = condition.negate
        operator = condition.operator
        if operator in NEGATED_OPERATORS:
            self._operator(operator, context, warnings)
            operator = NEGATED_OPERATORS[operator]
            negate = not negate
        native_op = self._operator(operator, context, warnings)

        if condition.value is None:
            raise TranslationError(
                self.provider.value,
                f"operator '{condition.operator.value}' without a value",
                f"{context}: condition on '{condition.field.value}' needs a value",
            )

        key = None
        if condition.field in (FieldType.HEADER, FieldType.COOKIE):
            key = condition.key
        elif condition.key is not None and condition.field == FieldType.QUERY:
            self._option("query.key", context, warnings)

        rendered = expr.comparison(
            field_name,
            native_op,
            condition.value,
            key=key,
            bare=condition.field == FieldType.IP,
        )
        return expr.negate(rendered) if negate else rendered

    def _scheme_expression(self, condition: UnifiedCondition, context: str) -> str:
        value = str(condition.value or "").lower()
        if condition.operator not in (Operator.EQ, Operator.NE) or value not in (HTTP, HTTPS):
            raise TranslationError(
                self.provider.value,
                "scheme condition",
                f"{context}: scheme can only be compared with eq/ne against http or https",
            )
        secure = (value == HTTPS) != (condition.operator == Operator.NE)
        if condition.negate:
            secure = not secure
        return "ssl" if secure else "not ssl"

    def _action_payloads(
        self, action: UnifiedAction, native: dict[str, Any], context: str, warnings: list[str]
    ) -> None:
        if action.type == ActionType.RATE_LIMIT:
            if action.rate_limit is None:
                raise TranslationError(
                    self.provider.value, "rateLimit", f"{context}: rate_limit action requires rateLimit"
                )
            limit = action.rate_limit
            ratelimit: dict[str, Any] = {
                "characteristics": list(limit.characteristics or DEFAULT_CHARACTERISTICS),
                "period": window_to_seconds(limit.window),
                "requests_per_period": limit.requests,
            }
            if limit.characteristics:
                self._option("rateLimit.characteristics", context, warnings)
            if limit.mitigation_timeout is not None:
                self._option("rateLimit.mitigationTimeout", context, warnings)
                ratelimit["mitigation_timeout"] = limit.mitigation_timeout
            if limit.counting_expression:
                self._option("rateLimit.countingExpression", context, warnings)
                ratelimit["counting_expression"] = limit.counting_expression
            native["ratelimit"] = ratelimit
        elif action.rate_limit is not None:
            warnings.append(f"{context}: rateLimit is ignored for action '{action.type.value}'")

        if action.type == ActionType.REDIRECT:
            if action.redirect is None:
                raise TranslationError(
                    self.provider.value, "redirect", f"{context}: redirect action requires redirect"
                )
            redirect = action.redirect
            from_value: dict[str, Any] = {
                "status_code": redirect.status_code or (301 if redirect.permanent else 302),
                "target_url": {"value": redirect.location},
            }
            if redirect.status_code is not None:
                self._option("redirect.statusCode", context, warnings)
            if redirect.preserve_query_string is not None:
                self._option("redirect.preserveQueryString", context, warnings)
                from_value["preserve_query_string"] = redirect.preserve_query_string
            native["action_parameters"] = {"from_value": from_value}
        elif action.redirect is not None:
            warnings.append(f"{context}: redirect is ignored for action '{action.type.value}'")

        if action.response is not None:
            if native["action"] == "block" and action.type != ActionType.RATE_LIMIT:
                self._option("response", context, warnings)
                response = {"status_code": action.response.status_code}
                if action.response.content is not None:
                    response["content"] = action.response.content
                if action.response.content_type is not None:
                    response["content_type"] = action.response.content_type
                native["action_parameters"] = {"response": response}
            else:
                warnings.append(f"{context}: response is ignored for action '{action.type.value}'")

        if action.duration:
            self._option("duration", context, warnings)

    def to_unified(self, native: dict[str, Any]) -> Translation[UnifiedRule]:
        warnings: list[str] = []
        name, description = self._split_description(native)
        context = f"Rule '{name}'"

        native_action = native.get("action", "")
        action_type = self.matrix.action_from_native(native_action, self.provider)
        if action_type is None:
            raise TranslationError(
                self.provider.value,
                f"action '{native_action}'",
                f"{context}: action '{native_action}' has no unified equivalent",
            )
        if native.get("ratelimit") and native_action == "block":
            action_type = ActionType.RATE_LIMIT

        conditions: list[UnifiedCondition] = []
        logic = ConditionLogic.AND
        expression = native.get("expression", "")
        try:
            conditions, logic = self._expression_to_conditions(expression)
        except expr.ExpressionSyntaxError as e:
            warnings.append(f"{context}: expression could not be converted to conditions ({e})")

        rule = UnifiedRule(
            id=native.get("ref") or native.get("id") or None,
            name=name,
            description=description,
            enabled=native.get("enabled", True),
            conditions=conditions,
            condition_logic=logic,
            action=self._action_to_unified(action_type, native),
            categories=list(native["categories"]) if native.get("categories") else None,
        )
        return Translation(rule, warnings)

    @staticmethod
    def _split_description(native: dict[str, Any]) -> tuple[str, str | None]:
        text = native.get("description") or ""
        if DESCRIPTION_SEPARATOR in text:
            name, description = text.split(DESCRIPTION_SEPARATOR, 1)
            return name, description or None
        return text or native.get("ref") or native.get("id") or "unnamed", None

    def _expression_to_conditions(
        self, expression: str
    ) -> tuple[list[UnifiedCondition], ConditionLogic]:
        tree = expr.parse(expression)
        if isinstance(tree, expr.Or):
            items, logic = tree.operands, ConditionLogic.OR
        elif isinstance(tree, expr.And):
            items, logic = tree.operands, ConditionLogic.AND
        else:
            items, logic = [tree], ConditionLogic.AND
        return [self._node_to_condition(item) for item in items], logic

    def _node_to_condition(self, node: expr.Node, negated: bool = False) -> UnifiedCondition:
        if isinstance(node, expr.Not):
            return self._node_to_condition(node.operand, not negated)
        if isinstance(node, expr.BooleanField):
            if self.matrix.field_from_native(node.field, self.provider) != FieldType.SCHEME:
                raise expr.ExpressionSyntaxError(f"unsupported boolean field {node.field}")
            return UnifiedCondition(field=FieldType.SCHEME, operator=Operator.EQ, value=HTTPS, negate=negated)
        if not isinstance(node, expr.Comparison):
            raise expr.ExpressionSyntaxError("mixed and/or logic is not supported")

        field_type = self.matrix.field_from_native(node.field, self.provider)
        if field_type is None:
            raise expr.ExpressionSyntaxError(f"unsupported field {node.field}")
        operator = self.matrix.operator_from_native(node.operator, self.provider)
        if operator is None:
            raise expr.ExpressionSyntaxError(f"unsupported operator {node.operator}")
        return UnifiedCondition(
            field=field_type,
            operator=operator,
            value=expr.literal(node.value),
            negate=negated,
            key=node.key,
        )

    def _action_to_unified(self, action_type: ActionType, native: dict[str, Any]) -> UnifiedAction:
        params = native.get("action_parameters") or {}

        rate_limit = None
        if action_type == ActionType.RATE_LIMIT:
            limit = native["ratelimit"]
            characteristics = limit.get("characteristics")
            rate_limit = RateLimitConfig(
                requests=limit["requests_per_period"],
                window=f"{limit['period']}s",
                characteristics=(
                    None if not characteristics or characteristics == DEFAULT_CHARACTERISTICS else characteristics
                ),
                mitigation_timeout=limit.get("mitigation_timeout"),
                counting_expression=limit.get("counting_expression") or None,
            )

        redirect = None
        from_value = params.get("from_value")
        if action_type == ActionType.REDIRECT and from_value:
            redirect = RedirectConfig(
                location=(from_value.get("target_url") or {}).get("value", ""),
                status_code=from_value.get("status_code") or 302,
                preserve_query_string=from_value.get("preserve_query_string"),
            )

        response = None
        if params.get("response"):
            native_response = params["response"]
            response = ResponseConfig(
                status_code=native_response["status_code"],
                content=native_response.get("content"),
                content_type=native_response.get("content_type"),
            )

        return UnifiedAction(type=action_type, rate_limit=rate_limit, redirect=redirect, response=response)

    def ip_expression(self, rule: UnifiedIPRule) -> str:
        """Render the match expression for an IP rule."""
        if "/" in rule.ip:
            match = expr.comparison(IP_FIELD, "in", [rule.ip], bare=True)
        else:
            match = expr.comparison(IP_FIELD, "eq", rule.ip, bare=True)
        if rule.hostname:
            return expr.join([match, expr.comparison(HOST_FIELD, "eq", rule.hostname)], "and")
        return match

    def ip_to_provider(self, rule: UnifiedIPRule) -> Translation[dict[str, Any]]:
        warnings: list[str] = []
        scope = f"{rule.ip}_{rule.hostname}" if rule.hostname else rule.ip
        native: dict[str, Any] = {
            "ref": canonical_ip_ref(scope),
            "action": self._ip_action(rule.action, f"IP rule '{rule.ip}'", warnings),
            "expression": self.ip_expression(rule),
            "description": rule.notes or f"IP rule {rule.ip}",
            "enabled": True,
        }
        return Translation(native, warnings)

    def ip_to_unified(self, native: dict[str, Any]) -> Translation[UnifiedIPRule]:
        expression = native.get("expression", "")
        unsupported = TranslationError(
            self.provider.value,
            "IP rule expression",
            f"Unsupported IP rule expression: {expression}",
        )
        try:
            tree = expr.parse(expression)
        except expr.ExpressionSyntaxError as e:
            raise unsupported from e
        operands = tree.operands if isinstance(tree, expr.And) else [tree]

        ip: str | None = None
        hostname: str | None = None
        for node in operands:
            if not isinstance(node, expr.Comparison):
                raise unsupported
            value = expr.literal(node.value)
            if node.field == IP_FIELD and node.operator == "eq":
                ip = str(value)
            elif node.field == IP_FIELD and node.operator == "in" and len(value) == 1:
                ip = str(value[0])
            elif node.field == HOST_FIELD and node.operator == "eq":
                hostname = str(value)
            else:
                raise unsupported
        if ip is None:
            raise unsupported

        action = next(
            (a for a, s in self.matrix.ip_actions[self.provider].items() if s.native == native.get("action")),
            IPAction.DENY,
        )
        description = native.get("description") or ""
        rule = UnifiedIPRule(
            id=native.get("ref") or native.get("id") or None,
            ip=ip,
            hostname=hostname,
            notes=None if description == f"IP rule {ip}" else description or None,
            action=action,
        )
        return Translation(rule)
