"""Static per-provider feature support table.

Every native name the translators emit or accept is looked up here.
Adding a provider means adding its rows to each table below.
"""

from dataclasses import dataclass, field
from enum import Enum

from doorman.core.models import (
    ActionType,
    FeatureSet,
    FieldType,
    IPAction,
    Operator,
    ProviderType,
)


class SupportLevel(str, Enum):
    """How well a provider supports a unified feature."""

    FULL = "full"
    PARTIAL = "partial"
    NOT_SUPPORTED = "not-supported"


@dataclass(frozen=True)
class FeatureSupport:
    """Support entry for one feature on one provider.

    Attributes:
        level: Support level.
        native: Provider-native name used when translating.
        approximation: Unified value the native form reads back as, when
            it differs from the original feature.
        notes: Human-readable explanation.
        limitations: Known restrictions.
    """

    level: SupportLevel
    native: str | None = None
    approximation: str | None = None
    notes: str = ""
    limitations: tuple[str, ...] = ()

    @property
    def supported(self) -> bool:
        return self.level != SupportLevel.NOT_SUPPORTED


def _full(native: str, notes: str = "", *limitations: str) -> FeatureSupport:
    return FeatureSupport(SupportLevel.FULL, native, notes=notes, limitations=limitations)


def _partial(native: str | None, approximation: str | None, notes: str, *limitations: str) -> FeatureSupport:
    return FeatureSupport(
        SupportLevel.PARTIAL, native, approximation, notes=notes, limitations=limitations
    )


def _none(notes: str) -> FeatureSupport:
    return FeatureSupport(SupportLevel.NOT_SUPPORTED, notes=notes)


V = ProviderType.VERCEL
CF = ProviderType.CLOUDFLARE

ACTIONS: dict[ProviderType, dict[ActionType, FeatureSupport]] = {
    V: {
        ActionType.LOG: _full("log"),
        ActionType.DENY: _full("deny"),
        ActionType.CHALLENGE: _full("challenge"),
        ActionType.BYPASS: _full("bypass"),
        ActionType.RATE_LIMIT: _full("rate_limit"),
        ActionType.REDIRECT: _full("redirect"),
        ActionType.ALLOW: _partial(
            "bypass", "bypass", "Vercel has no allow action; bypass skips the remaining rules"
        ),
        ActionType.BLOCK: _partial("deny", "deny", "Vercel blocks with the deny action"),
    },
    CF: {
        ActionType.LOG: _full("log", "", "Requires an Enterprise plan"),
        ActionType.DENY: _full("block"),
        ActionType.CHALLENGE: _full("managed_challenge"),
        ActionType.BYPASS: _full("skip"),
        ActionType.RATE_LIMIT: _full("block", "Block with rate-limit parameters"),
        ActionType.REDIRECT: _full("redirect"),
        ActionType.ALLOW: _partial(
            "skip", "bypass", "Cloudflare has no allow action; skip bypasses remaining rules"
        ),
        ActionType.BLOCK: _partial("block", "deny", "Read back as deny"),
    },
}

# Native actions that have no unified counterpart of their own.
NATIVE_ACTION_ALIASES: dict[ProviderType, dict[str, ActionType]] = {
    V: {},
    CF: {
        "challenge": ActionType.CHALLENGE,
        "js_challenge": ActionType.CHALLENGE,
    },
}

FIELDS: dict[ProviderType, dict[FieldType, FeatureSupport]] = {
    V: {
        FieldType.IP: _full("ip_address"),
        FieldType.COUNTRY: _full("geo_country"),
        FieldType.REGION: _full("geo_country_region"),
        FieldType.CITY: _full("geo_city"),
        FieldType.ASN: _full("geo_as_number"),
        FieldType.PATH: _full("path"),
        FieldType.HOST: _full("host"),
        FieldType.METHOD: _full("method"),
        FieldType.HEADER: _full("header"),
        FieldType.QUERY: _full("query"),
        FieldType.COOKIE: _full("cookie"),
        FieldType.USER_AGENT: _full("user_agent"),
        FieldType.REFERER: _partial("header", "header", "Matched as the referer header"),
        FieldType.SCHEME: _full("scheme"),
        FieldType.PORT: _none("Vercel cannot match on the destination port"),
    },
    CF: {
        FieldType.IP: _full("ip.src"),
        FieldType.COUNTRY: _full("ip.geoip.country"),
        FieldType.REGION: _full("ip.geoip.subdivision_1_iso_code"),
        FieldType.CITY: _full("ip.src.city"),
        FieldType.ASN: _full("ip.geoip.asnum"),
        FieldType.PATH: _full("http.request.uri.path"),
        FieldType.HOST: _full("http.host"),
        FieldType.METHOD: _full("http.request.method"),
        FieldType.HEADER: _full("http.request.headers"),
        FieldType.QUERY: _full("http.request.uri.query"),
        FieldType.COOKIE: _full("http.request.cookies"),
        FieldType.USER_AGENT: _full("http.user_agent"),
        FieldType.REFERER: _full("http.referer"),
        FieldType.SCHEME: _partial(
            "ssl", None, "Expressed with the ssl flag", "Only http and https can be matched"
        ),
        FieldType.PORT: _full("cf.edge.server_port"),
    },
}

OPERATORS: dict[ProviderType, dict[Operator, FeatureSupport]] = {
    V: {
        Operator.EQ: _full("eq"),
        Operator.NE: _partial("eq", "eq", "Written as eq with the negation flag"),
        Operator.CONTAINS: _full("sub"),
        Operator.NOT_CONTAINS: _partial("sub", "contains", "Written as sub with the negation flag"),
        Operator.STARTS_WITH: _full("pre"),
        Operator.ENDS_WITH: _full("suf"),
        Operator.MATCHES: _full("re"),
        Operator.IN: _full("inc"),
        Operator.NOT_IN: _partial("inc", "in", "Written as inc with the negation flag"),
        Operator.GT: _none("Vercel has no numeric comparisons"),
        Operator.GE: _none("Vercel has no numeric comparisons"),
        Operator.LT: _none("Vercel has no numeric comparisons"),
        Operator.LE: _none("Vercel has no numeric comparisons"),
        Operator.EXISTS: _full("ex"),
        Operator.NOT_EXISTS: _full("nex"),
    },
    CF: {
        Operator.EQ: _full("eq"),
        Operator.NE: _full("ne"),
        Operator.CONTAINS: _full("contains"),
        Operator.NOT_CONTAINS: _partial(
            "contains", "contains", "Written as not (... contains ...)"
        ),
        Operator.STARTS_WITH: _full("starts_with"),
        Operator.ENDS_WITH: _full("ends_with"),
        Operator.MATCHES: _full("matches", "", "Regex matching requires a Business plan"),
        Operator.IN: _full("in"),
        Operator.NOT_IN: _partial("in", "in", "Written as not (... in {...})"),
        Operator.GT: _full("gt"),
        Operator.GE: _full("ge"),
        Operator.LT: _full("lt"),
        Operator.LE: _full("le"),
        Operator.EXISTS: _none("Field presence checks are not expressible in custom rules"),
        Operator.NOT_EXISTS: _none("Field presence checks are not expressible in custom rules"),
    },
}

# Rule and action options beyond the core action type.
OPTIONS: dict[ProviderType, dict[str, FeatureSupport]] = {
    V: {
        "description": _full("description"),
        "priority": _partial(None, None, "Vercel evaluates rules in list order; priority is dropped"),
        "categories": _partial(None, None, "Categories are not stored by Vercel"),
        "duration": _full("actionDuration"),
        "response": _partial(None, None, "Custom responses are not supported; dropped"),
        "rateLimit.characteristics": _partial(
            None, None, "Vercel always counts per client IP; characteristics are dropped"
        ),
        "rateLimit.mitigationTimeout": _partial(None, None, "Mitigation timeout is dropped"),
        "rateLimit.countingExpression": _partial(None, None, "Counting expression is dropped"),
        "redirect.statusCode": _partial(
            "permanent", None, "Only permanent (308) or temporary (307) redirects"
        ),
        "redirect.preserveQueryString": _partial(None, None, "Query string handling is fixed"),
        "conditionLogic.and": _full("conditionGroup", "One group holding every condition"),
        "conditionLogic.or": _full("conditionGroup", "One group per condition"),
        "query.key": _full("key"),
    },
    CF: {
        "description": _full("description", "Stored as 'name | description'"),
        "priority": _partial(None, None, "Cloudflare evaluates rules in list order; priority is dropped"),
        "categories": _full("categories"),
        "duration": _partial(None, None, "Block duration is only available via rate limiting"),
        "response": _full("action_parameters.response"),
        "rateLimit.characteristics": _full("ratelimit.characteristics"),
        "rateLimit.mitigationTimeout": _full("ratelimit.mitigation_timeout"),
        "rateLimit.countingExpression": _full("ratelimit.counting_expression"),
        "redirect.statusCode": _full("from_value.status_code"),
        "redirect.preserveQueryString": _full("from_value.preserve_query_string"),
        "conditionLogic.and": _full("and"),
        "conditionLogic.or": _full("or"),
        "query.key": _partial(None, None, "The whole query string is matched; the key is dropped"),
    },
}

IP_ACTIONS: dict[ProviderType, dict[IPAction, FeatureSupport]] = {
    V: {
        IPAction.DENY: _full("deny"),
        IPAction.ALLOW: _none("Vercel IP blocking only supports deny"),
    },
    CF: {
        IPAction.DENY: _full("block"),
        IPAction.ALLOW: _full("skip"),
    },
}

MAX_RULES: dict[ProviderType, int | None] = {V: None, CF: 125}
SUPPORTS_VERSIONS: dict[ProviderType, bool] = {V: True, CF: False}


@dataclass
class MigrationReport:
    """Feature support when moving a config between providers."""

    source: ProviderType
    target: ProviderType
    fully_supported: list[str] = field(default_factory=list)
    partially_supported: list[str] = field(default_factory=list)
    not_supported: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class CompatibilityMatrix:
    """Lookup queries over the static support tables."""

    def __init__(
        self,
        actions: dict[ProviderType, dict[ActionType, FeatureSupport]] | None = None,
        fields: dict[ProviderType, dict[FieldType, FeatureSupport]] | None = None,
        operators: dict[ProviderType, dict[Operator, FeatureSupport]] | None = None,
        options: dict[ProviderType, dict[str, FeatureSupport]] | None = None,
        ip_actions: dict[ProviderType, dict[IPAction, FeatureSupport]] | None = None,
    ) -> None:
        self.actions = actions or ACTIONS
        self.fields = fields or FIELDS
        self.operators = operators or OPERATORS
        self.options = options or OPTIONS
        self.ip_actions = ip_actions or IP_ACTIONS

    @staticmethod
    def _lookup(table: dict, provider: ProviderType, key: object, kind: str) -> FeatureSupport:
        entry = table.get(ProviderType(provider), {}).get(key)
        if entry is None:
            return _none(f"Unknown {kind} '{key}'")
        return entry

    def get_action_compatibility(self, action: ActionType, provider: ProviderType) -> FeatureSupport:
        return self._lookup(self.actions, provider, ActionType(action), "action")

    def get_field_compatibility(self, field_type: FieldType, provider: ProviderType) -> FeatureSupport:
        return self._lookup(self.fields, provider, FieldType(field_type), "field")

    def get_operator_compatibility(self, operator: Operator, provider: ProviderType) -> FeatureSupport:
        return self._lookup(self.operators, provider, Operator(operator), "operator")

    def get_option_compatibility(self, option: str, provider: ProviderType) -> FeatureSupport:
        return self._lookup(self.options, provider, option, "option")

    def get_ip_action_compatibility(self, action: IPAction, provider: ProviderType) -> FeatureSupport:
        return self._lookup(self.ip_actions, provider, IPAction(action), "IP action")

    def is_action_supported(self, action: ActionType, provider: ProviderType) -> bool:
        return self.get_action_compatibility(action, provider).supported

    def is_field_supported(self, field_type: FieldType, provider: ProviderType) -> bool:
        return self.get_field_compatibility(field_type, provider).supported

    def is_operator_supported(self, operator: Operator, provider: ProviderType) -> bool:
        return self.get_operator_compatibility(operator, provider).supported

    def get_unsupported_actions(self, provider: ProviderType) -> list[ActionType]:
        return [a for a, s in self.actions[ProviderType(provider)].items() if not s.supported]

    def get_unsupported_fields(self, provider: ProviderType) -> list[FieldType]:
        return [f for f, s in self.fields[ProviderType(provider)].items() if not s.supported]

    def get_unsupported_operators(self, provider: ProviderType) -> list[Operator]:
        return [o for o, s in self.operators[ProviderType(provider)].items() if not s.supported]

    def action_from_native(self, native: str, provider: ProviderType) -> ActionType | None:
        """Map a native action name back to its unified action.

        Fully supported entries win over approximations.
        """
        provider = ProviderType(provider)
        return self._reverse(self.actions[provider], native, ActionType) or NATIVE_ACTION_ALIASES[
            provider
        ].get(native)

    def field_from_native(self, native: str, provider: ProviderType) -> FieldType | None:
        """Map a native field name back to its unified field."""
        return self._reverse(self.fields[ProviderType(provider)], native, FieldType)

    def operator_from_native(self, native: str, provider: ProviderType) -> Operator | None:
        """Map a native operator name back to its unified operator."""
        return self._reverse(self.operators[ProviderType(provider)], native, Operator)

    @staticmethod
    def _reverse(table: dict, native: str, enum_type: type) -> object | None:
        for key, support in table.items():
            if support.level == SupportLevel.FULL and support.native == native:
                return key
        for key, support in table.items():
            if support.level == SupportLevel.PARTIAL and support.native == native:
                return enum_type(support.approximation) if support.approximation else key
        return None

    def feature_set(self, provider: ProviderType) -> FeatureSet:
        """Summarize what a provider supports."""
        provider = ProviderType(provider)
        return FeatureSet(
            provider=provider,
            actions=[a for a, s in self.actions[provider].items() if s.supported],
            fields=[f for f, s in self.fields[provider].items() if s.supported],
            operators=[o for o, s in self.operators[provider].items() if s.supported],
            max_rules=MAX_RULES[provider],
            supports_ip_rules=True,
            supports_versions=SUPPORTS_VERSIONS[provider],
        )

    def get_migration_report(self, source: ProviderType, target: ProviderType) -> MigrationReport:
        """Report how features available on the source behave on the target.

        Args:
            source: Provider the config currently targets.
            target: Provider the config would move to.

        Returns:
            Feature lists grouped by target support level, with warnings
            for everything that is not fully supported.
        """
        source = ProviderType(source)
        target = ProviderType(target)
        report = MigrationReport(source=source, target=target)

        tables = (
            ("Action", self.actions),
            ("Field", self.fields),
            ("Operator", self.operators),
            ("Option", self.options),
            ("IP action", self.ip_actions),
        )
        for label, table in tables:
            for key, source_support in table[source].items():
                if not source_support.supported:
                    continue
                name = key.value if isinstance(key, Enum) else key
                entry = f"{label}: {name}"
                target_support = table[target].get(key) or _none(f"Unknown {label.lower()}")
                if target_support.level == SupportLevel.FULL:
                    report.fully_supported.append(entry)
                elif target_support.level == SupportLevel.PARTIAL:
                    report.partially_supported.append(entry)
                    report.warnings.append(f"{name}: {target_support.notes}")
                else:
                    report.not_supported.append(entry)
                    report.warnings.append(f"{name} is not supported in {target.value}")
        return report
