"""Unified, provider-neutral data models for doorman."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

CURRENT_SCHEMA_VERSION = "2.0"
LEGACY_SCHEMA_VERSION = "1.0"

WINDOW_PATTERN = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"d": 86400, "h": 3600, "m": 60, "s": 1}


class ProviderType(str, Enum):
    """Supported firewall providers."""

    VERCEL = "vercel"
    CLOUDFLARE = "cloudflare"


class ActionType(str, Enum):
    """Unified rule actions."""

    LOG = "log"
    DENY = "deny"
    CHALLENGE = "challenge"
    BYPASS = "bypass"
    RATE_LIMIT = "rate_limit"
    REDIRECT = "redirect"
    ALLOW = "allow"
    BLOCK = "block"


class Operator(str, Enum):
    """Unified condition operators."""

    EQ = "eq"
    NE = "ne"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    MATCHES = "matches"
    IN = "in"
    NOT_IN = "not_in"
    GT = "gt"
    GE = "ge"
    LT = "lt"
    LE = "le"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


LIST_OPERATORS = frozenset({Operator.IN, Operator.NOT_IN})
PRESENCE_OPERATORS = frozenset({Operator.EXISTS, Operator.NOT_EXISTS})
NUMERIC_OPERATORS = frozenset({Operator.GT, Operator.GE, Operator.LT, Operator.LE})


class FieldType(str, Enum):
    """Semantic request fields a condition can inspect."""

    IP = "ip"
    COUNTRY = "country"
    REGION = "region"
    CITY = "city"
    ASN = "asn"
    PATH = "path"
    HOST = "host"
    METHOD = "method"
    HEADER = "header"
    QUERY = "query"
    COOKIE = "cookie"
    USER_AGENT = "user_agent"
    REFERER = "referer"
    SCHEME = "scheme"
    PORT = "port"


KEYED_FIELDS = frozenset({FieldType.HEADER, FieldType.COOKIE})


class ConditionLogic(str, Enum):
    """How a rule's conditions are combined."""

    AND = "AND"
    OR = "OR"


class IPAction(str, Enum):
    """Actions available to IP rules."""

    DENY = "deny"
    ALLOW = "allow"


def normalize_window(value: str) -> str:
    """Return a rate-limit window in its shortest exact unit.

    ``"60s"`` becomes ``"1m"`` and ``"7200s"`` becomes ``"2h"``; values
    that do not match the window format are returned unchanged.
    """
    match = WINDOW_PATTERN.match(value.strip())
    if not match:
        return value
    seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds == 0:
        return "0s"
    for unit, size in _UNIT_SECONDS.items():
        if seconds % size == 0:
            return f"{seconds // size}{unit}"
    return value


def window_to_seconds(value: str) -> int:
    """Convert a window such as ``"1m"`` to seconds.

    Raises:
        ValueError: If the window is malformed.
    """
    match = WINDOW_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f'Invalid window format: {value}. Must be like "60s", "1h", "1d"')
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]


class UnifiedModel(BaseModel):
    """Base for models serialized with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        use_enum_values=False,
    )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON wire shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


ConditionValue = Union[str, int, float, list[str], list[int], None]


class UnifiedCondition(UnifiedModel):
    """A single match condition."""

    field: FieldType
    operator: Operator = Operator.EQ
    value: ConditionValue = None
    negate: bool = False
    key: str | None = Field(default=None, description="Header or cookie name")


class RateLimitConfig(UnifiedModel):
    """Rate-limit payload."""

    requests: int = Field(..., ge=1, description="Requests allowed per window")
    window: str = Field(..., description='Window such as "60s", "1m", "1h"')
    characteristics: list[str] | None = None
    mitigation_timeout: int | None = Field(default=None, ge=0)
    counting_expression: str | None = None

    @field_validator("window")
    @classmethod
    def validate_window(cls, v: str) -> str:
        """Validate and normalize the window."""
        if not WINDOW_PATTERN.match(v.strip()):
            raise ValueError(f'Invalid window format: {v}. Must be like "60s", "1h", "1d"')
        return normalize_window(v)


class RedirectConfig(UnifiedModel):
    """Redirect payload."""

    location: str
    status_code: int | None = None
    permanent: bool = False
    preserve_query_string: bool | None = None

    @field_validator("status_code")
    @classmethod
    def validate_status_code(cls, v: int | None) -> int | None:
        """Validate the redirect status code."""
        if v is not None and v not in (301, 302, 303, 307, 308):
            raise ValueError("status_code must be one of 301, 302, 303, 307, 308")
        return v

    @model_validator(mode="after")
    def status_code_implies_permanent(self) -> "RedirectConfig":
        """Derive permanence from an explicit code; 301 and 302 are the plain defaults."""
        if self.status_code is not None:
            self.permanent = self.status_code in (301, 308)
            if self.status_code == (301 if self.permanent else 302):
                self.status_code = None
        return self


class ResponseConfig(UnifiedModel):
    """Custom response payload for blocking actions."""

    status_code: int = Field(..., ge=100, le=599)
    content: str | None = None
    content_type: str | None = None


class UnifiedAction(UnifiedModel):
    """A rule action with its type-specific payloads."""

    type: ActionType
    rate_limit: RateLimitConfig | None = None
    redirect: RedirectConfig | None = None
    response: ResponseConfig | None = None
    duration: str | None = Field(default=None, description="Temporary block duration")


class UnifiedRule(UnifiedModel):
    """A provider-neutral firewall rule."""

    id: str | None = None
    name: str = Field(..., min_length=1)
    description: str | None = None
    enabled: bool = True
    conditions: list[UnifiedCondition] = Field(default_factory=list)
    condition_logic: ConditionLogic = ConditionLogic.AND
    action: UnifiedAction
    priority: int | None = None
    categories: list[str] | None = None

    @model_validator(mode="after")
    def single_condition_is_and(self) -> "UnifiedRule":
        """AND and OR coincide for fewer than two conditions; keep AND."""
        if len(self.conditions) < 2:
            self.condition_logic = ConditionLogic.AND
        return self


class UnifiedIPRule(UnifiedModel):
    """An IP allow/deny entry, optionally scoped to a hostname."""

    id: str | None = None
    ip: str
    hostname: str | None = None
    notes: str | None = None
    action: IPAction = IPAction.DENY


class VercelSection(UnifiedModel):
    """Vercel provider section of a config."""

    project_id: str | None = None
    team_id: str | None = None


class CloudflareSection(UnifiedModel):
    """Cloudflare provider section of a config."""

    zone_id: str | None = None
    account_id: str | None = None


class ProvidersSection(UnifiedModel):
    """Per-provider sections."""

    vercel: VercelSection | None = None
    cloudflare: CloudflareSection | None = None


class ConfigMetadata(UnifiedModel):
    """Remote version marker and provenance."""

    version: int | None = None
    updated_at: str | None = None
    created_at: str | None = None
    last_synced_at: str | None = None
    migrated_from: str | None = None
    migrated_at: str | None = None


class UnifiedConfig(UnifiedModel):
    """A complete provider-neutral configuration."""

    schema_: str | None = Field(default=None, alias="$schema")
    version: str = CURRENT_SCHEMA_VERSION
    provider: ProviderType | None = None
    providers: ProvidersSection | None = None
    rules: list[UnifiedRule] = Field(default_factory=list)
    ips: list[UnifiedIPRule] = Field(default_factory=list)
    metadata: ConfigMetadata = Field(default_factory=ConfigMetadata)


class ChangeSet(UnifiedModel):
    """Rule and IP changes needed to bring the remote in line with local."""

    rules_to_add: list[UnifiedRule] = Field(default_factory=list)
    rules_to_update: list[UnifiedRule] = Field(default_factory=list)
    rules_to_delete: list[UnifiedRule] = Field(default_factory=list)
    ips_to_add: list[UnifiedIPRule] = Field(default_factory=list)
    ips_to_update: list[UnifiedIPRule] = Field(default_factory=list)
    ips_to_delete: list[UnifiedIPRule] = Field(default_factory=list)
    version: int | None = Field(default=None, description="Remote version marker")

    @property
    def has_changes(self) -> bool:
        """Whether any partition is non-empty."""
        return any(
            (
                self.rules_to_add,
                self.rules_to_update,
                self.rules_to_delete,
                self.ips_to_add,
                self.ips_to_update,
                self.ips_to_delete,
            )
        )

    @property
    def total(self) -> int:
        """Total number of changes across all partitions."""
        return (
            len(self.rules_to_add)
            + len(self.rules_to_update)
            + len(self.rules_to_delete)
            + len(self.ips_to_add)
            + len(self.ips_to_update)
            + len(self.ips_to_delete)
        )


class IdRepair(UnifiedModel):
    """A local rule id that should be rewritten to the canonical server id."""

    old_id: str
    new_id: str
    name: str


class Mutation(UnifiedModel):
    """One remote mutation applied during a sync."""

    operation: str = Field(..., description="delete, add or update")
    entity: str = Field(..., description="rule or ip")
    name: str
    remote_id: str | None = None


class SyncOptions(UnifiedModel):
    """Options for a sync run."""

    dry_run: bool = False
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)


class SyncResult(UnifiedModel):
    """Outcome of applying a change set."""

    added: int = 0
    updated: int = 0
    deleted: int = 0
    ips_added: int = 0
    ips_updated: int = 0
    ips_deleted: int = 0
    dry_run: bool = False
    version: int | None = None
    id_repairs: list[IdRepair] = Field(default_factory=list)
    mutations: list[Mutation] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    changes: ChangeSet | None = Field(default=None, description="Change set the sync computed and applied")

    @property
    def total(self) -> int:
        """Total number of changes applied or planned."""
        return (
            self.added
            + self.updated
            + self.deleted
            + self.ips_added
            + self.ips_updated
            + self.ips_deleted
        )


class IssueSeverity(str, Enum):
    """Severity of a validation or health issue."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ValidationIssue(UnifiedModel):
    """A path-tagged validation finding."""

    path: str
    message: str
    code: str
    severity: IssueSeverity = IssueSeverity.ERROR


class ValidationResult(UnifiedModel):
    """Outcome of validating a configuration."""

    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def errors(self) -> list[ValidationIssue]:
        """Error-severity issues in order."""
        return [i for i in self.issues if i.severity == IssueSeverity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        """Warning-severity issues in order."""
        return [i for i in self.issues if i.severity == IssueSeverity.WARNING]

    @property
    def valid(self) -> bool:
        """True when there are no errors."""
        return not self.errors

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        """Return a new result holding both sets of issues."""
        return ValidationResult(issues=[*self.issues, *other.issues])


class HealthIssue(UnifiedModel):
    """A heuristic finding that lowers the health score."""

    severity: IssueSeverity
    category: str
    message: str
    rule_id: str | None = None


class HealthScore(UnifiedModel):
    """Heuristic 0-100 health score."""

    score: int = Field(..., ge=0, le=100)
    grade: str
    issues: list[HealthIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class FeatureSet(UnifiedModel):
    """Features a provider supports, derived from the compatibility matrix."""

    provider: ProviderType
    actions: list[ActionType]
    fields: list[FieldType]
    operators: list[Operator]
    max_rules: int | None = None
    supports_ip_rules: bool = True
    supports_versions: bool = False


def now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
