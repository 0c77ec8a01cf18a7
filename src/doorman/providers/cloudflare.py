"""Cloudflare WAF client and service."""

from typing import Any

import httpx

from doorman.core.health import HealthReport
from doorman.core.models import (
    ChangeSet,
    CloudflareSection,
    ConfigMetadata,
    IPAction,
    IssueSeverity,
    ProvidersSection,
    ProviderType,
    UnifiedConfig,
    UnifiedIPRule,
    UnifiedRule,
    ValidationIssue,
)
from doorman.errors import ConfigurationError, ProviderApiError
from doorman.providers.base import BaseFirewallService
from doorman.translation.cloudflare import CloudflareTranslator, is_ip_rule_ref
from doorman.translation.compatibility import MAX_RULES, CompatibilityMatrix
from doorman.utils.http import BaseHttpClient
from doorman.utils.logging import get_logger

logger = get_logger(__name__)

FIREWALL_PHASE = "http_request_firewall_custom"
RULESET_NAME = "Doorman Custom Firewall Rules"
IP_LIST_NAME = "doorman_ip_blocklist"
IP_LIST_DESCRIPTION = "Doorman IP Blocklist"
LIST_RULE_REF = "doorman_ip_list"
RULE_LIMIT_WARNING_RATIO = 0.8
LARGE_IP_COUNT = 50
MIN_MITIGATION_TIMEOUT = 60


class CloudflareClient(BaseHttpClient):
    """Client for the Cloudflare rulesets and lists APIs."""

    PROVIDER_NAME = "Cloudflare"
    BASE_URL = "https://api.cloudflare.com/client/v4"

    def __init__(
        self,
        api_token: str,
        zone_id: str,
        account_id: str | None = None,
        base_url: str = BASE_URL,
        timeout: float = BaseHttpClient.DEFAULT_TIMEOUT,
        max_retries: int = BaseHttpClient.DEFAULT_RETRIES,
        retry_delay: float = BaseHttpClient.DEFAULT_RETRY_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url,
            timeout=timeout,
            max_retries=max_retries,
            retry_delay=retry_delay,
            transport=transport,
        )
        self.api_token = api_token
        self.zone_id = zone_id
        self.account_id = account_id

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_token}"}

    async def call(self, method: str, path: str, json: Any = None, params: dict[str, Any] | None = None) -> Any:
        """Make a request and unwrap the ``{success, errors, result}`` envelope.

        Raises:
            ProviderApiError: If the envelope reports failure.
        """
        body = await self.request(method, path, json=json, params=params)
        if not isinstance(body, dict):
            return body
        if body.get("success") is False:
            messages = [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in body.get("errors") or []]
            raise ProviderApiError(self.PROVIDER_NAME, "; ".join(messages) or "request was not successful")
        return body.get("result")

    @property
    def _zone(self) -> str:
        return f"/zones/{self.zone_id}"

    @property
    def _account(self) -> str:
        if not self.account_id:
            raise ConfigurationError(
                "Account ID required for IP lists",
                "Set CLOUDFLARE_ACCOUNT_ID to manage IP rules through a list.",
            )
        return f"/accounts/{self.account_id}"

    async def get_zone_info(self) -> dict[str, Any]:
        return await self.call("GET", self._zone)

    async def verify_credentials(self) -> bool:
        result = await self.call("GET", "/user/tokens/verify")
        return bool(result) and result.get("status") == "active"

    async def list_rulesets(self) -> list[dict[str, Any]]:
        return await self.call("GET", f"{self._zone}/rulesets") or []

    async def get_ruleset(self, ruleset_id: str) -> dict[str, Any]:
        return await self.call("GET", f"{self._zone}/rulesets/{ruleset_id}")

    async def create_ruleset(self, ruleset: dict[str, Any]) -> dict[str, Any]:
        return await self.call("POST", f"{self._zone}/rulesets", json=ruleset)

    async def update_ruleset(self, ruleset_id: str, ruleset: dict[str, Any]) -> dict[str, Any]:
        return await self.call("PUT", f"{self._zone}/rulesets/{ruleset_id}", json=ruleset)

    async def delete_ruleset(self, ruleset_id: str) -> None:
        await self.call("DELETE", f"{self._zone}/rulesets/{ruleset_id}")

    async def find_firewall_ruleset(self) -> dict[str, Any] | None:
        """Return the zone's custom firewall ruleset with its rules, if any."""
        for summary in await self.list_rulesets():
            if summary.get("phase") == FIREWALL_PHASE and summary.get("kind") in ("zone", "custom"):
                return await self.get_ruleset(summary["id"])
        return None

    async def get_or_create_firewall_ruleset(self) -> dict[str, Any]:
        ruleset = await self.find_firewall_ruleset()
        if ruleset is not None:
            return ruleset
        logger.info("Creating Cloudflare ruleset '%s'", RULESET_NAME)
        return await self.create_ruleset(
            {
                "name": RULESET_NAME,
                "kind": "zone",
                "phase": FIREWALL_PHASE,
                "description": "Custom firewall rules managed by doorman",
                "rules": [],
            }
        )

    async def add_rule(self, ruleset_id: str, rule: dict[str, Any]) -> dict[str, Any]:
        return await self.call("POST", f"{self._zone}/rulesets/{ruleset_id}/rules", json=rule)

    async def update_rule(self, ruleset_id: str, rule_id: str, rule: dict[str, Any]) -> dict[str, Any]:
        return await self.call("PATCH", f"{self._zone}/rulesets/{ruleset_id}/rules/{rule_id}", json=rule)

    async def delete_rule(self, ruleset_id: str, rule_id: str) -> dict[str, Any]:
        return await self.call("DELETE", f"{self._zone}/rulesets/{ruleset_id}/rules/{rule_id}")

    async def get_lists(self) -> list[dict[str, Any]]:
        return await self.call("GET", f"{self._account}/rules/lists") or []

    async def create_list(self, name: str, kind: str = "ip", description: str = "") -> dict[str, Any]:
        return await self.call(
            "POST",
            f"{self._account}/rules/lists",
            json={"name": name, "kind": kind, "description": description},
        )

    async def update_list(self, list_id: str, description: str) -> dict[str, Any]:
        return await self.call("PUT", f"{self._account}/rules/lists/{list_id}", json={"description": description})

    async def delete_list(self, list_id: str) -> None:
        await self.call("DELETE", f"{self._account}/rules/lists/{list_id}")

    async def find_ip_list(self) -> dict[str, Any] | None:
        for item in await self.get_lists():
            if item.get("name") == IP_LIST_NAME:
                return item
        return None

    async def get_or_create_ip_list(self) -> dict[str, Any]:
        existing = await self.find_ip_list()
        if existing is not None:
            return existing
        logger.info("Creating Cloudflare IP list '%s'", IP_LIST_NAME)
        return await self.create_list(IP_LIST_NAME, "ip", IP_LIST_DESCRIPTION)

    async def get_list_items(self, list_id: str) -> list[dict[str, Any]]:
        return await self.call("GET", f"{self._account}/rules/lists/{list_id}/items") or []

    async def add_list_items(self, list_id: str, items: list[dict[str, Any]]) -> Any:
        return await self.call("POST", f"{self._account}/rules/lists/{list_id}/items", json=items)

    async def remove_list_items(self, list_id: str, item_ids: list[str]) -> Any:
        return await self.call(
            "DELETE",
            f"{self._account}/rules/lists/{list_id}/items",
            json={"items": [{"id": item_id} for item_id in item_ids]},
        )


class CloudflareFirewallService(BaseFirewallService):
    """Cloudflare WAF implementation of the provider contract.

    Rules live in the zone's custom firewall ruleset. IP rules are either
    individual custom rules or, when an account id is configured, entries
    in an account IP list referenced by a single block rule.
    """

    provider = ProviderType.CLOUDFLARE

    def __init__(
        self,
        client: CloudflareClient,
        translator: CloudflareTranslator | None = None,
        matrix: CompatibilityMatrix | None = None,
        use_lists: bool | None = None,
    ) -> None:
        super().__init__(client, translator or CloudflareTranslator(matrix), matrix)
        self.client: CloudflareClient = client
        self.translator: CloudflareTranslator
        self.use_lists = bool(client.account_id) if use_lists is None else use_lists
        self.max_rules = MAX_RULES[ProviderType.CLOUDFLARE] or 0
        self._ruleset_id: str | None = None
        self._native_ids: dict[str, str] = {}
        self._list_id: str | None = None
        self._list_item_ids: set[str] = set()
        self._list_rule_id: str | None = None

    async def fetch_config(self, version: int | None = None) -> UnifiedConfig:
        if version is not None:
            logger.warning("Cloudflare does not keep configuration versions; fetching the current state")

        ruleset = await self.client.find_firewall_ruleset()
        self._ruleset_id = ruleset.get("id") if ruleset else None
        self._native_ids = {}
        self._list_rule_id = None

        warnings: list[str] = []
        rules: list[UnifiedRule] = []
        ips: list[UnifiedIPRule] = []
        for native in (ruleset or {}).get("rules") or []:
            ref = native.get("ref")
            if ref == LIST_RULE_REF:
                self._list_rule_id = native.get("id")
                continue
            if is_ip_rule_ref(ref):
                ip_rule = self.translator.ip_to_unified(native).value
                ips.append(ip_rule)
                self._native_ids[ip_rule.id or ""] = native["id"]
                continue
            translated = self.translator.to_unified(native)
            warnings.extend(translated.warnings)
            rules.append(translated.value)
            self._native_ids[translated.value.id or ""] = native["id"]
        self.translator.log_warnings(warnings)

        self._list_id = None
        self._list_item_ids = set()
        if self.use_lists:
            ip_list = await self.client.find_ip_list()
            if ip_list is not None:
                self._list_id = ip_list["id"]
                for item in await self.client.get_list_items(ip_list["id"]):
                    self._list_item_ids.add(item["id"])
                    ips.append(
                        UnifiedIPRule(
                            id=item["id"],
                            ip=item["ip"],
                            notes=item.get("comment") or None,
                            action=IPAction.DENY,
                        )
                    )

        version_marker = str((ruleset or {}).get("version") or "")
        return UnifiedConfig(
            provider=self.provider,
            providers=ProvidersSection(
                cloudflare=CloudflareSection(zone_id=self.client.zone_id, account_id=self.client.account_id)
            ),
            rules=rules,
            ips=ips,
            metadata=ConfigMetadata(
                version=int(version_marker) if version_marker.isdigit() else None,
                updated_at=(ruleset or {}).get("last_updated"),
            ),
        )

    async def verify_credentials(self) -> bool:
        return await self.client.verify_credentials()

    def _uses_list(self, rule: UnifiedIPRule) -> bool:
        return self.use_lists and rule.hostname is None and rule.action == IPAction.DENY

    async def _before_mutations(self, changes: ChangeSet) -> None:
        if self._ruleset_id is None:
            ruleset = await self.client.get_or_create_firewall_ruleset()
            self._ruleset_id = ruleset["id"]

        listed = [r for r in [*changes.ips_to_add, *changes.ips_to_update] if self._uses_list(r)]
        if not listed:
            return
        if self._list_id is None:
            self._list_id = (await self.client.get_or_create_ip_list())["id"]
        if self._list_rule_id is None:
            await self.client.add_rule(
                self._ruleset_id,
                {
                    "ref": LIST_RULE_REF,
                    "action": "block",
                    "expression": f"ip.src in ${IP_LIST_NAME}",
                    "description": IP_LIST_DESCRIPTION,
                    "enabled": True,
                },
            )
            self._list_rule_id = LIST_RULE_REF

    def _ruleset(self) -> str:
        if self._ruleset_id is None:
            raise ConfigurationError("Cloudflare firewall ruleset has not been loaded")
        return self._ruleset_id

    def _native_id(self, unified_id: str | None) -> str:
        native_id = self._native_ids.get(unified_id or "")
        if native_id is None:
            raise ConfigurationError(f"No Cloudflare rule found for '{unified_id}'")
        return native_id

    async def _add_rule(self, rule: UnifiedRule) -> None:
        native = self.translator.to_provider(rule)
        await self.client.add_rule(self._ruleset(), native.value)

    async def _update_rule(self, rule: UnifiedRule) -> None:
        native = self.translator.to_provider(rule)
        await self.client.update_rule(self._ruleset(), self._native_id(rule.id), native.value)

    async def _delete_rule(self, rule: UnifiedRule) -> None:
        await self.client.delete_rule(self._ruleset(), self._native_id(rule.id))

    async def _add_ip(self, rule: UnifiedIPRule) -> None:
        if self._uses_list(rule):
            item: dict[str, Any] = {"ip": rule.ip}
            if rule.notes:
                item["comment"] = rule.notes
            await self.client.add_list_items(self._list_id or "", [item])
            return
        native = self.translator.ip_to_provider(rule)
        await self.client.add_rule(self._ruleset(), native.value)

    async def _update_ip(self, rule: UnifiedIPRule) -> None:
        # List items cannot be edited in place and cannot carry a hostname,
        # so moves between the list and custom rules are remove + add.
        if rule.id in self._list_item_ids:
            await self.client.remove_list_items(self._list_id or "", [rule.id or ""])
            await self._add_ip(rule)
        elif self._uses_list(rule):
            await self.client.delete_rule(self._ruleset(), self._native_id(rule.id))
            await self._add_ip(rule)
        else:
            native = self.translator.ip_to_provider(rule)
            await self.client.update_rule(self._ruleset(), self._native_id(rule.id), native.value)

    async def _delete_ip(self, rule: UnifiedIPRule) -> None:
        if rule.id in self._list_item_ids:
            await self.client.remove_list_items(self._list_id or "", [rule.id or ""])
        else:
            await self.client.delete_rule(self._ruleset(), self._native_id(rule.id))

    def _custom_rule_count(self, config: UnifiedConfig) -> int:
        return len(config.rules) + sum(1 for ip in config.ips if not self._uses_list(ip))

    def _provider_checks(self, config: UnifiedConfig) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []

        count = self._custom_rule_count(config)
        if count > self.max_rules:
            issues.append(
                ValidationIssue(
                    path="rules",
                    message=f"{count} custom rules exceed the Cloudflare limit of {self.max_rules}",
                    code="rule_limit",
                )
            )
        elif count >= self.max_rules * RULE_LIMIT_WARNING_RATIO:
            issues.append(
                ValidationIssue(
                    path="rules",
                    message=f"{count} custom rules is close to the Cloudflare limit of {self.max_rules}",
                    code="rule_limit",
                    severity=IssueSeverity.WARNING,
                )
            )

        for index, rule in enumerate(config.rules):
            limit = rule.action.rate_limit
            if limit is None:
                continue
            path = f"rules[{index}].action.rateLimit"
            if limit.characteristics is not None and not limit.characteristics:
                issues.append(
                    ValidationIssue(
                        path=f"{path}.characteristics",
                        message="Empty characteristics; requests will be counted per client IP",
                        code="empty_characteristics",
                        severity=IssueSeverity.WARNING,
                    )
                )
            if limit.mitigation_timeout is not None and limit.mitigation_timeout < MIN_MITIGATION_TIMEOUT:
                issues.append(
                    ValidationIssue(
                        path=f"{path}.mitigationTimeout",
                        message=f"Mitigation timeouts below {MIN_MITIGATION_TIMEOUT}s are rejected on most plans",
                        code="short_mitigation_timeout",
                        severity=IssueSeverity.WARNING,
                    )
                )

        if not self.use_lists and len(config.ips) > LARGE_IP_COUNT:
            issues.append(
                ValidationIssue(
                    path="ips",
                    message=(
                        f"{len(config.ips)} IP rules will each use a custom rule; "
                        "set CLOUDFLARE_ACCOUNT_ID to sync them through an IP list"
                    ),
                    code="large_ip_list",
                    severity=IssueSeverity.WARNING,
                )
            )
        return issues

    def _assess_provider_health(self, config: UnifiedConfig, report: HealthReport) -> None:
        count = self._custom_rule_count(config)
        if count >= self.max_rules * RULE_LIMIT_WARNING_RATIO:
            report.penalize(
                5,
                IssueSeverity.WARNING,
                "rule-limit",
                f"{count} of {self.max_rules} custom rules used",
            )
