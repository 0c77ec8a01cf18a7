"""Vercel Firewall client and service."""

from typing import Any

import httpx

from doorman.core.health import HealthReport
from doorman.core.models import (
    ActionType,
    ChangeSet,
    ConfigMetadata,
    IssueSeverity,
    ProvidersSection,
    ProviderType,
    UnifiedConfig,
    UnifiedIPRule,
    UnifiedRule,
    VercelSection,
)
from doorman.providers.base import BaseFirewallService
from doorman.translation.compatibility import CompatibilityMatrix
from doorman.translation.vercel import VercelTranslator
from doorman.utils.http import BaseHttpClient
from doorman.utils.logging import get_logger

logger = get_logger(__name__)

RULE_VALUE_KEYS = ("name", "description", "action", "conditionGroup", "active")


class VercelClient(BaseHttpClient):
    """Client for the Vercel Firewall configuration API."""

    PROVIDER_NAME = "Vercel"
    BASE_URL = "https://api.vercel.com"
    CONFIG_PATH = "/v1/security/firewall/config"

    def __init__(
        self,
        token: str,
        project_id: str,
        team_id: str | None = None,
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
        self.token = token
        self.project_id = project_id
        self.team_id = team_id

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    @property
    def scope(self) -> dict[str, Any]:
        """Query parameters selecting the project."""
        return {"projectId": self.project_id, "teamId": self.team_id}

    async def get_firewall_config(self, version: int | None = None) -> dict[str, Any] | None:
        """Fetch the active config, or a specific version.

        Returns:
            The native config, or None when the project has no active config.
        """
        if version is not None:
            return await self.get(f"{self.CONFIG_PATH}/{version}", params=self.scope)
        body = await self.get(self.CONFIG_PATH, params=self.scope)
        if not body:
            return None
        return body.get("active")

    async def put_firewall_config(self, config: dict[str, Any]) -> Any:
        """Replace the whole firewall config."""
        return await self.put(self.CONFIG_PATH, json=config, params=self.scope)

    async def put_empty_config(self) -> Any:
        """Create an empty, enabled firewall config."""
        return await self.put_firewall_config({"firewallEnabled": True, "rules": [], "ips": []})

    async def patch_config(self, action: str, item_id: str | None, value: dict[str, Any] | None) -> Any:
        """Issue a discrete config change such as ``rules.insert``."""
        return await self.patch(
            self.CONFIG_PATH,
            json={"action": action, "id": item_id, "value": value},
            params=self.scope,
        )

    async def insert_rule(self, rule: dict[str, Any]) -> Any:
        return await self.patch_config("rules.insert", None, _rule_value(rule))

    async def update_rule(self, rule_id: str, rule: dict[str, Any]) -> Any:
        return await self.patch_config("rules.update", rule_id, _rule_value(rule))

    async def remove_rule(self, rule_id: str) -> Any:
        return await self.patch_config("rules.remove", rule_id, None)

    async def insert_ip(self, ip_rule: dict[str, Any]) -> Any:
        return await self.patch_config("ip.insert", None, _ip_value(ip_rule))

    async def update_ip(self, ip_id: str, ip_rule: dict[str, Any]) -> Any:
        return await self.patch_config("ip.update", ip_id, _ip_value(ip_rule))

    async def remove_ip(self, ip_id: str) -> Any:
        return await self.patch_config("ip.remove", ip_id, None)


def _rule_value(rule: dict[str, Any]) -> dict[str, Any]:
    return {key: rule[key] for key in RULE_VALUE_KEYS if key in rule}


def _ip_value(ip_rule: dict[str, Any]) -> dict[str, Any]:
    value = {"action": ip_rule["action"], "hostname": ip_rule["hostname"], "ip": ip_rule["ip"]}
    if ip_rule.get("notes"):
        value["notes"] = ip_rule["notes"]
    return value


class VercelFirewallService(BaseFirewallService):
    """Vercel Firewall implementation of the provider contract."""

    provider = ProviderType.VERCEL

    def __init__(
        self,
        client: VercelClient,
        translator: VercelTranslator | None = None,
        matrix: CompatibilityMatrix | None = None,
    ) -> None:
        super().__init__(client, translator or VercelTranslator(matrix), matrix)
        self.client: VercelClient = client
        self._has_active_config = True

    async def fetch_config(self, version: int | None = None) -> UnifiedConfig:
        native = await self.client.get_firewall_config(version)
        self._has_active_config = native is not None
        native = native or {}

        warnings: list[str] = []
        rules = []
        for native_rule in native.get("rules") or []:
            translated = self.translator.to_unified(native_rule)
            warnings.extend(translated.warnings)
            rules.append(translated.value)
        ips = [self.translator.ip_to_unified(n).value for n in native.get("ips") or []]
        self.translator.log_warnings(warnings)

        updated_at = native.get("updatedAt")
        return UnifiedConfig(
            provider=self.provider,
            providers=ProvidersSection(
                vercel=VercelSection(project_id=self.client.project_id, team_id=self.client.team_id)
            ),
            rules=rules,
            ips=ips,
            metadata=ConfigMetadata(
                version=native.get("version"),
                updated_at=str(updated_at) if updated_at is not None else None,
            ),
        )

    async def verify_credentials(self) -> bool:
        await self.client.get_firewall_config()
        return True

    async def _before_mutations(self, changes: ChangeSet) -> None:
        if not self._has_active_config:
            logger.info("No active Vercel firewall config; creating an empty one")
            await self.client.put_empty_config()
            self._has_active_config = True

    async def _add_rule(self, rule: UnifiedRule) -> None:
        native = self.translator.to_provider(rule)
        await self.client.insert_rule(native.value)

    async def _update_rule(self, rule: UnifiedRule) -> None:
        native = self.translator.to_provider(rule)
        await self.client.update_rule(rule.id or "", native.value)

    async def _delete_rule(self, rule: UnifiedRule) -> None:
        await self.client.remove_rule(rule.id or "")

    async def _add_ip(self, rule: UnifiedIPRule) -> None:
        native = self.translator.ip_to_provider(rule)
        await self.client.insert_ip(native.value)

    async def _update_ip(self, rule: UnifiedIPRule) -> None:
        native = self.translator.ip_to_provider(rule)
        await self.client.update_ip(rule.id or "", native.value)

    async def _delete_ip(self, rule: UnifiedIPRule) -> None:
        await self.client.remove_ip(rule.id or "")

    def _assess_provider_health(self, config: UnifiedConfig, report: HealthReport) -> None:
        if not any(r.action.type == ActionType.RATE_LIMIT for r in config.rules):
            report.penalize(10, IssueSeverity.WARNING, "rate-limiting", "No rate limiting rules configured")
        if not config.ips:
            report.penalize(0, IssueSeverity.INFO, "ip-blocking", "No IP blocking rules configured")
