"""Provider registry and provider detection."""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from doorman.config import DoormanSettings
from doorman.core.models import ProviderType
from doorman.errors import MissingCredentialsError, ProviderNotRegisteredError
from doorman.providers.base import PROVIDER_DISPLAY_NAMES, BaseFirewallService
from doorman.providers.cloudflare import CloudflareClient, CloudflareFirewallService
from doorman.providers.vercel import VercelClient, VercelFirewallService
from doorman.utils.logging import get_logger

logger = get_logger(__name__)

ProviderFactory = Callable[[], BaseFirewallService]


class ProviderRegistry:
    """Lazily builds provider services and caches one per provider.

    Registries are plain objects; create one per invocation (or per test)
    and pass it to whatever needs a service.
    """

    def __init__(self) -> None:
        self._factories: dict[ProviderType, ProviderFactory] = {}
        self._instances: dict[ProviderType, BaseFirewallService] = {}

    def register(self, provider: ProviderType | str, factory: ProviderFactory) -> None:
        """Register a factory, replacing any cached instance."""
        key = ProviderType(provider)
        self._factories[key] = factory
        self._instances.pop(key, None)

    def register_instance(self, provider: ProviderType | str, service: BaseFirewallService) -> None:
        """Register a ready-made service."""
        key = ProviderType(provider)
        self._instances[key] = service
        self._factories.setdefault(key, lambda: service)

    def get(self, provider: ProviderType | str) -> BaseFirewallService:
        """Return the service for a provider, building it on first use.

        Raises:
            ProviderNotRegisteredError: If nothing is registered for it.
        """
        try:
            key = ProviderType(provider)
        except ValueError:
            raise ProviderNotRegisteredError(str(provider), self.available_providers()) from None
        if key in self._instances:
            return self._instances[key]
        factory = self._factories.get(key)
        if factory is None:
            raise ProviderNotRegisteredError(key.value, self.available_providers())
        service = factory()
        self._instances[key] = service
        logger.debug("Created %s service", PROVIDER_DISPLAY_NAMES[key])
        return service

    def has(self, provider: ProviderType | str) -> bool:
        try:
            return ProviderType(provider) in self._factories
        except ValueError:
            return False

    def available_providers(self) -> list[str]:
        return [p.value for p in self._factories]

    def unregister(self, provider: ProviderType | str) -> None:
        key = ProviderType(provider)
        self._factories.pop(key, None)
        self._instances.pop(key, None)

    def clear(self) -> None:
        self._factories.clear()
        self._instances.clear()

    async def aclose(self) -> None:
        """Close every instantiated service."""
        for service in self._instances.values():
            await service.aclose()


def _section(config: Mapping[str, Any] | None, provider: str) -> dict[str, Any]:
    providers = (config or {}).get("providers") or {}
    return providers.get(provider) or {}


def create_vercel_service(
    settings: DoormanSettings,
    config: Mapping[str, Any] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> VercelFirewallService:
    """Build a Vercel service from settings and the config's provider section.

    Raises:
        MissingCredentialsError: If the token or project id is missing.
    """
    section = _section(config, "vercel")
    token = settings.vercel.token
    project_id = section.get("projectId") or (config or {}).get("projectId") or settings.vercel.project_id
    team_id = section.get("teamId") or (config or {}).get("teamId") or settings.vercel.team_id
    if not token:
        raise MissingCredentialsError("VERCEL_TOKEN")
    if not project_id:
        raise MissingCredentialsError("VERCEL_PROJECT_ID")
    client = VercelClient(
        token,
        project_id,
        team_id,
        timeout=settings.http.timeout,
        max_retries=settings.http.max_retries,
        retry_delay=settings.http.retry_delay,
        transport=transport,
    )
    client.RATE_LIMIT_WARNING_THRESHOLD = settings.http.rate_limit_warning_threshold
    return VercelFirewallService(client)


def create_cloudflare_service(
    settings: DoormanSettings,
    config: Mapping[str, Any] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CloudflareFirewallService:
    """Build a Cloudflare service from settings and the config's provider section.

    Raises:
        MissingCredentialsError: If the token or zone id is missing.
    """
    section = _section(config, "cloudflare")
    token = settings.cloudflare.api_token
    zone_id = section.get("zoneId") or settings.cloudflare.zone_id
    account_id = section.get("accountId") or settings.cloudflare.account_id
    if not token:
        raise MissingCredentialsError("CLOUDFLARE_API_TOKEN")
    if not zone_id:
        raise MissingCredentialsError("CLOUDFLARE_ZONE_ID")
    client = CloudflareClient(
        token,
        zone_id,
        account_id,
        timeout=settings.http.timeout,
        max_retries=settings.http.max_retries,
        retry_delay=settings.http.retry_delay,
        transport=transport,
    )
    client.RATE_LIMIT_WARNING_THRESHOLD = settings.http.rate_limit_warning_threshold
    return CloudflareFirewallService(client)


def create_default_registry(
    settings: DoormanSettings,
    config: Mapping[str, Any] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry:
    """Registry with the built-in Vercel and Cloudflare factories."""
    registry = ProviderRegistry()
    registry.register(ProviderType.VERCEL, lambda: create_vercel_service(settings, config, transport))
    registry.register(ProviderType.CLOUDFLARE, lambda: create_cloudflare_service(settings, config, transport))
    return registry


class Confidence(str, Enum):
    """How sure the detector is about its choice."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class DetectionResult:
    """Outcome of provider detection."""

    provider: ProviderType | None
    confidence: Confidence
    source: str
    reasons: list[str] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        return PROVIDER_DISPLAY_NAMES[self.provider] if self.provider else "unknown"


Prompt = Callable[[list[ProviderType]], ProviderType | None]


class ProviderDetector:
    """Chooses a provider from directives, config contents and environment.

    Priority: explicit directive, the config's ``provider`` field, a
    provider section, the legacy single-provider shape, environment
    variables, an interactive prompt and finally the default.
    """

    DEFAULT_PROVIDER = ProviderType.VERCEL

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self.environ = os.environ if environ is None else environ

    def _parse(self, value: Any) -> ProviderType | None:
        try:
            return ProviderType(str(value).lower())
        except ValueError:
            return None

    def detect_all(
        self,
        config: Mapping[str, Any] | None = None,
        explicit: str | ProviderType | None = None,
    ) -> list[DetectionResult]:
        """Every signal found, in priority order."""
        config = config or {}
        found: list[DetectionResult] = []

        if explicit:
            provider = self._parse(explicit)
            if provider:
                found.append(
                    DetectionResult(provider, Confidence.HIGH, "explicit", [f"Provider '{provider.value}' was requested explicitly"])
                )

        provider = self._parse(config.get("provider")) if config.get("provider") else None
        if provider:
            found.append(
                DetectionResult(provider, Confidence.HIGH, "config", [f"Configuration sets provider to '{provider.value}'"])
            )

        if _section(config, "cloudflare").get("zoneId"):
            found.append(
                DetectionResult(
                    ProviderType.CLOUDFLARE,
                    Confidence.HIGH,
                    "providers-section",
                    ["Configuration has providers.cloudflare.zoneId"],
                )
            )
        if _section(config, "vercel").get("projectId"):
            found.append(
                DetectionResult(
                    ProviderType.VERCEL,
                    Confidence.HIGH,
                    "providers-section",
                    ["Configuration has providers.vercel.projectId"],
                )
            )

        if config.get("projectId"):
            found.append(
                DetectionResult(
                    ProviderType.VERCEL,
                    Confidence.HIGH,
                    "legacy-config",
                    ["Configuration uses the legacy top-level projectId"],
                )
            )

        provider = self._parse(self.environ.get("DOORMAN_PROVIDER")) if self.environ.get("DOORMAN_PROVIDER") else None
        if provider:
            found.append(
                DetectionResult(provider, Confidence.HIGH, "environment", [f"DOORMAN_PROVIDER is '{provider.value}'"])
            )

        if self.environ.get("CLOUDFLARE_ZONE_ID"):
            reasons = ["CLOUDFLARE_ZONE_ID is set"]
            if self.environ.get("CLOUDFLARE_API_TOKEN"):
                reasons.append("CLOUDFLARE_API_TOKEN is set")
            found.append(DetectionResult(ProviderType.CLOUDFLARE, Confidence.MEDIUM, "environment", reasons))
        if self.environ.get("VERCEL_PROJECT_ID"):
            reasons = ["VERCEL_PROJECT_ID is set"]
            if self.environ.get("VERCEL_TOKEN"):
                reasons.append("VERCEL_TOKEN is set")
            found.append(DetectionResult(ProviderType.VERCEL, Confidence.MEDIUM, "environment", reasons))

        return found

    def detect(
        self,
        config: Mapping[str, Any] | None = None,
        explicit: str | ProviderType | None = None,
    ) -> DetectionResult:
        """Return the highest-priority signal, or an empty low-confidence result."""
        found = self.detect_all(config, explicit)
        if found:
            return found[0]
        return DetectionResult(None, Confidence.LOW, "none", ["No provider signals found"])

    def resolve(
        self,
        config: Mapping[str, Any] | None = None,
        explicit: str | ProviderType | None = None,
        prompt: Prompt | None = None,
    ) -> DetectionResult:
        """Detect a provider, falling back to a prompt and then the default."""
        result = self.detect(config, explicit)
        if result.provider is not None:
            return result

        if prompt is not None:
            chosen = prompt(list(ProviderType))
            if chosen is not None:
                return DetectionResult(
                    ProviderType(chosen), Confidence.HIGH, "prompt", ["Provider was chosen interactively"]
                )

        logger.warning("No provider detected, defaulting to %s", PROVIDER_DISPLAY_NAMES[self.DEFAULT_PROVIDER])
        return DetectionResult(
            self.DEFAULT_PROVIDER,
            Confidence.LOW,
            "default",
            [f"No provider detected, defaulting to {PROVIDER_DISPLAY_NAMES[self.DEFAULT_PROVIDER]}"],
        )


def create_offline_service(provider: ProviderType | str) -> BaseFirewallService:
    """Service for checks that never contact the provider (validation, health)."""
    key = ProviderType(provider)
    if key == ProviderType.CLOUDFLARE:
        return CloudflareFirewallService(CloudflareClient(api_token="", zone_id=""))
    return VercelFirewallService(VercelClient(token="", project_id=""))
