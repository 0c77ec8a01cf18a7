"""Tests for the provider registry and provider detection."""

import httpx
import pytest

from doorman.config import DoormanSettings
from doorman.core.models import ProviderType
from doorman.errors import MissingCredentialsError, ProviderNotRegisteredError
from doorman.providers.cloudflare import CloudflareFirewallService
from doorman.providers.registry import (
    Confidence,
    ProviderDetector,
    ProviderRegistry,
    create_cloudflare_service,
    create_default_registry,
    create_offline_service,
    create_vercel_service,
)
from doorman.providers.vercel import VercelFirewallService


@pytest.fixture
def settings() -> DoormanSettings:
    """Settings with credentials for both providers."""
    return DoormanSettings(
        vercel={"token": "vt", "project_id": "prj_env"},
        cloudflare={"api_token": "ct", "zone_id": "zone_env"},
        http={"timeout": 5, "max_retries": 1, "rate_limit_warning_threshold": 3},
    )


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_lazy_and_cached(self) -> None:
        """Factories run once, on first use."""
        calls: list[int] = []

        def factory() -> VercelFirewallService:
            calls.append(1)
            return create_offline_service(ProviderType.VERCEL)  # type: ignore[return-value]

        registry = ProviderRegistry()
        registry.register("vercel", factory)
        assert calls == []

        first = registry.get(ProviderType.VERCEL)
        second = registry.get("vercel")

        assert first is second
        assert calls == [1]

    def test_register_replaces_instance(self) -> None:
        """Re-registering drops the cached service."""
        registry = ProviderRegistry()
        registry.register("vercel", lambda: create_offline_service("vercel"))
        first = registry.get("vercel")
        registry.register("vercel", lambda: create_offline_service("vercel"))
        assert registry.get("vercel") is not first

    def test_register_instance(self) -> None:
        """Ready-made services are returned as-is."""
        service = create_offline_service("cloudflare")
        registry = ProviderRegistry()
        registry.register_instance("cloudflare", service)
        assert registry.get("cloudflare") is service
        assert registry.has("cloudflare")

    def test_not_registered(self) -> None:
        """Unknown and unregistered providers raise."""
        registry = ProviderRegistry()
        registry.register("vercel", lambda: create_offline_service("vercel"))

        with pytest.raises(ProviderNotRegisteredError, match="Available providers: vercel"):
            registry.get("cloudflare")
        with pytest.raises(ProviderNotRegisteredError):
            registry.get("akamai")
        assert not registry.has("akamai")

    def test_unregister_and_clear(self) -> None:
        """Providers can be removed."""
        registry = ProviderRegistry()
        registry.register("vercel", lambda: create_offline_service("vercel"))
        registry.register("cloudflare", lambda: create_offline_service("cloudflare"))

        registry.unregister("vercel")
        assert registry.available_providers() == ["cloudflare"]
        registry.clear()
        assert registry.available_providers() == []

    @pytest.mark.asyncio
    async def test_aclose(self, settings: DoormanSettings) -> None:
        """Closing the registry closes instantiated services."""
        registry = create_default_registry(settings)
        service = registry.get("vercel")
        _ = service.client.client
        await registry.aclose()
        assert service.client._client is None


class TestFactories:
    """Tests for the built-in service factories."""

    def test_vercel_from_settings(self, settings: DoormanSettings) -> None:
        """Settings supply credentials and transport options."""
        service = create_vercel_service(settings)

        assert service.client.token == "vt"
        assert service.client.project_id == "prj_env"
        assert service.client.timeout == 5
        assert service.client.max_retries == 1
        assert service.client.RATE_LIMIT_WARNING_THRESHOLD == 3

    def test_config_section_wins(self, settings: DoormanSettings) -> None:
        """Identifiers in the config's providers section beat settings."""
        config = {"providers": {"vercel": {"projectId": "prj_cfg", "teamId": "team_cfg"}}}
        service = create_vercel_service(settings, config)
        assert (service.client.project_id, service.client.team_id) == ("prj_cfg", "team_cfg")

    def test_legacy_project_id(self, settings: DoormanSettings) -> None:
        """Legacy configs carry the project at the top level."""
        service = create_vercel_service(settings, {"projectId": "prj_legacy"})
        assert service.client.project_id == "prj_legacy"

    def test_cloudflare_account_enables_lists(self, settings: DoormanSettings) -> None:
        """An account id switches IP rules to list mode."""
        config = {"providers": {"cloudflare": {"zoneId": "zone_cfg", "accountId": "acct_1"}}}
        service = create_cloudflare_service(settings, config)

        assert isinstance(service, CloudflareFirewallService)
        assert service.client.zone_id == "zone_cfg"
        assert service.use_lists is True

    @pytest.mark.parametrize(
        "provider,settings_data,variable",
        [
            ("vercel", {}, "VERCEL_TOKEN"),
            ("vercel", {"vercel": {"token": "vt"}}, "VERCEL_PROJECT_ID"),
            ("cloudflare", {}, "CLOUDFLARE_API_TOKEN"),
            ("cloudflare", {"cloudflare": {"api_token": "ct"}}, "CLOUDFLARE_ZONE_ID"),
        ],
    )
    def test_missing_credentials(self, provider: str, settings_data: dict, variable: str) -> None:
        """Each missing credential is named."""
        registry = create_default_registry(DoormanSettings(**settings_data))
        with pytest.raises(MissingCredentialsError) as exc_info:
            registry.get(provider)
        assert exc_info.value.variable == variable

    @pytest.mark.asyncio
    async def test_transport_is_used(self, settings: DoormanSettings) -> None:
        """A custom transport reaches the client."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"active": None})

        registry = create_default_registry(settings, transport=httpx.MockTransport(handler))
        service = registry.get("vercel")
        try:
            assert await service.verify_credentials() is True
        finally:
            await registry.aclose()

        assert seen[0].url.host == "api.vercel.com"

    def test_offline_service(self) -> None:
        """Offline services need no credentials."""
        assert isinstance(create_offline_service("cloudflare"), CloudflareFirewallService)
        assert isinstance(create_offline_service(ProviderType.VERCEL), VercelFirewallService)


class TestProviderDetector:
    """Tests for ProviderDetector."""

    def test_explicit_wins(self) -> None:
        """An explicit directive beats everything else."""
        detector = ProviderDetector(environ={"DOORMAN_PROVIDER": "vercel"})
        result = detector.detect({"provider": "vercel"}, explicit="Cloudflare")

        assert result.provider == ProviderType.CLOUDFLARE
        assert (result.source, result.confidence) == ("explicit", Confidence.HIGH)

    def test_config_provider_field(self) -> None:
        """The config's provider field comes next."""
        result = ProviderDetector(environ={}).detect({"provider": "cloudflare"})
        assert (result.provider, result.source) == (ProviderType.CLOUDFLARE, "config")

    def test_providers_section(self) -> None:
        """A Cloudflare zone beats a Vercel project in the providers section."""
        config = {"providers": {"vercel": {"projectId": "prj"}, "cloudflare": {"zoneId": "zone"}}}
        found = ProviderDetector(environ={}).detect_all(config)

        assert [(r.provider, r.source) for r in found] == [
            (ProviderType.CLOUDFLARE, "providers-section"),
            (ProviderType.VERCEL, "providers-section"),
        ]

    def test_legacy_config(self) -> None:
        """Legacy top-level projectId means Vercel."""
        result = ProviderDetector(environ={}).detect({"projectId": "prj"})
        assert (result.provider, result.source) == (ProviderType.VERCEL, "legacy-config")

    def test_environment(self) -> None:
        """DOORMAN_PROVIDER is high confidence; credentials are medium."""
        detector = ProviderDetector(
            environ={"CLOUDFLARE_ZONE_ID": "zone", "CLOUDFLARE_API_TOKEN": "t", "VERCEL_PROJECT_ID": "prj"}
        )
        found = detector.detect_all({})

        assert [(r.provider, r.confidence) for r in found] == [
            (ProviderType.CLOUDFLARE, Confidence.MEDIUM),
            (ProviderType.VERCEL, Confidence.MEDIUM),
        ]
        assert found[0].reasons == ["CLOUDFLARE_ZONE_ID is set", "CLOUDFLARE_API_TOKEN is set"]

        directed = ProviderDetector(environ={"DOORMAN_PROVIDER": "vercel", "CLOUDFLARE_ZONE_ID": "zone"})
        assert directed.detect({}).confidence == Confidence.HIGH

    def test_nothing_found(self) -> None:
        """Without signals detection reports no provider."""
        result = ProviderDetector(environ={}).detect({"provider": "akamai"})
        assert result.provider is None
        assert (result.source, result.confidence) == ("none", Confidence.LOW)
        assert result.display_name == "unknown"

    def test_resolve_prompts(self) -> None:
        """resolve asks before defaulting."""
        offered: list[list[ProviderType]] = []

        def prompt(choices: list[ProviderType]) -> ProviderType | None:
            offered.append(choices)
            return ProviderType.CLOUDFLARE

        result = ProviderDetector(environ={}).resolve({}, prompt=prompt)

        assert offered == [[ProviderType.VERCEL, ProviderType.CLOUDFLARE]]
        assert (result.provider, result.source) == (ProviderType.CLOUDFLARE, "prompt")

    def test_resolve_defaults_to_vercel(self, caplog: pytest.LogCaptureFixture) -> None:
        """Without signals or an answer, Vercel is used with a warning."""
        with caplog.at_level("WARNING", logger="doorman.providers.registry"):
            result = ProviderDetector(environ={}).resolve({}, prompt=lambda choices: None)

        assert (result.provider, result.source, result.confidence) == (
            ProviderType.VERCEL,
            "default",
            Confidence.LOW,
        )
        assert result.display_name == "Vercel Firewall"
        assert any("defaulting to Vercel Firewall" in r.getMessage() for r in caplog.records)
