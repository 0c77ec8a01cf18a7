"""Tests for the sync orchestrator."""

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from doorman.core.models import (
    ConfigMetadata,
    FieldType,
    IdRepair,
    ProviderType,
    SyncOptions,
    UnifiedAction,
    UnifiedCondition,
    UnifiedConfig,
    UnifiedIPRule,
    UnifiedRule,
)
from doorman.core.orchestrator import SyncOrchestrator
from doorman.core.storage import ConfigStore
from doorman.errors import ConfigValidationError, ProviderApiError, SyncError, SyncValidationError
from doorman.providers.base import BaseFirewallService
from doorman.translation.vercel import VercelTranslator
from doorman.utils.http import BaseHttpClient
from doorman.utils.naming import canonical_rule_id

REMOTE_UPDATED_AT = "2026-01-01T00:00:00Z"


class InMemoryService(BaseFirewallService):
    """Provider service backed by in-memory lists."""

    provider = ProviderType.VERCEL

    def __init__(self, rules: list[UnifiedRule] | None = None, ips: list[UnifiedIPRule] | None = None) -> None:
        super().__init__(BaseHttpClient("https://doorman.invalid"), VercelTranslator())
        self.rules = list(rules or [])
        self.ips = list(ips or [])
        self.version = 1
        self.fetches = 0
        self.fetched_versions: list[int | None] = []
        self.drop_adds = False
        self.fail_on: str | None = None
        self.on_mutation: Callable[[], Any] | None = None

    async def fetch_config(self, version: int | None = None) -> UnifiedConfig:
        self.fetches += 1
        self.fetched_versions.append(version)
        return UnifiedConfig(
            provider=self.provider,
            rules=list(self.rules),
            ips=list(self.ips),
            metadata=ConfigMetadata(version=self.version, updated_at=REMOTE_UPDATED_AT),
        )

    async def verify_credentials(self) -> bool:
        return True

    def _mutated(self, name: str) -> None:
        if self.fail_on == name:
            raise ProviderApiError("Memory", "rejected", status_code=400)
        if self.on_mutation is not None:
            self.on_mutation()
        self.version += 1

    async def _add_rule(self, rule: UnifiedRule) -> None:
        self._mutated(rule.name)
        if not self.drop_adds:
            self.rules.append(rule.model_copy(update={"id": canonical_rule_id(rule.name)}))

    async def _update_rule(self, rule: UnifiedRule) -> None:
        self._mutated(rule.name)
        self.rules = [rule if r.id == rule.id else r for r in self.rules]

    async def _delete_rule(self, rule: UnifiedRule) -> None:
        self._mutated(rule.name)
        self.rules = [r for r in self.rules if r.id != rule.id]

    async def _add_ip(self, rule: UnifiedIPRule) -> None:
        self._mutated(rule.ip)
        if not self.drop_adds:
            self.ips.append(rule.model_copy(update={"id": f"ip_{len(self.ips) + 1}"}))

    async def _update_ip(self, rule: UnifiedIPRule) -> None:
        self._mutated(rule.ip)
        self.ips = [rule if r.id == rule.id else r for r in self.ips]

    async def _delete_ip(self, rule: UnifiedIPRule) -> None:
        self._mutated(rule.ip)
        self.ips = [r for r in self.ips if r.id != rule.id]


def read_json(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text())


@pytest.fixture
def service() -> InMemoryService:
    """An empty in-memory remote."""
    return InMemoryService()


@pytest.fixture
def orchestrator(service: InMemoryService, config_file: Path) -> SyncOrchestrator:
    """Orchestrator over the sample config file."""
    return SyncOrchestrator(service, ConfigStore(config_file))


class TestLoadAndPlan:
    """Tests for load and plan."""

    def test_invalid_for_provider(self, temp_dir: Path) -> None:
        """Constructs the provider cannot express fail validation."""
        path = temp_dir / "rules.json"
        path.write_text(
            json.dumps(
                {
                    "version": "2.0",
                    "rules": [
                        {
                            "name": "Odd Port",
                            "conditions": [{"field": "port", "value": 8443}],
                            "action": {"type": "deny"},
                        }
                    ],
                }
            )
        )
        orchestrator = SyncOrchestrator(InMemoryService(), ConfigStore(path))

        with pytest.raises(ConfigValidationError) as exc_info:
            orchestrator.load()

        assert [i.path for i in exc_info.value.issues] == ["rules[0]"]

    @pytest.mark.asyncio
    async def test_plan(self, orchestrator: SyncOrchestrator) -> None:
        """Plan lists the pending changes without mutating."""
        config, changes = await orchestrator.plan()

        assert len(config.rules) == 2
        assert [r.name for r in changes.rules_to_add] == ["Login Rate Limit", "Block Admin"]
        assert [i.ip for i in changes.ips_to_add] == ["203.0.113.7"]
        assert changes.version == 1


class TestSync:
    """Tests for the full sync workflow."""

    @pytest.mark.asyncio
    async def test_applies_changes_and_records_version(
        self, orchestrator: SyncOrchestrator, service: InMemoryService, config_file: Path
    ) -> None:
        """A successful sync saves the new remote version and sync time."""
        outcome = await orchestrator.sync()

        assert (outcome.result.added, outcome.result.ips_added) == (2, 1)
        assert [r.name for r in service.rules] == ["Login Rate Limit", "Block Admin"]

        saved = read_json(config_file)
        assert saved["metadata"]["version"] == 4
        assert saved["metadata"]["updatedAt"] == REMOTE_UPDATED_AT
        assert saved["metadata"]["lastSyncedAt"]
        assert outcome.summary.startswith("Applied 3 change(s)")

    @pytest.mark.asyncio
    async def test_changes_are_the_ones_applied(
        self, orchestrator: SyncOrchestrator, service: InMemoryService
    ) -> None:
        """The returned change set is the one the mutations came from."""
        outcome = await orchestrator.sync()

        added = [m.name for m in outcome.result.mutations if m.operation == "add" and m.entity == "rule"]
        assert [r.name for r in outcome.changes.rules_to_add] == added
        assert [i.ip for i in outcome.changes.ips_to_add] == ["203.0.113.7"]
        # One fetch to plan, one for id repairs, one to verify.
        assert service.fetches == 3

    @pytest.mark.asyncio
    async def test_dry_run_changes(self, orchestrator: SyncOrchestrator, service: InMemoryService) -> None:
        """Dry runs return the planned change set from a single fetch."""
        outcome = await orchestrator.sync(SyncOptions(dry_run=True))

        assert outcome.changes.total == 3
        assert service.fetches == 1

    @pytest.mark.asyncio
    async def test_repairs_reported_but_not_applied(
        self, orchestrator: SyncOrchestrator, config_file: Path
    ) -> None:
        """Without confirmation ids are left alone."""
        outcome = await orchestrator.sync()

        assert outcome.id_repairs == [IdRepair(old_id="", new_id="rule_block_admin", name="Block Admin")]
        assert outcome.repairs_applied is False
        assert "id" not in read_json(config_file)["rules"][1]

    @pytest.mark.asyncio
    async def test_repairs_applied_when_confirmed(
        self, orchestrator: SyncOrchestrator, config_file: Path
    ) -> None:
        """Confirmed repairs rewrite local ids."""
        seen: list[list[IdRepair]] = []

        def confirm(repairs: list[IdRepair]) -> bool:
            seen.append(repairs)
            return True

        outcome = await orchestrator.sync(confirm_repairs=confirm)

        assert len(seen) == 1
        assert outcome.repairs_applied is True
        assert [r["id"] for r in read_json(config_file)["rules"]] == ["rule_login_rate_limit", "rule_block_admin"]

    @pytest.mark.asyncio
    async def test_second_sync_is_noop(self, orchestrator: SyncOrchestrator, service: InMemoryService) -> None:
        """Once in sync, nothing is applied."""
        await orchestrator.sync(confirm_repairs=lambda repairs: True)
        outcome = await orchestrator.sync()

        assert outcome.result.total == 0
        assert outcome.summary == "Remote configuration already up to date"
        assert service.version == 4

    @pytest.mark.asyncio
    async def test_dry_run(
        self, orchestrator: SyncOrchestrator, service: InMemoryService, config_file: Path, sample_config_data: dict
    ) -> None:
        """Dry runs touch neither the remote nor the local file."""
        outcome = await orchestrator.sync(SyncOptions(dry_run=True))

        assert outcome.result.dry_run is True
        assert outcome.summary == "Dry run: 3 change(s) would be applied"
        assert service.rules == [] and service.version == 1
        assert read_json(config_file) == sample_config_data

    @pytest.mark.asyncio
    async def test_rollback_on_mismatch(
        self, orchestrator: SyncOrchestrator, service: InMemoryService, config_file: Path, sample_config_data: dict
    ) -> None:
        """A remote that does not match intent restores the local file."""
        service.drop_adds = True
        service.on_mutation = lambda: config_file.write_text("{}")

        with pytest.raises(SyncValidationError) as exc_info:
            await orchestrator.sync()

        assert exc_info.value.rolled_back is True
        assert "Rule 'Block Admin' is missing remotely" in exc_info.value.mismatches
        assert "IP rule 203.0.113.7 is missing remotely" in exc_info.value.mismatches
        assert len(exc_info.value.mutations) == 3
        assert read_json(config_file) == sample_config_data

    @pytest.mark.asyncio
    async def test_mutation_failure(
        self, orchestrator: SyncOrchestrator, service: InMemoryService, config_file: Path, sample_config_data: dict
    ) -> None:
        """A failed mutation leaves the local file untouched."""
        service.fail_on = "Block Admin"

        with pytest.raises(SyncError) as exc_info:
            await orchestrator.sync(SyncOptions(max_attempts=1))

        assert [m.name for m in exc_info.value.mutations] == ["Login Rate Limit"]
        assert read_json(config_file) == sample_config_data


class TestVerifyRemote:
    """Tests for verify_remote."""

    def test_reports_every_mismatch(self, orchestrator: SyncOrchestrator) -> None:
        """Missing, differing and unexpected entries are all listed."""
        deny = UnifiedAction(type="deny")
        local = UnifiedConfig(
            rules=[
                UnifiedRule(name="Keep", conditions=[UnifiedCondition(field=FieldType.PATH, value="/a")], action=deny),
                UnifiedRule(name="Gone", conditions=[UnifiedCondition(field=FieldType.PATH, value="/b")], action=deny),
            ],
            ips=[UnifiedIPRule(ip="192.0.2.1")],
        )
        remote = UnifiedConfig(
            rules=[
                UnifiedRule(
                    id="r1", name="Keep", conditions=[UnifiedCondition(field=FieldType.PATH, value="/z")], action=deny
                ),
                UnifiedRule(
                    id="r2", name="Extra", conditions=[UnifiedCondition(field=FieldType.PATH, value="/c")], action=deny
                ),
            ],
            ips=[UnifiedIPRule(id="i1", ip="198.51.100.1")],
        )

        assert orchestrator.verify_remote(local, remote) == [
            "Rule 'Keep' differs remotely",
            "Rule 'Gone' is missing remotely",
            "Unexpected remote rule 'Extra'",
            "IP rule 192.0.2.1 is missing remotely",
            "Unexpected remote IP rule 198.51.100.1",
        ]

    def test_matching_states(self, orchestrator: SyncOrchestrator) -> None:
        """Identical content with different ids is a match."""
        local = UnifiedConfig(ips=[UnifiedIPRule(ip="192.0.2.1", notes="x")])
        remote = UnifiedConfig(ips=[UnifiedIPRule(id="ip_1", ip="192.0.2.1", notes="x")])
        assert orchestrator.verify_remote(local, remote) == []


class TestDownload:
    """Tests for download."""

    def _remote(self) -> InMemoryService:
        deny = UnifiedAction(type="deny")
        service = InMemoryService(
            rules=[
                UnifiedRule(
                    id="rule_block_bots",
                    name="Block Bots",
                    conditions=[UnifiedCondition(field=FieldType.USER_AGENT, operator="contains", value="curl")],
                    action=deny,
                )
            ],
            ips=[UnifiedIPRule(id="ip_1", ip="198.51.100.1")],
        )
        service.version = 9
        return service

    @pytest.mark.asyncio
    async def test_replaces_rules_and_keeps_provider_settings(self, config_file: Path) -> None:
        """Remote rules replace local ones; the providers section survives."""
        service = self._remote()
        orchestrator = SyncOrchestrator(service, ConfigStore(config_file))

        result = await orchestrator.download()

        assert result.written is True
        saved = read_json(config_file)
        assert [r["name"] for r in saved["rules"]] == ["Block Bots"]
        assert [i["ip"] for i in saved["ips"]] == ["198.51.100.1"]
        assert saved["providers"] == {"vercel": {"projectId": "prj_123", "teamId": "team_456"}}
        assert saved["metadata"]["version"] == 9
        assert saved["metadata"]["updatedAt"] == REMOTE_UPDATED_AT
        assert saved["metadata"]["lastSyncedAt"]

    @pytest.mark.asyncio
    async def test_historical_version(self, config_file: Path) -> None:
        """The requested version is passed to the provider."""
        service = self._remote()
        await SyncOrchestrator(service, ConfigStore(config_file)).download(version=3)
        assert service.fetched_versions == [3]

    @pytest.mark.asyncio
    async def test_creates_missing_file(self, temp_dir: Path) -> None:
        """Downloading without a local file creates one."""
        store = ConfigStore(temp_dir / "rules.json")

        await SyncOrchestrator(self._remote(), store).download()

        loaded = store.load()
        assert loaded.provider == ProviderType.VERCEL
        assert loaded.metadata.created_at
        assert [r.id for r in loaded.rules] == ["rule_block_bots"]

    @pytest.mark.asyncio
    async def test_dry_run_and_declined(self, config_file: Path, sample_config_data: dict) -> None:
        """Neither a dry run nor a declined confirmation writes the file."""
        orchestrator = SyncOrchestrator(self._remote(), ConfigStore(config_file))

        preview = await orchestrator.download(dry_run=True)
        declined = await orchestrator.download(confirm=lambda config: False)

        assert [r.name for r in preview.config.rules] == ["Block Bots"]
        assert preview.written is False and declined.written is False
        assert read_json(config_file) == sample_config_data

    @pytest.mark.asyncio
    async def test_download_then_sync_is_noop(self, temp_dir: Path) -> None:
        """A freshly downloaded config is already in sync."""
        service = self._remote()
        orchestrator = SyncOrchestrator(service, ConfigStore(temp_dir / "rules.json"))

        await orchestrator.download()
        outcome = await orchestrator.sync()

        assert outcome.result.total == 0
