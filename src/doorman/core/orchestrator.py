"""Sync orchestrator.

Coordinates the full synchronization workflow:
1. Load and validate the local configuration
2. Snapshot the local file
3. Apply changes remotely (delete, add, update)
4. Re-fetch the remote state and check it matches intent
5. Roll back local state on mismatch, or record the new version
6. Offer identifier repairs
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from doorman.core.diff import build_change_set, rules_equal
from doorman.core.models import (
    ChangeSet,
    ConfigMetadata,
    IdRepair,
    SyncOptions,
    SyncResult,
    UnifiedConfig,
    now_iso,
)
from doorman.core.storage import ConfigStore, apply_id_repairs
from doorman.errors import ConfigValidationError, SyncValidationError
from doorman.utils.logging import get_logger

if TYPE_CHECKING:
    from doorman.providers.base import BaseFirewallService

logger = get_logger(__name__)

ConfirmRepairs = Callable[[list[IdRepair]], bool]
ConfirmDownload = Callable[[UnifiedConfig], bool]


@dataclass
class Downloaded:
    """Result of a download."""

    config: UnifiedConfig
    written: bool = False


@dataclass
class OrchestratedSync:
    """Result of an orchestrated sync."""

    result: SyncResult
    changes: ChangeSet
    config: UnifiedConfig
    id_repairs: list[IdRepair] = field(default_factory=list)
    repairs_applied: bool = False

    @property
    def summary(self) -> str:
        if self.result.dry_run:
            return f"Dry run: {self.result.total} change(s) would be applied"
        if not self.result.total:
            return "Remote configuration already up to date"
        return (
            f"Applied {self.result.total} change(s): "
            f"{self.result.added} added, {self.result.updated} updated, {self.result.deleted} deleted rules; "
            f"{self.result.ips_added} added, {self.result.ips_updated} updated, {self.result.ips_deleted} deleted IPs"
        )


class SyncOrchestrator:
    """Drives a provider service against the local configuration file."""

    def __init__(self, service: BaseFirewallService, store: ConfigStore) -> None:
        self.service = service
        self.store = store

    def load(self) -> UnifiedConfig:
        """Load the local config and validate it for the active provider.

        Raises:
            ConfigValidationError: With every violated constraint.
        """
        config = self.store.load()
        validation = self.service.validate_config(config)
        if not validation.valid:
            raise ConfigValidationError(validation.errors)
        for warning in validation.warnings:
            logger.warning("%s: %s", warning.path, warning.message)
        return config

    async def plan(self) -> tuple[UnifiedConfig, ChangeSet]:
        """Validate the local config and compute pending changes."""
        config = self.load()
        return config, await self.service.get_changes(config)

    async def sync(
        self,
        options: SyncOptions | None = None,
        confirm_repairs: ConfirmRepairs | None = None,
    ) -> OrchestratedSync:
        """Execute the full sync workflow.

        Args:
            options: Dry-run and retry settings.
            confirm_repairs: Called with identifier repairs; returning True
                rewrites local ids. Without it repairs are only reported.

        Returns:
            OrchestratedSync with the outcome.

        Raises:
            ConfigValidationError: If the local config is invalid.
            SyncError: If a remote mutation fails; local state is untouched.
            SyncValidationError: If the remote state does not match intent
                after the sync; local state is restored.
        """
        options = options or SyncOptions()

        # Step 1: Load and validate
        local = self.load()

        # Step 2: Snapshot before any remote mutation
        snapshot = self.store.snapshot()

        # Step 3: Apply changes
        result = await self.service.sync_rules(local, options)
        changes = result.changes or ChangeSet()
        if result.dry_run:
            return OrchestratedSync(result=result, changes=changes, config=local)

        # Step 4: Check the remote now matches intent
        remote = await self.service.fetch_config()
        mismatches = self.verify_remote(local, remote)
        if mismatches:
            self.store.restore(snapshot)
            logger.error("Post-sync validation failed with %d mismatch(es)", len(mismatches))
            raise SyncValidationError(mismatches, rolled_back=True, mutations=result.mutations)

        # Step 5: Record the remote version
        timestamp = now_iso()
        metadata = local.metadata.model_copy(
            update={
                "version": remote.metadata.version,
                "updated_at": remote.metadata.updated_at or timestamp,
                "last_synced_at": timestamp,
            }
        )
        updated = local.model_copy(update={"metadata": metadata})

        # Step 6: Identifier repairs
        repairs_applied = False
        if result.id_repairs:
            for repair in result.id_repairs:
                logger.info(
                    "Rule '%s' id '%s' differs from remote id '%s'",
                    repair.name,
                    repair.old_id,
                    repair.new_id,
                )
            if confirm_repairs is not None and confirm_repairs(result.id_repairs):
                updated = apply_id_repairs(updated, result.id_repairs)
                repairs_applied = True

        self.store.save(updated)
        return OrchestratedSync(
            result=result,
            changes=changes,
            config=updated,
            id_repairs=result.id_repairs,
            repairs_applied=repairs_applied,
        )

    async def download(
        self,
        version: int | None = None,
        dry_run: bool = False,
        confirm: ConfirmDownload | None = None,
    ) -> Downloaded:
        """Replace the local rules with the remote state.

        Provider settings and creation time from an existing local file are
        kept; rules, IPs and the version marker come from the remote.

        Args:
            version: Historical remote version to fetch; current when None.
            dry_run: Return the downloaded config without writing it.
            confirm: Called with the downloaded config before writing;
                returning False leaves the local file alone.

        Returns:
            Downloaded with the config and whether it was written.

        Raises:
            ConfigValidationError: If an existing local file is invalid.
        """
        remote = await self.service.fetch_config(version)
        existing = self.store.load() if self.store.exists() else None

        timestamp = now_iso()
        config = UnifiedConfig(
            provider=self.service.provider,
            providers=(existing.providers if existing and existing.providers else remote.providers),
            rules=remote.rules,
            ips=remote.ips,
            metadata=ConfigMetadata(
                version=remote.metadata.version,
                updated_at=remote.metadata.updated_at,
                created_at=existing.metadata.created_at if existing else timestamp,
                last_synced_at=timestamp,
            ),
        )
        if existing is not None and existing.schema_:
            config.schema_ = existing.schema_

        if dry_run:
            logger.info("Dry run: %d rule(s) and %d IP rule(s) would be downloaded", len(remote.rules), len(remote.ips))
            return Downloaded(config=config)
        if confirm is not None and not confirm(config):
            logger.info("Download cancelled")
            return Downloaded(config=config)

        self.store.save(config)
        logger.info(
            "Downloaded %d rule(s) and %d IP rule(s) from %s into %s",
            len(remote.rules),
            len(remote.ips),
            self.service.display_name,
            self.store.path,
        )
        return Downloaded(config=config, written=True)

    def verify_remote(self, local: UnifiedConfig, remote: UnifiedConfig) -> list[str]:
        """Compare intended and actual remote state.

        Every local rule and IP must be present with matching content, and
        the remote must hold nothing else.

        Returns:
            Human-readable mismatches, empty when the states agree.
        """
        expected = self.service.normalize_config(local)
        mismatches: list[str] = []

        remote_rules = {rule.name: rule for rule in remote.rules}
        for rule in expected.rules:
            actual = remote_rules.get(rule.name)
            if actual is None:
                mismatches.append(f"Rule '{rule.name}' is missing remotely")
            elif not rules_equal(rule, actual):
                mismatches.append(f"Rule '{rule.name}' differs remotely")
        expected_names = {rule.name for rule in expected.rules}
        mismatches.extend(
            f"Unexpected remote rule '{rule.name}'" for rule in remote.rules if rule.name not in expected_names
        )

        ip_changes = build_change_set(
            expected.model_copy(update={"rules": []}),
            remote.model_copy(update={"rules": []}),
        )
        mismatches.extend(f"IP rule {ip.ip} is missing remotely" for ip in ip_changes.ips_to_add)
        mismatches.extend(f"IP rule {ip.ip} differs remotely" for ip in ip_changes.ips_to_update)
        mismatches.extend(f"Unexpected remote IP rule {ip.ip}" for ip in ip_changes.ips_to_delete)
        return mismatches
