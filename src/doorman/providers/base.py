"""Shared provider service contract and sync algorithm."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from doorman.core.diff import build_change_set
from doorman.core.health import HealthReport, assess
from doorman.core.models import (
    ChangeSet,
    FeatureSet,
    HealthScore,
    IdRepair,
    IssueSeverity,
    Mutation,
    ProviderType,
    SyncOptions,
    SyncResult,
    UnifiedConfig,
    UnifiedIPRule,
    UnifiedRule,
    ValidationIssue,
    ValidationResult,
)
from doorman.core.validation import validate_config
from doorman.errors import DoormanError, SyncError, TranslationError
from doorman.translation.base import RuleTranslator
from doorman.translation.compatibility import CompatibilityMatrix
from doorman.utils.http import BaseHttpClient
from doorman.utils.logging import get_logger
from doorman.utils.naming import canonical_rule_id
from doorman.utils.retry import retry_async

logger = get_logger(__name__)

PROVIDER_DISPLAY_NAMES = {
    ProviderType.VERCEL: "Vercel Firewall",
    ProviderType.CLOUDFLARE: "Cloudflare WAF",
}


class BaseFirewallService(ABC):
    """Composes a client, a translator and the diff engine for one provider.

    Subclasses implement remote reads and the individual mutations. The
    diffing, ordering, retry policy and identifier repair live here.
    """

    provider: ProviderType

    def __init__(
        self,
        client: BaseHttpClient,
        translator: RuleTranslator,
        matrix: CompatibilityMatrix | None = None,
    ) -> None:
        self.client = client
        self.translator = translator
        self.matrix = matrix or translator.matrix

    @property
    def display_name(self) -> str:
        return PROVIDER_DISPLAY_NAMES[self.provider]

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "BaseFirewallService":
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.aclose()

    @abstractmethod
    async def fetch_config(self, version: int | None = None) -> UnifiedConfig:
        """Fetch remote state and translate it to the unified model.

        Args:
            version: Historical version to fetch, where supported.
        """
        pass

    @abstractmethod
    async def verify_credentials(self) -> bool:
        """Check that the configured credentials can reach the provider."""
        pass

    @abstractmethod
    async def _add_rule(self, rule: UnifiedRule) -> None:
        pass

    @abstractmethod
    async def _update_rule(self, rule: UnifiedRule) -> None:
        pass

    @abstractmethod
    async def _delete_rule(self, rule: UnifiedRule) -> None:
        pass

    @abstractmethod
    async def _add_ip(self, rule: UnifiedIPRule) -> None:
        pass

    @abstractmethod
    async def _update_ip(self, rule: UnifiedIPRule) -> None:
        pass

    @abstractmethod
    async def _delete_ip(self, rule: UnifiedIPRule) -> None:
        pass

    async def _before_mutations(self, changes: ChangeSet) -> None:
        """Hook run once before the first mutation of a sync."""
        pass

    def get_supported_features(self) -> FeatureSet:
        return self.matrix.feature_set(self.provider)

    def normalize_config(self, config: UnifiedConfig) -> UnifiedConfig:
        """Return local intent as this provider would store it.

        Raises:
            TranslationError: If a rule uses a construct the provider lacks.
        """
        warnings: list[str] = []
        rules = []
        for rule in config.rules:
            normalized = self.translator.normalize(rule)
            warnings.extend(normalized.warnings)
            rules.append(normalized.value)
        ips = []
        for ip_rule in config.ips:
            normalized_ip = self.translator.normalize_ip(ip_rule)
            warnings.extend(normalized_ip.warnings)
            ips.append(normalized_ip.value)
        self.translator.log_warnings(warnings)
        return config.model_copy(update={"rules": rules, "ips": ips})

    async def get_changes(self, local: UnifiedConfig) -> ChangeSet:
        """Diff local intent against the current remote state."""
        remote = await self.fetch_config()
        changes = build_change_set(self.normalize_config(local), remote)
        logger.debug(
            "%s changes: %d rule add, %d rule update, %d rule delete, %d ip add, %d ip update, %d ip delete",
            self.display_name,
            len(changes.rules_to_add),
            len(changes.rules_to_update),
            len(changes.rules_to_delete),
            len(changes.ips_to_add),
            len(changes.ips_to_update),
            len(changes.ips_to_delete),
        )
        return changes

    async def sync_rules(
        self,
        local: UnifiedConfig,
        options: SyncOptions | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> SyncResult:
        """Apply local intent to the remote: deletes, then adds, then updates.

        Args:
            local: Desired configuration.
            options: Dry-run and retry settings.
            sleep: Optional sleep used between mutation retries.

        Returns:
            Counts, the mutation log, the new remote version and any
            identifier repairs.

        Raises:
            SyncError: If a mutation fails after its retries; carries the
                mutations already applied.
        """
        options = options or SyncOptions()
        changes = await self.get_changes(local)

        if options.dry_run:
            logger.info("Dry run: %d change(s) would be applied to %s", changes.total, self.display_name)
            return SyncResult(
                added=len(changes.rules_to_add),
                updated=len(changes.rules_to_update),
                deleted=len(changes.rules_to_delete),
                ips_added=len(changes.ips_to_add),
                ips_updated=len(changes.ips_to_update),
                ips_deleted=len(changes.ips_to_delete),
                dry_run=True,
                version=changes.version,
                changes=changes,
            )

        result = SyncResult(version=changes.version, changes=changes)
        if changes.has_changes:
            await self._before_mutations(changes)

        retry_kwargs: dict[str, Any] = {
            "max_attempts": options.max_attempts,
            "delay": options.retry_delay,
        }
        if sleep is not None:
            retry_kwargs["sleep"] = sleep

        steps: list[tuple[str, str, list[Any], Callable[[Any], Awaitable[None]], str]] = [
            ("delete", "rule", changes.rules_to_delete, self._delete_rule, "deleted"),
            ("delete", "ip", changes.ips_to_delete, self._delete_ip, "ips_deleted"),
            ("add", "rule", changes.rules_to_add, self._add_rule, "added"),
            ("add", "ip", changes.ips_to_add, self._add_ip, "ips_added"),
            ("update", "rule", changes.rules_to_update, self._update_rule, "updated"),
            ("update", "ip", changes.ips_to_update, self._update_ip, "ips_updated"),
        ]
        for operation, entity, items, apply, counter in steps:
            for item in items:
                name = item.name if entity == "rule" else item.ip
                try:
                    await retry_async(
                        lambda item=item, apply=apply: apply(item),
                        description=f"{operation} {entity} '{name}'",
                        **retry_kwargs,
                    )
                except Exception as e:
                    cause = e.message if isinstance(e, DoormanError) else str(e)
                    raise SyncError(
                        f"Failed to {operation} {entity} '{name}' on {self.display_name}: {cause}",
                        mutations=result.mutations,
                    ) from e
                result.mutations.append(
                    Mutation(operation=operation, entity=entity, name=name, remote_id=item.id)
                )
                setattr(result, counter, getattr(result, counter) + 1)

        remote = await self.fetch_config()
        result.version = remote.metadata.version
        result.id_repairs = self.compute_id_repairs(local, remote)

        logger.info(
            "%s sync complete: %d added, %d updated, %d deleted rules; %d added, %d updated, %d deleted IPs",
            self.display_name,
            result.added,
            result.updated,
            result.deleted,
            result.ips_added,
            result.ips_updated,
            result.ips_deleted,
        )
        return result

    def compute_id_repairs(self, local: UnifiedConfig, remote: UnifiedConfig) -> list[IdRepair]:
        """List local rule ids that differ from the ids the remote now uses.

        The remote id of the rule with the same name wins; without one the
        canonical form derived from the name is used.
        """
        remote_ids = {rule.name: rule.id for rule in remote.rules if rule.id}
        repairs = []
        for rule in local.rules:
            new_id = remote_ids.get(rule.name) or canonical_rule_id(rule.name)
            old_id = rule.id or ""
            if old_id != new_id:
                repairs.append(IdRepair(old_id=old_id, new_id=new_id, name=rule.name))
        return repairs

    def validate_config(self, config: UnifiedConfig) -> ValidationResult:
        """Structural checks plus this provider's constraints."""
        result = validate_config(config)
        issues: list[ValidationIssue] = []

        if config.provider is not None and config.provider != self.provider:
            issues.append(
                ValidationIssue(
                    path="provider",
                    message=(
                        f"Configuration targets '{config.provider.value}' "
                        f"but the active provider is '{self.provider.value}'"
                    ),
                    code="provider_mismatch",
                )
            )

        for index, rule in enumerate(config.rules):
            try:
                translated = self.translator.to_provider(rule)
            except TranslationError as e:
                issues.append(ValidationIssue(path=f"rules[{index}]", message=e.message, code="unsupported"))
                continue
            issues.extend(
                ValidationIssue(
                    path=f"rules[{index}]",
                    message=warning,
                    code="lossy_translation",
                    severity=IssueSeverity.WARNING,
                )
                for warning in translated.warnings
            )

        for index, ip_rule in enumerate(config.ips):
            try:
                self.translator.ip_to_provider(ip_rule)
            except TranslationError as e:
                issues.append(ValidationIssue(path=f"ips[{index}]", message=e.message, code="unsupported"))

        issues.extend(self._provider_checks(config))
        return result.merge(ValidationResult(issues=issues))

    def _provider_checks(self, config: UnifiedConfig) -> list[ValidationIssue]:
        """Provider-specific validation; extended by subclasses."""
        return []

    def get_health_score(self, config: UnifiedConfig) -> HealthScore:
        """Heuristic health score with provider-specific extras."""
        report = assess(config)
        self._assess_provider_health(config, report)
        return report.build()

    def _assess_provider_health(self, config: UnifiedConfig, report: HealthReport) -> None:
        pass
