"""Local configuration schema versions and migration."""

from typing import Any

from doorman.core.models import (
    CURRENT_SCHEMA_VERSION,
    LEGACY_SCHEMA_VERSION,
    ConfigMetadata,
    ProvidersSection,
    ProviderType,
    UnifiedConfig,
    VercelSection,
    now_iso,
)
from doorman.errors import ConfigurationError
from doorman.utils.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_VERSIONS = (LEGACY_SCHEMA_VERSION, CURRENT_SCHEMA_VERSION)
LEGACY_RULE_KEYS = ("conditionGroup", "active")


def _looks_legacy(raw: dict[str, Any]) -> bool:
    if "projectId" in raw or "teamId" in raw:
        return True
    rules = raw.get("rules") or []
    return any(isinstance(r, dict) and any(k in r for k in LEGACY_RULE_KEYS) for r in rules)


def detect_schema_version(raw: dict[str, Any]) -> str:
    """Return the schema version of a raw config.

    Version 1 files carry a numeric remote ``version`` and Vercel-native
    rules; version 2 files carry the string ``"2.0"``.

    Raises:
        ConfigurationError: If the version tag is not recognized.
    """
    version = raw.get("version")
    if isinstance(version, str):
        if version not in SUPPORTED_VERSIONS:
            raise ConfigurationError(
                f"Unsupported configuration schema version '{version}'",
                f"Supported versions: {', '.join(SUPPORTED_VERSIONS)}",
            )
        return version
    if version is None and not _looks_legacy(raw):
        return CURRENT_SCHEMA_VERSION
    return LEGACY_SCHEMA_VERSION


def is_compatible_version(version: str) -> bool:
    """Whether this release can read the given schema version."""
    return version in SUPPORTED_VERSIONS


def needs_migration(raw: dict[str, Any]) -> bool:
    """Whether a raw config is in the legacy shape."""
    return detect_schema_version(raw) == LEGACY_SCHEMA_VERSION


def migrate_v1_to_v2(raw: dict[str, Any]) -> dict[str, Any]:
    """Convert a legacy Vercel-shaped config into the unified shape.

    Args:
        raw: Legacy config with top-level projectId/teamId, numeric
            version and Vercel-native rules and IPs.

    Returns:
        Unified config as a JSON-ready mapping.
    """
    from doorman.translation.vercel import VercelTranslator

    translator = VercelTranslator()
    rules = []
    for native in raw.get("rules") or []:
        translated = translator.to_unified(native)
        translator.log_warnings(translated.warnings)
        rules.append(translated.value)
    ips = [translator.ip_to_unified(native).value for native in raw.get("ips") or []]

    providers = None
    if raw.get("projectId") or raw.get("teamId"):
        providers = ProvidersSection(
            vercel=VercelSection(project_id=raw.get("projectId"), team_id=raw.get("teamId"))
        )

    legacy_version = raw.get("version")
    config = UnifiedConfig(
        schema_=raw.get("$schema"),
        version=CURRENT_SCHEMA_VERSION,
        provider=ProviderType.VERCEL,
        providers=providers,
        rules=rules,
        ips=ips,
        metadata=ConfigMetadata(
            version=legacy_version if isinstance(legacy_version, int) else None,
            updated_at=raw.get("updatedAt"),
            migrated_from=LEGACY_SCHEMA_VERSION,
            migrated_at=now_iso(),
        ),
    )
    logger.info("Migrated configuration from schema %s to %s", LEGACY_SCHEMA_VERSION, CURRENT_SCHEMA_VERSION)
    return config.to_dict()


def auto_migrate(raw: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Migrate a raw config to the current schema when needed.

    Returns:
        The (possibly migrated) mapping and whether a migration happened.
    """
    if needs_migration(raw):
        return migrate_v1_to_v2(raw), True
    return raw, False
