"""Local configuration file storage with snapshot and restore."""

import copy
import json
from pathlib import Path
from typing import Any

from doorman.core.migration import auto_migrate
from doorman.core.models import IdRepair, UnifiedConfig
from doorman.core.validation import validate_config_data
from doorman.errors import ConfigurationError, ConfigValidationError
from doorman.utils.logging import get_logger

logger = get_logger(__name__)


class ConfigStore:
    """Reads and writes the local JSON rules configuration."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load_raw(self) -> dict[str, Any]:
        """Read the file as decoded JSON.

        Raises:
            ConfigurationError: If the file is missing or not valid JSON.
        """
        if not self.path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self.path}",
                "Create it or pass --config with the right path.",
            )
        try:
            with open(self.path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Failed to parse {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.path} must contain a JSON object")
        return data

    def load(self) -> UnifiedConfig:
        """Load, migrate and validate the configuration.

        Raises:
            ConfigValidationError: With every violated constraint.
        """
        raw, migrated = auto_migrate(self.load_raw())
        if migrated:
            logger.info("Configuration %s uses the legacy schema; migrated in memory", self.path)
        config, result = validate_config_data(raw)
        if config is None or not result.valid:
            raise ConfigValidationError(result.errors)
        for warning in result.warnings:
            logger.warning("%s: %s", warning.path, warning.message)
        return config

    def save(self, config: UnifiedConfig) -> None:
        """Write the configuration as formatted JSON."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(config.to_dict(), f, indent=2)
            f.write("\n")
        logger.debug("Saved configuration to %s", self.path)

    def snapshot(self) -> dict[str, Any] | None:
        """Deep copy of the current file contents, None if absent."""
        if not self.path.exists():
            return None
        return copy.deepcopy(self.load_raw())

    def restore(self, snapshot: dict[str, Any] | None) -> None:
        """Put the file back to a previous snapshot."""
        if snapshot is None:
            if self.path.exists():
                self.path.unlink()
            return
        with open(self.path, "w") as f:
            json.dump(snapshot, f, indent=2)
            f.write("\n")
        logger.info("Restored %s to its pre-sync state", self.path)


def apply_id_repairs(config: UnifiedConfig, repairs: list[IdRepair]) -> UnifiedConfig:
    """Return a copy of config with rule ids rewritten per the repairs.

    A repair applies to a rule whose id equals ``old_id``, or to a rule
    without an id whose name matches when ``old_id`` is empty.
    """
    rules = []
    for rule in config.rules:
        current = rule.id or ""
        repair = next(
            (
                r
                for r in repairs
                if (r.old_id and r.old_id == current)
                or (not r.old_id and not current and r.name == rule.name)
            ),
            None,
        )
        rules.append(rule.model_copy(update={"id": repair.new_id}) if repair else rule)
    return config.model_copy(update={"rules": rules})
