"""Timestamped configuration backups."""

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from doorman.core.migration import auto_migrate
from doorman.core.models import UnifiedConfig
from doorman.core.storage import ConfigStore
from doorman.core.validation import validate_config_data
from doorman.errors import ConfigurationError, ConfigValidationError
from doorman.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_BACKUP_DIR = Path("backups")
BACKUP_PREFIX = "firewall-backup"


@dataclass
class BackupInfo:
    """A backup file on disk."""

    name: str
    path: Path
    size: int
    created: datetime


class BackupStore:
    """Writes, lists and restores backups in a directory.

    Each backup is a JSON object with a ``backup`` section describing
    where it came from and a ``config`` section holding the unified
    configuration.
    """

    def __init__(
        self,
        directory: Path | str = DEFAULT_BACKUP_DIR,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.directory = Path(directory)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def create(self, config: UnifiedConfig, provider: str, source: str = "remote") -> Path:
        """Write a backup of config.

        Args:
            config: Configuration to back up.
            provider: Provider the configuration belongs to.
            source: ``remote`` or ``local``.

        Returns:
            Path of the new backup file.
        """
        created = self._clock()
        self.directory.mkdir(parents=True, exist_ok=True)

        stem = f"{BACKUP_PREFIX}-{provider}-{created.strftime('%Y-%m-%d_%H-%M-%S')}"
        path = self.directory / f"{stem}.json"
        counter = 1
        while path.exists():
            counter += 1
            path = self.directory / f"{stem}-{counter}.json"

        document = {
            "backup": {
                "createdAt": created.isoformat().replace("+00:00", "Z"),
                "source": source,
                "provider": provider,
                "originalVersion": config.metadata.version,
            },
            "config": config.to_dict(),
        }
        with open(path, "w") as f:
            json.dump(document, f, indent=2)
            f.write("\n")

        logger.info("Backup written to %s", path)
        return path

    def list_backups(self) -> list[BackupInfo]:
        """Backups in the directory, newest first."""
        if not self.directory.is_dir():
            return []
        backups = []
        for path in self.directory.glob("*.json"):
            stats = path.stat()
            backups.append(
                BackupInfo(
                    name=path.name,
                    path=path,
                    size=stats.st_size,
                    created=datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc),
                )
            )
        return sorted(backups, key=lambda b: (b.created, b.name), reverse=True)

    def resolve(self, name: str | Path) -> Path:
        """Find a backup by file name or path.

        Raises:
            ConfigurationError: If no such backup exists.
        """
        candidate = Path(name)
        if not candidate.is_absolute() and not candidate.exists():
            candidate = self.directory / candidate
        if not candidate.exists():
            raise ConfigurationError(
                f"Backup file not found: {candidate}",
                "Run 'doorman backup --list' to see available backups.",
            )
        return candidate

    def load(self, name: str | Path) -> UnifiedConfig:
        """Read and validate a backup.

        Plain configuration files are accepted as well as backup documents.

        Raises:
            ConfigurationError: If the file is missing or unreadable.
            ConfigValidationError: If the stored configuration is invalid.
        """
        data = ConfigStore(self.resolve(name)).load_raw()
        raw: Any = data["config"] if "backup" in data and "config" in data else data
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Backup {name} does not contain a configuration object")
        raw, _ = auto_migrate(raw)
        config, result = validate_config_data(raw)
        if config is None or not result.valid:
            raise ConfigValidationError(result.errors)
        return config

    def restore(self, name: str | Path, store: ConfigStore) -> UnifiedConfig:
        """Write a backup over the local configuration file."""
        config = self.load(name)
        store.save(config)
        logger.info("Restored %s from backup %s", store.path, name)
        return config
