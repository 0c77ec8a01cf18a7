"""Tool configuration: provider credentials and HTTP behaviour."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from doorman.errors import ConfigurationError

CONFIG_FILE_NAMES = (".doorman.yml", ".doorman.yaml")
DEFAULT_RULES_FILE = "doorman.config.json"
SUPPORTED_PROVIDERS = ("vercel", "cloudflare")


class HttpSettings(BaseModel):
    """Transport settings shared by every provider client."""

    timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")
    max_retries: int = Field(default=3, ge=0, description="Retries for retryable failures")
    retry_delay: float = Field(default=1.0, ge=0, description="Base backoff delay in seconds")
    rate_limit_warning_threshold: int = Field(
        default=10,
        ge=0,
        description="Warn when remaining rate-limit capacity drops below this",
    )


class VercelSettings(BaseModel):
    """Vercel Firewall credentials and project scope."""

    token: str | None = Field(default=None, description="API token (prefer VERCEL_TOKEN)")
    project_id: str | None = Field(default=None, description="Vercel project ID")
    team_id: str | None = Field(default=None, description="Vercel team ID")


class CloudflareSettings(BaseModel):
    """Cloudflare WAF credentials and zone scope."""

    api_token: str | None = Field(
        default=None, description="API token (prefer CLOUDFLARE_API_TOKEN)"
    )
    zone_id: str | None = Field(default=None, description="Cloudflare zone ID")
    account_id: str | None = Field(
        default=None, description="Account ID, enables IP lists for IP rules"
    )


class DoormanSettings(BaseModel):
    """Complete doorman tool settings."""

    provider: str | None = Field(default=None, description="Explicit provider selection")
    config_path: str = Field(
        default=DEFAULT_RULES_FILE, description="Path to the local rules configuration"
    )
    backup_dir: str = Field(default="backups", description="Directory for configuration backups")
    log_level: str = Field(default="INFO", description="Default log level")
    http: HttpSettings = Field(default_factory=HttpSettings)
    vercel: VercelSettings = Field(default_factory=VercelSettings)
    cloudflare: CloudflareSettings = Field(default_factory=CloudflareSettings)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str | None) -> str | None:
        """Validate provider value."""
        if v is None:
            return v
        if v.lower() not in SUPPORTED_PROVIDERS:
            raise ValueError(f"provider must be one of: {', '.join(SUPPORTED_PROVIDERS)}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level value."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(allowed))}")
        return v.upper()


# (section, field, environment variable)
ENV_OVERRIDES = (
    ("vercel", "token", "VERCEL_TOKEN"),
    ("vercel", "project_id", "VERCEL_PROJECT_ID"),
    ("vercel", "team_id", "VERCEL_TEAM_ID"),
    ("cloudflare", "api_token", "CLOUDFLARE_API_TOKEN"),
    ("cloudflare", "zone_id", "CLOUDFLARE_ZONE_ID"),
    ("cloudflare", "account_id", "CLOUDFLARE_ACCOUNT_ID"),
)


def find_config_file(start_path: Path | None = None) -> Path | None:
    """Find the nearest .doorman.yml settings file.

    Searches from start_path up to the root directory.

    Args:
        start_path: Starting directory for search (defaults to cwd).

    Returns:
        Path to the settings file if found, None otherwise.
    """
    current = (start_path or Path.cwd()).resolve()

    while True:
        for name in CONFIG_FILE_NAMES:
            candidate = current / name
            if candidate.exists():
                return candidate
        if current == current.parent:
            return None
        current = current.parent


def load_settings(
    config_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> DoormanSettings:
    """Load settings from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Settings file
    3. Defaults

    Args:
        config_path: Path to settings file (searches if not provided).
        environ: Environment mapping, defaults to os.environ.

    Returns:
        Loaded settings.

    Raises:
        ConfigurationError: If the file cannot be parsed or holds invalid values.
    """
    env = os.environ if environ is None else environ
    data: dict[str, Any] = {}

    if config_path is None:
        config_path = find_config_file()

    if config_path and config_path.exists():
        try:
            with open(config_path) as f:
                file_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Failed to parse {config_path}: {e}",
                "Check the YAML syntax of the settings file.",
            ) from e
        if file_data:
            if not isinstance(file_data, dict):
                raise ConfigurationError(f"{config_path} must contain a mapping")
            # Sections left empty in YAML load as None.
            data = {key: value for key, value in file_data.items() if value is not None}

    for section, key, variable in ENV_OVERRIDES:
        value = env.get(variable)
        if value:
            data.setdefault(section, {})[key] = value

    if env.get("DOORMAN_PROVIDER"):
        data["provider"] = env["DOORMAN_PROVIDER"]

    try:
        return DoormanSettings(**data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid settings: {e}",
            "See 'doorman --help' for supported settings.",
        ) from e


def generate_example_settings() -> str:
    """Generate an example .doorman.yml file.

    Returns:
        YAML string of example settings.
    """
    return """# Doorman settings
# Credentials are best supplied through environment variables.

# Provider: vercel or cloudflare (detected automatically when omitted)
# provider: vercel

# Local rules configuration
config_path: doorman.config.json

# Where `doorman backup` keeps its files
backup_dir: backups

http:
  # Per-request timeout in seconds
  timeout: 30
  # Retries for server errors and network failures
  max_retries: 3
  # Base delay for exponential backoff in seconds
  retry_delay: 1.0

vercel:
  # project_id: prj_xxx
  # team_id: team_xxx

cloudflare:
  # zone_id: xxx
  # account_id: xxx
"""
