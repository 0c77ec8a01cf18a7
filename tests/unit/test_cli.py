"""Tests for CLI module."""

import json
from pathlib import Path
from typing import Any

import httpx
import pytest
from typer.testing import CliRunner

from doorman import __version__
from doorman import cli as cli_module
from doorman.cli import app
from doorman.providers.registry import create_default_registry

runner = CliRunner()

PROVIDER_VARIABLES = (
    "DOORMAN_PROVIDER",
    "VERCEL_TOKEN",
    "VERCEL_PROJECT_ID",
    "VERCEL_TEAM_ID",
    "CLOUDFLARE_API_TOKEN",
    "CLOUDFLARE_ZONE_ID",
    "CLOUDFLARE_ACCOUNT_ID",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, temp_dir: Path) -> None:
    """Run every command from an empty directory without provider variables."""
    for variable in PROVIDER_VARIABLES:
        monkeypatch.delenv(variable, raising=False)
    monkeypatch.chdir(temp_dir)


class TestCLI:
    """Tests for global options."""

    def test_version_flag(self) -> None:
        """Test --version flag."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_help_flag(self) -> None:
        """Test --help flag."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "doorman" in result.stdout.lower()

    def test_no_args_shows_help(self) -> None:
        """Test that no arguments shows help."""
        result = runner.invoke(app, [])
        assert result.exit_code in (0, 2)
        assert "usage" in result.stdout.lower()


class TestValidateCommand:
    """Tests for validate command."""

    def test_valid_config(self, config_file: Path) -> None:
        """Test validating the sample config."""
        result = runner.invoke(app, ["--config", str(config_file), "validate"])
        assert result.exit_code == 0
        assert "Valid." in result.stdout

    def test_invalid_config(self, temp_dir: Path) -> None:
        """Test that provider-unsupported rules fail validation."""
        path = temp_dir / "rules.json"
        path.write_text(
            json.dumps(
                {
                    "version": "2.0",
                    "provider": "vercel",
                    "rules": [
                        {"name": "Port", "conditions": [{"field": "port", "value": 8443}], "action": {"type": "deny"}}
                    ],
                }
            )
        )

        result = runner.invoke(app, ["--config", str(path), "validate"])

        assert result.exit_code == 1
        assert "Invalid:" in result.stdout

    def test_structural_errors(self, temp_dir: Path) -> None:
        """Test that schema errors are listed."""
        path = temp_dir / "rules.json"
        path.write_text(json.dumps({"version": "2.0", "rules": [{"name": "No action"}]}))

        result = runner.invoke(app, ["--config", str(path), "validate"])

        assert result.exit_code == 1
        assert "rules[0].action" in result.stdout

    def test_missing_file(self, temp_dir: Path) -> None:
        """Test that a missing file is reported with a hint."""
        result = runner.invoke(app, ["--config", str(temp_dir / "missing.json"), "validate"])
        assert result.exit_code == 1
        assert "not found" in result.stdout
        assert "Hint:" in result.stdout


class TestHealthCommand:
    """Tests for health command."""

    def test_health_score(self, config_file: Path) -> None:
        """Test scoring the sample config offline."""
        result = runner.invoke(app, ["--config", str(config_file), "health"])
        assert result.exit_code == 0
        assert "Health score: 100/100 (excellent)" in result.stdout

    def test_health_with_issues(self, temp_dir: Path) -> None:
        """Test that issues and recommendations are shown."""
        path = temp_dir / "rules.json"
        path.write_text(json.dumps({"version": "2.0", "provider": "vercel"}))

        result = runner.invoke(app, ["--config", str(path), "health"])

        assert result.exit_code == 0
        assert "coverage" in result.stdout
        assert "Add rules" in result.stdout


class TestCompatCommand:
    """Tests for compat command."""

    def test_report(self) -> None:
        """Test the migration report sections."""
        result = runner.invoke(app, ["compat", "cloudflare", "vercel"])
        assert result.exit_code == 0
        assert "Fully supported" in result.stdout
        assert "Field: port" in result.stdout

    def test_unknown_provider(self) -> None:
        """Test that unknown providers are rejected."""
        result = runner.invoke(app, ["compat", "vercel", "akamai"])
        assert result.exit_code == 1
        assert "providers must be one of: vercel, cloudflare" in result.stdout


class TestDetectCommand:
    """Tests for detect command."""

    def test_explicit_provider(self) -> None:
        """Test that --provider wins."""
        result = runner.invoke(app, ["--provider", "cloudflare", "detect"])
        assert result.exit_code == 0
        assert "Provider: Cloudflare WAF (high confidence)" in result.stdout

    def test_from_config(self, config_file: Path) -> None:
        """Test detection from the config file."""
        result = runner.invoke(app, ["--config", str(config_file), "detect"])
        assert result.exit_code == 0
        assert "Vercel Firewall" in result.stdout

    def test_nothing_found(self) -> None:
        """Test detection without signals."""
        result = runner.invoke(app, ["detect"])
        assert result.exit_code == 0
        assert "Provider: unknown (low confidence)" in result.stdout


class TestRemoteCommands:
    """Tests for commands that need credentials."""

    def test_diff_without_token(self, config_file: Path) -> None:
        """Test that missing credentials are reported."""
        result = runner.invoke(app, ["--config", str(config_file), "diff"])
        assert result.exit_code == 1
        assert "VERCEL_TOKEN environment variable is required" in result.stdout

    def test_sync_without_zone(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that Cloudflare needs a zone id."""
        monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "token")
        result = runner.invoke(app, ["--config", str(config_file), "--provider", "cloudflare", "sync", "--dry-run"])
        assert result.exit_code == 1
        assert "CLOUDFLARE_ZONE_ID" in result.stdout


class TestInitCommand:
    """Tests for init command."""

    def test_creates_settings(self, temp_dir: Path) -> None:
        """Test creating .doorman.yml."""
        result = runner.invoke(app, ["init", str(temp_dir)])
        assert result.exit_code == 0
        assert (temp_dir / ".doorman.yml").exists()

    def test_refuses_overwrite(self, temp_dir: Path) -> None:
        """Test that an existing file needs --force."""
        (temp_dir / ".doorman.yml").write_text("provider: vercel\n")

        result = runner.invoke(app, ["init", str(temp_dir)])
        assert result.exit_code == 1
        assert "already exists" in result.stdout

        forced = runner.invoke(app, ["init", str(temp_dir), "--force"])
        assert forced.exit_code == 0
        assert "config_path" in (temp_dir / ".doorman.yml").read_text()


REMOTE_CONFIG = {
    "version": 12,
    "updatedAt": "2026-02-01T00:00:00Z",
    "rules": [
        {
            "id": "rule_block_bots",
            "name": "Block Bots",
            "active": True,
            "conditionGroup": [{"conditions": [{"type": "user_agent", "op": "sub", "value": "curl"}]}],
            "action": {"mitigate": {"action": "deny"}},
        }
    ],
    "ips": [{"id": "ip_1", "ip": "198.51.100.1", "hostname": "*", "action": "deny"}],
}


@pytest.fixture
def vercel_remote(monkeypatch: pytest.MonkeyPatch) -> list[httpx.Request]:
    """Serve REMOTE_CONFIG from a mocked Vercel API; returns the requests seen."""
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith("/config"):
            return httpx.Response(200, json={"active": REMOTE_CONFIG})
        return httpx.Response(200, json=REMOTE_CONFIG)

    def registry(settings: Any, config: Any = None) -> Any:
        return create_default_registry(settings, config, transport=httpx.MockTransport(handler))

    monkeypatch.setenv("VERCEL_TOKEN", "token")
    monkeypatch.setattr(cli_module, "create_default_registry", registry)
    return requests


class TestDownloadCommand:
    """Tests for download command."""

    def test_download_overwrites_with_yes(self, config_file: Path, vercel_remote: list[httpx.Request]) -> None:
        """--yes replaces the local rules with the remote ones."""
        result = runner.invoke(app, ["--config", str(config_file), "download", "--yes"])

        assert result.exit_code == 0
        assert "Downloaded 1 rule(s)" in result.stdout
        saved = json.loads(config_file.read_text())
        assert [r["name"] for r in saved["rules"]] == ["Block Bots"]
        assert saved["metadata"]["version"] == 12

    def test_existing_file_needs_confirmation(
        self, config_file: Path, vercel_remote: list[httpx.Request], sample_config_data: dict
    ) -> None:
        """Without a terminal or --yes the local file is left alone."""
        result = runner.invoke(app, ["--config", str(config_file), "download"])

        assert result.exit_code == 1
        assert "pass --yes" in result.stdout
        assert json.loads(config_file.read_text()) == sample_config_data

    def test_dry_run(self, config_file: Path, vercel_remote: list[httpx.Request], sample_config_data: dict) -> None:
        """--dry-run only shows the remote rules."""
        result = runner.invoke(app, ["--config", str(config_file), "download", "--dry-run"])

        assert result.exit_code == 0
        assert "Block Bots" in result.stdout
        assert "Dry run: no changes made." in result.stdout
        assert json.loads(config_file.read_text()) == sample_config_data

    def test_remote_version(self, config_file: Path, vercel_remote: list[httpx.Request]) -> None:
        """A historical version is requested by number."""
        result = runner.invoke(app, ["--config", str(config_file), "download", "--remote-version", "5", "--yes"])

        assert result.exit_code == 0
        assert vercel_remote[0].url.path.endswith("/config/5")


class TestBackupCommand:
    """Tests for backup command."""

    def test_local_backup_list_and_restore(self, config_file: Path, temp_dir: Path, sample_config_data: dict) -> None:
        """A local backup can be listed and restored."""
        backups = temp_dir / "saved"

        created = runner.invoke(app, ["--config", str(config_file), "backup", "--local", "-o", str(backups)])
        assert created.exit_code == 0
        files = list(backups.glob("firewall-backup-vercel-*.json"))
        assert len(files) == 1

        listed = runner.invoke(app, ["backup", "--list", "-o", str(backups)])
        assert listed.exit_code == 0
        assert "firewall-backup-vercel" in listed.stdout

        config_file.write_text(json.dumps({"version": "2.0"}))
        restored = runner.invoke(app, ["--config", str(config_file), "backup", "-o", str(backups), "-r", files[0].name])
        assert restored.exit_code == 0
        assert [r["name"] for r in json.loads(config_file.read_text())["rules"]] == ["Login Rate Limit", "Block Admin"]

    def test_remote_backup(self, config_file: Path, temp_dir: Path, vercel_remote: list[httpx.Request]) -> None:
        """The default backup source is the provider."""
        backups = temp_dir / "saved"

        result = runner.invoke(app, ["--config", str(config_file), "backup", "-o", str(backups)])

        assert result.exit_code == 0
        (path,) = backups.glob("*.json")
        document = json.loads(path.read_text())
        assert document["backup"]["source"] == "remote"
        assert document["backup"]["originalVersion"] == 12
        assert [r["name"] for r in document["config"]["rules"]] == ["Block Bots"]

    def test_list_empty(self, temp_dir: Path) -> None:
        """Listing an empty directory says so."""
        result = runner.invoke(app, ["backup", "--list", "-o", str(temp_dir / "none")])
        assert result.exit_code == 0
        assert "No backups found." in result.stdout

    def test_restore_missing(self, temp_dir: Path) -> None:
        """Restoring an unknown backup fails with a hint."""
        result = runner.invoke(app, ["backup", "-o", str(temp_dir), "-r", "nope.json"])
        assert result.exit_code == 1
        assert "Backup file not found" in result.stdout


class TestTemplateCommand:
    """Tests for template command."""

    def test_lists_templates(self) -> None:
        """Without a name the available templates are listed."""
        result = runner.invoke(app, ["template"])
        assert result.exit_code == 0
        assert "wordpress" in result.stdout
        assert "ai-bots" in result.stdout

    def test_adds_template(self, config_file: Path) -> None:
        """Template rules are appended to the local file."""
        result = runner.invoke(app, ["--config", str(config_file), "template", "wordpress"])

        assert result.exit_code == 0
        names = [r["name"] for r in json.loads(config_file.read_text())["rules"]]
        assert names == ["Login Rate Limit", "Block Admin", "Deny WordPress URLs"]

    def test_dry_run(self, config_file: Path, sample_config_data: dict) -> None:
        """--dry-run shows what would be added."""
        result = runner.invoke(app, ["--config", str(config_file), "template", "ai-bots", "--dry-run"])

        assert result.exit_code == 0
        assert "+ Detect AI Bots" in result.stdout
        assert json.loads(config_file.read_text()) == sample_config_data

    def test_unknown_template(self) -> None:
        """Unknown templates exit with an error."""
        result = runner.invoke(app, ["template", "joomla"])
        assert result.exit_code == 1
        assert "Unknown template" in result.stdout
