"""Pytest configuration and fixtures for doorman tests."""

import json
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def block_admin_rule() -> dict[str, Any]:
    """A deny rule on the admin path, without an id."""
    return {
        "name": "Block Admin",
        "description": "Keep the admin area private",
        "conditions": [{"field": "path", "operator": "starts_with", "value": "/admin"}],
        "action": {"type": "deny"},
    }


@pytest.fixture
def rate_limit_rule() -> dict[str, Any]:
    """A login rate limit rule."""
    return {
        "id": "rule_login_rate_limit",
        "name": "Login Rate Limit",
        "description": "Slow down credential stuffing",
        "conditions": [
            {"field": "path", "operator": "eq", "value": "/login"},
            {"field": "method", "operator": "eq", "value": "POST"},
        ],
        "conditionLogic": "AND",
        "action": {"type": "rate_limit", "rateLimit": {"requests": 100, "window": "60s"}},
    }


@pytest.fixture
def sample_config_data(
    block_admin_rule: dict[str, Any], rate_limit_rule: dict[str, Any]
) -> dict[str, Any]:
    """A valid unified configuration targeting Vercel."""
    return {
        "version": "2.0",
        "provider": "vercel",
        "providers": {"vercel": {"projectId": "prj_123", "teamId": "team_456"}},
        "rules": [rate_limit_rule, block_admin_rule],
        "ips": [{"ip": "203.0.113.7", "notes": "Scraper"}],
        "metadata": {"version": 1},
    }


@pytest.fixture
def legacy_config_data() -> dict[str, Any]:
    """A schema 1.0 (Vercel-native) configuration."""
    return {
        "projectId": "prj_123",
        "teamId": "team_456",
        "version": 7,
        "updatedAt": "2024-01-01T00:00:00Z",
        "rules": [
            {
                "id": "rule_block_bots",
                "name": "Block Bots",
                "active": True,
                "conditionGroup": [
                    {"conditions": [{"type": "user_agent", "op": "sub", "value": "curl"}]}
                ],
                "action": {"mitigate": {"action": "deny"}},
            }
        ],
        "ips": [{"id": "ip_1", "ip": "198.51.100.1", "hostname": "*", "action": "deny"}],
    }


@pytest.fixture
def config_file(temp_dir: Path, sample_config_data: dict[str, Any]) -> Path:
    """Write the sample configuration to disk."""
    path = temp_dir / "doorman.config.json"
    path.write_text(json.dumps(sample_config_data, indent=2))
    return path
