"""Tests for configuration validation."""

from typing import Any

import pytest

from doorman.core.models import IssueSeverity
from doorman.core.validation import format_path, validate_config_data, validate_ip


def _config(*rules: dict[str, Any], ips: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    return {"version": "2.0", "rules": list(rules), "ips": ips or []}


def _rule(name: str = "Rule", **overrides: Any) -> dict[str, Any]:
    rule = {
        "name": name,
        "conditions": [{"field": "path", "operator": "eq", "value": "/x"}],
        "action": {"type": "deny"},
    }
    rule.update(overrides)
    return rule


def _codes(raw: dict[str, Any]) -> list[str]:
    _, result = validate_config_data(raw)
    return [issue.code for issue in result.issues]


class TestFormatPath:
    """Tests for format_path."""

    def test_nested_location(self) -> None:
        """Indices render in brackets, keys with dots."""
        assert format_path(("rules", 0, "action", "type")) == "rules[0].action.type"

    def test_empty(self) -> None:
        """An empty location is the root."""
        assert format_path(()) == ""


class TestValidateIp:
    """Tests for validate_ip."""

    @pytest.mark.parametrize("value", ["192.0.2.1", "10.0.0.0/8", "2001:db8::1", "2001:db8::/32"])
    def test_valid(self, value: str) -> None:
        """Addresses and ranges of both families are accepted."""
        assert validate_ip(value) is None

    @pytest.mark.parametrize("value", ["999.1.1.1", "not-an-ip", "10.0.0.0/33", "2001:db8::/129"])
    def test_invalid(self, value: str) -> None:
        """Bad addresses and over-long prefixes are rejected."""
        assert validate_ip(value) is not None

    def test_prefix_checked_against_family(self) -> None:
        """An IPv6-sized prefix on an IPv4 address is invalid."""
        message = validate_ip("192.0.2.0/64")
        assert message is not None
        assert "IPv4" in message


class TestValidateConfigData:
    """Tests for validate_config_data."""

    def test_valid_config(self, sample_config_data: dict[str, Any]) -> None:
        """The sample config passes with no errors."""
        config, result = validate_config_data(sample_config_data)
        assert config is not None
        assert result.valid
        assert result.issues == []

    def test_not_an_object(self) -> None:
        """Non-mapping input is a single root error."""
        config, result = validate_config_data(["rules"])
        assert config is None
        assert result.issues[0].path == ""

    def test_reports_every_structural_error(self) -> None:
        """All parse errors come back at once, each tagged with its path."""
        raw = _config(
            _rule("A", action={"type": "explode"}),
            _rule("B", conditions=[{"field": "planet", "value": "mars"}]),
        )
        config, result = validate_config_data(raw)

        assert config is None
        paths = [issue.path for issue in result.errors]
        assert "rules[0].action.type" in paths
        assert "rules[1].conditions[0].field" in paths

    def test_bad_window_path(self) -> None:
        """Window format errors point at the window."""
        raw = _config(
            _rule(action={"type": "rate_limit", "rateLimit": {"requests": 5, "window": "5 minutes"}})
        )
        _, result = validate_config_data(raw)
        assert [i.path for i in result.errors] == ["rules[0].action.rateLimit.window"]

    def test_duplicate_names_case_insensitive(self) -> None:
        """Rule names must be unique ignoring case."""
        _, result = validate_config_data(_config(_rule("Block"), _rule("block")))
        assert [(i.path, i.code) for i in result.errors] == [("rules[1].name", "duplicate_name")]

    def test_duplicate_ip_entries(self) -> None:
        """The same ip and hostname may only appear once."""
        ips = [{"ip": "192.0.2.1"}, {"ip": "192.0.2.1", "hostname": "a.example.com"}, {"ip": "192.0.2.1"}]
        _, result = validate_config_data(_config(ips=ips))
        assert [(i.path, i.code) for i in result.errors] == [("ips[2].ip", "duplicate_ip")]

    def test_invalid_ip_entry(self) -> None:
        """IP rules must hold valid addresses."""
        assert _codes(_config(ips=[{"ip": "300.1.1.1"}])) == ["invalid_ip"]

    def test_empty_conditions_is_warning(self) -> None:
        """A rule without conditions is allowed but flagged."""
        _, result = validate_config_data(_config(_rule(conditions=[])))
        assert result.valid
        assert result.issues[0].severity == IssueSeverity.WARNING
        assert result.issues[0].code == "empty_conditions"

    def test_missing_payloads(self) -> None:
        """rate_limit and redirect need their payloads."""
        raw = _config(_rule("A", action={"type": "rate_limit"}), _rule("B", action={"type": "redirect"}))
        assert _codes(raw) == ["missing_rate_limit", "missing_redirect"]

    def test_redirect_location(self) -> None:
        """Redirect targets must be absolute URLs or absolute paths."""
        raw = _config(_rule(action={"type": "redirect", "redirect": {"location": "elsewhere"}}))
        assert _codes(raw) == ["invalid_redirect"]

    def test_header_requires_key(self) -> None:
        """Header conditions need a header name."""
        raw = _config(_rule(conditions=[{"field": "header", "operator": "eq", "value": "x"}]))
        _, result = validate_config_data(raw)
        assert [(i.path, i.code) for i in result.errors] == [("rules[0].conditions[0].key", "missing_key")]

    def test_operator_value_domains(self) -> None:
        """List, presence and numeric operators constrain the value."""
        raw = _config(
            _rule(
                conditions=[
                    {"field": "country", "operator": "in", "value": "US"},
                    {"field": "header", "key": "x-debug", "operator": "exists", "value": "1"},
                    {"field": "port", "operator": "gt", "value": "eighty"},
                    {"field": "host", "operator": "eq"},
                ]
            )
        )
        _, result = validate_config_data(raw)
        assert [i.path for i in result.errors] == [
            "rules[0].conditions[0].value",
            "rules[0].conditions[1].value",
            "rules[0].conditions[2].value",
            "rules[0].conditions[3].value",
        ]

    def test_field_values(self) -> None:
        """IP, ASN, path and regex values are checked."""
        raw = _config(
            _rule(
                conditions=[
                    {"field": "ip", "operator": "in", "value": ["192.0.2.1", "nope"]},
                    {"field": "asn", "operator": "eq", "value": 0},
                    {"field": "path", "operator": "starts_with", "value": "admin"},
                    {"field": "user_agent", "operator": "matches", "value": "(unclosed"},
                ]
            )
        )
        assert _codes(raw) == ["invalid_ip", "invalid_value", "invalid_path", "invalid_regex"]

    def test_structural_and_semantic_checks_are_separate_passes(self) -> None:
        """A config that does not parse reports parse errors only."""
        raw = _config(_rule("A"), _rule("a", action={"type": "nope"}))
        _, result = validate_config_data(raw)
        assert [i.code for i in result.issues] != []
        assert "duplicate_name" not in [i.code for i in result.issues]
