"""Identifier normalization helpers."""

import re

RULE_ID_PREFIX = "rule_"
IP_RULE_PREFIX = "ip_"

# Runs of capitals that should stay together when splitting camelCase.
_ACRONYM = re.compile(r"([A-Z]+)([A-Z][a-z])")
_CAMEL = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def to_snake_case(value: str) -> str:
    """Convert an arbitrary display name to lower snake case.

    ``"Block Admin"`` becomes ``"block_admin"``, ``"APIRateLimit"``
    becomes ``"api_rate_limit"`` and ``"  --wp-login.php "`` becomes
    ``"wp_login_php"``.

    Args:
        value: Display name.

    Returns:
        Snake-cased identifier, empty if nothing alphanumeric remains.
    """
    value = _ACRONYM.sub(r"\1_\2", value.strip())
    value = _CAMEL.sub(r"\1_\2", value)
    return _NON_ALNUM.sub("_", value.lower()).strip("_")


def canonical_rule_id(name: str) -> str:
    """Return the canonical rule identifier derived from a rule name."""
    return f"{RULE_ID_PREFIX}{to_snake_case(name)}"


def canonical_ip_ref(ip: str) -> str:
    """Return a stable reference for an IP rule stored as a custom rule."""
    return f"{IP_RULE_PREFIX}{_NON_ALNUM.sub('_', ip.lower()).strip('_')}"
