"""Ready-made rule templates that can be merged into a configuration."""

from dataclasses import dataclass, field

from doorman.core.models import (
    ActionType,
    FieldType,
    Operator,
    UnifiedAction,
    UnifiedCondition,
    UnifiedConfig,
    UnifiedRule,
)
from doorman.errors import ConfigurationError
from doorman.utils.logging import get_logger

logger = get_logger(__name__)

AI_BOT_USER_AGENTS = (
    "AI2Bot|Ai2Bot-Dolma|Amazonbot|Applebot|Applebot-Extended|Bytespider|CCBot|ChatGPT-User|"
    "Claude-Web|ClaudeBot|Diffbot|FacebookBot|FriendlyCrawler|GPTBot|Google-Extended|GoogleOther|"
    "GoogleOther-Image|GoogleOther-Video|ICC-Crawler|ImagesiftBot|Meta-ExternalAgent|"
    "Meta-ExternalFetcher|OAI-SearchBot|PerplexityBot|PetalBot|Scrapy|Timpibot|"
    "VelenPublicWebCrawler|Webzio-Extended|YouBot|anthropic-ai|cohere-ai|facebookexternalhit|"
    "img2dataset|omgili|omgilibot"
)

WORDPRESS_PATHS = (
    r"/(wp-admin|wp-login\.php|xmlrpc\.php|wp-content|wp-includes|wp-signup\.php|"
    r"wp-activate\.php|register\.php|wp-register\.php)"
)

OFAC_SANCTIONED_COUNTRIES = ["SY", "IR", "RU", "CU", "KP"]


@dataclass
class RuleTemplate:
    """A named set of rules with a reference to where it comes from."""

    name: str
    title: str
    reference: str
    rules: list[UnifiedRule] = field(default_factory=list)


@dataclass
class TemplateResult:
    """Outcome of merging a template into a configuration."""

    config: UnifiedConfig
    added: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


TEMPLATES: dict[str, RuleTemplate] = {
    "ai-bots": RuleTemplate(
        name="ai-bots",
        title="Block AI Bots Firewall Rule",
        reference="https://vercel.com/templates/other/block-ai-bots-firewall-rule",
        rules=[
            UnifiedRule(
                name="Detect AI Bots",
                description="Logs requests from known AI crawlers",
                conditions=[
                    UnifiedCondition(
                        field=FieldType.USER_AGENT,
                        operator=Operator.MATCHES,
                        value=AI_BOT_USER_AGENTS,
                    )
                ],
                action=UnifiedAction(type=ActionType.LOG),
            )
        ],
    ),
    "block-ofac-sanctioned-countries": RuleTemplate(
        name="block-ofac-sanctioned-countries",
        title="Block OFAC-Sanctioned Countries",
        reference="https://vercel.com/templates/other/block-ofac-sanctioned-countries-firewall-rule",
        rules=[
            UnifiedRule(
                name="Block traffic from OFAC-sanctioned countries",
                description=(
                    "Blocks traffic from OFAC-sanctioned countries and enforces a "
                    "one-hour persistent block after the first violation."
                ),
                conditions=[
                    UnifiedCondition(
                        field=FieldType.COUNTRY,
                        operator=Operator.IN,
                        value=OFAC_SANCTIONED_COUNTRIES,
                    )
                ],
                action=UnifiedAction(type=ActionType.DENY, duration="1h"),
            )
        ],
    ),
    "wordpress": RuleTemplate(
        name="wordpress",
        title="Deny Common WordPress URLs Firewall Rule",
        reference="https://vercel.com/templates/other/block-wordpress-urls-firewall-rule",
        rules=[
            UnifiedRule(
                name="Deny WordPress URLs",
                description="Denies requests for WordPress admin and login paths",
                conditions=[
                    UnifiedCondition(
                        field=FieldType.PATH,
                        operator=Operator.MATCHES,
                        value=WORDPRESS_PATHS,
                    )
                ],
                action=UnifiedAction(type=ActionType.DENY),
            )
        ],
    ),
}


def list_templates() -> list[RuleTemplate]:
    """Return every template, sorted by name."""
    return [TEMPLATES[name] for name in sorted(TEMPLATES)]


def get_template(name: str) -> RuleTemplate:
    """Look up a template by name.

    Raises:
        ConfigurationError: If no template has that name.
    """
    template = TEMPLATES.get(name.strip().lower())
    if template is None:
        raise ConfigurationError(
            f"Unknown template: {name}",
            f"Available templates: {', '.join(sorted(TEMPLATES))}",
        )
    return template


def apply_template(config: UnifiedConfig, template: RuleTemplate) -> TemplateResult:
    """Append a template's rules to a copy of config.

    Rules whose name is already present (case-insensitive) are skipped so
    applying a template twice is harmless.
    """
    existing = {rule.name.lower() for rule in config.rules}
    result = TemplateResult(config=config)
    rules = list(config.rules)

    for rule in template.rules:
        if rule.name.lower() in existing:
            logger.info("Rule '%s' already exists; skipping", rule.name)
            result.skipped.append(rule.name)
            continue
        rules.append(rule.model_copy(deep=True))
        existing.add(rule.name.lower())
        result.added.append(rule.name)

    result.config = config.model_copy(update={"rules": rules})
    return result
