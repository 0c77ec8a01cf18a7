"""Translation between the unified model and provider-native rule schemas."""

from doorman.translation.base import RuleTranslator, Translation
from doorman.translation.cloudflare import CloudflareTranslator
from doorman.translation.compatibility import (
    CompatibilityMatrix,
    FeatureSupport,
    MigrationReport,
    SupportLevel,
)
from doorman.translation.vercel import VercelTranslator

__all__ = [
    "CloudflareTranslator",
    "CompatibilityMatrix",
    "FeatureSupport",
    "MigrationReport",
    "RuleTranslator",
    "SupportLevel",
    "Translation",
    "VercelTranslator",
]
