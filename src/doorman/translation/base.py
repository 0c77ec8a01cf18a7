"""Shared translator contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from doorman.core.models import (
    ActionType,
    FieldType,
    IPAction,
    Operator,
    ProviderType,
    UnifiedIPRule,
    UnifiedRule,
)
from doorman.errors import TranslationError
from doorman.translation.compatibility import CompatibilityMatrix, FeatureSupport, SupportLevel
from doorman.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class Translation(Generic[T]):
    """A translated value plus warnings for lossy conversions."""

    value: T
    warnings: list[str] = field(default_factory=list)


class RuleTranslator(ABC):
    """Bidirectional mapping between unified rules and a provider's schema.

    Translators are stateless: the same input always produces the same
    output. All native names come from the compatibility matrix.
    """

    provider: ProviderType

    def __init__(self, matrix: CompatibilityMatrix | None = None) -> None:
        self.matrix = matrix or CompatibilityMatrix()

    @abstractmethod
    def to_provider(self, rule: UnifiedRule) -> Translation[dict[str, Any]]:
        """Translate a unified rule to the provider's native shape."""
        pass

    @abstractmethod
    def to_unified(self, native: dict[str, Any]) -> Translation[UnifiedRule]:
        """Translate a native rule to the unified model."""
        pass

    @abstractmethod
    def ip_to_provider(self, rule: UnifiedIPRule) -> Translation[dict[str, Any]]:
        """Translate a unified IP rule to the provider's native shape."""
        pass

    @abstractmethod
    def ip_to_unified(self, native: dict[str, Any]) -> Translation[UnifiedIPRule]:
        """Translate a native IP rule to the unified model."""
        pass

    def normalize(self, rule: UnifiedRule) -> Translation[UnifiedRule]:
        """Return the rule as the provider will store it.

        Used to diff local intent against remote state like for like, so
        features the provider drops do not show up as perpetual updates.
        """
        forward = self.to_provider(rule)
        back = self.to_unified(forward.value)
        value = back.value.model_copy(update={"id": rule.id})
        return Translation(value, forward.warnings)

    def normalize_ip(self, rule: UnifiedIPRule) -> Translation[UnifiedIPRule]:
        """Return the IP rule as the provider will store it."""
        forward = self.ip_to_provider(rule)
        back = self.ip_to_unified(forward.value)
        return Translation(back.value.model_copy(update={"id": rule.id}), forward.warnings)

    def _require(
        self, support: FeatureSupport, feature: str, context: str, warnings: list[str]
    ) -> FeatureSupport:
        """Reject unsupported features and record a warning for partial ones."""
        if support.level == SupportLevel.NOT_SUPPORTED:
            raise TranslationError(
                self.provider.value,
                feature,
                f"{context}: {feature} is not supported by {self.provider.value}"
                + (f" ({support.notes})" if support.notes else ""),
            )
        if support.level == SupportLevel.PARTIAL:
            warnings.append(f"{context}: {feature} - {support.notes}")
        return support

    def _native(self, support: FeatureSupport, feature: str, context: str, warnings: list[str]) -> str:
        self._require(support, feature, context, warnings)
        if support.native is None:
            raise TranslationError(
                self.provider.value, feature, f"{context}: {feature} has no {self.provider.value} equivalent"
            )
        return support.native

    def _action(self, action: ActionType, context: str, warnings: list[str]) -> str:
        support = self.matrix.get_action_compatibility(action, self.provider)
        return self._native(support, f"action '{action.value}'", context, warnings)

    def _field(self, field_type: FieldType, context: str, warnings: list[str]) -> str:
        support = self.matrix.get_field_compatibility(field_type, self.provider)
        return self._native(support, f"field '{field_type.value}'", context, warnings)

    def _operator(self, operator: Operator, context: str, warnings: list[str]) -> str:
        support = self.matrix.get_operator_compatibility(operator, self.provider)
        return self._native(support, f"operator '{operator.value}'", context, warnings)

    def _ip_action(self, action: IPAction, context: str, warnings: list[str]) -> str:
        support = self.matrix.get_ip_action_compatibility(action, self.provider)
        return self._native(support, f"IP action '{action.value}'", context, warnings)

    def _option(self, option: str, context: str, warnings: list[str]) -> FeatureSupport:
        support = self.matrix.get_option_compatibility(option, self.provider)
        return self._require(support, option, context, warnings)

    @staticmethod
    def log_warnings(warnings: list[str]) -> None:
        """Surface translation warnings through the logger."""
        for warning in warnings:
            logger.warning("%s", warning)
