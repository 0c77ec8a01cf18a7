"""Custom exceptions for doorman with user-friendly error messages."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from doorman.core.models import ValidationIssue


class DoormanError(Exception):
    """Base exception with user-friendly message and optional hint.

    Attributes:
        message: The main error message.
        hint: Optional hint for resolving the error.
    """

    def __init__(self, message: str, hint: str = "") -> None:
        """Initialize the exception.

        Args:
            message: The main error message.
            hint: Optional hint for resolving the error.
        """
        self.message = message
        self.hint = hint
        super().__init__(message)

    def __str__(self) -> str:
        """Return string representation."""
        if self.hint:
            return f"{self.message}\nHint: {self.hint}"
        return self.message


class ConfigurationError(DoormanError):
    """Invalid tool or provider configuration."""

    pass


class MissingCredentialsError(ConfigurationError):
    """A required credential or identifier is missing."""

    def __init__(
        self,
        variable: str,
        message: str = "",
        hint: str = "",
    ) -> None:
        if not message:
            message = f"{variable} environment variable is required"
        if not hint:
            hint = f"Set {variable} in your environment or in the providers section of the config."
        self.variable = variable
        super().__init__(message, hint)


class ConfigValidationError(DoormanError):
    """The local configuration violates one or more constraints.

    Every violated constraint is carried, not just the first one.
    """

    def __init__(
        self,
        issues: list[ValidationIssue],
        message: str = "",
        hint: str = "",
    ) -> None:
        self.issues = issues
        if not message:
            lines = [f"Configuration is invalid ({len(issues)} error(s)):"]
            lines.extend(f"  {issue.path or '<root>'}: {issue.message}" for issue in issues)
            message = "\n".join(lines)
        if not hint:
            hint = "Fix the listed fields and run 'doorman validate' again."
        super().__init__(message, hint)


class ProviderApiError(DoormanError):
    """A provider API call failed.

    Attributes:
        provider: Provider display name.
        status_code: HTTP status code, if a response was received.
        retryable: Whether the request may be retried.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
        hint: str = "",
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(f"{provider} API error: {message}", hint)


class AuthenticationError(ProviderApiError):
    """The provider rejected the credentials (401/403)."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        super().__init__(
            provider,
            message,
            status_code=status_code,
            retryable=False,
            hint="Verify the API token and that it has access to the project or zone.",
        )


class RequestTimeoutError(ProviderApiError):
    """A single request exceeded its timeout."""

    def __init__(self, provider: str, timeout: float) -> None:
        super().__init__(
            provider,
            f"request timed out after {timeout:g}s",
            retryable=False,
            hint="Increase http.timeout in .doorman.yml if the provider is slow.",
        )


class NetworkError(ProviderApiError):
    """Network connectivity issue."""

    def __init__(self, provider: str, original_error: Exception | None = None) -> None:
        message = "network request failed"
        if original_error:
            message += f": {original_error}"
        self.original_error = original_error
        super().__init__(
            provider,
            message,
            retryable=True,
            hint="Check your internet connection and firewall settings.",
        )


class RateLimitError(ProviderApiError):
    """Provider rate limit waits exhausted."""

    def __init__(self, provider: str, retry_after: float | None = None) -> None:
        if retry_after:
            message = f"rate limit exceeded. Retry after {retry_after:.0f} seconds."
        else:
            message = "rate limit exceeded."
        self.retry_after = retry_after
        super().__init__(provider, message, status_code=429, retryable=False)


class TranslationError(DoormanError):
    """A unified construct has no equivalent on the target provider."""

    def __init__(self, provider: str, feature: str, message: str = "") -> None:
        self.provider = provider
        self.feature = feature
        if not message:
            message = f"{feature} is not supported by {provider}"
        super().__init__(message, "Run 'doorman compat' to see what this provider supports.")


class ReconciliationError(DoormanError):
    """Local and remote collections cannot be reconciled."""

    pass


class SyncError(DoormanError):
    """A remote mutation failed part way through a sync.

    Attributes:
        mutations: Mutations that completed before the failure.
    """

    def __init__(self, message: str, mutations: list[Any] | None = None, hint: str = "") -> None:
        self.mutations = list(mutations or [])
        if not hint and self.mutations:
            hint = (
                f"{len(self.mutations)} change(s) were already applied remotely. "
                "Run 'doorman diff' to inspect the remote state."
            )
        super().__init__(message, hint)


class SyncValidationError(DoormanError):
    """The remote state after a sync does not match the local intent."""

    def __init__(
        self,
        mismatches: list[str],
        rolled_back: bool = True,
        mutations: list[Any] | None = None,
    ) -> None:
        self.mismatches = mismatches
        self.rolled_back = rolled_back
        self.mutations = list(mutations or [])
        lines = ["Post-sync validation failed:"]
        lines.extend(f"  {m}" for m in mismatches)
        hint = (
            "Local configuration was restored to its pre-sync state. "
            "The remote configuration may be partially changed."
            if rolled_back
            else "The remote configuration may be partially changed."
        )
        super().__init__("\n".join(lines), hint)


class ProviderNotRegisteredError(ConfigurationError):
    """No factory is registered for the requested provider."""

    def __init__(self, provider: str, available: list[str]) -> None:
        self.provider = provider
        super().__init__(
            f"Provider '{provider}' is not registered. "
            f"Available providers: {', '.join(available) or 'none'}"
        )
