"""Domain exceptions raised by the hub, the router and the provider adapters.

Routing and budget errors are deterministic given the current state and are
never retried. UpstreamCallFailed is what a provider adapter raises once its
own retries are exhausted; the hub's fallback loop turns a run of those into
AllFallbacksExhausted.
"""

from __future__ import annotations


class ModelHubError(Exception):
    """Base exception for all hub failures."""


class ProviderNotFound(ModelHubError):
    """A provider id was referenced that is not registered."""

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Provider not found: {provider_id}")
        self.provider_id = provider_id


class ModelNotFound(ModelHubError):
    """A model id could not be resolved to a registered model."""

    def __init__(self, model_id: str | None, provider_id: str | None = None) -> None:
        where = f" (provider {provider_id})" if provider_id else ""
        super().__init__(f"Model not found: {model_id}{where}")
        self.model_id = model_id
        self.provider_id = provider_id


class NoEligibleModels(ModelHubError):
    """The router's eligibility filter left no candidates."""


class BudgetExceeded(ModelHubError):
    """A daily or monthly spend ceiling has been reached."""

    def __init__(self, period: str, usage: float, limit: float) -> None:
        super().__init__(
            f"{period.capitalize()} budget exceeded: ${usage:.4f} of ${limit:.2f}"
        )
        self.period = period
        self.usage = usage
        self.limit = limit


class ProviderUnavailable(ModelHubError):
    """The target provider currently reports unhealthy."""

    def __init__(self, provider_id: str, reason: str = "provider is unhealthy") -> None:
        super().__init__(f"Provider {provider_id} unavailable: {reason}")
        self.provider_id = provider_id


class UpstreamCallFailed(ModelHubError):
    """A vendor API call failed after local retries were exhausted."""

    def __init__(
        self,
        message: str,
        *,
        provider_id: str,
        model_id: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.model_id = model_id
        self.status_code = status_code
        self.retryable = retryable


class TransientProviderError(UpstreamCallFailed):
    """An upstream failure worth retrying (timeouts, resets, 429/5xx)."""

    def __init__(
        self,
        message: str,
        *,
        provider_id: str,
        model_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            provider_id=provider_id,
            model_id=model_id,
            status_code=status_code,
            retryable=True,
        )


class AllFallbacksExhausted(ModelHubError):
    """The selected model and every alternative failed."""

    def __init__(self, attempted: list[str], last_error: Exception) -> None:
        super().__init__(
            f"All models failed ({', '.join(attempted)}). Last error: {last_error}"
        )
        self.attempted = attempted
        self.last_error = last_error
