"""
Hub configuration via pydantic-settings.

All settings are loaded from environment variables (or a .env file in dev).
This is the single source of truth for configuration; the hub, the router,
the budget tracker and the provider adapters all receive their settings from
here rather than reading the environment themselves.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from model_hub.types import (
    BudgetLimits,
    LoadBalancingStrategy,
    ProviderConfig,
    ProviderType,
    RouterConfig,
    RoutingStrategy,
)


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    debug: bool = False
    log_level: str = Field(default="INFO", description="Root log level")
    json_logs: bool | None = Field(
        default=None,
        description="Force JSON logs on/off. Defaults to on in prod only.",
    )

    # ------------------------------------------------------------------ #
    # Router
    # ------------------------------------------------------------------ #
    router_strategy: RoutingStrategy = RoutingStrategy.BALANCED
    router_cost_threshold: float = Field(
        default=0.01,
        gt=0,
        description="Request cost (USD) at which the cost score reaches 0.5",
    )
    router_latency_threshold_ms: float = Field(
        default=5000.0,
        gt=0,
        description="Latency (ms) at which the performance score reaches 0.5",
    )
    router_enable_fallback: bool = True
    router_fallback_chain: list[str] = Field(
        default_factory=list,
        description="Model ids overriding every provider's default fallback chain",
    )
    router_load_balancing: LoadBalancingStrategy = LoadBalancingStrategy.PERFORMANCE_BASED

    # ------------------------------------------------------------------ #
    # Response cache
    # ------------------------------------------------------------------ #
    cache_enabled: bool = True
    cache_ttl_seconds: int = Field(default=3600, ge=0)
    cache_max_entries: int = Field(default=1000, ge=1)
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for a shared response cache; in-process cache when unset",
    )

    # ------------------------------------------------------------------ #
    # Budget (USD)
    # ------------------------------------------------------------------ #
    budget_daily_limit: float | None = Field(default=50.0, gt=0)
    budget_monthly_limit: float | None = Field(default=1000.0, gt=0)
    budget_warning_threshold: float = Field(default=80.0, ge=0, le=100)
    budget_critical_threshold: float = Field(default=95.0, ge=0, le=100)

    # ------------------------------------------------------------------ #
    # Monitoring
    # ------------------------------------------------------------------ #
    monitoring_enabled: bool = True
    health_check_interval_seconds: float = Field(default=30.0, gt=0)

    # ------------------------------------------------------------------ #
    # Providers
    # ------------------------------------------------------------------ #
    openai_api_key: SecretStr | None = None
    openai_base_url: str | None = None
    anthropic_api_key: SecretStr | None = None
    anthropic_base_url: str | None = None
    litellm_base_url: str | None = Field(
        default=None,
        description="LiteLLM proxy base URL; enables the litellm provider when set",
    )
    litellm_api_key: SecretStr | None = None
    provider_timeout_seconds: float = Field(default=60.0, gt=0)
    provider_max_retries: int = Field(default=3, ge=0, le=10)

    @model_validator(mode="after")
    def _validate_thresholds(self) -> Settings:
        if self.budget_warning_threshold > self.budget_critical_threshold:
            raise ValueError(
                "BUDGET_WARNING_THRESHOLD must not exceed BUDGET_CRITICAL_THRESHOLD"
            )
        return self

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD

    @property
    def use_json_logs(self) -> bool:
        return self.is_prod if self.json_logs is None else self.json_logs

    # ------------------------------------------------------------------ #
    # Builders
    # ------------------------------------------------------------------ #

    def router_config(self) -> RouterConfig:
        return RouterConfig(
            strategy=self.router_strategy,
            cost_threshold=self.router_cost_threshold,
            latency_threshold=self.router_latency_threshold_ms,
            enable_fallback=self.router_enable_fallback,
            fallback_chain=list(self.router_fallback_chain),
            load_balancing=self.router_load_balancing,
            cache_ttl=self.cache_ttl_seconds,
        )

    def budget_limits(self) -> BudgetLimits:
        return BudgetLimits(
            daily_limit=self.budget_daily_limit,
            monthly_limit=self.budget_monthly_limit,
            warning_threshold=self.budget_warning_threshold,
            critical_threshold=self.budget_critical_threshold,
        )

    def provider_configs(self) -> list[ProviderConfig]:
        """One ProviderConfig per provider that has credentials configured."""
        configs: list[ProviderConfig] = []
        if self.openai_api_key is not None:
            configs.append(
                ProviderConfig(
                    id="openai",
                    type=ProviderType.OPENAI,
                    name="OpenAI",
                    api_key=self.openai_api_key,
                    base_url=self.openai_base_url,
                    timeout=self.provider_timeout_seconds,
                    max_retries=self.provider_max_retries,
                )
            )
        if self.anthropic_api_key is not None:
            configs.append(
                ProviderConfig(
                    id="anthropic",
                    type=ProviderType.ANTHROPIC,
                    name="Anthropic",
                    api_key=self.anthropic_api_key,
                    base_url=self.anthropic_base_url,
                    timeout=self.provider_timeout_seconds,
                    max_retries=self.provider_max_retries,
                )
            )
        if self.litellm_base_url:
            configs.append(
                ProviderConfig(
                    id="litellm",
                    type=ProviderType.LITELLM,
                    name="LiteLLM proxy",
                    api_key=self.litellm_api_key,
                    base_url=self.litellm_base_url,
                    timeout=self.provider_timeout_seconds,
                    max_retries=self.provider_max_retries,
                )
            )
        return configs


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance. Call get_settings.cache_clear() in tests."""
    return Settings()
