"""Configuration management for cliharness."""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logging_utils import LogProfile, configure_logging
from .retry import RetryPolicy

DEFAULT_NOT_READY_SENTINEL = "<title>Deployment Overview"


class HarnessSettings(BaseSettings):
    """Harness settings."""

    model_config = SettingsConfigDict(
        env_prefix="CLIHARNESS_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Binary under test
    binary: Optional[Path] = Field(None, description="Path of the CLI binary under test")
    default_args: list[str] = Field(default_factory=list, description="Arguments prepended to every invocation")

    # Remote API
    api_base: str = Field(default="https://api.zeit.co", description="Base URL of the deployment API")
    token_url: Optional[str] = Field(None, description="Endpoint handing out test tokens as JSON")
    token: Optional[str] = Field(None, description="Pre-provisioned API token")
    request_timeout_seconds: float = Field(default=20, description="Timeout of a single HTTP request")

    # Polling
    poll_interval_seconds: float = Field(default=2, description="Delay between readiness checks")
    poll_deadline_seconds: float = Field(default=240, description="Give up polling after this many seconds")
    not_ready_sentinel: str = Field(
        default=DEFAULT_NOT_READY_SENTINEL, description="Body text marking a deployment that is still building"
    )

    # Retry
    retries: int = Field(default=3, ge=0, description="Extra attempts for idempotent reads")
    retry_factor: float = Field(default=1.0, ge=1.0, description="Backoff growth factor")
    retry_min_delay_seconds: float = Field(default=1.0, ge=0, description="Delay after the first failed attempt")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_profile: LogProfile = Field(default="default", description="Log sink: plain stderr or a rich console")

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy for idempotent reads."""
        return RetryPolicy(
            retries=self.retries,
            factor=self.retry_factor,
            min_delay=self.retry_min_delay_seconds,
        )


def get_settings(**overrides: object) -> HarnessSettings:
    """Get harness settings.

    Args:
        **overrides: Field values taking precedence over the environment

    Returns:
        HarnessSettings instance
    """
    settings = HarnessSettings(**overrides)

    configure_logging(profile=settings.log_profile, level=settings.log_level)

    return settings
