"""Runtime settings with typed configuration and fail-fast validation.

This module provides RetrySettings (pydantic_settings.BaseSettings) loaded
from ``RETRYABLE_TRANSPORT_*`` environment variables, raising
:class:`~retryable_transport.errors.SettingsError` on validation errors.

Examples
--------
>>> from retryable_transport.settings import load_settings
>>> settings = load_settings(max_retries=5)
>>> settings.max_retries
5
"""

from __future__ import annotations

from typing import Self

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from retryable_transport.errors import SettingsError
from retryable_transport.logging import get_logger
from retryable_transport.policy import DEFAULT_MAX_RETRIES

__all__ = ["RetrySettings", "load_settings"]

logger = get_logger(__name__)


class RetrySettings(BaseSettings):
    """Retry and logging configuration (``RETRYABLE_TRANSPORT_*`` namespace)."""

    model_config = SettingsConfigDict(
        env_prefix="RETRYABLE_TRANSPORT_",
        extra="forbid",
        case_sensitive=False,
    )

    max_retries: int = Field(
        default=DEFAULT_MAX_RETRIES, ge=0, description="Retries allowed after the first attempt"
    )
    initial_interval_s: float = Field(
        default=0.5, ge=0, description="Base delay before the first retry, in seconds"
    )
    multiplier: float = Field(default=1.5, ge=1, description="Backoff growth factor per retry")
    randomization_factor: float = Field(
        default=0.5, ge=0, le=1, description="Jitter fraction applied to each delay"
    )
    max_interval_s: float = Field(
        default=60.0, ge=0, description="Upper bound on a single un-jittered delay"
    )
    max_elapsed_s: float | None = Field(
        default=None, gt=0, description="Optional cap on total retry time in seconds"
    )
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    @model_validator(mode="after")
    def check_interval_bounds(self) -> Self:
        if self.max_interval_s < self.initial_interval_s:
            msg = "max_interval_s must be >= initial_interval_s"
            raise ValueError(msg)
        return self

    def __init__(self, **overrides: object) -> None:
        """Initialise settings with fail-fast validation."""
        try:
            super().__init__(**overrides)  # type: ignore[arg-type]
        except ValidationError as exc:
            msg = f"Configuration validation failed: {exc}"
            logger.exception(
                "Settings validation failed",
                extra={"operation": "settings.load", "error_type": type(exc).__name__},
            )
            errors: list[dict[str, object]] = [
                {"field": ".".join(str(part) for part in err["loc"]), "issue": err["msg"]}
                for err in exc.errors()
            ]
            raise SettingsError(msg, errors=errors, cause=exc) from exc


def load_settings(**overrides: object) -> RetrySettings:
    """Load :class:`RetrySettings` with optional overrides.

    Parameters
    ----------
    **overrides : object
        Field values taking precedence over the environment.

    Returns
    -------
    RetrySettings
        Validated settings.
    """
    return RetrySettings(**overrides)
