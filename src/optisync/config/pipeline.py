"""Pipeline tuning loaded from the environment."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from optisync.domain.backoff import RetryPolicy
from optisync.domain.consistency import (
    DEFAULT_VALIDATION_INTERVAL,
    ValidationSettings,
)
from optisync.domain.model import OverlayPolicy
from optisync.domain.queue import DEFAULT_EXECUTION_TIMEOUT_SECONDS, DEFAULT_RETENTION

from .env import env_bool, env_choice, env_float, env_int
from .errors import InvalidConfigurationError


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    execution_timeout_seconds: float = DEFAULT_EXECUTION_TIMEOUT_SECONDS
    retention: timedelta = DEFAULT_RETENTION
    validation: ValidationSettings = field(default_factory=ValidationSettings)


def get_pipeline_config() -> PipelineConfig:
    """Read ``OPTISYNC_*`` tuning variables; unset variables keep their defaults.

    Durations are given in seconds.
    """

    defaults = RetryPolicy()
    base_delay = env_float("OPTISYNC_BASE_DELAY", defaults.base_delay_seconds, minimum=0.0)
    max_delay = env_float("OPTISYNC_MAX_DELAY", defaults.max_delay_seconds, minimum=0.0)
    if max_delay < base_delay:
        raise InvalidConfigurationError(
            "OPTISYNC_MAX_DELAY", str(max_delay), f"a number >= OPTISYNC_BASE_DELAY ({base_delay})"
        )
    retry = RetryPolicy(
        max_attempts=env_int("OPTISYNC_MAX_ATTEMPTS", defaults.max_attempts, minimum=1),
        base_delay_seconds=base_delay,
        max_delay_seconds=max_delay,
    )

    interval = env_float(
        "OPTISYNC_VALIDATION_INTERVAL",
        DEFAULT_VALIDATION_INTERVAL.total_seconds(),
        minimum=1.0,
    )
    validation = ValidationSettings(
        auto_fix=env_bool("OPTISYNC_AUTO_FIX", default=True),
        overlay_policy=env_choice(
            "OPTISYNC_OVERLAY_POLICY", OverlayPolicy, OverlayPolicy.TRUST_LOCAL
        ),
        interval=timedelta(seconds=interval),
    )

    return PipelineConfig(
        retry=retry,
        execution_timeout_seconds=env_float(
            "OPTISYNC_EXECUTION_TIMEOUT", DEFAULT_EXECUTION_TIMEOUT_SECONDS, minimum=0.001
        ),
        retention=timedelta(
            seconds=env_float(
                "OPTISYNC_RETENTION", DEFAULT_RETENTION.total_seconds(), minimum=0.0
            )
        ),
        validation=validation,
    )
