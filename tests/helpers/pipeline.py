"""Pipeline settings tuned for fast, deterministic tests."""

from __future__ import annotations

from datetime import timedelta

from optisync.config import PipelineConfig
from optisync.domain.backoff import RetryPolicy
from optisync.domain.consistency import ValidationSettings

FAST_CONFIG = PipelineConfig(
    retry=RetryPolicy(max_attempts=2, base_delay_seconds=0.001, max_delay_seconds=0.001),
    execution_timeout_seconds=1.0,
    retention=timedelta(minutes=1),
    validation=ValidationSettings(interval=timedelta(seconds=5)),
)
