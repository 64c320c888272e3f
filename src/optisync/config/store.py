"""Settings for the REST entity store."""

from __future__ import annotations

from dataclasses import dataclass, field

from .env import env_float, env_int, require_env_vars
from .http_resilience import HttpRetryPolicy, RateLimit, ResilienceConfig

STORE_URL_ENV = "OPTISYNC_STORE_URL"
DEFAULT_STORE_TIMEOUT_SECONDS = 10.0
DEFAULT_STORE_RATE_LIMIT = 20


@dataclass(frozen=True, slots=True)
class HttpStoreConfig:
    base_url: str
    timeout_seconds: float = DEFAULT_STORE_TIMEOUT_SECONDS
    retry: HttpRetryPolicy = field(default_factory=HttpRetryPolicy)
    ratelimit: RateLimit | None = field(
        default_factory=lambda: RateLimit(max_calls=DEFAULT_STORE_RATE_LIMIT, per_seconds=1.0)
    )

    def resilience(self) -> ResilienceConfig:
        return ResilienceConfig(
            name="entity-store",
            base_url=self.base_url.rstrip("/"),
            timeout_seconds=self.timeout_seconds,
            retry=self.retry,
            ratelimit=self.ratelimit,
            default_headers={"Accept": "application/json", "Cache-Control": "no-cache"},
        )


def get_http_store_config() -> HttpStoreConfig:
    values = require_env_vars([STORE_URL_ENV])
    rate = env_int("OPTISYNC_STORE_RATE_LIMIT", DEFAULT_STORE_RATE_LIMIT, minimum=0)
    return HttpStoreConfig(
        base_url=values[STORE_URL_ENV],
        timeout_seconds=env_float(
            "OPTISYNC_STORE_TIMEOUT", DEFAULT_STORE_TIMEOUT_SECONDS, minimum=0.1
        ),
        ratelimit=RateLimit(max_calls=rate, per_seconds=1.0) if rate else None,
    )
