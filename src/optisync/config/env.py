"""Environment variable loaders for configuration."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

from .errors import InvalidConfigurationError, MissingConfigurationError

if TYPE_CHECKING:
    from collections.abc import Sequence
    from enum import StrEnum

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def require_env_vars(names: Sequence[str]) -> dict[str, str]:
    """Return the given environment variables or raise if any are missing/blank."""

    missing: list[str] = []
    values: dict[str, str] = {}
    for name in names:
        value = os.getenv(name)
        if value is None or not value.strip():
            missing.append(name)
            continue
        values[name] = value

    if missing:
        missing_list = ", ".join(sorted(missing))
        raise MissingConfigurationError(f"Missing configuration for: {missing_list}")

    return values


def _optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = _optional(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise InvalidConfigurationError(name, raw, "an integer") from exc
    if minimum is not None and value < minimum:
        raise InvalidConfigurationError(name, raw, f"an integer >= {minimum}")
    return value


def env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    raw = _optional(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise InvalidConfigurationError(name, raw, "a number") from exc
    if minimum is not None and value < minimum:
        raise InvalidConfigurationError(name, raw, f"a number >= {minimum}")
    return value


def env_bool(name: str, default: bool) -> bool:  # noqa: FBT001
    raw = _optional(name)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise InvalidConfigurationError(name, raw, "a boolean such as true/false")


def env_choice[TEnum: StrEnum](name: str, enum_cls: type[TEnum], default: TEnum) -> TEnum:
    raw = _optional(name)
    if raw is None:
        return default
    try:
        return enum_cls(raw.lower())
    except ValueError as exc:
        choices = ", ".join(member.value for member in enum_cls)
        raise InvalidConfigurationError(name, raw, f"one of {choices}") from exc
