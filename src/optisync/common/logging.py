"""Shared logging helpers for optisync."""

from __future__ import annotations

import logging
import os
from typing import Final

LOG_LEVEL_ENV: Final[str] = "OPTISYNC_LOG_LEVEL"


def configure_logging(*, level: int = logging.INFO, force: bool = False) -> None:
    """Initialise the root logger once with sensible defaults.

    Parameters mirror ``logging.basicConfig`` with a simplified contract: INFO
    level and a terse format suitable for CLI output. ``OPTISYNC_LOG_LEVEL``
    (a level name such as ``DEBUG``) overrides ``level``. Pass ``force=True`` to
    reconfigure during tests or specialised entry points.
    """

    override = os.getenv(LOG_LEVEL_ENV)
    if override and override.strip():
        resolved = logging.getLevelNamesMapping().get(override.strip().upper())
        if resolved is not None:
            level = resolved

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        force=force,
    )
