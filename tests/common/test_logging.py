from __future__ import annotations

import logging

import pytest

from optisync.common import configure_logging


def _capture_basic_config(monkeypatch: pytest.MonkeyPatch) -> dict[str, object]:
    captured: dict[str, object] = {}
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: captured.update(kwargs))
    return captured


def test_configure_logging_uses_terse_format(monkeypatch: pytest.MonkeyPatch) -> None:
    captured = _capture_basic_config(monkeypatch)

    configure_logging()

    assert captured["level"] == logging.INFO
    assert captured["format"] == "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    assert captured["force"] is False


def test_configure_logging_honours_level_override(monkeypatch: pytest.MonkeyPatch) -> None:
    captured = _capture_basic_config(monkeypatch)
    monkeypatch.setenv("OPTISYNC_LOG_LEVEL", "debug")

    configure_logging(level=logging.WARNING, force=True)

    assert captured["level"] == logging.DEBUG
    assert captured["force"] is True


def test_configure_logging_ignores_unknown_level_names(monkeypatch: pytest.MonkeyPatch) -> None:
    captured = _capture_basic_config(monkeypatch)
    monkeypatch.setenv("OPTISYNC_LOG_LEVEL", "chatty")

    configure_logging(level=logging.ERROR)

    assert captured["level"] == logging.ERROR
