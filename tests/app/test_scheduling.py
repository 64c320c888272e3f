from __future__ import annotations

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from optisync.app import build_pipeline
from optisync.scheduling import (
    CLEANUP_JOB_ID,
    VALIDATION_JOB_ID,
    start_periodic_cleanup,
    start_periodic_validation,
    stop_periodic_validation,
)
from tests.helpers.pipeline import FAST_CONFIG
from tests.helpers.stores import InMemoryEntityStore, wait_until


def test_validation_job_is_single_instance_and_coalesced() -> None:
    pipeline = build_pipeline(store=InMemoryEntityStore(), config=FAST_CONFIG)
    scheduler = MagicMock()

    job_id = start_periodic_validation(scheduler, pipeline.validator)

    assert job_id == VALIDATION_JOB_ID
    scheduler.add_job.assert_called_once_with(
        pipeline.validator.validate_consistency,
        trigger="interval",
        seconds=5.0,
        id=VALIDATION_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )


def test_explicit_interval_overrides_settings() -> None:
    pipeline = build_pipeline(store=InMemoryEntityStore(), config=FAST_CONFIG)
    scheduler = MagicMock()

    start_periodic_validation(scheduler, pipeline.validator, interval=timedelta(minutes=1))

    assert scheduler.add_job.call_args.kwargs["seconds"] == 60.0


def test_pipeline_schedules_validation_and_cleanup() -> None:
    pipeline = build_pipeline(store=InMemoryEntityStore(), config=FAST_CONFIG)
    scheduler = MagicMock()

    pipeline.start_periodic_validation(scheduler)
    pipeline.stop_periodic_validation(scheduler)

    scheduled = [call.kwargs["id"] for call in scheduler.add_job.call_args_list]
    removed = [call.args[0] for call in scheduler.remove_job.call_args_list]
    assert scheduled == [VALIDATION_JOB_ID, CLEANUP_JOB_ID]
    assert removed == [VALIDATION_JOB_ID, CLEANUP_JOB_ID]


def test_stopping_an_unscheduled_job_is_a_no_op() -> None:
    scheduler = MagicMock()
    scheduler.get_job.return_value = None

    assert stop_periodic_validation(scheduler) is False
    scheduler.remove_job.assert_not_called()


@pytest.mark.asyncio
async def test_cleanup_job_runs_on_the_event_loop_thread(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    pipeline = build_pipeline(store=InMemoryEntityStore(), config=FAST_CONFIG)
    threads: list[int] = []
    monkeypatch.setattr(
        pipeline.manager, "cleanup", lambda: threads.append(threading.get_ident())
    )
    scheduler = AsyncIOScheduler()
    start_periodic_cleanup(scheduler, pipeline.manager, interval=timedelta(milliseconds=50))
    scheduler.start()
    try:
        await wait_until(lambda: bool(threads), timeout=2.0)
    finally:
        scheduler.shutdown(wait=False)

    assert set(threads) == {threading.get_ident()}
