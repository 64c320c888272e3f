"""APScheduler jobs for periodic validation and housekeeping."""

from __future__ import annotations

from datetime import timedelta
from logging import getLogger
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from optisync.domain.consistency import DataConsistencyValidator
    from optisync.domain.updates import OptimisticUpdateManager

log = getLogger(__name__)

VALIDATION_JOB_ID: Final[str] = "optisync-consistency-validation"
CLEANUP_JOB_ID: Final[str] = "optisync-cleanup"
DEFAULT_CLEANUP_INTERVAL: Final[timedelta] = timedelta(minutes=1)


def start_periodic_validation(
    scheduler: AsyncIOScheduler,
    validator: DataConsistencyValidator,
    *,
    interval: timedelta | None = None,
    job_id: str = VALIDATION_JOB_ID,
) -> str:
    """Run ``validator.validate_consistency`` every ``interval``.

    ``max_instances=1`` with ``coalesce=True`` means a slow pass is never
    overlapped by the next tick; missed ticks collapse into one run.
    """

    every = interval or validator.settings.interval
    scheduler.add_job(
        validator.validate_consistency,
        trigger="interval",
        seconds=every.total_seconds(),
        id=job_id,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    log.info("Scheduled consistency validation every %s", every)
    return job_id


def start_periodic_cleanup(
    scheduler: AsyncIOScheduler,
    manager: OptimisticUpdateManager,
    *,
    interval: timedelta = DEFAULT_CLEANUP_INTERVAL,
    job_id: str = CLEANUP_JOB_ID,
) -> str:
    """Run ``manager.cleanup`` every ``interval`` on the scheduler's event loop.

    Plain callables would run on the executor's thread pool; pipeline state is
    only touched from the loop, so the job is a coroutine.
    """

    scheduler.add_job(
        run_cleanup,
        args=(manager,),
        trigger="interval",
        seconds=interval.total_seconds(),
        id=job_id,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    log.info("Scheduled pipeline cleanup every %s", interval)
    return job_id


def stop_periodic_validation(
    scheduler: AsyncIOScheduler, *, job_id: str = VALIDATION_JOB_ID
) -> bool:
    """Remove the validation job; returns ``False`` if it was not scheduled."""

    return _remove_job(scheduler, job_id)


def stop_periodic_cleanup(scheduler: AsyncIOScheduler, *, job_id: str = CLEANUP_JOB_ID) -> bool:
    return _remove_job(scheduler, job_id)


def _remove_job(scheduler: AsyncIOScheduler, job_id: str) -> bool:
    if scheduler.get_job(job_id) is None:
        log.debug("Job %s is not scheduled, nothing to remove", job_id)
        return False
    scheduler.remove_job(job_id)
    log.info("Removed scheduled job %s", job_id)
    return True


async def run_cleanup(manager: OptimisticUpdateManager) -> None:
    manager.cleanup()
