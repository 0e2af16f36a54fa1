import asyncio

from celery.utils.log import get_task_logger

from seatsync.celery_app import celery_app
from seatsync.config import settings
from seatsync.container import build_services

logger = get_task_logger(__name__)


async def _sweep_once() -> dict:
    # a fresh engine and Redis connection per run; the worker has no long-lived loop
    services = build_services(settings)
    try:
        report = await services.sweeper.tick()
    finally:
        await services.close()
    if report is None:
        raise RuntimeError("sweep failed")
    return {
        "expired": report.expired,
        "repaired": report.repaired,
        "cacheDropped": report.cache_dropped,
        "skipped": report.skipped,
        "errors": report.errors,
    }


@celery_app.task(bind=True, ignore_result=False)
def sweep_holds_task(self):
    """Expire lapsed holds and repair watched scopes.

    Failures are not retried here; the next beat tick runs a full pass again.
    """
    try:
        return asyncio.run(_sweep_once())
    except Exception:
        logger.exception("hold sweep failed")
        raise
