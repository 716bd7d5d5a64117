"""ARQ job definitions."""

from typing import Any

from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import configure_logging, get_logger
from app.services.reconcile import reconcile

log = get_logger(__name__)


async def _dead_letter(ctx: dict[str, Any], job_name: str, exc: Exception, args: list[Any] | None = None) -> None:
    """Persist a failed run to FailedJob; without MongoDB the failure is only logged."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else f"{job_name}:{ctx.get('enqueue_time')}"
    if get_settings().ledger_backend != "mongo":
        log.error("job_dead_lettered", job=job_name, job_id=job_id, error_type=type(exc).__name__, persisted=False)
        return
    from app.db.init import init_db
    from app.models.failed_job import FailedJob
    await init_db()
    await FailedJob(
        job_name=job_name,
        job_id=job_id,
        attempt=int(ctx.get("job_try") or 1),
        args=args or [],
        error_type=type(exc).__name__,
        reason=str(exc)[:2000],
    ).insert()
    log.error("job_dead_lettered", job=job_name, job_id=job_id, error_type=type(exc).__name__)


async def reconcile_ledger(ctx: dict[str, Any]) -> dict[str, Any]:
    """Cron: repair partial commits and drifted balance caches."""
    log.info("job_start", job="reconcile_ledger")
    try:
        report = await reconcile()
    except Exception as e:
        log.exception("job_failed", job="reconcile_ledger")
        await _dead_letter(ctx, "reconcile_ledger", e)
        raise
    log.info(
        "job_done",
        job="reconcile_ledger",
        cards_repaired=report.cards_repaired,
        transfers_repaired=report.transfers_repaired,
        projections_drifted=report.projections_drifted,
    )
    return report.model_dump()


async def startup(ctx: dict) -> None:
    from app.db.init import init_db
    settings = get_settings()
    configure_logging(debug=settings.debug)
    if settings.ledger_backend == "mongo":
        await init_db()
    log.info("worker_startup", backend=settings.ledger_backend)


async def shutdown(ctx: dict) -> None:
    from app.db.init import close_db
    close_db()


def get_redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(get_settings().redis_url)
