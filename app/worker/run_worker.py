"""Run ARQ worker. Usage: python -m app.worker.run_worker"""

import asyncio
from arq import run_worker
from arq.cron import cron
from app.worker.tasks import get_redis_settings, reconcile_ledger, startup, shutdown


async def main():
    await run_worker(
        get_redis_settings(),
        worker_name="schoolpoints_worker",
        functions=[reconcile_ledger],
        cron_jobs=[
            cron(reconcile_ledger, minute={0, 15, 30, 45}, second=0),  # every 15 minutes
        ],
        on_startup=startup,
        on_shutdown=shutdown,
    )


if __name__ == "__main__":
    asyncio.run(main())
