from __future__ import annotations

from arq.connections import RedisSettings
from arq import cron

from settings.config import settings
from settings.logging_config import configure_logging
from workers.outbox_worker import redeliver_pending_dispatches
from workers.sweep_worker import sweep_stuck_files


async def startup(ctx: dict) -> None:
    configure_logging()


class WorkerSettings:
    functions = [
        redeliver_pending_dispatches,
        sweep_stuck_files,
    ]
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL or "redis://localhost:6379")
    on_startup = startup
    cron_jobs = [
        cron(redeliver_pending_dispatches, second=0),                          # every minute
        cron(sweep_stuck_files, minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55}, second=0),
    ]
