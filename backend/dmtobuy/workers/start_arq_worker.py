#!/usr/bin/env python3
"""Run the DM-to-Buy background worker.

The worker owns the three periodic jobs (queue drain every minute, stuck-row
reset every five minutes, follow-ups hourly). Running it is optional: the
same jobs are reachable over HTTP through /cron/* for platforms that only
offer HTTP schedulers.

USAGE:
    python -m dmtobuy.workers.start_arq_worker
    arq dmtobuy.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

from dmtobuy.workers.arq_worker import WorkerSettings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    redis = WorkerSettings.redis_settings
    jobs = [job.name for job in WorkerSettings.cron_jobs]
    logger.info(f"[ARQ] Worker starting (redis={redis.host}:{redis.port}/{redis.database}, cron={jobs})")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
