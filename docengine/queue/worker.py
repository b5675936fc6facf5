"""arq worker runner.

Run with: python -m docengine.queue.worker
Or: arq docengine.queue.tasks.WorkerSettings
"""

import logging

from arq import run_worker

from docengine.queue.tasks import WorkerSettings, redis_settings_from_url
from docengine.router.metrics import start_metrics_server
from docengine.shared.config import get_settings
from docengine.shared.log import configure_logging

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the arq worker."""
    settings = get_settings()
    configure_logging(settings)

    logger.info(f"Starting worker with Redis: {settings.redis_url}")
    logger.info(f"Max jobs: {settings.queue_max_jobs}")
    logger.info(f"Job timeout: {settings.queue_job_timeout}s")

    WorkerSettings.redis_settings = redis_settings_from_url(settings.redis_url)
    WorkerSettings.max_jobs = settings.queue_max_jobs
    WorkerSettings.job_timeout = settings.queue_job_timeout

    if start_metrics_server(settings.metrics_port):
        logger.info(f"Metrics exporter listening on :{settings.metrics_port}")

    run_worker(WorkerSettings)  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
