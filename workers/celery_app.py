# =============================================================================
# workers/celery_app.py - Celery Application Configuration
# =============================================================================
# Creates the Celery app shared by the API (for .delay()) and the worker.
# Redis is both broker and result backend, so task PROGRESS state written by
# transcription jobs is readable from /api/v1/tasks/{task_id}.
#
# Usage:
#   # Start worker
#   celery -A workers.celery_app worker -Q default,notifications,transcription --loglevel=info
#
#   # Start the scheduler for hourly notification checks
#   celery -A workers.celery_app beat --loglevel=info
# =============================================================================

import logging
import os

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

WORKER_QUEUES = ("default", "notifications", "transcription")


def _safe_broker_url(url: str) -> str:
    """Drop credentials from a Redis URL before it is logged."""
    return url.split("@")[-1] if "@" in url else url


def create_celery_app() -> Celery:
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    app = Celery(
        "edudash_worker",
        broker=redis_url,
        backend=redis_url,
        include=["workers.tasks"],
    )
    app.config_from_object("workers.config:CeleryConfig")

    logger.info(f"Celery broker: {_safe_broker_url(redis_url)}")
    return app


celery_app = create_celery_app()


@celery_app.task(bind=True, name="workers.healthcheck")
def healthcheck(self) -> dict:
    """
    Round-trip check that a worker is consuming the default queue.

    Queued by POST /api/v1/tasks/healthcheck (superadmin).
    """
    return {
        "status": "OK",
        "worker": self.request.hostname,
        "queues": list(WORKER_QUEUES),
    }


# =============================================================================
# Celery Signals (Lifecycle Hooks)
# =============================================================================
# Transcription jobs are logged with their job id so worker logs can be
# matched to the WebSocket channel.

def _job_label(task_id: str | None, kwargs: dict | None) -> str:
    job_id = (kwargs or {}).get("job_id")
    return f"[{task_id}] job={job_id}" if job_id else f"[{task_id}]"


@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **extra):
    logger.info(f"Task started: {task.name} {_job_label(task_id, kwargs)}")


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, retval=None, state=None, **extra):
    logger.info(f"Task finished: {task.name} {_job_label(task_id, kwargs)} state={state}")


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, kwargs=None, **extra):
    logger.error(f"Task failed: {sender.name} {_job_label(task_id, kwargs)}: {exception}")


if __name__ == "__main__":
    celery_app.start()
