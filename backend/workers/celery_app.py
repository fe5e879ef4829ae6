from celery import Celery
from celery.schedules import schedule
from celery.signals import task_postrun, task_prerun
from kombu import Queue

from app.core.config import settings
from app.infrastructure.logging.context import reset_task_id, set_task_id

celery_app = Celery(
    "viralchef",
    broker=settings.cache_redis_url,
    backend=settings.cache_redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="threads",
    task_queues=(
        Queue("threads"),
        Queue("scheduler"),
    ),
    task_routes={
        "workers.tasks.process_thread_queue": {"queue": "threads"},
        "workers.tasks.publish_due_thread_chains": {"queue": "scheduler"},
        "workers.tasks.cleanup_thread_queue": {"queue": "scheduler"},
        "workers.tasks.worker_heartbeat": {"queue": "scheduler"},
    },
    beat_schedule={
        "thread-chain-scheduler-every-30s": {
            "task": "workers.tasks.publish_due_thread_chains",
            "schedule": schedule(30.0),
            "options": {"queue": "scheduler"},
        },
        "thread-queue-sweep-every-60s": {
            "task": "workers.tasks.process_thread_queue",
            "schedule": schedule(60.0),
            "options": {"queue": "threads"},
        },
        "thread-queue-cleanup-daily": {
            "task": "workers.tasks.cleanup_thread_queue",
            "schedule": schedule(86400.0),
            "options": {"queue": "scheduler"},
        },
        "worker-heartbeat-every-15s": {
            "task": "workers.tasks.worker_heartbeat",
            "schedule": schedule(15.0),
            "options": {"queue": "scheduler"},
        },
    },
)

_task_log_tokens: dict[str, object] = {}


@task_prerun.connect
def _bind_task_id(task_id=None, **kwargs) -> None:
    if task_id:
        _task_log_tokens[task_id] = set_task_id(task_id)


@task_postrun.connect
def _unbind_task_id(task_id=None, **kwargs) -> None:
    token = _task_log_tokens.pop(task_id, None) if task_id else None
    if token is not None:
        reset_task_id(token)


celery_app.autodiscover_tasks(["workers"])
