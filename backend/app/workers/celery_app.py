"""
Celery Application Factory

Runs the per-file processing chains and the maintenance beat tasks.
Broker and result backend come from settings (Redis by default).

Queue topology:
  receipts      receipt chains (Convert → ExtractReceiptFields → MatchMerchant → …)
  documents     document chains (Convert → ExtractDocumentFields → AnalyzeDocument → …)
  maintenance   stale-pending requeue, soft-delete retention purge, health check

Stage tasks carry only the job id (plus import-source ids for the last
stage); file bytes and intermediate results never travel in task payloads.

Workers should run with DB_NULL_POOL=true: every task drives its own event
loop and pooled async DB connections cannot be shared between loops.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging, task_failure, task_postrun, task_prerun, task_retry
from kombu import Exchange, Queue

from app.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

PIPELINE_EXCHANGE = Exchange("pipeline", type="direct", durable=True)
MAINTENANCE_QUEUE = "maintenance"

TASK_QUEUES = (
    Queue(
        settings.receipt_queue,
        exchange=PIPELINE_EXCHANGE,
        routing_key=settings.receipt_queue,
        durable=True,
    ),
    Queue(
        settings.document_queue,
        exchange=PIPELINE_EXCHANGE,
        routing_key=settings.document_queue,
        durable=True,
    ),
    Queue(
        MAINTENANCE_QUEUE,
        Exchange("system", type="direct"),
        routing_key=MAINTENANCE_QUEUE,
        durable=True,
    ),
)

# Stage tasks are routed per signature by the dispatcher (receipt vs document)
TASK_ROUTES = {
    "app.workers.tasks.requeue_stale_pending_files":  {"queue": MAINTENANCE_QUEUE},
    "app.workers.tasks.purge_soft_deleted_entities":  {"queue": MAINTENANCE_QUEUE},
    "app.workers.tasks.health_check":                 {"queue": MAINTENANCE_QUEUE},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docpulse_ingest")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=settings.document_queue,
        task_default_exchange="pipeline",
        task_default_routing_key=settings.document_queue,

        # --- Reliability ---
        task_acks_late=True,         # ack only after the stage returns; a crash redelivers it
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Retries (stage wrappers override per task) ---
        task_max_retries=settings.stage_max_attempts - 1,
        task_default_retry_delay=settings.stage_retry_delay_seconds,

        # --- Timeouts ---
        task_soft_time_limit=settings.stage_time_limit_seconds,
        task_time_limit=settings.stage_time_limit_seconds + 60,

        # --- Result TTL ---
        result_expires=3600,   # state lives in job_history, not Celery results

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule ---
        beat_schedule={
            "requeue-stale-pending-files-every-5m": {
                "task":     "app.workers.tasks.requeue_stale_pending_files",
                "schedule": 300,
                "options":  {"queue": MAINTENANCE_QUEUE},
            },
            "purge-soft-deleted-entities-daily": {
                "task":     "app.workers.tasks.purge_soft_deleted_entities",
                "schedule": crontab(hour=3, minute=30),
                "options":  {"queue": MAINTENANCE_QUEUE},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["app.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: one log line per stage start / end / retry / failure
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s job=%s",
        task_id, task.name, (kwargs or {}).get("job_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s job=%s",
        task_id, task.name, state, (kwargs or {}).get("job_id", "-"),
    )


@task_retry.connect
def on_task_retry(request, reason, einfo, **_):
    logger.warning(
        "Task retry | task_id=%s task=%s job=%s attempt=%d reason=%s",
        request.id, request.task, (request.kwargs or {}).get("job_id", "-"),
        request.retries + 1, reason,
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s job=%s error=%s",
        task_id, (kwargs or {}).get("job_id", "-"), exception,
        exc_info=True,
    )


@setup_logging.connect
def configure_logging(**_):
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
