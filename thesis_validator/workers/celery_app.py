# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs research and stress-test jobs in a fixed-size worker pool.
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌────────────┐
# │ FastAPI  │────▶│ Redis │────▶│ Celery Worker│────▶│ PostgreSQL │
# │ (submit) │     │(broker)│    │ (run job)    │     │ + Chroma   │
# └──────────┘     └───────┘     └──────────────┘     └────────────┘
#    db 0 ──────────┘                   │
#                                       └──▶ Redis db 2: leases, cancel
#                                            flags, progress pub/sub
#
# The job record in PostgreSQL is the source of truth for status; the
# Celery result backend (db 1) only holds task return values.
# =============================================================================

from celery import Celery
from celery.signals import setup_logging

from thesis_validator.config import configure_logging, settings

celery_app = Celery(
    "thesis_validator.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only. Task arguments are job ids; everything else is loaded
    # from the job record.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Ack after the task finishes so a crashed worker's job is redelivered.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Research runs are long; one task per worker process at a time.
    worker_prefetch_multiplier=1,

    # --- Pool ---
    worker_concurrency=settings.worker_concurrency,

    # --- Timeouts ---
    # Soft limit raises SoftTimeLimitExceeded inside the task (retried as an
    # infrastructure error); the hard limit kills the process.
    task_soft_time_limit=settings.job_soft_time_limit,
    task_time_limit=settings.job_time_limit,

    # --- Rate limiting ---
    task_annotations={
        "run_research_job": {"rate_limit": settings.job_rate_limit},
        "run_stress_test_job": {"rate_limit": settings.job_rate_limit},
    },

    # --- Periodic ---
    # Run with `celery -A thesis_validator.workers.celery_app beat`.
    beat_schedule={
        "reap-stale-jobs": {
            "task": "reap_stale_jobs",
            "schedule": float(settings.job_reap_interval_seconds),
        },
    },

    # --- Results ---
    result_expires=3600,

    include=["thesis_validator.workers.tasks"],
)


@setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    configure_logging()
