# backend/vericall/workers/celery_app.py
"""
Celery application for running attestation pipelines out of process
(PIPELINE_MODE=celery). Start a worker with:

    celery -A vericall.workers.celery_app worker --loglevel=INFO

Witness records are shared with the API process through the database
(SqlWitnessStore), so both sides must point at the same DATABASE_URL.

Environment Variables:
- CELERY_BROKER_URL: URL for the Celery broker (e.g., Redis).
- REDIS_URL: Fallback URL for the broker if CELERY_BROKER_URL is not set.
- CELERY_RESULT_BACKEND: URL for storing task results (defaults to broker URL).
"""
from __future__ import annotations
import os
from celery import Celery

broker = os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL", "redis://redis:6379/0")
backend = os.getenv("CELERY_RESULT_BACKEND", broker)

celery = Celery("vericall", broker=broker, backend=backend, include=["vericall.services.pipeline"])
celery.conf.update(
    broker_connection_retry_on_startup=True,
    # no redelivery: pipeline stages are never retried
    task_acks_late=False,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,
)
