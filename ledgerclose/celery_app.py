"""
LedgerClose - Celery Configuration

Celery configuration for background task processing.
Uses Redis as the message broker and result backend.
"""

from celery import Celery
from celery.schedules import crontab

from ledgerclose.config import settings


broker_url = settings.celery_broker_url or settings.redis_url

# Create Celery app
celery_app = Celery(
    'ledgerclose',
    broker=broker_url,
    backend=broker_url,
    include=['ledgerclose.tasks.celery_tasks'],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=600,  # 10 minutes, a close touches every open item
    task_soft_time_limit=540,

    # Worker settings
    worker_prefetch_multiplier=1,

    # Result backend settings
    result_expires=86400,  # 24 hours

    # Retry settings
    task_default_retry_delay=60,  # 1 minute
    task_max_retries=3,

    # Beat schedule for periodic tasks
    beat_schedule={
        # Pull the day's rates for every tenant at 6 AM UTC
        'sync-exchange-rates': {
            'task': 'ledgerclose.tasks.celery_tasks.sync_exchange_rates_task',
            'schedule': crontab(hour=6, minute=0),
        },
    },
)


celery_app.conf.task_routes = {
    'ledgerclose.tasks.celery_tasks.sync_exchange_rates_task': {'queue': 'fx'},
    'ledgerclose.tasks.celery_tasks.*': {'queue': 'default'},
}
