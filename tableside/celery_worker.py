"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend.
"""

from celery import Celery

from tableside.core.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    'tableside_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['tableside.tasks']  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time
    worker_concurrency=4,

    # Result settings
    result_expires=3600,

    # Task execution settings
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies
    task_always_eager=settings.celery_always_eager,
    task_eager_propagates=settings.celery_always_eager,

    broker_connection_retry_on_startup=True,

    # Periodic housekeeping (celery -A tableside.celery_worker beat)
    beat_schedule={
        'expire-stale-sessions': {
            'task': 'tableside.tasks.expire_stale_sessions',
            'schedule': settings.session_sweep_minutes * 60.0,
        },
    },
)


if __name__ == '__main__':
    celery_app.start()
