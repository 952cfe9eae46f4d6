import os

from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'autovfx.settings')

app = Celery('autovfx')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

app.conf.task_routes = {
    "credits.tasks.process_billing_event_async": {"queue": "credits"},
    "credits.tasks.expire_stale_reservations_task": {"queue": "credits"},
    "credits.tasks.cleanup_processed_events": {"queue": "maintenance"},
    '*': {'queue': 'default'},
}

app.conf.task_default_queue = 'default'

app.conf.update(
    # Serialization settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone settings
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_track_started=True,
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Billing events must survive a worker crash mid-task.
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    task_queues={
        'default': {
            'exchange': 'default',
            'routing_key': 'default',
        },
        'credits': {
            'exchange': 'credits',
            'routing_key': 'credits',
        },
        'maintenance': {
            'exchange': 'maintenance',
            'routing_key': 'maintenance',
        },
    },

    task_ignore_result=False,
    task_store_errors_even_if_ignored=True,
)

app.conf.beat_schedule = {
    "expire_stale_reservations_15min": {
        "task": "credits.tasks.expire_stale_reservations_task",
        "schedule": crontab(minute="*/15"),
        "options": {"queue": "credits"},
    },
    "cleanup_processed_events_daily": {
        "task": "credits.tasks.cleanup_processed_events",
        "schedule": crontab(hour=4, minute=0),
        "options": {"queue": "maintenance"},
    },
}

