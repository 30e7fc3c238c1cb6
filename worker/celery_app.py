from celery import Celery
from celery.signals import worker_process_init
from marketplace.core.config import settings
from marketplace.core.telemetry import setup_worker_telemetry

celery = Celery(
    "listings-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "worker.tasks.send_payment_confirmation": {"queue": "notifications"},
        "worker.tasks.reconcile_pending_payments": {"queue": "payments"},
        "worker.tasks.expire_overdue_verifications": {"queue": "payments"},
    },
    beat_schedule={
        "reconcile-pending-payments": {
            "task": "worker.tasks.reconcile_pending_payments",
            "schedule": 600.0,
        },
        "expire-overdue-verifications": {
            "task": "worker.tasks.expire_overdue_verifications",
            "schedule": 3600.0,
        },
    },
)


@worker_process_init.connect
def _init_worker_telemetry(**_):
    setup_worker_telemetry()
