from celery import Celery

from lastmile.core.config import settings

celery = Celery(
    "lastmile-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "worker.tasks.process_outbox_event": {"queue": "outbox"},
        "worker.tasks.deliver_callback": {"queue": "callbacks"},
    },
)


def send_task(task_name: str, args: list, queue: str) -> None:
    celery.send_task(task_name, args=args, queue=queue)
