from celery import Celery

from crmflow.core.config import get_settings

settings = get_settings()

celery_app = Celery("crmflow", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.update(
    imports=("crmflow.automation.tasks",),
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # Redeliver a backfill batch if its worker dies mid-run.
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
