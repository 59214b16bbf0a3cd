from celery import Celery

from estatecrm.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "estatecrm_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["estatecrm.crm.tasks"],
)
celery_app.conf.beat_schedule = {
    "send-task-due-reminders": {
        "task": "estatecrm.tasks.send_task_due_reminders",
        "schedule": 15 * 60.0,
    },
}
