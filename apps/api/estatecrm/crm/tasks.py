from __future__ import annotations

import logging
import time
import uuid

from opentelemetry import trace

from estatecrm.context import reset_correlation_id, set_correlation_id
from estatecrm.core.celery_app import celery_app
from estatecrm.core.database import SessionLocal
from estatecrm.crm.service import TaskService
from estatecrm.metrics import observe_job

logger = logging.getLogger("estatecrm.jobs")
tracer = trace.get_tracer("estatecrm.crm.jobs")
task_service = TaskService()


def run_task_due_reminders(session_factory=SessionLocal) -> int:
    correlation_id = f"job-{uuid.uuid4()}"
    token = set_correlation_id(correlation_id)
    started = time.perf_counter()
    final_status = "Failed"
    try:
        with tracer.start_as_current_span("crm.job.run") as span:
            span.set_attribute("job_type", "TASK_DUE_REMINDERS")
            span.set_attribute("correlation_id", correlation_id)
            with session_factory() as session:
                notified = task_service.send_due_reminders(session, None)
            span.set_attribute("notified", notified)
        final_status = "Succeeded"
        logger.info("job.completed", extra={"job_type": "TASK_DUE_REMINDERS", "count": notified})
        return notified
    except Exception as exc:
        logger.exception("job.failed", extra={"job_type": "TASK_DUE_REMINDERS", "error": str(exc)})
        raise
    finally:
        observe_job(job_type="TASK_DUE_REMINDERS", status=final_status, duration=time.perf_counter() - started)
        reset_correlation_id(token)


@celery_app.task(name="estatecrm.tasks.send_task_due_reminders")
def send_task_due_reminders() -> int:
    return run_task_due_reminders()
