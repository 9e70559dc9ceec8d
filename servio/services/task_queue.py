import traceback
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.orm import Session

from servio.db import SessionLocal
from servio.models import Job, utcnow

logger = structlog.get_logger(__name__)

MAX_RETRIES = 3

# Registry of available tasks
TASK_REGISTRY: Dict[str, Callable[..., Any]] = {}


def register_task(name: str):
    """Decorator to register a function as a task.

    Registered functions receive the worker's session as their first argument,
    followed by the job's stored keyword arguments.
    """
    def decorator(func):
        TASK_REGISTRY[name] = func
        return func
    return decorator


def enqueue_job(task_name: str, args: Optional[dict] = None, delay_minutes: int = 0, db: Optional[Session] = None):
    """
    Add a job to the queue. Returns the job id, or None if it could not be stored.
    """
    if args is None:
        args = {}

    scheduled_at = utcnow() + timedelta(minutes=delay_minutes)

    job = Job(
        task_name=task_name,
        arguments=args,
        scheduled_at=scheduled_at,
        status="pending",
    )

    # Use provided session or create new one
    close_db = False
    if not db:
        db = SessionLocal()
        close_db = True

    try:
        db.add(job)
        db.commit()
        db.refresh(job)
        logger.info("job_enqueued", job_id=job.id, task=task_name, scheduled_at=scheduled_at.isoformat())
        return job.id
    except Exception as e:
        logger.error("job_enqueue_failed", task=task_name, error=str(e))
        db.rollback()
        return None
    finally:
        if close_db:
            db.close()


def run_pending_jobs(limit: int = 10, session_factory: Callable[[], Session] = SessionLocal) -> int:
    """
    Fetch and run pending jobs that are due.
    This should be called by a background worker or cron.
    """
    db = session_factory()
    try:
        now = utcnow()

        # Single worker assumed; a multi-worker deployment needs SELECT ... FOR UPDATE SKIP LOCKED
        jobs = db.query(Job).filter(
            Job.status == "pending",
            Job.scheduled_at <= now,
        ).order_by(Job.scheduled_at.asc()).limit(limit).all()

        if not jobs:
            return 0

        logger.info("jobs_found", count=len(jobs))

        for job in jobs:
            process_job(db, job)

        return len(jobs)
    finally:
        db.close()


def process_job(db: Session, job: Job) -> None:
    """
    Execute a single job, rescheduling it with a linear backoff on failure.
    """
    logger.info("job_processing", job_id=job.id, task=job.task_name)

    job.status = "running"
    job.started_at = utcnow()
    db.commit()

    try:
        task_func = TASK_REGISTRY.get(job.task_name)
        if not task_func:
            raise ValueError(f"Task {job.task_name} not registered")

        task_func(db, **(job.arguments or {}))

        job.status = "completed"
        job.completed_at = utcnow()
        logger.info("job_completed", job_id=job.id, task=job.task_name)

    except Exception as e:
        db.rollback()
        logger.error("job_failed", job_id=job.id, task=job.task_name, error=str(e), retry_count=job.retry_count)
        job.error = str(e) + "\n" + traceback.format_exc()
        if job.retry_count < MAX_RETRIES:
            job.status = "pending"
            job.retry_count += 1
            job.scheduled_at = utcnow() + timedelta(minutes=5 * job.retry_count)
        else:
            job.status = "failed"

    db.commit()
