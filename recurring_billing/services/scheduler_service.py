"""
Recurring Billing Engine
Job runner.

Jobs are plain functions registered by name with ``@register_job``. They are
triggered from outside (cron calling ``flask run-job``, or the scheduler API)
and every trigger leaves its outcome on the job's ScheduledJob row:

    success   the job returned a summary dict
    failed    the job raised; the session is rolled back and the error kept
    skipped   the row is disabled
    error     no job of that name is registered (nothing is recorded)
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Callable

from flask import Flask, current_app, has_app_context

from recurring_billing.models import db
from recurring_billing.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredJob:
    name: str
    fn: Callable
    cron: str

    @property
    def description(self) -> str:
        doc = (self.fn.__doc__ or "").strip()
        return doc.splitlines()[0] if doc else self.name


_jobs: dict[str, RegisteredJob] = {}


def register_job(name: str, cron: str = "0 0 * * *"):
    """Register ``fn(app, **kwargs) -> dict`` as job ``name``.

        @register_job("billing_sweep", cron="0 2 * * *")
        def run_billing_sweep(app, as_of=None, tenant_id=None):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _jobs[name] = RegisteredJob(name=name, fn=fn, cron=cron)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return {name: job.fn for name, job in _jobs.items()}


def _row(job_name: str) -> ScheduledJob | None:
    return ScheduledJob.query.filter_by(job_name=job_name).one_or_none()


class SchedulerService:
    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.debug("Job runner ready: %s", ", ".join(sorted(_jobs)))

    @classmethod
    def _context(cls):
        # A caller already inside this app keeps its session.
        if has_app_context() and current_app._get_current_object() is cls._app:
            return nullcontext()
        return cls._app.app_context()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Insert a ScheduledJob row for each registered job missing one.

        Returns the rows created by this call.
        """
        if cls._app is None:
            return []
        with cls._context():
            created = [
                ScheduledJob(job_name=job.name, description=job.description,
                             cron=job.cron, is_enabled=True)
                for job in _jobs.values()
                if _row(job.name) is None
            ]
            if created:
                db.session.add_all(created)
                db.session.commit()
                logger.info("Registered job rows: %s",
                            ", ".join(job.job_name for job in created))
        return created

    @classmethod
    def run_job(cls, job_name: str, **kwargs) -> dict:
        """Trigger one job; ``kwargs`` (``as_of``, ``tenant_id``) go to the job function."""
        job = _jobs.get(job_name)
        if job is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"job_name": job_name, "status": "error", "error": "Job runner not initialized"}

        with cls._context():
            cls.ensure_jobs_registered()
            started = time.monotonic()
            result, error = None, None
            if not _row(job_name).is_enabled:
                status, result = "skipped", {"reason": "job disabled"}
            else:
                try:
                    result = job.fn(cls._app, **kwargs)
                    status = "success"
                except Exception as exc:
                    db.session.rollback()
                    status, error = "failed", str(exc)
                    logger.exception("Job %s failed", job_name,
                                     extra={"event_type": "job.fail"})
            duration_ms = int((time.monotonic() - started) * 1000)

            if result is not None and not isinstance(result, dict):
                result = {"output": str(result)}
            _row(job_name).record_run(status=status, duration_ms=duration_ms,
                                      result=result, error=error)
            db.session.commit()

        logger.info("Job %s %s in %dms", job_name, status, duration_ms,
                    extra={"event_type": "job.run", "duration_ms": duration_ms})
        return {"job_name": job_name, "status": status, "duration_ms": duration_ms,
                "result": result, "error": error}

    @classmethod
    def list_jobs(cls) -> list[dict]:
        items = []
        for name, job in _jobs.items():
            row = _row(name)
            items.append({
                "job_name": name,
                "cron": job.cron,
                "record": row.to_dict() if row else None,
            })
        return items

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Switch a job on or off; None when it has no row."""
        row = _row(job_name)
        if row is None:
            return None
        row.is_enabled = bool(enabled)
        db.session.commit()
        logger.info("Job %s %s", job_name, "enabled" if row.is_enabled else "disabled")
        return row.to_dict()
