"""
Recurring Billing Engine
Job registry rows.

The engine runs no timer of its own. An external cron entry calls
``flask run-job <name>`` (or the scheduler API); each ScheduledJob row holds
the cron line it is expected to run on, an on/off switch, and what the last
run did.
"""

from datetime import datetime, timezone

from recurring_billing.models import db

JOB_RUN_STATUSES = ("success", "failed", "skipped")


def _utcnow():
    return datetime.now(timezone.utc)


class ScheduledJob(db.Model):
    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    cron = db.Column(db.String(100), nullable=False, default="0 0 * * *",
                     comment="Expected crontab line, informational")
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)

    run_count = db.Column(db.Integer, nullable=False, default=0)
    failure_count = db.Column(db.Integer, nullable=False, default=0)
    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True)
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    last_failure = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def record_run(self, *, status, duration_ms, result=None, error=None):
        if status not in JOB_RUN_STATUSES:
            raise ValueError(f"Unknown run status: {status!r}")
        self.run_count = (self.run_count or 0) + 1
        self.last_run_at = _utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        if status == "failed":
            self.failure_count = (self.failure_count or 0) + 1
            self.last_failure = error

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "cron": self.cron,
            "is_enabled": self.is_enabled,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "last_failure": self.last_failure,
        }

    def __repr__(self):
        state = "on" if self.is_enabled else "off"
        return f"<ScheduledJob {self.job_name} {state}>"
