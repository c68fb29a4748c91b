"""
Tests for the job registry and the two scheduled jobs.

Covers:
    - ScheduledJob rows for registered jobs
    - run history recorded on each run
    - disabled jobs skipped
    - period_materializer job
    - billing_sweep retrying skipped billing
"""

from datetime import date

from recurring_billing.models import db
from recurring_billing.models.billing import Invoice
from recurring_billing.models.scheduling import ScheduledJob
from recurring_billing.models.work_order import Period
from recurring_billing.services import scheduled_jobs
from recurring_billing.services.completion_aggregator import record_task_status
from recurring_billing.services.scheduler_service import SchedulerService, get_registered_jobs


# ═════════════════════════════════════════════════════════════════════════════
# Registry
# ═════════════════════════════════════════════════════════════════════════════


class TestSchedulerService:
    """Job registration, execution and run history."""

    def test_jobs_registered(self):
        assert {"period_materializer", "billing_sweep"} <= set(get_registered_jobs())

    def test_ensure_jobs_registered_idempotent(self):
        created = SchedulerService.ensure_jobs_registered()
        assert {j.job_name for j in created} >= {"period_materializer", "billing_sweep"}
        assert SchedulerService.ensure_jobs_registered() == []

    def test_run_records_history(self):
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job("period_materializer", as_of=date(2025, 1, 1))
        assert result["status"] == "success"

        job = ScheduledJob.query.filter_by(job_name="period_materializer").one()
        assert job.run_count == 1
        assert job.last_run_status == "success"

    def test_disabled_job_skipped(self):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.toggle_job("billing_sweep", False)
        result = SchedulerService.run_job("billing_sweep", as_of=date(2025, 1, 1))
        assert result["status"] == "skipped"

    def test_unknown_job(self):
        assert SchedulerService.run_job("nope")["status"] == "error"

    def test_toggle_unknown_job(self):
        assert SchedulerService.toggle_job("nope", True) is None

    def test_rows_carry_cron_line(self):
        SchedulerService.ensure_jobs_registered()
        job = ScheduledJob.query.filter_by(job_name="billing_sweep").one()
        assert job.cron == "0 2 * * *"
        assert job.description.startswith("Retry billing")

    def test_failed_run_recorded(self, monkeypatch):
        def boom(**kwargs):
            raise RuntimeError("db went away")

        monkeypatch.setattr(scheduled_jobs, "materialize_all_active", boom)
        result = SchedulerService.run_job("period_materializer", as_of=date(2025, 1, 1))

        assert result["status"] == "failed"
        assert result["error"] == "db went away"
        job = ScheduledJob.query.filter_by(job_name="period_materializer").one()
        assert job.failure_count == 1
        assert job.last_failure == "db went away"


# ═════════════════════════════════════════════════════════════════════════════
# Jobs
# ═════════════════════════════════════════════════════════════════════════════


class TestPeriodMaterializerJob:
    def test_materializes_active_work_orders(self, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=date(2025, 1, 1))
        result = SchedulerService.run_job("period_materializer", as_of=date(2025, 3, 21))

        assert result["result"]["periods_created"] == 2
        assert result["result"]["as_of"] == "2025-03-21"
        assert Period.query.filter_by(work_order_id=wo.id).count() == 2


class TestBillingSweepJob:
    def test_bills_periods_skipped_earlier(self, tenant, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=date(2025, 3, 1))
        period = Period.query.filter_by(work_order_id=wo.id).one()
        tenant.default_income_account_ref = None
        db.session.flush()
        record_task_status(period.tasks[0].id, "completed", today=date(2025, 3, 1))
        db.session.commit()
        assert Invoice.query.count() == 0

        tenant.default_income_account_ref = "4000-FEES"
        db.session.commit()
        result = SchedulerService.run_job("billing_sweep", as_of=date(2025, 3, 10))

        assert result["status"] == "success"
        assert result["result"]["periods_checked"] == 1
        assert result["result"]["invoices_created"] == 1
        invoice = Invoice.query.one()
        assert invoice.issue_date == date(2025, 3, 10)

    def test_still_misconfigured_counts_as_skipped(self, tenant, make_service,
                                                   make_work_order):
        wo, _ = make_work_order(make_service(), today=date(2025, 3, 1))
        period = Period.query.filter_by(work_order_id=wo.id).one()
        tenant.default_income_account_ref = None
        db.session.flush()
        record_task_status(period.tasks[0].id, "completed", today=date(2025, 3, 1))
        db.session.commit()

        result = SchedulerService.run_job("billing_sweep", as_of=date(2025, 3, 10))
        assert result["result"]["skipped"] == 1
        assert result["result"]["invoices_created"] == 0

    def test_ignores_auto_bill_off(self, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=date(2025, 3, 1), auto_bill=False)
        period = Period.query.filter_by(work_order_id=wo.id).one()
        record_task_status(period.tasks[0].id, "completed", today=date(2025, 3, 1))
        db.session.commit()

        result = SchedulerService.run_job("billing_sweep", as_of=date(2025, 3, 10))
        assert result["result"]["periods_checked"] == 0


class TestRunJobCommand:
    def test_runs_job(self, app):
        result = app.test_cli_runner().invoke(
            args=["run-job", "period_materializer", "--as-of", "2025-01-01"])
        assert result.exit_code == 0
        assert '"status": "success"' in result.output

    def test_unknown_job_exits_nonzero(self, app):
        result = app.test_cli_runner().invoke(args=["run-job", "nope"])
        assert result.exit_code == 1

    def test_bad_date_rejected(self, app):
        result = app.test_cli_runner().invoke(
            args=["run-job", "billing_sweep", "--as-of", "someday"])
        assert result.exit_code == 2
