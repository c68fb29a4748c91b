"""
Recurring Billing Engine
Flask application factory.

Usage:
    from recurring_billing import create_app
    app = create_app()           # APP_ENV, else "development"
    app = create_app("testing")
"""

import importlib
import json
import logging
import os

import click
from flask import Flask, request
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from recurring_billing.config import config
from recurring_billing.middleware.logging_config import configure_logging
from recurring_billing.middleware.timing import init_request_timing
from recurring_billing.models import db
from recurring_billing.utils.errors import E, api_error
from recurring_billing.utils.helpers import parse_date_input

logger = logging.getLogger(__name__)

migrate = Migrate()

_MODEL_MODULES = ("tenant", "catalog", "work_order", "billing", "audit", "scheduling")


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _configure_sqlite(dbapi_conn, connection_record):
    # pysqlite issues its own BEGIN lazily, which breaks SAVEPOINT; switch it
    # off and let _sqlite_begin open the transaction instead.
    if "sqlite" in type(dbapi_conn).__module__:
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@_sa_event.listens_for(_sa_engine.Engine, "begin")
def _sqlite_begin(conn):
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN")


def _register_error_handlers(app):
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, f"No route for {request.path}")

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.METHOD_NOT_ALLOWED, f"{request.method} not allowed on {request.path}")

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled error on %s", request.path, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def _register_cli(app):
    @app.cli.command("run-job")
    @click.argument("job_name")
    @click.option("--as-of", "as_of", default=None, help="Run as if today were this ISO date.")
    @click.option("--tenant-id", "tenant_id", type=int, default=None,
                  help="Limit the run to one tenant.")
    def run_job_cmd(job_name, as_of, tenant_id):
        """Run one scheduled job; meant for a crontab line."""
        from recurring_billing.services.scheduler_service import SchedulerService

        try:
            kwargs = {"as_of": parse_date_input(as_of)}
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--as-of") from exc
        if tenant_id is not None:
            kwargs["tenant_id"] = tenant_id

        result = SchedulerService.run_job(job_name, **kwargs)
        click.echo(json.dumps(result, default=str, indent=2))
        if result["status"] in ("failed", "error"):
            raise SystemExit(1)


def create_app(config_name=None):
    """Build the application for ``config_name``: development, testing or production."""
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    init_request_timing(app)

    # Every model must be imported before create_all / autogenerate.
    for name in _MODEL_MODULES:
        importlib.import_module(f"recurring_billing.models.{name}")

    from recurring_billing.blueprints.recurring_bp import recurring_bp
    app.register_blueprint(recurring_bp)

    _register_error_handlers(app)
    _register_cli(app)

    # Importing the jobs module registers its jobs.
    importlib.import_module("recurring_billing.services.scheduled_jobs")
    from recurring_billing.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    logger.debug("App created with %s config", config_name)
    return app
