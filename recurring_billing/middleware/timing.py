"""
Request timing middleware.

Tags every response with X-Request-ID and X-Request-Duration-Ms and logs
the request with the work order / period it addressed, at WARNING when it
ran longer than ``SLOW_REQUEST_MS``.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

_QUIET_PATHS = frozenset({"/api/v1/health"})


def _request_extra(response, duration_ms):
    view_args = request.view_args or {}
    return {
        "request_id": g.get("request_id"),
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "tenant_id": g.get("tenant_id"),
        "work_order_id": view_args.get("work_order_id"),
        "period_id": view_args.get("period_id"),
        "task_id": view_args.get("task_id"),
    }


def init_request_timing(app: Flask):
    threshold_ms = app.config.get("SLOW_REQUEST_MS", 1000)

    @app.before_request
    def _start_timer():
        g.request_started = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish_timer(response):
        started = g.get("request_started")
        if started is None:
            return response

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        if request.path in _QUIET_PATHS:
            return response

        extra = _request_extra(response, duration_ms)
        if response.status_code >= 500:
            log = logger.error
        elif duration_ms > threshold_ms:
            log = logger.warning
        else:
            log = logger.debug
        log("%s %s -> %d", request.method, request.path, response.status_code, extra=extra)
        return response
