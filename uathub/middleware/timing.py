"""
Per-request id and duration.

Each response carries ``X-Request-ID`` (echoed from the client or
generated) and ``X-Request-Duration-Ms``. One access log line is written
per request, at DEBUG normally, WARNING when slower than
``SLOW_REQUEST_MS`` and ERROR for 5xx responses. The line is tagged with
the session/item/run ids taken from the URL and the resolved actor.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

SLOW_REQUEST_MS = 1000
QUIET_PATHS = frozenset({"/api/v1/health"})

# URL variable -> log field
_ROUTE_IDS = {"sid": "session_id", "iid": "item_id", "rid": "run_id"}


def _route_context() -> dict:
    args = request.view_args or {}
    ctx = {field: args.get(var) for var, field in _ROUTE_IDS.items()}
    ctx["portal"] = args.get("portal") or g.get("portal")

    actor = g.get("actor")
    if actor is not None:
        ctx["actor_type"] = actor.actor_type.value
        if ctx["session_id"] is None:
            ctx["session_id"] = actor.session_id
    return ctx


def _level_for(status: int, elapsed_ms: float) -> int:
    if elapsed_ms > SLOW_REQUEST_MS:
        return logging.WARNING
    if status >= 500:
        return logging.ERROR
    return logging.DEBUG


def init_request_timing(app: Flask):
    @app.before_request
    def _begin():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        g.request_start = time.perf_counter()

    @app.after_request
    def _finish(response):
        started = g.get("request_start")
        if started is None:
            return response

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.get("request_id", "")
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"

        if request.path in QUIET_PATHS or request.path.startswith("/static"):
            return response

        logger.log(
            _level_for(response.status_code, elapsed_ms),
            "%s %s -> %d", request.method, request.path, response.status_code,
            extra={
                "request_id": g.get("request_id"),
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": elapsed_ms,
                "remote_addr": request.remote_addr,
                **_route_context(),
            },
        )
        return response
