"""JSON error envelope shared by the internal API and the token portals.

Every error body is ``{"error": <message>, "code": <ERR_*>, "details"?: {...}}``.

    return api_error(E.VALIDATION_REQUIRED, "status is required")

Domain exceptions raised by the services are translated by the handlers
that ``register_error_handlers`` installs on each blueprint.
"""

from __future__ import annotations

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from uathub.core.exceptions import (
    AuthenticationError, AuthorizationError, ConflictError, NotFoundError,
    ValidationError,
)


class E:
    """Machine-readable error codes."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"   # 400, field missing from the request
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"     # 400, field malformed
    VALIDATION_RULE = "ERR_VALIDATION_RULE"           # 422, business rule rejected it
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"
    INTERNAL = "ERR_INTERNAL"


STATUS_BY_CODE = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.INTERNAL: 500,
}


def api_error(code, message, *, status=None, details=None):
    """Build ``(response, status)`` for a view to return.

    ``status`` overrides the code's default (400 for unknown codes).
    """
    body = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or STATUS_BY_CODE.get(code, 400)


def _not_found(exc):
    return api_error(E.NOT_FOUND, exc.public_message)


def _validation(exc):
    return api_error(E.VALIDATION_RULE, str(exc), details=exc.details)


def _conflict(exc):
    return api_error(E.CONFLICT_DUPLICATE, str(exc))


def _unauthenticated(exc):
    return api_error(E.UNAUTHENTICATED, str(exc) or "Authentication required")


def _forbidden(exc):
    return api_error(E.FORBIDDEN, str(exc) or "Insufficient permissions")


_DOMAIN_HANDLERS = (
    (NotFoundError, _not_found),
    (ValidationError, _validation),
    (ConflictError, _conflict),
    (AuthenticationError, _unauthenticated),
    (AuthorizationError, _forbidden),
)


def register_error_handlers(bp, logger):
    """Map domain exceptions to JSON responses on ``bp``.

    Anything else is logged with its traceback and reported as a 500;
    werkzeug HTTP errors (404 from routing, 413, ...) pass through unchanged.
    """
    for exc_type, handler in _DOMAIN_HANDLERS:
        bp.register_error_handler(exc_type, handler)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unhandled error in %s (endpoint=%s)", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
