"""
Who is calling the internal API.

Internal endpoints under ``/api/v1/`` identify a staff ``User`` and leave
it on ``g.current_user``:

- auth enabled: ``X-API-Key`` header (or ``?api_key=``) looked up in
  ``API_KEYS``, a comma-separated list of ``key:username`` pairs
- auth disabled (development, tests): ``X-User-Id`` header, a user id

Requests under ``/api/v1/uat/`` are token portals; the token in the URL is
their credential and the actor is resolved by the portal blueprint.

Writes with a body must be sent as JSON. Browsers cannot submit an HTML
form with that content type, which keeps cross-site form posts out.
"""

import logging
from typing import Optional

from flask import current_app, g, request

from uathub.models import db
from uathub.models.auth import User
from uathub.utils.errors import E, api_error

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/"
PORTAL_PREFIX = "/api/v1/uat/"
PUBLIC_PATHS = frozenset({"/api/v1/health"})
WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def auth_enabled() -> bool:
    flag = str(current_app.config.get("API_AUTH_ENABLED", "true")).strip().lower()
    return flag not in ("false", "0", "no", "off")


def key_map() -> dict[str, str]:
    """``API_KEYS`` as ``{key: username}``; malformed entries are skipped."""
    mapping = {}
    for pair in (current_app.config.get("API_KEYS") or "").split(","):
        pair = pair.strip()
        if not pair:
            continue
        key, sep, username = pair.rpartition(":")
        if not sep or not key.strip() or not username.strip():
            logger.warning("Ignoring malformed API_KEYS entry")
            continue
        mapping[key.strip()] = username.strip()
    return mapping


def _presented_key() -> Optional[str]:
    return (
        request.headers.get("X-API-Key", "").strip()
        or request.args.get("api_key", "").strip()
        or None
    )


def _active(user):
    return user if user is not None and user.is_active else None


def _user_from_header() -> Optional[User]:
    raw = request.headers.get("X-User-Id", "").strip()
    return _active(db.session.get(User, int(raw))) if raw.isdigit() else None


def _user_from_key():
    """Return ``(user, None)`` or ``(None, error_response)``."""
    presented = _presented_key()
    if presented is None:
        return None, api_error(E.UNAUTHENTICATED, "Provide an X-API-Key header")

    keys = key_map()
    if not keys:
        logger.error("API_AUTH_ENABLED is on but API_KEYS is empty")
        return None, api_error(E.INTERNAL, "Server authentication not configured")

    username = keys.get(presented)
    user = _active(User.query.filter_by(username=username).first()) if username else None
    if user is None:
        logger.warning("Rejected API key %s... (user=%s)", presented[:8], username)
        return None, api_error(E.UNAUTHENTICATED, "Invalid API key")
    return user, None


def _non_json_write():
    if request.method not in WRITE_METHODS or not request.content_length:
        return None
    if "application/json" in (request.content_type or ""):
        return None
    return api_error(E.VALIDATION_INVALID, "Request body must be application/json", status=415)


def init_auth(app):
    """Install the before_request hook that sets ``g.current_user``."""

    @app.before_request
    def _identify_caller():
        g.current_user = None
        path = request.path
        if not path.startswith(API_PREFIX) or path in PUBLIC_PATHS:
            return None
        if request.method == "OPTIONS":
            return None

        rejected = _non_json_write()
        if rejected is not None:
            return rejected
        if path.startswith(PORTAL_PREFIX):
            return None

        if not auth_enabled():
            g.current_user = _user_from_header()
            return None

        user, error = _user_from_key()
        if error is not None:
            return error
        g.current_user = user
        return None
