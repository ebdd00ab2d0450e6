"""
UAT Hub
Blueprint package: ``uat_bp`` (internal API), ``portal_bp`` (token portals)
and ``invite_bp`` (read-only session invite link).
"""

from flask import request

from uathub.core.exceptions import ValidationError


def json_body():
    """Request JSON as a dict; an empty body is ``{}``, any other shape a 422."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", details={"body": "invalid"})
    return data


def _int_arg(name, default, minimum=0):
    try:
        return max(int(request.args.get(name, default)), minimum)
    except (TypeError, ValueError):
        return default


def paginated(query, serialize, default_limit=50, max_limit=500):
    """Page ``query`` by ?limit=&offset= and wrap it in the list envelope.

    Returns ``{"items": [...], "total": n, "limit": l, "offset": o}``.
    """
    limit = min(_int_arg("limit", default_limit, minimum=1), max_limit)
    offset = _int_arg("offset", 0)
    total = query.count()
    rows = query.limit(limit).offset(offset).all()
    return {
        "items": [serialize(row) for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
