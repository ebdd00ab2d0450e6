"""Small helpers the blueprints share."""

import logging
from datetime import date, datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from uathub.models import db
from uathub.utils.errors import E, api_error

logger = logging.getLogger(__name__)

_DAY_FIRST = "%d.%m.%Y"


def get_or_404(model, pk, label=None):
    """``(obj, None)`` when the row exists, else ``(None, error_response)``.

        session, err = get_or_404(UatSession, sid, "UAT session")
        if err:
            return err
    """
    obj = db.session.get(model, pk)
    if obj is None:
        return None, api_error(E.NOT_FOUND, f"{label or model.__name__} not found")
    return obj, None


def _parse_text(text):
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    try:
        return datetime.strptime(text, _DAY_FIRST)
    except ValueError:
        return None


def parse_datetime(value):
    """Accept a datetime, a date, ISO-8601 text or ``DD.MM.YYYY``.

    Anything unparseable gives None. Naive results are treated as UTC.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, datetime.min.time())
    else:
        parsed = _parse_text(str(value))
        if parsed is None:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def db_commit_or_error():
    """Commit; on failure roll back and return an error response to hand back.

    A constraint violation (including the one-active-run index) is a 409,
    any other database error a logged 500.
    """
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Commit rejected by constraint: %s", exc.orig)
        return api_error(E.CONFLICT_DUPLICATE, "Conflicts with existing data")
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Commit failed")
        return api_error(E.INTERNAL, "Database error")
    return None
