"""Session service: administration of UAT sessions, items, steps and people.

Transaction policy: methods use flush() for ID generation, never commit().
Caller (route handler) is responsible for db.session.commit().

Covers:
- Session CRUD with invite token generation and status state machine
- Checklist items and steps (auto-order on create, explicit reorder,
  duplicate, bulk import)
- Guests and collaborators (portal tokens, validated emails)
- Guest item responses (approve / request changes)
"""
import logging
import secrets
from datetime import datetime, timezone

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import func

from uathub.core.exceptions import ConflictError, NotFoundError, ValidationError
from uathub.models import db
from uathub.models.uat import (
    COLLABORATOR_ROLES, RESPONSE_STATUSES, SESSION_PRIORITIES, SESSION_STATUSES,
    SESSION_TRANSITIONS, STEP_TYPES,
    UatChecklistItem, UatChecklistItemStep, UatGuest, UatResponse,
    UatSession, UatSessionCollaborator, validate_session_transition,
)
from uathub.utils.helpers import parse_datetime
from uathub.utils.validation import (
    choice, id_list, optional_id, optional_text, required_text,
)

logger = logging.getLogger(__name__)

TOKEN_BYTES = 24
MAX_IMPORT_ITEMS = 200
COPY_SUFFIX = " (Copy)"


def generate_token():
    """URL-safe random token for invite / portal links."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def _normalize_email(email):
    if not isinstance(email, str):
        raise ValidationError("email is required", details={"email": "required"})
    try:
        return validate_email(email, check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email: {e}", details={"email": "invalid"})


def _next_order(model, **filters):
    current = db.session.query(func.max(model.order)).filter_by(**filters).scalar()
    return 0 if current is None else current + 1


def _apply_order(rows, ordered_ids, label):
    ordered_ids = id_list(ordered_ids)
    by_id = {r.id: r for r in rows}
    if sorted(ordered_ids) != sorted(by_id):
        raise ValidationError(
            f"{label} order must list every {label.lower()} exactly once",
            details={"ids": "mismatch"},
        )
    for position, row_id in enumerate(ordered_ids):
        by_id[row_id].order = position
    db.session.flush()


# ═════════════════════════════════════════════════════════════════════════════
# LOOKUPS
# ═════════════════════════════════════════════════════════════════════════════

def _get(model, pk):
    obj = db.session.get(model, pk)
    if not obj:
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return obj


def get_session(session_id):
    return _get(UatSession, session_id)


def get_item(item_id):
    return _get(UatChecklistItem, item_id)


def get_step(step_id):
    return _get(UatChecklistItemStep, step_id)


def get_session_item(session_id, item_id):
    """Item lookup scoped to a session; foreign items look missing."""
    item = db.session.get(UatChecklistItem, item_id)
    if not item or item.session_id != session_id:
        raise NotFoundError(resource="UatChecklistItem", resource_id=item_id)
    return item


def get_session_step(session_id, step_id):
    step = db.session.get(UatChecklistItemStep, step_id)
    if not step or step.item.session_id != session_id:
        raise NotFoundError(resource="UatChecklistItemStep", resource_id=step_id)
    return step


def list_items(session_id):
    return (
        UatChecklistItem.query
        .filter_by(session_id=session_id)
        .order_by(UatChecklistItem.order, UatChecklistItem.id)
        .all()
    )


def list_steps(item_id):
    return (
        UatChecklistItemStep.query
        .filter_by(item_id=item_id)
        .order_by(UatChecklistItemStep.order, UatChecklistItemStep.id)
        .all()
    )


# ═════════════════════════════════════════════════════════════════════════════
# SESSIONS
# ═════════════════════════════════════════════════════════════════════════════

def create_session(data, user=None):
    """Create a draft session owned by ``data.owner_id`` or the creating user."""
    priority = choice(data.get("priority", "medium"), SESSION_PRIORITIES, "priority")
    session = UatSession(
        name=required_text(data.get("name"), "name"),
        description=optional_text(data.get("description"), "description") or "",
        status="draft",
        priority=priority,
        invite_token=generate_token(),
        owner_id=optional_id(data.get("owner_id"), "owner_id") or (user.id if user else None),
        created_by_id=user.id if user else None,
        due_date=parse_datetime(data.get("due_date")),
        expires_at=parse_datetime(data.get("expires_at")),
    )
    db.session.add(session)
    db.session.flush()
    logger.info("Created UAT session %s '%s'", session.id, session.name,
                extra={"session_id": session.id})
    return session


def update_session(session, data):
    """Update session fields; status changes follow SESSION_TRANSITIONS.

    Raises:
        ValidationError: on invalid field values or status transition
    """
    if "name" in data:
        session.name = required_text(data["name"], "name")
    if "description" in data:
        session.description = optional_text(data["description"], "description") or ""
    if "priority" in data:
        session.priority = choice(data["priority"], SESSION_PRIORITIES, "priority")
    if "owner_id" in data:
        session.owner_id = optional_id(data["owner_id"], "owner_id")
    for field in ("due_date", "expires_at"):
        if field in data:
            setattr(session, field, parse_datetime(data[field]))

    new_status = data.get("status")
    if new_status and new_status != session.status:
        choice(new_status, SESSION_STATUSES, "status")
        if not validate_session_transition(session.status, new_status):
            raise ValidationError(
                f"Invalid status transition: {session.status} → {new_status}. "
                f"Allowed: {SESSION_TRANSITIONS.get(session.status, [])}",
                details={"status": "transition"},
            )
        logger.info("Session %s status %s → %s", session.id, session.status, new_status,
                    extra={"session_id": session.id})
        session.status = new_status
        session.closed_at = datetime.now(timezone.utc) if new_status == "closed" else None

    db.session.flush()
    return session


def delete_session(session):
    db.session.delete(session)
    db.session.flush()


# ═════════════════════════════════════════════════════════════════════════════
# ITEMS
# ═════════════════════════════════════════════════════════════════════════════

_ITEM_TEXT_FIELDS = ("instructions", "reference_url", "category")


def _item_fields(data, partial=False):
    """Validated column values for an item payload (only the keys present when partial)."""
    fields = {}
    if not partial or "title" in data:
        fields["title"] = required_text(data.get("title"), "title")
    for name in _ITEM_TEXT_FIELDS:
        if not partial or name in data:
            fields[name] = optional_text(data.get(name), name) or ""
    return fields


def create_item(session, data):
    item = UatChecklistItem(
        session_id=session.id,
        order=_next_order(UatChecklistItem, session_id=session.id),
        **_item_fields(data),
    )
    db.session.add(item)
    db.session.flush()
    return item


def update_item(item, data):
    for name, value in _item_fields(data, partial=True).items():
        setattr(item, name, value)
    db.session.flush()
    return item


def delete_item(item):
    """Delete an item with its steps, runs, results, comments and responses."""
    db.session.delete(item)
    db.session.flush()


def reorder_items(session, ordered_ids):
    _apply_order(list_items(session.id), ordered_ids, "Item")


def duplicate_item(item):
    """Copy an item and its steps to the end of the session.

    Only the definition is copied; runs, comments, responses and review
    tracking start empty on the copy.
    """
    copy = UatChecklistItem(
        session_id=item.session_id,
        title=f"{item.title}{COPY_SUFFIX}",
        instructions=item.instructions,
        reference_url=item.reference_url,
        category=item.category,
        order=_next_order(UatChecklistItem, session_id=item.session_id),
    )
    db.session.add(copy)
    db.session.flush()
    for step in list_steps(item.id):
        db.session.add(UatChecklistItemStep(
            item_id=copy.id,
            **{name: getattr(step, name) for name in _STEP_COPY_FIELDS},
        ))
    db.session.flush()
    logger.info("Item %s duplicated as %s", item.id, copy.id,
                extra={"session_id": item.session_id, "item_id": copy.id})
    return copy


def import_items(session, entries):
    """Append items (each with optional ``steps``) from a JSON list.

    Every entry is validated in full before anything is written for it;
    an invalid entry is skipped and reported, the rest are created.

    Returns dict: created, items [{id, title, steps_created}],
    errors [{index, title, error}].
    """
    if not isinstance(entries, list) or not entries:
        raise ValidationError("items must be a non-empty list", details={"items": "required"})
    if len(entries) > MAX_IMPORT_ITEMS:
        raise ValidationError(
            f"At most {MAX_IMPORT_ITEMS} items can be imported at once",
            details={"items": "too_many"},
        )

    created, errors = [], []
    order = _next_order(UatChecklistItem, session_id=session.id)
    for index, entry in enumerate(entries):
        title = entry.get("title") if isinstance(entry, dict) else None
        try:
            if not isinstance(entry, dict):
                raise ValidationError("Each item must be an object")
            item_fields = _item_fields(entry)
            steps = entry.get("steps") or []
            if not isinstance(steps, list):
                raise ValidationError("steps must be a list", details={"steps": "invalid"})
            step_fields = []
            for step in steps:
                if not isinstance(step, dict):
                    raise ValidationError("Each step must be an object")
                step_fields.append(_step_fields(step))
        except ValidationError as exc:
            errors.append({"index": index, "title": title, "error": str(exc)})
            continue

        item = UatChecklistItem(session_id=session.id, order=order, **item_fields)
        order += 1
        db.session.add(item)
        db.session.flush()
        for position, fields in enumerate(step_fields):
            db.session.add(UatChecklistItemStep(item_id=item.id, order=position, **fields))
        created.append({"id": item.id, "title": item.title, "steps_created": len(step_fields)})

    db.session.flush()
    logger.info("Imported %d items into session %s (%d rejected)",
                len(created), session.id, len(errors), extra={"session_id": session.id})
    return {"created": len(created), "items": created, "errors": errors}


# ═════════════════════════════════════════════════════════════════════════════
# STEPS
# ═════════════════════════════════════════════════════════════════════════════

_STEP_OPTIONAL_TEXT = ("expected_result", "link_url", "notes_prompt")
_STEP_COPY_FIELDS = (
    "step_type", "title", "instructions", "expected_result", "link_url",
    "notes_required", "notes_prompt", "estimated_duration_minutes", "order",
)


def _duration(value):
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise ValidationError("estimated_duration_minutes must be an integer",
                              details={"estimated_duration_minutes": "invalid"})
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        raise ValidationError("estimated_duration_minutes must be an integer",
                              details={"estimated_duration_minutes": "invalid"})
    if minutes < 0:
        raise ValidationError("estimated_duration_minutes cannot be negative",
                              details={"estimated_duration_minutes": "invalid"})
    return minutes


def _step_fields(data, partial=False):
    fields = {}

    def wanted(name):
        return not partial or name in data

    if wanted("step_type"):
        fields["step_type"] = choice(data.get("step_type", "test"), STEP_TYPES, "step_type")
    if wanted("title"):
        fields["title"] = required_text(data.get("title"), "title")
    if wanted("instructions"):
        fields["instructions"] = optional_text(data.get("instructions"), "instructions") or ""
    for name in _STEP_OPTIONAL_TEXT:
        if wanted(name):
            fields[name] = optional_text(data.get(name), name)
    if wanted("notes_required"):
        fields["notes_required"] = bool(data.get("notes_required", False))
    if wanted("estimated_duration_minutes"):
        fields["estimated_duration_minutes"] = _duration(data.get("estimated_duration_minutes"))
    return fields


def create_step(item, data):
    """Append a step to an item.

    Steps added while a run is active get no result row in that run; they
    count as pending until a tester records them.
    """
    step = UatChecklistItemStep(
        item_id=item.id,
        order=_next_order(UatChecklistItemStep, item_id=item.id),
        **_step_fields(data),
    )
    db.session.add(step)
    db.session.flush()
    return step


def update_step(step, data):
    for name, value in _step_fields(data, partial=True).items():
        setattr(step, name, value)
    db.session.flush()
    return step


def delete_step(step):
    db.session.delete(step)
    db.session.flush()


def reorder_steps(item, ordered_ids):
    _apply_order(list_steps(item.id), ordered_ids, "Step")


# ═════════════════════════════════════════════════════════════════════════════
# GUESTS & COLLABORATORS
# ═════════════════════════════════════════════════════════════════════════════

def _check_duplicate(model, session_id, email):
    existing = (
        model.query
        .filter(model.session_id == session_id, func.lower(model.email) == email.lower())
        .first()
    )
    if existing:
        raise ConflictError(resource=model.__name__, field="email", value=email)


def _display_name(data, email):
    return optional_text(data.get("name"), "name") or email.split("@")[0]


def add_guest(session, data):
    email = _normalize_email(data.get("email"))
    _check_duplicate(UatGuest, session.id, email)
    guest = UatGuest(
        session_id=session.id,
        email=email,
        name=_display_name(data, email),
        access_token=generate_token(),
    )
    db.session.add(guest)
    db.session.flush()
    logger.info("Guest %s invited to session %s", guest.id, session.id,
                extra={"session_id": session.id})
    return guest


def add_collaborator(session, data, invited_by=None):
    """Invite a collaborator. ``invited_by`` is the internal user, None from a portal."""
    email = _normalize_email(data.get("email"))
    role = choice(data.get("role", "pm"), COLLABORATOR_ROLES, "role")
    _check_duplicate(UatSessionCollaborator, session.id, email)
    collaborator = UatSessionCollaborator(
        session_id=session.id,
        email=email,
        name=_display_name(data, email),
        role=role,
        access_token=generate_token(),
        invited_by_id=invited_by.id if invited_by else None,
    )
    db.session.add(collaborator)
    db.session.flush()
    logger.info("Collaborator %s (%s) added to session %s", collaborator.id, role, session.id,
                extra={"session_id": session.id})
    return collaborator


def list_guests(session_id):
    return UatGuest.query.filter_by(session_id=session_id).order_by(UatGuest.id).all()


def list_collaborators(session_id):
    return (
        UatSessionCollaborator.query
        .filter_by(session_id=session_id)
        .order_by(UatSessionCollaborator.id)
        .all()
    )


def remove_person(model, person_id):
    """Delete a guest or collaborator; their portal link stops working."""
    person = _get(model, person_id)
    db.session.delete(person)
    db.session.flush()


# ═════════════════════════════════════════════════════════════════════════════
# GUEST RESPONSES
# ═════════════════════════════════════════════════════════════════════════════

def submit_response(item, guest_id, status, feedback=None):
    """Upsert the guest's verdict on an item.

    ``changes_requested`` needs feedback; ``approved`` may carry it.
    """
    choice(status, RESPONSE_STATUSES, "status")
    feedback = optional_text(feedback, "feedback")
    if status == "changes_requested" and not feedback:
        raise ValidationError(
            "Feedback is required when requesting changes",
            details={"feedback": "required"},
        )

    response = UatResponse.query.filter_by(item_id=item.id, guest_id=guest_id).first()
    if response is None:
        response = UatResponse(item_id=item.id, guest_id=guest_id)
        db.session.add(response)
    response.status = status
    response.feedback = feedback
    db.session.flush()
    return response
