"""
UAT Hub
UAT Blueprint: internal staff API.

All endpoints act as the authenticated internal user (``g.current_user``).

Sessions:
    GET    /api/v1/uat-sessions                        : List (filter: status)
    POST   /api/v1/uat-sessions                        : Create
    GET    /api/v1/uat-sessions/<sid>                  : Detail (+ items)
    PATCH  /api/v1/uat-sessions/<sid>                  : Update / status transition
    DELETE /api/v1/uat-sessions/<sid>                  : Delete
    GET    /api/v1/uat-sessions/<sid>/status           : Progress summary
    POST   /api/v1/uat-sessions/<sid>/send-update      : Email summary to everyone involved

Items & steps:
    GET/POST     /api/v1/uat-sessions/<sid>/items
    POST         /api/v1/uat-sessions/<sid>/items/reorder
    POST         /api/v1/uat-sessions/<sid>/items/import       : Bulk create items with steps
    PATCH/DELETE /api/v1/uat-items/<iid>
    POST         /api/v1/uat-items/<iid>/duplicate          : Copy item + steps
    GET/POST     /api/v1/uat-items/<iid>/steps
    POST         /api/v1/uat-items/<iid>/steps/reorder
    PATCH/DELETE /api/v1/uat-steps/<step_id>

People:
    GET/POST /api/v1/uat-sessions/<sid>/guests          DELETE /api/v1/uat-guests/<id>
    GET/POST /api/v1/uat-sessions/<sid>/collaborators   DELETE /api/v1/uat-collaborators/<id>

Runs:
    GET    /api/v1/uat-items/<iid>/runs                : History, newest first
    POST   /api/v1/uat-items/<iid>/runs                : Start run / retest
    GET    /api/v1/uat-items/<iid>/active-run          : Active run + results + status
    PATCH  /api/v1/uat-runs/<rid>/steps/<step_id>      : Record step result

Comments:
    GET/POST     /api/v1/uat-items/<iid>/comments
    PATCH/DELETE /api/v1/uat-comments/<comment_id>
"""

import logging

from flask import Blueprint, g, jsonify, request

from uathub.blueprints import json_body, paginated
from uathub.models.uat import UatGuest, UatSession, UatSessionCollaborator
from uathub.services import (
    comment_service, notification_service, session_service, test_run_service,
)
from uathub.services.actor_resolver import resolve_internal
from uathub.utils.errors import E, api_error, register_error_handlers
from uathub.utils.helpers import db_commit_or_error, get_or_404
from uathub.utils.validation import optional_text

logger = logging.getLogger(__name__)

uat_bp = Blueprint("uat", __name__, url_prefix="/api/v1")

register_error_handlers(uat_bp, logger)


def _actor():
    return resolve_internal(g.current_user)


def active_run_payload(item_id):
    """Active run, its results and the derived item status in one response."""
    active = test_run_service.get_active_run(item_id)
    run = active["run"]
    item = session_service.get_item(item_id)
    steps = session_service.list_steps(item_id)
    return {
        "run": run.to_dict() if run else None,
        "results": [r.to_dict() for r in active["results"]],
        "progress": test_run_service.derive_item_status(steps, active["results"]),
        "item_id": item.id,
    }


# ═════════════════════════════════════════════════════════════════════════════
# SESSIONS
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/uat-sessions", methods=["GET"])
def list_sessions():
    """List sessions, newest first. Filters: status."""
    _actor()
    q = UatSession.query
    status = request.args.get("status")
    if status:
        q = q.filter_by(status=status)
    q = q.order_by(UatSession.created_at.desc(), UatSession.id.desc())
    return jsonify(paginated(q, lambda s: s.to_dict()))


@uat_bp.route("/uat-sessions", methods=["POST"])
def create_session():
    actor = _actor()
    data = json_body()
    if not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    session = session_service.create_session(data, user=g.current_user)
    err = db_commit_or_error()
    if err:
        return err
    logger.info("Session %s created by user %s", session.id, actor.id)
    return jsonify(session.to_dict()), 201


@uat_bp.route("/uat-sessions/<int:sid>", methods=["GET"])
def get_session(sid):
    _actor()
    session, err = get_or_404(UatSession, sid, "UAT session")
    if err:
        return err
    return jsonify(session.to_dict(include_items=True))


@uat_bp.route("/uat-sessions/<int:sid>", methods=["PATCH"])
def update_session(sid):
    _actor()
    session = session_service.get_session(sid)
    session_service.update_session(session, json_body())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(session.to_dict())


@uat_bp.route("/uat-sessions/<int:sid>", methods=["DELETE"])
def delete_session(sid):
    _actor()
    session = session_service.get_session(sid)
    session_service.delete_session(session)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": True}), 200


@uat_bp.route("/uat-sessions/<int:sid>/status", methods=["GET"])
def session_status(sid):
    """Per-item progress (status, passed/total, failure notes) plus summary counts."""
    _actor()
    session = session_service.get_session(sid)
    return jsonify(test_run_service.session_status(session))


@uat_bp.route("/uat-sessions/<int:sid>/send-update", methods=["POST"])
def send_update(sid):
    """Best-effort summary email. Soft failures come back as 200 with success=false."""
    _actor()
    session = session_service.get_session(sid)
    data = json_body()
    status = test_run_service.session_status(session)
    result = notification_service.send_session_update(
        session,
        status["items"],
        session_service.list_guests(sid),
        session_service.list_collaborators(sid),
        custom_domain=optional_text(data.get("custom_domain"), "custom_domain"),
    )
    # EmailLog rows are kept whatever the outcome
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result)


# ═════════════════════════════════════════════════════════════════════════════
# ITEMS
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/uat-sessions/<int:sid>/items", methods=["GET"])
def list_items(sid):
    _actor()
    session_service.get_session(sid)
    include_steps = request.args.get("include_steps", "0") in ("1", "true")
    return jsonify([i.to_dict(include_steps=include_steps) for i in session_service.list_items(sid)])


@uat_bp.route("/uat-sessions/<int:sid>/items", methods=["POST"])
def create_item(sid):
    _actor()
    session = session_service.get_session(sid)
    data = json_body()
    if not data.get("title"):
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    item = session_service.create_item(session, data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(item.to_dict()), 201


@uat_bp.route("/uat-sessions/<int:sid>/items/reorder", methods=["POST"])
def reorder_items(sid):
    _actor()
    session = session_service.get_session(sid)
    ids = json_body().get("ids")
    if not isinstance(ids, list):
        return api_error(E.VALIDATION_REQUIRED, "ids (list of item ids) is required")
    session_service.reorder_items(session, ids)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify([i.to_dict() for i in session_service.list_items(sid)])


@uat_bp.route("/uat-sessions/<int:sid>/items/import", methods=["POST"])
def import_items(sid):
    """Bulk create. Body: {"items": [{title, ..., steps: [{title, ...}]}]}."""
    _actor()
    session = session_service.get_session(sid)
    report = session_service.import_items(session, json_body().get("items"))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(report), 201


@uat_bp.route("/uat-items/<int:iid>/duplicate", methods=["POST"])
def duplicate_item(iid):
    _actor()
    copy = session_service.duplicate_item(session_service.get_item(iid))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(copy.to_dict(include_steps=True)), 201


@uat_bp.route("/uat-items/<int:iid>", methods=["PATCH"])
def update_item(iid):
    _actor()
    item = session_service.get_item(iid)
    session_service.update_item(item, json_body())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(item.to_dict())


@uat_bp.route("/uat-items/<int:iid>", methods=["DELETE"])
def delete_item(iid):
    _actor()
    item = session_service.get_item(iid)
    session_service.delete_item(item)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": True}), 200


# ═════════════════════════════════════════════════════════════════════════════
# STEPS
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/uat-items/<int:iid>/steps", methods=["GET"])
def list_steps(iid):
    _actor()
    session_service.get_item(iid)
    return jsonify([s.to_dict() for s in session_service.list_steps(iid)])


@uat_bp.route("/uat-items/<int:iid>/steps", methods=["POST"])
def create_step(iid):
    _actor()
    item = session_service.get_item(iid)
    data = json_body()
    if not data.get("title"):
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    step = session_service.create_step(item, data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(step.to_dict()), 201


@uat_bp.route("/uat-items/<int:iid>/steps/reorder", methods=["POST"])
def reorder_steps(iid):
    _actor()
    item = session_service.get_item(iid)
    ids = json_body().get("ids")
    if not isinstance(ids, list):
        return api_error(E.VALIDATION_REQUIRED, "ids (list of step ids) is required")
    session_service.reorder_steps(item, ids)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify([s.to_dict() for s in session_service.list_steps(iid)])


@uat_bp.route("/uat-steps/<int:step_id>", methods=["PATCH"])
def update_step(step_id):
    _actor()
    step = session_service.get_step(step_id)
    session_service.update_step(step, json_body())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(step.to_dict())


@uat_bp.route("/uat-steps/<int:step_id>", methods=["DELETE"])
def delete_step(step_id):
    _actor()
    step = session_service.get_step(step_id)
    session_service.delete_step(step)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": True}), 200


# ═════════════════════════════════════════════════════════════════════════════
# GUESTS & COLLABORATORS
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/uat-sessions/<int:sid>/guests", methods=["GET"])
def list_guests(sid):
    _actor()
    session_service.get_session(sid)
    return jsonify([g_.to_dict() for g_ in session_service.list_guests(sid)])


@uat_bp.route("/uat-sessions/<int:sid>/guests", methods=["POST"])
def add_guest(sid):
    _actor()
    session = session_service.get_session(sid)
    data = json_body()
    if not data.get("email"):
        return api_error(E.VALIDATION_REQUIRED, "email is required")
    guest = session_service.add_guest(session, data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(guest.to_dict()), 201


@uat_bp.route("/uat-guests/<int:guest_id>", methods=["DELETE"])
def remove_guest(guest_id):
    _actor()
    session_service.remove_person(UatGuest, guest_id)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": True}), 200


@uat_bp.route("/uat-sessions/<int:sid>/collaborators", methods=["GET"])
def list_collaborators(sid):
    _actor()
    session_service.get_session(sid)
    return jsonify([c.to_dict() for c in session_service.list_collaborators(sid)])


@uat_bp.route("/uat-sessions/<int:sid>/collaborators", methods=["POST"])
def add_collaborator(sid):
    _actor()
    session = session_service.get_session(sid)
    data = json_body()
    if not data.get("email"):
        return api_error(E.VALIDATION_REQUIRED, "email is required")
    collaborator = session_service.add_collaborator(session, data, invited_by=g.current_user)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(collaborator.to_dict()), 201


@uat_bp.route("/uat-collaborators/<int:collaborator_id>", methods=["DELETE"])
def remove_collaborator(collaborator_id):
    _actor()
    session_service.remove_person(UatSessionCollaborator, collaborator_id)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": True}), 200


# ═════════════════════════════════════════════════════════════════════════════
# TEST RUNS
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/uat-items/<int:iid>/runs", methods=["GET"])
def list_runs(iid):
    _actor()
    return jsonify([r.to_dict() for r in test_run_service.list_runs(iid)])


@uat_bp.route("/uat-items/<int:iid>/runs", methods=["POST"])
def start_run(iid):
    """Start a new run; an existing active run is closed first (retest)."""
    actor = _actor()
    run = test_run_service.start_run(iid, actor=actor)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(active_run_payload(run.item_id)), 201


@uat_bp.route("/uat-items/<int:iid>/active-run", methods=["GET"])
def get_active_run(iid):
    _actor()
    return jsonify(active_run_payload(iid))


@uat_bp.route("/uat-runs/<int:rid>/steps/<int:step_id>", methods=["PATCH"])
def update_step_result(rid, step_id):
    actor = _actor()
    data = json_body()
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    result = test_run_service.update_step_result(
        rid, step_id, data["status"], notes=data.get("notes"), actor=actor,
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# COMMENTS
# ═════════════════════════════════════════════════════════════════════════════

@uat_bp.route("/uat-items/<int:iid>/comments", methods=["GET"])
def list_comments(iid):
    _actor()
    session_service.get_item(iid)
    return jsonify([c.to_dict() for c in comment_service.list_comments(iid)])


@uat_bp.route("/uat-items/<int:iid>/comments", methods=["POST"])
def create_comment(iid):
    actor = _actor()
    data = json_body()
    comment = comment_service.create_comment(
        iid, actor, data.get("body"), parent_id=data.get("parent_id"),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(comment.to_dict()), 201


@uat_bp.route("/uat-comments/<int:comment_id>", methods=["PATCH"])
def edit_comment(comment_id):
    actor = _actor()
    comment = comment_service.edit_comment(comment_id, actor, json_body().get("body"))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(comment.to_dict())


@uat_bp.route("/uat-comments/<int:comment_id>", methods=["DELETE"])
def delete_comment(comment_id):
    _actor()
    comment_service.delete_comment(comment_id)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": True}), 200
