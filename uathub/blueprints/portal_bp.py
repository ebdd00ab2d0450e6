"""
UAT Hub
Portal Blueprint: token-scoped access for guests, PM collaborators and developers.

The token in the URL is the credential; the auth middleware skips these
paths. ``portal`` is one of r / review (guest), p (PM), d (developer).
Anything addressed below a token must belong to the token's session,
otherwise it is reported as not found.

Testing and discussion (every portal):
    GET    /api/v1/uat/<portal>/<token>                               : Session, items, actor, capabilities
    GET    /api/v1/uat/<portal>/<token>/progress                      : Per-item progress (polled)
    GET    /api/v1/uat/<portal>/<token>/items/<iid>/steps             : Ordered steps
    GET    /api/v1/uat/<portal>/<token>/items/<iid>/active-run        : Active run + results
    POST   /api/v1/uat/<portal>/<token>/items/<iid>/active-run        : Start testing (get-or-create, retest=true for new run)
    PATCH  /api/v1/uat/<portal>/<token>/runs/<rid>/steps/<step_id>    : Record step result
    GET    /api/v1/uat/<portal>/<token>/items/<iid>/comments          : Comments
    POST   /api/v1/uat/<portal>/<token>/items/<iid>/comments          : Post comment / reply
    PATCH  /api/v1/uat/<portal>/<token>/items/<iid>/comments/<cid>    : Edit own comment
    POST   /api/v1/uat/<portal>/<token>/items/<iid>/respond           : Guest approve / request changes

Session management (can_manage_items: pm / editor roles):
    POST         /api/v1/uat/p/<token>/items                          : Add item
    PATCH/DELETE /api/v1/uat/p/<token>/items/<iid>
    POST         /api/v1/uat/p/<token>/items/<iid>/duplicate          : Copy item + steps
    POST         /api/v1/uat/p/<token>/items/<iid>/steps              : Add step
    PATCH/DELETE /api/v1/uat/p/<token>/steps/<step_id>
    POST         /api/v1/uat/p/<token>/guests                         : Invite reviewer
    POST         /api/v1/uat/p/<token>/collaborators                  : Invite collaborator (pm role only)

Session invite link (anonymous, read-only):
    GET    /api/v1/uat/invite/<token>                                 : Session, items, progress
"""

import logging

from flask import Blueprint, g, jsonify

from uathub.blueprints import json_body
from uathub.blueprints.uat_bp import active_run_payload
from uathub.core.exceptions import NotFoundError
from uathub.models import db
from uathub.models.uat import UatResponse, UatTestRun
from uathub.services import comment_service, session_service, test_run_service
from uathub.services.actor_resolver import (
    ActorType, capabilities_for, portal_read_only, require, resolve_invite,
    resolve_portal,
)
from uathub.utils.errors import E, api_error, register_error_handlers
from uathub.utils.helpers import db_commit_or_error

logger = logging.getLogger(__name__)

portal_bp = Blueprint("portal", __name__, url_prefix="/api/v1/uat/<any(r, review, p, d):portal>/<token>")
invite_bp = Blueprint("invite", __name__, url_prefix="/api/v1/uat/invite")

register_error_handlers(portal_bp, logger)
register_error_handlers(invite_bp, logger)

INACTIVE_SESSION = "This review session is not active"
READ_ONLY_ACCESS = "You have read-only access to this session"
NO_MANAGE_ACCESS = "Your role cannot change this session's checklist or people"
NO_INVITE_ACCESS = "Only PMs can invite collaborators"


@portal_bp.url_value_preprocessor
def _resolve_token(endpoint, values):
    """Resolve the token once per request; the views never see portal/token."""
    g.portal = values.pop("portal")
    token = values.pop("token")
    g.actor = resolve_portal(g.portal, token)
    g.uat_session = session_service.get_session(g.actor.session_id)
    g.capabilities = capabilities_for(g.actor, read_only=portal_read_only(g.actor, g.uat_session))


def _require_write(capability, message=READ_ONLY_ACCESS):
    """Reject writes with the most specific reason (inactive session vs role)."""
    if g.uat_session.status != "active":
        require(False, INACTIVE_SESSION)
    require(getattr(g.capabilities, capability), message)


def _item(iid):
    return session_service.get_session_item(g.uat_session.id, iid)


def _commit_touch():
    """Persist last_accessed_at on read-only endpoints."""
    return db_commit_or_error()


def _committed(payload, status=200):
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(payload), status


# ═════════════════════════════════════════════════════════════════════════════
# SESSION VIEW
# ═════════════════════════════════════════════════════════════════════════════

@portal_bp.route("", methods=["GET"])
def portal_home():
    session = g.uat_session
    items = [i.to_dict(include_steps=True) for i in session_service.list_items(session.id)]
    body = {
        "session": session.to_portal_dict(),
        "items": items,
        "actor": g.actor.to_dict(),
        "capabilities": g.capabilities.to_dict(),
    }
    if g.actor.actor_type is ActorType.GUEST:
        responses = UatResponse.query.filter_by(guest_id=g.actor.id).all()
        body["responses"] = [r.to_dict() for r in responses]
    err = _commit_touch()
    if err:
        return err
    return jsonify(body)


@portal_bp.route("/progress", methods=["GET"])
def portal_progress():
    status = test_run_service.session_status(g.uat_session)
    err = _commit_touch()
    if err:
        return err
    return jsonify(status)


@portal_bp.route("/items/<int:iid>/steps", methods=["GET"])
def portal_steps(iid):
    item = _item(iid)
    err = _commit_touch()
    if err:
        return err
    return jsonify([s.to_dict() for s in session_service.list_steps(item.id)])


# ═════════════════════════════════════════════════════════════════════════════
# RUNS
# ═════════════════════════════════════════════════════════════════════════════

@portal_bp.route("/items/<int:iid>/active-run", methods=["GET"])
def portal_active_run(iid):
    item = _item(iid)
    payload = active_run_payload(item.id)
    err = _commit_touch()
    if err:
        return err
    return jsonify(payload)


@portal_bp.route("/items/<int:iid>/active-run", methods=["POST"])
def portal_start_testing(iid):
    """Start testing: reuse the active run, or open a fresh one with retest=true."""
    item = _item(iid)
    _require_write("can_submit_results")
    if json_body().get("retest") is True:
        test_run_service.start_run(item.id, actor=g.actor)
    else:
        test_run_service.ensure_active_run(item.id, actor=g.actor)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(active_run_payload(item.id)), 201


@portal_bp.route("/runs/<int:rid>/steps/<int:step_id>", methods=["PATCH"])
def portal_update_step(rid, step_id):
    run = db.session.get(UatTestRun, rid)
    if run is None or run.item.session_id != g.uat_session.id:
        raise NotFoundError(resource="UatTestRun", resource_id=rid)
    _require_write("can_submit_results")
    data = json_body()
    if data.get("status") is None:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    result = test_run_service.update_step_result(
        run.id, step_id, data["status"], notes=data.get("notes"), actor=g.actor,
    )
    return _committed(result.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# COMMENTS
# ═════════════════════════════════════════════════════════════════════════════

@portal_bp.route("/items/<int:iid>/comments", methods=["GET"])
def portal_comments(iid):
    item = _item(iid)
    comments = comment_service.list_comments(item.id)
    err = _commit_touch()
    if err:
        return err
    return jsonify([c.to_dict() for c in comments])


@portal_bp.route("/items/<int:iid>/comments", methods=["POST"])
def portal_create_comment(iid):
    item = _item(iid)
    _require_write("can_comment")
    data = json_body()
    comment = comment_service.create_comment(
        item.id, g.actor, data.get("body"), parent_id=data.get("parent_id"),
    )
    return _committed(comment.to_dict(), 201)


@portal_bp.route("/items/<int:iid>/comments/<int:cid>", methods=["PATCH"])
def portal_edit_comment(iid, cid):
    item = _item(iid)
    comment = comment_service.get_comment(cid)
    if comment.item_id != item.id:
        raise NotFoundError(resource="UatItemComment", resource_id=cid)
    _require_write("can_comment")
    comment_service.edit_comment(comment.id, g.actor, json_body().get("body"))
    return _committed(comment.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# GUEST RESPONSES
# ═════════════════════════════════════════════════════════════════════════════

@portal_bp.route("/items/<int:iid>/respond", methods=["POST"])
def portal_respond(iid):
    item = _item(iid)
    require(g.actor.actor_type is ActorType.GUEST, "Only guest reviewers can respond to items")
    _require_write("can_submit_results")
    data = json_body()
    if data.get("status") is None:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    response = session_service.submit_response(
        item, g.actor.id, data["status"], feedback=data.get("feedback"),
    )
    return _committed(response.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# SESSION MANAGEMENT (PM portal)
# ═════════════════════════════════════════════════════════════════════════════

@portal_bp.route("/items", methods=["POST"])
def portal_create_item():
    _require_write("can_manage_items", NO_MANAGE_ACCESS)
    item = session_service.create_item(g.uat_session, json_body())
    logger.info("Item %s added through PM portal by collaborator %s", item.id, g.actor.id)
    return _committed(item.to_dict(), 201)


@portal_bp.route("/items/<int:iid>", methods=["PATCH"])
def portal_update_item(iid):
    item = _item(iid)
    _require_write("can_manage_items", NO_MANAGE_ACCESS)
    session_service.update_item(item, json_body())
    return _committed(item.to_dict())


@portal_bp.route("/items/<int:iid>", methods=["DELETE"])
def portal_delete_item(iid):
    item = _item(iid)
    _require_write("can_manage_items", NO_MANAGE_ACCESS)
    session_service.delete_item(item)
    return _committed({"deleted": True})


@portal_bp.route("/items/<int:iid>/duplicate", methods=["POST"])
def portal_duplicate_item(iid):
    item = _item(iid)
    _require_write("can_manage_items", NO_MANAGE_ACCESS)
    copy = session_service.duplicate_item(item)
    return _committed(copy.to_dict(include_steps=True), 201)


@portal_bp.route("/items/<int:iid>/steps", methods=["POST"])
def portal_create_step(iid):
    item = _item(iid)
    _require_write("can_manage_items", NO_MANAGE_ACCESS)
    step = session_service.create_step(item, json_body())
    return _committed(step.to_dict(), 201)


@portal_bp.route("/steps/<int:step_id>", methods=["PATCH"])
def portal_update_step_definition(step_id):
    step = session_service.get_session_step(g.uat_session.id, step_id)
    _require_write("can_manage_items", NO_MANAGE_ACCESS)
    session_service.update_step(step, json_body())
    return _committed(step.to_dict())


@portal_bp.route("/steps/<int:step_id>", methods=["DELETE"])
def portal_delete_step(step_id):
    step = session_service.get_session_step(g.uat_session.id, step_id)
    _require_write("can_manage_items", NO_MANAGE_ACCESS)
    session_service.delete_step(step)
    return _committed({"deleted": True})


@portal_bp.route("/guests", methods=["POST"])
def portal_invite_guest():
    _require_write("can_manage_items", NO_MANAGE_ACCESS)
    guest = session_service.add_guest(g.uat_session, json_body())
    return _committed(guest.to_dict(), 201)


@portal_bp.route("/collaborators", methods=["POST"])
def portal_invite_collaborator():
    _require_write("can_invite_collaborators", NO_INVITE_ACCESS)
    collaborator = session_service.add_collaborator(g.uat_session, json_body())
    return _committed(collaborator.to_dict(), 201)


# ═════════════════════════════════════════════════════════════════════════════
# SESSION INVITE LINK
# ═════════════════════════════════════════════════════════════════════════════

@invite_bp.route("/<token>", methods=["GET"])
def invite_view(token):
    """Anonymous preview of a session: no actor, no writes, no responses."""
    session = resolve_invite(token)
    g.portal = "invite"
    items = [i.to_dict(include_steps=True) for i in session_service.list_items(session.id)]
    return jsonify({
        "session": session.to_portal_dict(),
        "items": items,
        "progress": test_run_service.session_status(session)["summary"],
        "read_only": True,
    })
