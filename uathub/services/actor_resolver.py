"""Actor resolution for internal requests and token portals.

Every request that touches the test run engine is reduced to an ``Actor``
(who is acting) plus a ``Capabilities`` set (what they may do). Internal
staff come from the auth middleware (``g.current_user``); guests,
PM collaborators and developers present a token in the portal URL.

Portal kinds:
    r / review  → UatGuest.access_token
    p           → UatSessionCollaborator.access_token, role pm | editor | viewer
    d           → UatSessionCollaborator.access_token, role developer

The session invite link (UatSession.invite_token) resolves to the session
only, with no actor; it backs an anonymous read-only view.

Any token failure (unknown, wrong portal kind, closed or expired session)
raises NotFoundError("Invalid access link") so a caller cannot tell which
check rejected it.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from uathub.core.exceptions import (
    AuthenticationError, AuthorizationError, NotFoundError,
)
from uathub.models import db
from uathub.models.uat import UatGuest, UatSession, UatSessionCollaborator

logger = logging.getLogger(__name__)

INVALID_LINK = "Invalid access link"

GUEST_PORTALS = {"r", "review"}
PM_PORTAL = "p"
DEV_PORTAL = "d"
PORTALS = GUEST_PORTALS | {PM_PORTAL, DEV_PORTAL}

PM_PORTAL_ROLES = {"pm", "editor", "viewer"}
READ_ONLY_ROLES = {"viewer"}


class ActorType(str, Enum):
    INTERNAL = "internal"
    PM_COLLABORATOR = "pm_collaborator"
    GUEST = "guest"


@dataclass(frozen=True)
class Actor:
    """Resolved identity performing an action.

    ``id`` is a users.id for internal actors, a uat_guests.id for guests and
    a uat_session_collaborators.id for collaborators; it is only unique
    together with ``actor_type``.
    """

    actor_type: ActorType
    id: int
    name: str
    session_id: int | None = None
    role: str | None = None

    @property
    def is_developer(self) -> bool:
        return self.actor_type is ActorType.PM_COLLABORATOR and self.role == "developer"

    def to_dict(self) -> dict:
        return {
            "type": self.actor_type.value,
            "id": self.id,
            "name": self.name,
            "session_id": self.session_id,
            "role": self.role,
        }


@dataclass(frozen=True)
class Capabilities:
    can_comment: bool
    can_submit_results: bool
    can_manage_items: bool
    can_invite_collaborators: bool
    read_only: bool

    def to_dict(self) -> dict:
        return {
            "can_comment": self.can_comment,
            "can_submit_results": self.can_submit_results,
            "can_manage_items": self.can_manage_items,
            "can_invite_collaborators": self.can_invite_collaborators,
            "read_only": self.read_only,
        }


# ── Resolution ───────────────────────────────────────────────────────────────

def resolve_internal(user) -> Actor:
    """Build the internal actor from the authenticated user (``g.current_user``)."""
    if user is None:
        raise AuthenticationError("Authentication required")
    return Actor(
        actor_type=ActorType.INTERNAL,
        id=user.id,
        name=user.display_name,
    )


def _portal_identity(portal, token):
    if portal in GUEST_PORTALS:
        return UatGuest.query.filter_by(access_token=token).first()
    collaborator = UatSessionCollaborator.query.filter_by(access_token=token).first()
    if collaborator is None:
        return None
    if portal == PM_PORTAL and collaborator.role in PM_PORTAL_ROLES:
        return collaborator
    if portal == DEV_PORTAL and collaborator.role == "developer":
        return collaborator
    return None


def resolve_portal(portal: str, token: str) -> Actor:
    """Resolve a portal token to an actor scoped to the token's session.

    Touches ``last_accessed_at`` on the guest / collaborator row (flushed,
    committed by the caller).
    """
    if portal not in PORTALS or not token:
        raise NotFoundError(resource="PortalToken", message=INVALID_LINK)

    identity = _portal_identity(portal, token)
    session = identity.session if identity is not None else None
    if session is None or session.status == "closed" or session.is_expired:
        logger.info("Rejected %s portal token %s...", portal, (token or "")[:6])
        raise NotFoundError(resource="PortalToken", message=INVALID_LINK)

    identity.last_accessed_at = datetime.now(timezone.utc)
    db.session.flush()

    if isinstance(identity, UatGuest):
        return Actor(
            actor_type=ActorType.GUEST,
            id=identity.id,
            name=identity.name,
            session_id=identity.session_id,
        )
    return Actor(
        actor_type=ActorType.PM_COLLABORATOR,
        id=identity.id,
        name=identity.name,
        session_id=identity.session_id,
        role=identity.role,
    )


def resolve_invite(token: str):
    """Session behind a session-wide invite link (anonymous, always read-only).

    Fails exactly like a bad portal token.
    """
    session = UatSession.query.filter_by(invite_token=token).first() if token else None
    if session is None or session.status == "closed" or session.is_expired:
        logger.info("Rejected invite token %s...", (token or "")[:6])
        raise NotFoundError(resource="InviteToken", message=INVALID_LINK)
    return session


def portal_read_only(actor: Actor, session) -> bool:
    """Portals are read-only unless the session is active and the role may write."""
    return session.status != "active" or actor.role in READ_ONLY_ROLES


# ── Capabilities ─────────────────────────────────────────────────────────────

def capabilities_for(actor: Actor, read_only: bool = False) -> Capabilities:
    """Derive the capability set for an actor.

    ``read_only`` is decided by the caller (portal / session state) and
    switches every write capability off regardless of actor type.
    """
    if actor.actor_type is ActorType.INTERNAL:
        can_comment, can_submit, can_manage = True, True, True
    elif actor.actor_type is ActorType.PM_COLLABORATOR:
        if actor.role in ("pm", "editor"):
            can_comment, can_submit, can_manage = True, True, True
        elif actor.role == "developer":
            can_comment, can_submit, can_manage = True, True, False
        else:
            can_comment, can_submit, can_manage = False, False, False
    elif actor.actor_type is ActorType.GUEST:
        can_comment, can_submit, can_manage = True, True, False
    else:
        raise ValueError(f"Unhandled actor type: {actor.actor_type!r}")

    if read_only:
        can_comment, can_submit, can_manage = False, False, False
    # only internal staff and PMs bring further collaborators in
    can_invite = can_manage and (actor.actor_type is ActorType.INTERNAL or actor.role == "pm")
    return Capabilities(
        can_comment=can_comment,
        can_submit_results=can_submit,
        can_manage_items=can_manage,
        can_invite_collaborators=can_invite,
        read_only=read_only,
    )


def can_edit_comment(actor: Actor, comment) -> bool:
    """Only the author may edit: both author type and author id must match."""
    return comment.author_type == actor.actor_type.value and comment.author_id == actor.id


def require(allowed: bool, message: str = "Insufficient permissions") -> None:
    if not allowed:
        raise AuthorizationError(message)
