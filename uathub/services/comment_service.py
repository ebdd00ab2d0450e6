"""Comment thread service: threaded discussion on checklist items.

Transaction policy: methods use flush(), never commit(); the route handler
commits.

Threads are one level deep: a reply must point at a top-level comment on
the same item. Author type / id / name are copied onto the row when the
comment is posted, so later renames do not rewrite history.
"""
import logging
from datetime import datetime, timezone

from uathub.core.exceptions import NotFoundError, ValidationError
from uathub.models import db
from uathub.models.uat import UatChecklistItem, UatItemComment
from uathub.services.actor_resolver import can_edit_comment, require
from uathub.utils.validation import optional_id

logger = logging.getLogger(__name__)

MAX_BODY_LENGTH = 10_000


def _clean_body(body):
    if body is not None and not isinstance(body, str):
        raise ValidationError("Comment body must be text", details={"body": "invalid"})
    body = (body or "").strip()
    if not body:
        raise ValidationError("Comment body cannot be empty", details={"body": "required"})
    if len(body) > MAX_BODY_LENGTH:
        raise ValidationError(
            f"Comment body exceeds {MAX_BODY_LENGTH} characters",
            details={"body": "too_long"},
        )
    return body


def get_comment(comment_id):
    comment = db.session.get(UatItemComment, comment_id)
    if not comment:
        raise NotFoundError(resource="UatItemComment", resource_id=comment_id)
    return comment


def list_comments(item_id):
    """All comments on an item in creation order; replies carry parent_id."""
    return (
        UatItemComment.query
        .filter_by(item_id=item_id)
        .order_by(UatItemComment.created_at, UatItemComment.id)
        .all()
    )


def create_comment(item_id, actor, body, parent_id=None):
    """Post a comment (or a reply when ``parent_id`` is given)."""
    item = db.session.get(UatChecklistItem, item_id)
    if not item:
        raise NotFoundError(resource="UatChecklistItem", resource_id=item_id)
    body = _clean_body(body)
    parent_id = optional_id(parent_id, "parent_id")

    if parent_id is not None:
        parent = db.session.get(UatItemComment, parent_id)
        if parent is None or parent.item_id != item.id:
            raise ValidationError(
                "Parent comment not found on this item",
                details={"parent_id": "invalid"},
            )
        if parent.parent_id is not None:
            raise ValidationError(
                "Replies can only be posted to top-level comments",
                details={"parent_id": "nested"},
            )

    now = datetime.now(timezone.utc)
    comment = UatItemComment(
        item_id=item.id,
        parent_id=parent_id,
        author_type=actor.actor_type.value,
        author_id=actor.id,
        author_name=actor.name,
        body=body,
        created_at=now,
        updated_at=now,
    )
    db.session.add(comment)
    db.session.flush()
    logger.info("Comment %s posted on item %s by %s#%s",
                comment.id, item.id, comment.author_type, comment.author_id,
                extra={"item_id": item.id, "actor_type": comment.author_type})
    return comment


def edit_comment(comment_id, actor, body):
    """Replace the body of the actor's own comment. No version history is kept."""
    comment = get_comment(comment_id)
    require(can_edit_comment(actor, comment), "You can only edit your own comments")
    comment.body = _clean_body(body)
    comment.updated_at = datetime.now(timezone.utc)
    db.session.flush()
    return comment


def delete_comment(comment_id):
    """Delete a comment and its replies (internal moderation)."""
    comment = get_comment(comment_id)
    db.session.delete(comment)
    db.session.flush()
    logger.info("Comment %s deleted from item %s", comment_id, comment.item_id)
