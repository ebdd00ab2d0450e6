"""
UAT Hub
UAT domain models: sessions, portal identities, checklist items, test runs.

Models:
    - UatSession:              top-level review container owned by an internal user
    - UatGuest:                token-bearing external reviewer (guest portal)
    - UatSessionCollaborator:  token-bearing PM / developer (PM & dev portals)
    - UatChecklistItem:        single testable assertion within a session
    - UatChecklistItemStep:    ordered sub-task of an item (test | delay | info)
    - UatTestRun:              one attempt at executing all steps of an item
    - UatTestStepResult:       per-run, per-step outcome
    - UatItemComment:          threaded discussion on an item
    - UatResponse:             guest approve / request-changes verdict per item

Architecture ref:
    UatSession ──1:N──▶ UatChecklistItem ──1:N──▶ UatChecklistItemStep
    UatSession ──1:N──▶ UatGuest / UatSessionCollaborator
    UatChecklistItem ──1:N──▶ UatTestRun ──1:N──▶ UatTestStepResult
    UatChecklistItem ──1:N──▶ UatItemComment (parent_id → one level of replies)

Invariant: at most one run with status='active' per item (partial unique index).
"""

from datetime import datetime, timezone

from uathub.models import db


# ── Constants ────────────────────────────────────────────────────────────

SESSION_STATUSES = {"draft", "active", "closed"}

SESSION_PRIORITIES = {"low", "medium", "high"}

# draft → active → closed; closed sessions can be reopened
SESSION_TRANSITIONS = {
    "draft":  ["active", "closed"],
    "active": ["closed"],
    "closed": ["active"],
}

COLLABORATOR_ROLES = {"pm", "editor", "viewer", "developer"}

STEP_TYPES = {"test", "delay", "info"}

RUN_STATUSES = {"active", "closed"}

RUN_TRIGGER_REASONS = {"initial", "retest"}

STEP_RESULT_STATUSES = {"pending", "passed", "failed", "acknowledged"}

# Statuses that count towards "done" progress
COMPLETING_STATUSES = {"passed", "acknowledged"}

# Which result statuses each step type may take
STEP_TYPE_ALLOWED_STATUSES = {
    "test":  {"pending", "passed", "failed"},
    "delay": {"pending", "acknowledged"},
    "info":  {"pending", "acknowledged"},
}

ITEM_STATUSES = {"pending", "partial", "passed", "failed"}

AUTHOR_TYPES = {"internal", "pm_collaborator", "guest"}

RESPONSE_STATUSES = {"approved", "changes_requested"}


def _utcnow():
    return datetime.now(timezone.utc)


def validate_session_transition(old_status, new_status):
    """Return True if the session status transition is allowed."""
    if old_status == new_status:
        return True
    return new_status in SESSION_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# UAT SESSION
# ═════════════════════════════════════════════════════════════════════════════

class UatSession(db.Model):
    """
    A UAT review cycle.

    Authored by an internal user; external reviewers reach it through
    guest / collaborator tokens. Only ``active`` sessions accept reviewer
    input; ``closed`` sessions invalidate every portal link.
    """

    __tablename__ = "uat_sessions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | active | closed",
    )
    priority = db.Column(db.String(10), default="medium", comment="low | medium | high")
    invite_token = db.Column(db.String(64), unique=True, nullable=False)
    owner_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Audit
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # ── Relationships
    owner = db.relationship("User", foreign_keys=[owner_id])
    items = db.relationship(
        "UatChecklistItem", backref="session", lazy="dynamic",
        cascade="all, delete-orphan", order_by="UatChecklistItem.order",
    )
    guests = db.relationship(
        "UatGuest", backref="session", lazy="dynamic",
        cascade="all, delete-orphan", order_by="UatGuest.id",
    )
    collaborators = db.relationship(
        "UatSessionCollaborator", backref="session", lazy="dynamic",
        cascade="all, delete-orphan", order_by="UatSessionCollaborator.id",
    )

    @property
    def is_expired(self):
        if not self.expires_at:
            return False
        expires = self.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return expires < _utcnow()

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "invite_token": self.invite_token,
            "owner_id": self.owner_id,
            "owner_name": self.owner.display_name if self.owner else None,
            "created_by_id": self.created_by_id,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "item_count": self.items.count(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d

    def to_portal_dict(self):
        """Reduced view for token portals (no tokens, no owner ids)."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "due_date": self.due_date.isoformat() if self.due_date else None,
        }

    def __repr__(self):
        return f"<UatSession {self.id}: [{self.status}] {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# PORTAL IDENTITIES
# ═════════════════════════════════════════════════════════════════════════════

class UatGuest(db.Model):
    """External reviewer with a personal access token (guest portal)."""

    __tablename__ = "uat_guests"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey("uat_sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    email = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    access_token = db.Column(db.String(64), unique=True, nullable=False, index=True)
    last_accessed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("session_id", "email", name="uq_uat_guest_session_email"),
    )

    def to_dict(self, include_token=True):
        d = {
            "id": self.id,
            "session_id": self.session_id,
            "email": self.email,
            "name": self.name,
            "last_accessed_at": self.last_accessed_at.isoformat() if self.last_accessed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_token:
            d["access_token"] = self.access_token
        return d

    def __repr__(self):
        return f"<UatGuest {self.id}: {self.email} session#{self.session_id}>"


class UatSessionCollaborator(db.Model):
    """
    External PM / developer with a personal access token.

    role=pm|editor|viewer use the PM portal; role=developer uses the
    developer portal. viewer is read-only.
    """

    __tablename__ = "uat_session_collaborators"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey("uat_sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    email = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    role = db.Column(
        db.String(20), nullable=False, default="pm",
        comment="pm | editor | viewer | developer",
    )
    access_token = db.Column(db.String(64), unique=True, nullable=False, index=True)
    invited_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    last_accessed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("session_id", "email", name="uq_uat_collaborator_session_email"),
    )

    def to_dict(self, include_token=True):
        d = {
            "id": self.id,
            "session_id": self.session_id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "invited_by_id": self.invited_by_id,
            "last_accessed_at": self.last_accessed_at.isoformat() if self.last_accessed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_token:
            d["access_token"] = self.access_token
        return d

    def __repr__(self):
        return f"<UatSessionCollaborator {self.id}: {self.email} [{self.role}]>"


# ═════════════════════════════════════════════════════════════════════════════
# CHECKLIST ITEM + STEPS
# ═════════════════════════════════════════════════════════════════════════════

class UatChecklistItem(db.Model):
    """
    A single testable assertion within a session.

    Review tracking (last_reviewed_* / last_resolved_*) is written by the
    test run service whenever a step result changes.
    """

    __tablename__ = "uat_checklist_items"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey("uat_sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(500), nullable=False)
    instructions = db.Column(db.Text, default="", comment="What to check / test")
    reference_url = db.Column(db.String(500), default="")
    category = db.Column(db.String(100), default="", comment="Design, Functionality, Content…")
    order = db.Column(db.Integer, nullable=False, default=0)

    # ── Review tracking
    last_reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_reviewed_by_name = db.Column(db.String(200), nullable=True)
    last_reviewed_by_type = db.Column(
        db.String(20), nullable=True, comment="internal | pm_collaborator | developer | guest",
    )
    last_resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_resolved_by_name = db.Column(db.String(200), nullable=True)

    # ── Audit
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # ── Relationships
    steps = db.relationship(
        "UatChecklistItemStep", backref="item", lazy="dynamic",
        cascade="all, delete-orphan",
        order_by="UatChecklistItemStep.order",
    )
    runs = db.relationship(
        "UatTestRun", backref="item", lazy="dynamic",
        cascade="all, delete-orphan", order_by="UatTestRun.run_number",
    )
    comments = db.relationship(
        "UatItemComment", backref="item", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    responses = db.relationship(
        "UatResponse", backref="item", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "session_id": self.session_id,
            "title": self.title,
            "instructions": self.instructions,
            "reference_url": self.reference_url,
            "category": self.category,
            "order": self.order,
            "step_count": self.steps.count(),
            "last_reviewed_at": self.last_reviewed_at.isoformat() if self.last_reviewed_at else None,
            "last_reviewed_by_name": self.last_reviewed_by_name,
            "last_reviewed_by_type": self.last_reviewed_by_type,
            "last_resolved_at": self.last_resolved_at.isoformat() if self.last_resolved_at else None,
            "last_resolved_by_name": self.last_resolved_by_name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<UatChecklistItem {self.id}: session#{self.session_id} {self.title[:40]}>"


class UatChecklistItemStep(db.Model):
    """
    Ordered sub-task of a checklist item.

    step_type:
        test  : tester marks passed / failed
        delay : wait period, completed with "Done Waiting" (acknowledged)
        info  : read-only instruction, completed with "Acknowledged"
    """

    __tablename__ = "uat_checklist_item_steps"

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(
        db.Integer, db.ForeignKey("uat_checklist_items.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_type = db.Column(db.String(10), nullable=False, default="test", comment="test | delay | info")
    title = db.Column(db.String(500), nullable=False)
    instructions = db.Column(db.Text, default="")
    expected_result = db.Column(db.Text, nullable=True, comment="What success looks like")
    link_url = db.Column(db.String(500), nullable=True)
    notes_required = db.Column(db.Boolean, nullable=False, default=False)
    notes_prompt = db.Column(db.String(500), nullable=True)
    estimated_duration_minutes = db.Column(db.Integer, nullable=True, comment="delay steps only")
    order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "item_id": self.item_id,
            "step_type": self.step_type,
            "title": self.title,
            "instructions": self.instructions,
            "expected_result": self.expected_result,
            "link_url": self.link_url,
            "notes_required": bool(self.notes_required),
            "notes_prompt": self.notes_prompt,
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "order": self.order,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<UatChecklistItemStep {self.id}: item#{self.item_id} [{self.step_type}] #{self.order}>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST RUN + STEP RESULT
# ═════════════════════════════════════════════════════════════════════════════

class UatTestRun(db.Model):
    """
    One attempt at executing all steps of an item.

    Starting a new run closes the previous active run in the same
    transaction; the partial unique index rejects a second concurrent
    active run for the same item.
    """

    __tablename__ = "uat_test_runs"

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(
        db.Integer, db.ForeignKey("uat_checklist_items.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    run_number = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(10), nullable=False, default="active", comment="active | closed")
    trigger_reason = db.Column(db.String(20), nullable=False, default="initial", comment="initial | retest")
    triggered_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("item_id", "run_number", name="uq_uat_test_run_item_number"),
        db.Index(
            "uq_uat_test_run_one_active", "item_id", unique=True,
            sqlite_where=db.text("status = 'active'"),
            postgresql_where=db.text("status = 'active'"),
        ),
    )

    results = db.relationship(
        "UatTestStepResult", backref="run", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "item_id": self.item_id,
            "run_number": self.run_number,
            "status": self.status,
            "trigger_reason": self.trigger_reason,
            "triggered_by_id": self.triggered_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }

    def __repr__(self):
        return f"<UatTestRun {self.id}: item#{self.item_id} run#{self.run_number} [{self.status}]>"


class UatTestStepResult(db.Model):
    """Outcome of one step within one run; unique per (run_id, step_id)."""

    __tablename__ = "uat_test_step_results"

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(
        db.Integer, db.ForeignKey("uat_test_runs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_id = db.Column(
        db.Integer, db.ForeignKey("uat_checklist_item_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | passed | failed | acknowledged",
    )
    notes = db.Column(db.Text, nullable=True)

    # ── Tester snapshot (denormalised at write time)
    tester_type = db.Column(db.String(20), nullable=True)
    tester_id = db.Column(db.Integer, nullable=True)
    tester_name = db.Column(db.String(200), nullable=True)
    tested_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("run_id", "step_id", name="uq_uat_step_result_run_step"),
    )

    step = db.relationship("UatChecklistItemStep")

    def to_dict(self):
        return {
            "id": self.id,
            "run_id": self.run_id,
            "step_id": self.step_id,
            "status": self.status,
            "notes": self.notes,
            "tester_type": self.tester_type,
            "tester_id": self.tester_id,
            "tester_name": self.tester_name,
            "tested_at": self.tested_at.isoformat() if self.tested_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<UatTestStepResult {self.id}: run#{self.run_id} step#{self.step_id} → {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# ITEM COMMENTS
# ═════════════════════════════════════════════════════════════════════════════

class UatItemComment(db.Model):
    """
    Threaded comment on a checklist item.

    parent_id NULL → top-level; otherwise a reply to a top-level comment.
    Author fields are a snapshot taken at post time.
    """

    __tablename__ = "uat_item_comments"

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(
        db.Integer, db.ForeignKey("uat_checklist_items.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    parent_id = db.Column(
        db.Integer, db.ForeignKey("uat_item_comments.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    author_type = db.Column(db.String(20), nullable=False, comment="internal | pm_collaborator | guest")
    author_id = db.Column(db.Integer, nullable=False)
    author_name = db.Column(db.String(200), nullable=False)
    body = db.Column(db.Text, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    replies = db.relationship(
        "UatItemComment", backref=db.backref("parent", remote_side=[id]),
        cascade="all, delete-orphan", order_by="UatItemComment.created_at",
    )

    @property
    def is_edited(self):
        return bool(self.created_at and self.updated_at and self.updated_at != self.created_at)

    def to_dict(self):
        return {
            "id": self.id,
            "item_id": self.item_id,
            "parent_id": self.parent_id,
            "author_type": self.author_type,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "body": self.body,
            "is_edited": self.is_edited,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<UatItemComment {self.id}: item#{self.item_id} by {self.author_type}#{self.author_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# GUEST RESPONSES
# ═════════════════════════════════════════════════════════════════════════════

class UatResponse(db.Model):
    """Guest verdict on an item; one per (item, guest), feedback required for changes."""

    __tablename__ = "uat_responses"

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(
        db.Integer, db.ForeignKey("uat_checklist_items.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    guest_id = db.Column(
        db.Integer, db.ForeignKey("uat_guests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    status = db.Column(db.String(20), nullable=False, comment="approved | changes_requested")
    feedback = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("item_id", "guest_id", name="uq_uat_response_item_guest"),
    )

    guest = db.relationship(
        "UatGuest", backref=db.backref("responses", cascade="all, delete-orphan", lazy="dynamic"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "item_id": self.item_id,
            "guest_id": self.guest_id,
            "guest_name": self.guest.name if self.guest else None,
            "status": self.status,
            "feedback": self.feedback,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<UatResponse {self.id}: item#{self.item_id} guest#{self.guest_id} → {self.status}>"
