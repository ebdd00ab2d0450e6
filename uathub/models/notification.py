"""
UAT Hub
Outbound email audit log.

Every message the notification dispatcher hands to the email provider is
recorded here, one row per send (all recipients of that send together).
"""

from datetime import datetime, timezone

from uathub.models import db


EMAIL_STATUSES = {"queued", "sent", "failed"}


class EmailLog(db.Model):
    """One send attempt. ``status`` ends as "sent" or "failed", never left "queued"."""

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipients = db.Column(db.Text, nullable=False, comment="Comma-separated addresses")
    subject = db.Column(db.String(500), nullable=False)
    template_name = db.Column(db.String(100), nullable=True,
                              comment="Email template used")
    category = db.Column(db.String(30), default="uat",
                         comment="What triggered this email")
    status = db.Column(db.String(20), default="queued",
                       comment="queued, sent, failed")
    error_message = db.Column(db.Text, nullable=True)

    # Linkage
    session_id = db.Column(db.Integer, db.ForeignKey("uat_sessions.id", ondelete="SET NULL"),
                           nullable=True, index=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    @property
    def recipient_list(self):
        return [r for r in (self.recipients or "").split(",") if r]

    def to_dict(self):
        return {
            "id": self.id,
            "recipients": self.recipient_list,
            "subject": self.subject,
            "template_name": self.template_name,
            "category": self.category,
            "status": self.status,
            "error_message": self.error_message,
            "session_id": self.session_id,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EmailLog {self.id}: {self.subject[:40]} → {self.recipients}>"
