"""
Outbound mail for UAT status updates.

One call to ``EmailService.send`` produces one SMTP message addressed to
every recipient and one ``EmailLog`` row describing the outcome. Nothing
is retried; a provider failure is written to the log row and the caller
decides what to report.

SMTP settings come from the app config (see ``uathub.config``):
MAIL_SERVER, MAIL_PORT, MAIL_USE_TLS, MAIL_USERNAME, MAIL_PASSWORD and
MAIL_DEFAULT_SENDER. With no MAIL_SERVER the service is "not configured".
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage

from flask import current_app

from uathub.models import db
from uathub.models.notification import EmailLog

logger = logging.getLogger(__name__)

SMTP_TIMEOUT = 30
MAX_ERROR_LENGTH = 1000

# Rendered with str.format; placeholders are filled by notification_service.
TEMPLATES = {
    "uat_session_update": {
        "html": """
        <div style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; max-width: 800px; margin: 0 auto;">
            <div style="background: #1f2937; color: white; padding: 24px; border-radius: 8px 8px 0 0;">
                <h1 style="margin: 0; font-size: 20px;">UAT Session Update</h1>
                <p style="margin: 8px 0 0; opacity: 0.9; font-size: 14px;">{session_name}</p>
            </div>
            <div style="background: white; padding: 24px; border: 1px solid #e5e7eb; border-top: none;">
                <table style="width: 100%; border-collapse: separate; border-spacing: 8px; margin-bottom: 16px;">
                    <tr>
                        {summary_cells}
                    </tr>
                </table>
                <h2 style="font-size: 16px; margin: 0 0 12px; color: #1f2937;">Item Status Details</h2>
                <table style="width: 100%; border-collapse: collapse; font-size: 14px;">
                    <tr style="background: #f9fafb; border-bottom: 1px solid #e5e7eb;">
                        <th style="padding: 12px 8px; text-align: left;">Item</th>
                        <th style="padding: 12px 8px; text-align: center;">Status</th>
                        <th style="padding: 12px 8px; text-align: center;">Steps</th>
                        <th style="padding: 12px 8px; text-align: left;">Last Reviewer</th>
                        <th style="padding: 12px 8px; text-align: left;">Reviewed</th>
                        <th style="padding: 12px 8px; text-align: left;">Resolved By</th>
                        <th style="padding: 12px 8px; text-align: left;">Resolved</th>
                    </tr>
                    {item_rows}
                </table>
            </div>
            <div style="background: #f9fafb; padding: 12px 24px; border-radius: 0 0 8px 8px;
                        border: 1px solid #e5e7eb; border-top: none;">
                <p style="color: #6b7280; font-size: 12px; margin: 0;">
                    This is an automated update from your UAT review session.
                    <a href="{base_url}" style="color: #2563eb;">View Session</a>
                </p>
            </div>
        </div>
        """,
    },
}

STATUS_COLORS = {
    "passed": ("#dcfce7", "#166534"),
    "failed": ("#fee2e2", "#991b1b"),
    "partial": ("#fef3c7", "#92400e"),
    "pending": ("#f3f4f6", "#374151"),
}


class EmailService:
    """SMTP delivery plus the ``EmailLog`` audit trail."""

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def render(template_name: str, context: dict) -> str | None:
        """Fill a named HTML template, or return None for an unknown name."""
        entry = TEMPLATES.get(template_name)
        if entry is None:
            logger.warning("Unknown email template '%s'", template_name)
            return None
        return entry["html"].format(**context)

    @classmethod
    def send(
        cls,
        *,
        to_emails: list[str],
        subject: str,
        html_body: str,
        text_body: str | None = None,
        template_name: str | None = None,
        category: str = "uat",
        session_id: int | None = None,
    ) -> EmailLog:
        """Deliver one message and return its log row.

        The row is flushed, not committed. SMTP and socket errors end up in
        ``log.status == "failed"`` with ``error_message`` set.
        """
        log = EmailLog(
            recipients=",".join(to_emails),
            subject=subject,
            template_name=template_name,
            category=category,
            session_id=session_id,
            status="queued",
        )
        db.session.add(log)

        if not cls.is_configured():
            log.status, log.error_message = "failed", "MAIL_SERVER is not configured"
            logger.warning("Skipping email '%s': MAIL_SERVER not set", subject)
            db.session.flush()
            return log

        try:
            cls._send_smtp(to_emails=to_emails, subject=subject,
                           html_body=html_body, text_body=text_body)
        except (smtplib.SMTPException, OSError) as exc:
            log.status, log.error_message = "failed", str(exc)[:MAX_ERROR_LENGTH]
            logger.error("SMTP delivery of '%s' failed: %s", subject, exc,
                         extra={"session_id": session_id})
        else:
            log.status, log.sent_at = "sent", datetime.now(timezone.utc)
            logger.info("Delivered '%s' to %d recipient(s)", subject, len(to_emails),
                        extra={"session_id": session_id})

        db.session.flush()
        return log

    @staticmethod
    def _build_message(to_emails, subject, html_body, text_body) -> EmailMessage:
        cfg = current_app.config
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = cfg.get("MAIL_DEFAULT_SENDER") or f"noreply@{cfg['MAIL_SERVER']}"
        msg["To"] = ", ".join(to_emails)
        # plain part first so HTML is the preferred alternative
        msg.set_content(text_body or "This message requires an HTML-capable mail client.")
        msg.add_alternative(html_body, subtype="html")
        return msg

    @classmethod
    def _send_smtp(cls, *, to_emails: list[str], subject: str,
                   html_body: str, text_body: str | None = None) -> None:
        cfg = current_app.config
        msg = cls._build_message(to_emails, subject, html_body, text_body)
        with smtplib.SMTP(cfg["MAIL_SERVER"], cfg.get("MAIL_PORT", 587),
                          timeout=SMTP_TIMEOUT) as conn:
            if cfg.get("MAIL_USE_TLS", True):
                conn.starttls()
            user, secret = cfg.get("MAIL_USERNAME"), cfg.get("MAIL_PASSWORD")
            if user and secret:
                conn.login(user, secret)
            conn.send_message(msg)
