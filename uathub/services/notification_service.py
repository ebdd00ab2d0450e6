"""Notification dispatcher: best-effort UAT session summary email.

send_session_update() never raises: a missing email provider, an empty
recipient list and provider errors all come back as
``{"success": False, "sent_to": [], "error": "..."}`` so that reviewing
work is never blocked by email. One send, no retry; the caller may simply
invoke it again.
"""
import logging
from datetime import datetime

from flask import current_app
from markupsafe import escape

from uathub.services.email_service import STATUS_COLORS, EmailService

logger = logging.getLogger(__name__)

DEFAULT_LINK_BASE = "https://testhub.us"

NOT_CONFIGURED_ERROR = "Email service not configured. Set MAIL_SERVER to enable update emails."
NO_RECIPIENTS_ERROR = "No recipients found. Add guests or collaborators with email addresses."


def collect_recipients(owner_email, guests, collaborators):
    """Owner, then guests, then collaborators; deduplicated ignoring case."""
    seen = set()
    recipients = []
    candidates = [owner_email]
    candidates += [g.email for g in guests or []]
    candidates += [c.email for c in collaborators or []]
    for email in candidates:
        email = (email or "").strip()
        if not email or email.lower() in seen:
            continue
        seen.add(email.lower())
        recipients.append(email)
    return recipients


def format_date(value):
    """``Mar 4, 2026 3:07 PM`` style; ``-`` for missing values."""
    if not value:
        return "-"
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    hour = value.hour % 12 or 12
    return f"{value:%b} {value.day}, {value.year} {hour}:{value:%M} {value:%p}"


def _summary(items):
    counts = {"total": len(items), "passed": 0, "failed": 0, "partial": 0, "pending": 0}
    for item in items:
        counts[item["progress"]["status"]] += 1
    return counts


def _steps_label(progress):
    return f"{progress['passed']}/{progress['total']}" if progress["total"] else "-"


def _status_badge(status):
    bg, fg = STATUS_COLORS.get(status, STATUS_COLORS["pending"])
    return (
        f'<span style="display: inline-block; padding: 2px 8px; border-radius: 4px; '
        f'font-size: 12px; background: {bg}; color: {fg};">{status.capitalize()}</span>'
    )


def _summary_cells(counts):
    cells = []
    for label, key, color in (
        ("Total Items", "total", "#1f2937"),
        ("Passed", "passed", "#166534"),
        ("Failed", "failed", "#991b1b"),
        ("In Progress", "partial", "#92400e"),
        ("Pending", "pending", "#6b7280"),
    ):
        cells.append(
            f'<td style="background: #f3f4f6; padding: 12px 16px; border-radius: 6px;">'
            f'<div style="font-size: 24px; font-weight: 600; color: {color};">{counts[key]}</div>'
            f'<div style="font-size: 12px; color: {color};">{label}</div></td>'
        )
    return "".join(cells)


def _item_rows(items):
    rows = []
    cell = 'style="padding: 12px 8px; font-size: 12px; color: #6b7280;"'
    for item in items:
        progress = item["progress"]
        failures = "".join(
            f'<div style="font-size: 12px; color: #991b1b; margin-top: 4px;">'
            f'&#10007; {escape(f["step_title"])}: &ldquo;{escape(f["notes"] or "")}&rdquo;</div>'
            for f in progress["failures"]
        )
        rows.append(
            '<tr style="border-bottom: 1px solid #e5e7eb;">'
            f'<td style="padding: 12px 8px; font-weight: 500;">{escape(item["title"])}{failures}</td>'
            f'<td style="padding: 12px 8px; text-align: center;">{_status_badge(progress["status"])}</td>'
            f'<td style="padding: 12px 8px; text-align: center;">{_steps_label(progress)}</td>'
            f'<td {cell}>{escape(item.get("last_reviewed_by_name") or "-")}</td>'
            f'<td {cell}>{format_date(item.get("last_reviewed_at"))}</td>'
            f'<td {cell}>{escape(item.get("last_resolved_by_name") or "-")}</td>'
            f'<td {cell}>{format_date(item.get("last_resolved_at"))}</td>'
            "</tr>"
        )
    return "".join(rows)


def _text_body(session_name, counts, items, base_url):
    lines = [
        f"UAT Session Update: {session_name}",
        "",
        "Summary:",
        f"- Total Items: {counts['total']}",
        f"- Passed: {counts['passed']}",
        f"- Failed: {counts['failed']}",
        f"- In Progress: {counts['partial']}",
        f"- Pending: {counts['pending']}",
        "",
        "Items:",
    ]
    for item in items:
        progress = item["progress"]
        lines.append(f"- {item['title']}: {progress['status']} ({_steps_label(progress)} steps)")
        for failure in progress["failures"]:
            lines.append(f"  Failed: {failure['step_title']}: \"{failure['notes'] or ''}\"")
        lines.append(
            f"  Last Reviewed: {item.get('last_reviewed_by_name') or '-'} "
            f"on {format_date(item.get('last_reviewed_at'))}"
        )
        lines.append(
            f"  Resolved By: {item.get('last_resolved_by_name') or '-'} "
            f"on {format_date(item.get('last_resolved_at'))}"
        )
    lines += ["", f"View Session: {base_url}"]
    return "\n".join(lines)


def _item_view(item):
    """Accept either a session_status() row or a (item, progress) pair."""
    if isinstance(item, dict):
        return item
    model, progress = item
    return {
        "title": model.title,
        "progress": progress,
        "last_reviewed_by_name": model.last_reviewed_by_name,
        "last_reviewed_at": model.last_reviewed_at,
        "last_resolved_by_name": model.last_resolved_by_name,
        "last_resolved_at": model.last_resolved_at,
    }


def send_session_update(session, items, guests, collaborators, custom_domain=None):
    """Email a status summary of ``session`` to everyone involved.

    Args:
        session: UatSession.
        items: per-item views carrying ``title``, ``progress`` (as built by
            test_run_service.derive_item_status) and review tracking fields;
            either dicts or ``(UatChecklistItem, progress)`` pairs.
        guests / collaborators: rows with an ``email`` attribute.
        custom_domain: link base override; falls back to UAT_CUSTOM_DOMAIN.

    Returns:
        {"success": bool, "sent_to": [emails], "error"?: str}
    """
    try:
        if session is None or not getattr(session, "name", None):
            return {"success": False, "sent_to": [], "error": "Session name is required"}
        if not isinstance(items, (list, tuple)):
            return {"success": False, "sent_to": [], "error": "Items must be a list"}

        if not EmailService.is_configured():
            return {"success": False, "sent_to": [], "error": NOT_CONFIGURED_ERROR}

        owner_email = session.owner.email if session.owner else None
        recipients = collect_recipients(owner_email, guests, collaborators)
        if not recipients:
            return {"success": False, "sent_to": [], "error": NO_RECIPIENTS_ERROR}

        base_url = (
            custom_domain
            or current_app.config.get("UAT_CUSTOM_DOMAIN")
            or DEFAULT_LINK_BASE
        ).rstrip("/")
        views = [_item_view(i) for i in items]
        counts = _summary(views)

        html_body = EmailService.render("uat_session_update", {
            "session_name": escape(session.name),
            "summary_cells": _summary_cells(counts),
            "item_rows": _item_rows(views),
            "base_url": escape(base_url),
        })
        subject = f"UAT Update: {session.name} - {counts['passed']}/{counts['total']} items passed"

        log = EmailService.send(
            to_emails=recipients,
            subject=subject,
            html_body=html_body,
            text_body=_text_body(session.name, counts, views, base_url),
            template_name="uat_session_update",
            session_id=session.id,
        )
    except Exception as exc:
        logger.exception("Session update email crashed for session %s",
                         getattr(session, "id", None))
        return {"success": False, "sent_to": [], "error": f"Failed to send email: {exc}"}

    if log.status != "sent":
        return {"success": False, "sent_to": [], "error": f"Failed to send email: {log.error_message}"}
    logger.info("Session update sent for session %s to %d recipients",
                session.id, len(recipients), extra={"session_id": session.id})
    return {"success": True, "sent_to": recipients}
