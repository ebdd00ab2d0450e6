"""Test run service: run lifecycle, step results and derived item status.

Transaction policy: methods use flush() for ID generation, never commit().
Caller (route handler) is responsible for db.session.commit().
Exception: start_run() rolls the session back before raising ConflictError
when the one-active-run index rejects a concurrent start.

Operations:
- Active run lookup (one ``active`` run per item, closed runs are history)
- Run start / retest with eager ``pending`` result materialisation
- Step result upsert with step-type and notes validation
- Item status derivation and session-wide progress summary
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from uathub.core.exceptions import ConflictError, NotFoundError, ValidationError
from uathub.models import db
from uathub.models.uat import (
    COMPLETING_STATUSES, STEP_RESULT_STATUSES, STEP_TYPE_ALLOWED_STATUSES,
    UatChecklistItem, UatChecklistItemStep, UatTestRun, UatTestStepResult,
)
from uathub.services.actor_resolver import ActorType
from uathub.utils.validation import choice, optional_text

logger = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc)


def _get_item(item_id):
    item = db.session.get(UatChecklistItem, item_id)
    if not item:
        raise NotFoundError(resource="UatChecklistItem", resource_id=item_id)
    return item


def _ordered_steps(item_id):
    return (
        UatChecklistItemStep.query
        .filter_by(item_id=item_id)
        .order_by(UatChecklistItemStep.order, UatChecklistItemStep.id)
        .all()
    )


def _ordered_results(run_id):
    return (
        UatTestStepResult.query
        .join(UatChecklistItemStep, UatTestStepResult.step_id == UatChecklistItemStep.id)
        .filter(UatTestStepResult.run_id == run_id)
        .order_by(UatChecklistItemStep.order, UatChecklistItemStep.id)
        .all()
    )


def _active_runs(item_id):
    return UatTestRun.query.filter_by(item_id=item_id, status="active").all()


def _find_active_run(item_id):
    return (
        UatTestRun.query
        .filter_by(item_id=item_id, status="active")
        .order_by(UatTestRun.run_number.desc())
        .first()
    )


# ═════════════════════════════════════════════════════════════════════════════
# RUN LIFECYCLE
# ═════════════════════════════════════════════════════════════════════════════

def get_active_run(item_id):
    """Return ``{"run": UatTestRun | None, "results": [UatTestStepResult]}``.

    ``run`` is None (and ``results`` empty) when the item was never started.
    Results come back in step order.
    """
    _get_item(item_id)
    run = _find_active_run(item_id)
    if run is None:
        return {"run": None, "results": []}
    return {"run": run, "results": _ordered_results(run.id)}


def start_run(item_id, actor=None):
    """Close the item's active run (if any) and open the next one.

    The new run gets run_number = max + 1 and one ``pending`` result per
    current step. trigger_reason is ``initial`` for the first run of the
    item and ``retest`` afterwards.
    """
    item = _get_item(item_id)
    now = _now()

    previous = _active_runs(item.id)
    for old in previous:
        old.status = "closed"
        old.closed_at = now
    if previous:
        # Closed rows must reach the DB before the new active row is inserted
        db.session.flush()

    last_number = (
        db.session.query(func.max(UatTestRun.run_number))
        .filter(UatTestRun.item_id == item.id)
        .scalar()
    ) or 0

    run = UatTestRun(
        item_id=item.id,
        run_number=last_number + 1,
        status="active",
        trigger_reason="initial" if last_number == 0 else "retest",
        triggered_by_id=(
            actor.id if actor is not None and actor.actor_type is ActorType.INTERNAL else None
        ),
        created_at=now,
    )
    db.session.add(run)
    try:
        db.session.flush()
        for step in _ordered_steps(item.id):
            db.session.add(UatTestStepResult(run_id=run.id, step_id=step.id, status="pending"))
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        logger.warning("Concurrent run start rejected for item %s", item_id,
                       extra={"item_id": item_id})
        raise ConflictError(resource="UatTestRun", field="item_id", value=str(item_id))

    logger.info(
        "Started run #%d for item %s (%s, closed %d previous)",
        run.run_number, item.id, run.trigger_reason, len(previous),
        extra={"item_id": item.id, "run_id": run.id},
    )
    return run


def ensure_active_run(item_id, actor=None):
    """Get-or-start: return the active run, starting the first one if needed."""
    _get_item(item_id)
    run = _find_active_run(item_id)
    if run is not None:
        return run
    return start_run(item_id, actor=actor)


def list_runs(item_id):
    """Run history for an item, newest first."""
    _get_item(item_id)
    return (
        UatTestRun.query
        .filter_by(item_id=item_id)
        .order_by(UatTestRun.run_number.desc())
        .all()
    )


# ═════════════════════════════════════════════════════════════════════════════
# STEP RESULTS
# ═════════════════════════════════════════════════════════════════════════════

def _validate_result(step, status, notes):
    choice(status, STEP_RESULT_STATUSES, "status")
    allowed = STEP_TYPE_ALLOWED_STATUSES.get(step.step_type, STEP_RESULT_STATUSES)
    if status not in allowed:
        raise ValidationError(
            f"Status '{status}' is not valid for a {step.step_type} step",
            details={"status": f"must be one of {sorted(allowed)}"},
        )
    if status == "failed" and not notes:
        raise ValidationError(
            "Notes are required when marking a step as failed",
            details={"notes": "required"},
        )
    if status in COMPLETING_STATUSES and step.notes_required and not notes:
        raise ValidationError(
            step.notes_prompt or "Notes required before completing this step",
            details={"notes": "required"},
        )


def update_step_result(run_id, step_id, status, notes=None, actor=None):
    """Record the outcome of one step in a run.

    Upserts the (run_id, step_id) row only. All checks run before any
    mutation, so a rejected update leaves the stored result untouched.

    Raises:
        NotFoundError: run missing, step missing or not on the run's item.
        ValidationError: run closed, bad status for the step type, or
            missing notes.
    """
    run = db.session.get(UatTestRun, run_id)
    if not run:
        raise NotFoundError(resource="UatTestRun", resource_id=run_id)
    step = db.session.get(UatChecklistItemStep, step_id)
    if not step or step.item_id != run.item_id:
        raise NotFoundError(resource="UatChecklistItemStep", resource_id=step_id)

    notes = optional_text(notes, "notes")
    _validate_result(step, status, notes)
    if run.status != "active":
        raise ValidationError(
            "This test run is closed; start a new run to record results",
            details={"run": "closed"},
        )

    now = _now()
    result = UatTestStepResult.query.filter_by(run_id=run.id, step_id=step.id).first()
    if result is None:
        result = UatTestStepResult(run_id=run.id, step_id=step.id)
        db.session.add(result)

    result.status = status
    result.notes = notes
    result.updated_at = now
    if status == "pending":
        result.tester_type = None
        result.tester_id = None
        result.tester_name = None
        result.tested_at = None
    else:
        result.tester_type = actor.actor_type.value if actor else None
        result.tester_id = actor.id if actor else None
        result.tester_name = actor.name if actor else None
        result.tested_at = now
    db.session.flush()

    if actor is not None:
        _track_review(run, actor, now)

    logger.info(
        "Step %s on run %s -> %s", step.id, run.id, status,
        extra={"run_id": run.id, "item_id": run.item_id,
               "actor_type": actor.actor_type.value if actor else None},
    )
    return result


def _track_review(run, actor, now):
    """Stamp last_reviewed_* on the item; last_resolved_* once every step is done."""
    item = run.item
    item.last_reviewed_at = now
    item.last_reviewed_by_name = actor.name
    item.last_reviewed_by_type = "developer" if actor.is_developer else actor.actor_type.value

    progress = derive_item_status(_ordered_steps(item.id), _ordered_results(run.id))
    if progress["status"] == "passed":
        item.last_resolved_at = now
        item.last_resolved_by_name = actor.name
    db.session.flush()


# ═════════════════════════════════════════════════════════════════════════════
# DERIVED STATUS
# ═════════════════════════════════════════════════════════════════════════════

def derive_item_status(steps, results):
    """Derive item status and counts from steps and the active run's results.

    Steps without a result row count as pending; results for steps not in
    ``steps`` are ignored.

    Returns dict with status (pending | partial | passed | failed), total,
    passed (passed + acknowledged), failed, pending and failures
    ([{step_id, step_title, notes}] in step order).
    """
    by_step = {r.step_id: r for r in results}
    total = len(steps)
    done = failed = 0
    failures = []
    for step in steps:
        result = by_step.get(step.id)
        status = result.status if result else "pending"
        if status in COMPLETING_STATUSES:
            done += 1
        elif status == "failed":
            failed += 1
            failures.append({
                "step_id": step.id,
                "step_title": step.title,
                "notes": result.notes,
            })

    if total == 0:
        status = "pending"
    elif failed:
        status = "failed"
    elif done == total:
        status = "passed"
    elif done:
        status = "partial"
    else:
        status = "pending"

    return {
        "status": status,
        "total": total,
        "passed": done,
        "failed": failed,
        "pending": total - done - failed,
        "failures": failures,
    }


def item_progress(item):
    """Progress of one item against its active run (all pending when not started)."""
    run = _find_active_run(item.id)
    results = _ordered_results(run.id) if run else []
    progress = derive_item_status(_ordered_steps(item.id), results)
    progress["item_id"] = item.id
    progress["run_id"] = run.id if run else None
    progress["run_number"] = run.run_number if run else None
    progress["label"] = f"{progress['passed']}/{progress['total']}"
    return progress


def session_status(session):
    """Per-item progress plus summary counts for a whole session.

    summary keys: total, passed, failed, partial, pending (item counts),
    and total_steps / passed_steps / failed_steps / pending_steps.
    """
    items = (
        UatChecklistItem.query
        .filter_by(session_id=session.id)
        .order_by(UatChecklistItem.order, UatChecklistItem.id)
        .all()
    )
    summary = {
        "total": len(items), "passed": 0, "failed": 0, "partial": 0, "pending": 0,
        "total_steps": 0, "passed_steps": 0, "failed_steps": 0, "pending_steps": 0,
    }
    rows = []
    for item in items:
        progress = item_progress(item)
        summary[progress["status"]] += 1
        summary["total_steps"] += progress["total"]
        summary["passed_steps"] += progress["passed"]
        summary["failed_steps"] += progress["failed"]
        summary["pending_steps"] += progress["pending"]
        rows.append({
            **item.to_dict(),
            "progress": progress,
        })
    return {"session_id": session.id, "summary": summary, "items": rows}
