"""
UAT Hub
Tests: Test Run Controller (test_run_service).

Covers:
    1. Run lifecycle: first run, retest, one active run per item
    2. Step result validation (type compatibility, notes rules, closed runs)
    3. Tester snapshot + item review tracking
    4. Derived item status and session progress summary
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from uathub.core.exceptions import ConflictError, NotFoundError, ValidationError
from uathub.models import db
from uathub.models.uat import UatTestRun, UatTestStepResult
from uathub.services import test_run_service
from uathub.services.actor_resolver import Actor, ActorType


def _guest_actor(guest):
    return Actor(actor_type=ActorType.GUEST, id=guest.id, name=guest.name,
                 session_id=guest.session_id)


def _collab_actor(collab):
    return Actor(actor_type=ActorType.PM_COLLABORATOR, id=collab.id, name=collab.name,
                 session_id=collab.session_id, role=collab.role)


@pytest.fixture()
def three_steps(item, make_step):
    return [
        make_step(item, title="Open the cart"),
        make_step(item, title="Click checkout"),
        make_step(item, title="Pay with card"),
    ]


# ═══════════════════════════════════════════════════════════════════════════
#  1. RUN LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════

class TestRunLifecycle:
    def test_no_active_run_before_start(self, item):
        active = test_run_service.get_active_run(item.id)
        assert active["run"] is None
        assert active["results"] == []

    def test_first_run_materialises_pending_results(self, item, three_steps, internal_actor):
        run = test_run_service.start_run(item.id, actor=internal_actor)
        db.session.commit()

        assert run.run_number == 1
        assert run.status == "active"
        assert run.trigger_reason == "initial"
        assert run.triggered_by_id == internal_actor.id

        active = test_run_service.get_active_run(item.id)
        assert active["run"].id == run.id
        assert [r.step_id for r in active["results"]] == [s.id for s in three_steps]
        assert all(r.status == "pending" for r in active["results"])

    def test_portal_actor_not_recorded_as_trigger(self, item, three_steps, guest):
        run = test_run_service.start_run(item.id, actor=_guest_actor(guest))
        assert run.triggered_by_id is None

    def test_retest_closes_previous_run(self, item, three_steps):
        first = test_run_service.start_run(item.id)
        test_run_service.update_step_result(first.id, three_steps[0].id, "passed")
        db.session.commit()

        second = test_run_service.start_run(item.id)
        db.session.commit()

        assert first.status == "closed"
        assert first.closed_at is not None
        assert second.run_number == 2
        assert second.trigger_reason == "retest"
        assert UatTestRun.query.filter_by(item_id=item.id, status="active").count() == 1

        active = test_run_service.get_active_run(item.id)
        assert active["run"].id == second.id
        assert [r.status for r in active["results"]] == ["pending"] * 3

    def test_closed_run_results_are_preserved(self, item, three_steps):
        first = test_run_service.start_run(item.id)
        test_run_service.update_step_result(first.id, three_steps[0].id, "passed")
        test_run_service.start_run(item.id)
        db.session.commit()

        old = UatTestStepResult.query.filter_by(run_id=first.id, step_id=three_steps[0].id).one()
        assert old.status == "passed"

    def test_ensure_active_run_is_get_or_create(self, item, three_steps):
        run = test_run_service.ensure_active_run(item.id)
        again = test_run_service.ensure_active_run(item.id)
        assert run.id == again.id
        assert UatTestRun.query.filter_by(item_id=item.id).count() == 1

    def test_list_runs_newest_first(self, item, three_steps):
        test_run_service.start_run(item.id)
        test_run_service.start_run(item.id)
        test_run_service.start_run(item.id)
        db.session.commit()
        assert [r.run_number for r in test_run_service.list_runs(item.id)] == [3, 2, 1]

    def test_start_run_unknown_item(self):
        with pytest.raises(NotFoundError):
            test_run_service.start_run(99999)

    def test_second_active_run_rejected_by_index(self, item):
        db.session.add(UatTestRun(item_id=item.id, run_number=1, status="active"))
        db.session.commit()
        db.session.add(UatTestRun(item_id=item.id, run_number=2, status="active"))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

    def test_concurrent_start_becomes_conflict(self, item, three_steps):
        test_run_service.start_run(item.id)
        db.session.commit()

        # Simulate a competing start that did not see the committed active run
        with patch.object(test_run_service, "_active_runs", return_value=[]):
            with pytest.raises(ConflictError):
                test_run_service.start_run(item.id)

        assert UatTestRun.query.filter_by(item_id=item.id, status="active").count() == 1


# ═══════════════════════════════════════════════════════════════════════════
#  2. STEP RESULT VALIDATION
# ═══════════════════════════════════════════════════════════════════════════

class TestStepResultValidation:
    def test_failed_requires_notes(self, item, three_steps):
        run = test_run_service.start_run(item.id)
        with pytest.raises(ValidationError, match="Notes are required"):
            test_run_service.update_step_result(run.id, three_steps[0].id, "failed", notes="   ")

    def test_unknown_status(self, item, three_steps):
        run = test_run_service.start_run(item.id)
        with pytest.raises(ValidationError, match="Invalid status"):
            test_run_service.update_step_result(run.id, three_steps[0].id, "skipped")

    def test_test_step_cannot_be_acknowledged(self, item, three_steps):
        run = test_run_service.start_run(item.id)
        with pytest.raises(ValidationError, match="not valid for a test step"):
            test_run_service.update_step_result(run.id, three_steps[0].id, "acknowledged")

    @pytest.mark.parametrize("step_type", ["delay", "info"])
    def test_non_test_steps_cannot_pass_or_fail(self, item, make_step, step_type):
        step = make_step(item, step_type=step_type)
        run = test_run_service.start_run(item.id)
        with pytest.raises(ValidationError):
            test_run_service.update_step_result(run.id, step.id, "passed")
        with pytest.raises(ValidationError):
            test_run_service.update_step_result(run.id, step.id, "failed", notes="nope")

    def test_delay_step_acknowledged_completes_item(self, item, make_step):
        step = make_step(item, step_type="delay", title="Wait for the cache",
                         estimated_duration_minutes=5)
        run = test_run_service.start_run(item.id)
        result = test_run_service.update_step_result(run.id, step.id, "acknowledged")
        db.session.commit()

        assert result.status == "acknowledged"
        assert test_run_service.item_progress(item)["status"] == "passed"

    def test_notes_required_rejects_and_leaves_row_unchanged(self, item, make_step):
        step = make_step(item, notes_required=True, notes_prompt="Paste the order number")
        run = test_run_service.start_run(item.id)
        db.session.commit()

        with pytest.raises(ValidationError, match="Paste the order number"):
            test_run_service.update_step_result(run.id, step.id, "passed")

        row = UatTestStepResult.query.filter_by(run_id=run.id, step_id=step.id).one()
        assert row.status == "pending"
        assert row.tested_at is None

        ok = test_run_service.update_step_result(run.id, step.id, "passed", notes="ORD-1001")
        assert ok.status == "passed"
        assert ok.notes == "ORD-1001"

    def test_notes_required_default_message(self, item, make_step):
        step = make_step(item, notes_required=True)
        run = test_run_service.start_run(item.id)
        with pytest.raises(ValidationError, match="Notes required before completing"):
            test_run_service.update_step_result(run.id, step.id, "passed")

    def test_delay_step_with_required_notes(self, item, make_step):
        step = make_step(item, step_type="delay", title="Wait for the nightly export",
                         notes_required=True, notes_prompt="Note when the export landed")
        run = test_run_service.start_run(item.id)
        db.session.commit()

        with pytest.raises(ValidationError, match="Note when the export landed"):
            test_run_service.update_step_result(run.id, step.id, "acknowledged")

        row = UatTestStepResult.query.filter_by(run_id=run.id, step_id=step.id).one()
        assert row.status == "pending"
        assert row.notes is None

        ok = test_run_service.update_step_result(run.id, step.id, "acknowledged", notes="02:10 UTC")
        assert ok.status == "acknowledged"

    @pytest.mark.parametrize("status", [["passed"], {"status": "passed"}, 1, None])
    def test_status_must_be_a_string(self, item, three_steps, status):
        run = test_run_service.start_run(item.id)
        with pytest.raises(ValidationError, match="Invalid status"):
            test_run_service.update_step_result(run.id, three_steps[0].id, status)

    def test_notes_must_be_a_string(self, item, three_steps):
        run = test_run_service.start_run(item.id)
        db.session.commit()
        with pytest.raises(ValidationError, match="notes must be a string"):
            test_run_service.update_step_result(run.id, three_steps[0].id, "failed", notes={"x": 1})

        row = UatTestStepResult.query.filter_by(run_id=run.id, step_id=three_steps[0].id).one()
        assert row.status == "pending"
        assert row.notes is None

    def test_closed_run_rejects_updates(self, item, three_steps):
        first = test_run_service.start_run(item.id)
        test_run_service.start_run(item.id)
        db.session.commit()
        with pytest.raises(ValidationError, match="closed"):
            test_run_service.update_step_result(first.id, three_steps[0].id, "passed")

    def test_step_from_other_item(self, uat_session, item, three_steps, make_item, make_step):
        other = make_item(uat_session, title="Other item", order=1)
        foreign = make_step(other)
        run = test_run_service.start_run(item.id)
        with pytest.raises(NotFoundError):
            test_run_service.update_step_result(run.id, foreign.id, "passed")

    def test_unknown_run(self, three_steps):
        with pytest.raises(NotFoundError):
            test_run_service.update_step_result(424242, three_steps[0].id, "passed")


# ═══════════════════════════════════════════════════════════════════════════
#  3. TESTER SNAPSHOT + REVIEW TRACKING
# ═══════════════════════════════════════════════════════════════════════════

class TestReviewTracking:
    def test_tester_snapshot(self, item, three_steps, guest):
        run = test_run_service.start_run(item.id)
        result = test_run_service.update_step_result(
            run.id, three_steps[0].id, "passed", actor=_guest_actor(guest),
        )
        assert result.tester_type == "guest"
        assert result.tester_id == guest.id
        assert result.tester_name == "Gina Guest"
        assert result.tested_at is not None

    def test_reset_to_pending_clears_snapshot(self, item, three_steps, guest):
        run = test_run_service.start_run(item.id)
        actor = _guest_actor(guest)
        test_run_service.update_step_result(run.id, three_steps[0].id, "passed", actor=actor)
        result = test_run_service.update_step_result(run.id, three_steps[0].id, "pending", actor=actor)
        assert result.tester_name is None
        assert result.tested_at is None

    def test_update_touches_only_its_own_row(self, item, three_steps, guest, collaborator):
        run = test_run_service.start_run(item.id)
        pm = _collab_actor(collaborator)
        test_run_service.update_step_result(run.id, three_steps[0].id, "passed", notes="ok", actor=pm)
        test_run_service.update_step_result(
            run.id, three_steps[2].id, "failed", notes="Card declined", actor=pm,
        )
        db.session.commit()

        def snapshot(step):
            row = UatTestStepResult.query.filter_by(run_id=run.id, step_id=step.id).one()
            return (row.status, row.notes, row.tester_type, row.tester_id, row.tester_name)

        before = [snapshot(three_steps[0]), snapshot(three_steps[2])]
        test_run_service.update_step_result(
            run.id, three_steps[1].id, "passed", actor=_guest_actor(guest),
        )
        db.session.commit()

        assert [snapshot(three_steps[0]), snapshot(three_steps[2])] == before
        assert before[0] == ("passed", "ok", "pm_collaborator", collaborator.id, collaborator.name)
        assert snapshot(three_steps[1])[2:] == ("guest", guest.id, "Gina Guest")

    def test_developer_review_recorded(self, item, three_steps, developer):
        run = test_run_service.start_run(item.id)
        test_run_service.update_step_result(
            run.id, three_steps[0].id, "passed", actor=_collab_actor(developer),
        )
        assert item.last_reviewed_by_type == "developer"
        assert item.last_reviewed_by_name == developer.name
        assert item.last_resolved_at is None

    def test_resolved_once_all_steps_done(self, item, three_steps, collaborator):
        actor = _collab_actor(collaborator)
        run = test_run_service.start_run(item.id)
        for step in three_steps:
            test_run_service.update_step_result(run.id, step.id, "passed", actor=actor)
        db.session.commit()

        assert item.last_reviewed_by_type == "pm_collaborator"
        assert item.last_resolved_by_name == collaborator.name
        assert item.last_resolved_at is not None


# ═══════════════════════════════════════════════════════════════════════════
#  4. DERIVED STATUS
# ═══════════════════════════════════════════════════════════════════════════

class TestDerivedStatus:
    def test_no_steps_is_pending(self, item):
        progress = test_run_service.item_progress(item)
        assert progress["status"] == "pending"
        assert progress["total"] == 0
        assert progress["label"] == "0/0"

    def test_not_started_is_pending(self, item, three_steps):
        progress = test_run_service.item_progress(item)
        assert progress["status"] == "pending"
        assert progress["pending"] == 3
        assert progress["run_id"] is None

    def test_partial(self, item, three_steps):
        run = test_run_service.start_run(item.id)
        test_run_service.update_step_result(run.id, three_steps[0].id, "passed")
        progress = test_run_service.item_progress(item)
        assert progress["status"] == "partial"
        assert progress["label"] == "1/3"

    def test_failure_wins_and_lists_notes(self, item, three_steps):
        run = test_run_service.start_run(item.id)
        test_run_service.update_step_result(run.id, three_steps[0].id, "passed")
        test_run_service.update_step_result(run.id, three_steps[1].id, "passed")
        test_run_service.update_step_result(run.id, three_steps[2].id, "failed",
                                            notes="button missing")
        progress = test_run_service.item_progress(item)

        assert progress["status"] == "failed"
        assert progress["passed"] == 2
        assert progress["failed"] == 1
        assert progress["label"] == "2/3"
        assert progress["failures"] == [{
            "step_id": three_steps[2].id,
            "step_title": "Pay with card",
            "notes": "button missing",
        }]

    def test_new_run_resets_progress(self, item, three_steps):
        run = test_run_service.start_run(item.id)
        test_run_service.update_step_result(run.id, three_steps[2].id, "failed", notes="broken")
        test_run_service.start_run(item.id)
        progress = test_run_service.item_progress(item)
        assert progress["status"] == "pending"
        assert progress["run_number"] == 2

    def test_derive_ignores_results_for_other_steps(self):
        steps = [SimpleNamespace(id=1, title="Open"), SimpleNamespace(id=2, title="Pay")]
        results = [
            SimpleNamespace(step_id=1, status="passed", notes=None),
            SimpleNamespace(step_id=99, status="failed", notes="stale"),
        ]
        derived = test_run_service.derive_item_status(steps, results)
        assert derived["status"] == "partial"
        assert (derived["passed"], derived["failed"], derived["pending"]) == (1, 0, 1)
        assert derived["failures"] == []

    def test_mixed_step_types(self, item, make_step):
        info = make_step(item, step_type="info", title="Read the release notes")
        check = make_step(item, title="Login works")
        run = test_run_service.start_run(item.id)
        test_run_service.update_step_result(run.id, info.id, "acknowledged")
        test_run_service.update_step_result(run.id, check.id, "passed")
        progress = test_run_service.item_progress(item)
        assert progress["status"] == "passed"
        assert progress["passed"] == 2

    def test_session_summary(self, uat_session, item, three_steps, make_item, make_step):
        second = make_item(uat_session, title="Search works", order=1)
        search_step = make_step(second)
        make_item(uat_session, title="Empty item", order=2)

        run = test_run_service.start_run(item.id)
        for step in three_steps:
            test_run_service.update_step_result(run.id, step.id, "passed")
        run2 = test_run_service.start_run(second.id)
        test_run_service.update_step_result(run2.id, search_step.id, "failed", notes="no results")
        db.session.commit()

        status = test_run_service.session_status(uat_session)
        summary = status["summary"]
        assert summary["total"] == 3
        assert summary["passed"] == 1
        assert summary["failed"] == 1
        assert summary["pending"] == 1
        assert summary["total_steps"] == 4
        assert summary["passed_steps"] == 3
        assert summary["failed_steps"] == 1
        assert [row["title"] for row in status["items"]] == [
            "Checkout works", "Search works", "Empty item",
        ]
        assert status["items"][1]["progress"]["failures"][0]["notes"] == "no results"
