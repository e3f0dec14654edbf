"""Tests for the live schedule and its status transitions."""

import pytest

from conftest import seed_coop
from draft_service import DraftManager
from models import ClassRegistration
from schedule_service import ScheduleManager, ScheduleStateError


@pytest.fixture
def schedule(session_factory):
    return ScheduleManager(session_factory)


@pytest.fixture
def draft_coop(session_factory):
    return seed_coop(session_factory, published=False)


class TestTransitions:
    """draft -> submitted -> published, with pull back before publishing."""

    def test_submit_pull_back_and_publish(self, draft_coop, schedule):
        sid = draft_coop.session_id
        assert schedule.transition(sid, "submitted")["previousStatus"] == "draft"
        assert schedule.transition(sid, "draft")["status"] == "draft"
        result = schedule.transition(sid, "published")
        assert result["count"] == 4
        assert schedule.schedule_status(sid) == "published"
        assert set(schedule.published_schedules(sid)) == {
            draft_coop.art_slot,
            draft_coop.lunch_slot,
            draft_coop.science_slot,
            draft_coop.music_slot,
        }

    def test_published_is_terminal(self, coop, schedule):
        with pytest.raises(ScheduleStateError):
            schedule.transition(coop.session_id, "draft")

    def test_unknown_status(self, coop, schedule):
        with pytest.raises(ValueError):
            schedule.transition(coop.session_id, "archived")

    def test_empty_schedule_cannot_move(self, coop, schedule):
        with pytest.raises(ScheduleStateError):
            schedule.transition("no-such-session", "submitted")


class TestPlaceClass:
    def test_replaces_the_slot_occupant(self, draft_coop, schedule):
        placed = schedule.place_class(draft_coop.session_id, draft_coop.music, draft_coop.room1, "1st")
        assert placed["slotKey"] == f"{draft_coop.room1}|first"
        first_period = [e for e in schedule.get_schedule(draft_coop.session_id) if e["slotKey"] == placed["slotKey"]]
        assert [e["className"] for e in first_period] == ["Music"]

    def test_only_approved_classes(self, draft_coop, schedule):
        with pytest.raises(ValueError):
            schedule.place_class(draft_coop.session_id, draft_coop.chess, draft_coop.room2, "third")

    def test_published_schedule_is_locked(self, coop, schedule):
        with pytest.raises(ScheduleStateError):
            schedule.place_class(coop.session_id, coop.music, coop.room2, "third")

    def test_remove_class(self, draft_coop, schedule):
        assert schedule.remove_class(draft_coop.session_id, draft_coop.room2, "first") is True
        assert schedule.remove_class(draft_coop.session_id, draft_coop.room2, "first") is False


class TestApplyDraft:
    def test_copies_approved_entries_at_draft_status(self, draft_coop, schedule, session_factory):
        drafts = DraftManager(session_factory)
        draft = drafts.create_draft(draft_coop.session_id, draft_coop.admin, "Plan")
        drafts.save_draft_entries(
            draft["id"],
            [
                {"classTeachingRequestId": draft_coop.art, "classroomId": draft_coop.room2, "period": "third"},
                {"classTeachingRequestId": draft_coop.chess, "classroomId": draft_coop.room1, "period": "third"},
            ],
        )
        assert schedule.apply_draft(draft_coop.session_id, draft["id"]) == 1
        entries = schedule.get_schedule(draft_coop.session_id)
        assert [(e["className"], e["period"], e["status"]) for e in entries] == [("Art", "third", "draft")]

    def test_refused_once_published(self, coop, schedule, session_factory):
        draft = DraftManager(session_factory).create_draft(coop.session_id, coop.admin, "Late")
        with pytest.raises(ScheduleStateError):
            schedule.apply_draft(coop.session_id, draft["id"])

    def test_refused_when_registrations_exist(self, draft_coop, schedule, session_factory):
        with session_factory() as session:
            session.add(
                ClassRegistration(
                    session_id=draft_coop.session_id,
                    schedule_id=draft_coop.art_slot,
                    child_id=draft_coop.mia,
                    family_id=draft_coop.rivera,
                    registered_by=draft_coop.ana,
                )
            )
            session.commit()
        draft = DraftManager(session_factory).create_draft(draft_coop.session_id, draft_coop.admin, "Plan")
        with pytest.raises(ScheduleStateError):
            schedule.apply_draft(draft_coop.session_id, draft["id"])
