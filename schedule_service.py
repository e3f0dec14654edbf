from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from models import (
    ClassRegistration,
    Classroom,
    ClassTeachingRequest,
    Schedule,
    ScheduleDraft,
    ScheduleDraftEntry,
)
from slot_keys import normalize_period, period_rank, slot_key

STATUS_DRAFT = "draft"
STATUS_SUBMITTED = "submitted"
STATUS_PUBLISHED = "published"
SCHEDULE_STATUSES = (STATUS_DRAFT, STATUS_SUBMITTED, STATUS_PUBLISHED)

STATUS_TRANSITIONS = {
    STATUS_DRAFT: {STATUS_SUBMITTED, STATUS_PUBLISHED},
    STATUS_SUBMITTED: {STATUS_DRAFT, STATUS_PUBLISHED},
    STATUS_PUBLISHED: set(),
}

logger = logging.getLogger(__name__)


class ScheduleStateError(ValueError):
    status_code = 409


class ScheduleManager:
    """The live, session-wide schedule: one class per classroom/period slot."""

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    def schedule_status(self, session_id: str) -> Optional[str]:
        with self._session_factory() as session:
            row = (
                session.query(Schedule.status)
                .filter(Schedule.session_id == session_id)
                .first()
            )
        return row[0] if row else None

    def get_schedule(self, session_id: str) -> list[dict[str, Any]]:
        with self._session_factory() as session:
            rows = (
                session.query(Schedule, ClassTeachingRequest, Classroom)
                .outerjoin(ClassTeachingRequest, Schedule.class_teaching_request_id == ClassTeachingRequest.id)
                .outerjoin(Classroom, Schedule.classroom_id == Classroom.id)
                .filter(Schedule.session_id == session_id)
                .all()
            )
        entries = [self._schedule_to_dict(*row) for row in rows]
        entries.sort(key=lambda entry: (period_rank(entry["period"]), entry["classroomName"] or ""))
        return entries

    def published_schedules(self, session_id: str) -> dict[str, dict[str, Any]]:
        return {
            entry["id"]: entry
            for entry in self.get_schedule(session_id)
            if entry["status"] == STATUS_PUBLISHED
        }

    def place_class(
        self,
        session_id: str,
        class_request_id: str,
        classroom_id: str,
        period: str,
    ) -> dict[str, Any]:
        normalized = normalize_period(period)
        if not class_request_id or not classroom_id or not normalized:
            raise ValueError("Class, classroom, and a valid period are required")
        status = self.schedule_status(session_id) or STATUS_DRAFT
        if status != STATUS_DRAFT:
            raise ScheduleStateError(f"Schedule is {status}; pull it back to draft before editing")
        with self._session_factory() as session:
            class_request = session.get(ClassTeachingRequest, class_request_id)
            if not class_request or class_request.session_id != session_id:
                raise LookupError("Class not found for this session")
            if class_request.status != "approved":
                raise ValueError("Only approved classes can be scheduled")
            classroom = session.get(Classroom, classroom_id)
            if not classroom:
                raise LookupError("Classroom not found")
            session.query(Schedule).filter(
                Schedule.session_id == session_id,
                Schedule.classroom_id == classroom_id,
                Schedule.period == normalized,
            ).delete(synchronize_session=False)
            now = datetime.utcnow()
            record = Schedule(
                session_id=session_id,
                class_teaching_request_id=class_request_id,
                classroom_id=classroom_id,
                period=normalized,
                status=STATUS_DRAFT,
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            session.commit()
            result = self._schedule_to_dict(record, class_request, classroom)
        logger.info("Placed class %s in %s", class_request_id, slot_key(classroom_id, normalized))
        return result

    def remove_class(self, session_id: str, classroom_id: str, period: str) -> bool:
        normalized = normalize_period(period)
        if not normalized:
            raise ValueError(f"invalid period '{period}'")
        status = self.schedule_status(session_id)
        if status and status != STATUS_DRAFT:
            raise ScheduleStateError(f"Schedule is {status}; pull it back to draft before editing")
        with self._session_factory() as session:
            deleted = (
                session.query(Schedule)
                .filter(
                    Schedule.session_id == session_id,
                    Schedule.classroom_id == classroom_id,
                    Schedule.period == normalized,
                )
                .delete(synchronize_session=False)
            )
            session.commit()
        return deleted > 0

    def apply_draft(self, session_id: str, draft_id: str) -> int:
        """Replace the session's live rows with a draft's entries, at draft status."""
        status = self.schedule_status(session_id)
        if status == STATUS_PUBLISHED:
            raise ScheduleStateError("Schedule is already published")
        with self._session_factory() as session:
            draft = session.get(ScheduleDraft, draft_id)
            if not draft or draft.session_id != session_id:
                raise LookupError("Draft not found")
            registered = (
                session.query(ClassRegistration.id)
                .join(Schedule, ClassRegistration.schedule_id == Schedule.id)
                .filter(Schedule.session_id == session_id)
                .first()
            )
            if registered:
                raise ScheduleStateError("Registrations already reference this schedule")
            entries = (
                session.query(ScheduleDraftEntry)
                .join(
                    ClassTeachingRequest,
                    ScheduleDraftEntry.class_teaching_request_id == ClassTeachingRequest.id,
                )
                .filter(
                    ScheduleDraftEntry.draft_id == draft_id,
                    ClassTeachingRequest.status == "approved",
                )
                .all()
            )
            session.query(Schedule).filter(Schedule.session_id == session_id).delete(
                synchronize_session=False
            )
            now = datetime.utcnow()
            session.add_all(
                [
                    Schedule(
                        session_id=session_id,
                        class_teaching_request_id=entry.class_teaching_request_id,
                        classroom_id=entry.classroom_id,
                        period=entry.period,
                        status=STATUS_DRAFT,
                        created_at=now,
                        updated_at=now,
                    )
                    for entry in entries
                ]
            )
            session.commit()
        logger.info("Applied draft %s to session %s (%s classes)", draft_id, session_id, len(entries))
        return len(entries)

    def transition(self, session_id: str, target: str) -> dict[str, Any]:
        if target not in SCHEDULE_STATUSES:
            raise ValueError(f"unknown schedule status '{target}'")
        current = self.schedule_status(session_id)
        if current is None:
            raise ScheduleStateError("Schedule has no classes")
        if target not in STATUS_TRANSITIONS[current]:
            raise ScheduleStateError(f"Cannot move schedule from {current} to {target}")
        with self._session_factory() as session:
            updated = (
                session.query(Schedule)
                .filter(Schedule.session_id == session_id)
                .update(
                    {Schedule.status: target, Schedule.updated_at: datetime.utcnow()},
                    synchronize_session=False,
                )
            )
            session.commit()
        logger.info("Schedule for session %s moved %s -> %s", session_id, current, target)
        return {"sessionId": session_id, "previousStatus": current, "status": target, "count": updated}

    @staticmethod
    def _schedule_to_dict(
        record: Schedule,
        class_request: Optional[ClassTeachingRequest],
        classroom: Optional[Classroom],
    ) -> dict[str, Any]:
        return {
            "id": record.id,
            "sessionId": record.session_id,
            "classTeachingRequestId": record.class_teaching_request_id,
            "className": class_request.class_name if class_request else None,
            "teacherId": class_request.guardian_id if class_request else None,
            "maxStudents": class_request.max_students if class_request else None,
            "helpersNeeded": class_request.helpers_needed if class_request else None,
            "classroomId": record.classroom_id,
            "classroomName": classroom.name if classroom else None,
            "period": record.period,
            "slotKey": slot_key(record.classroom_id, record.period),
            "status": record.status,
        }
