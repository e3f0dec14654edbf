from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import (
    Child,
    ClassRegistration,
    ClassTeachingRequest,
    Guardian,
    Schedule,
    VolunteerAssignment,
    VolunteerJob,
)
from registration_batch import (
    ACTIVE_REGISTRATION_STATUSES,
    CANCELLED,
    CONFLICT_CHILD,
    CONFLICT_CLASS_FULL,
    CONFLICT_GUARDIAN,
    CONFLICT_VOLUNTEER_FULL,
    PendingRegistration,
    PendingVolunteerAssignment,
    item_to_dict,
)

logger = logging.getLogger(__name__)


def new_registration(
    session_id: str,
    family_id: str,
    registered_by: str,
    item: PendingRegistration,
    status: str = "registered",
) -> ClassRegistration:
    return ClassRegistration(
        session_id=session_id,
        schedule_id=item.schedule_id,
        child_id=item.child_id,
        family_id=family_id,
        registered_by=registered_by,
        status=status,
        registered_at=datetime.utcnow(),
    )


def new_assignment(
    session_id: str,
    family_id: str,
    item: PendingVolunteerAssignment,
    status: str = "assigned",
) -> VolunteerAssignment:
    return VolunteerAssignment(
        session_id=session_id,
        guardian_id=item.guardian_id,
        family_id=family_id,
        period=item.period,
        volunteer_type=item.volunteer_type,
        schedule_id=item.schedule_id,
        volunteer_job_id=item.volunteer_job_id,
        status=status,
        assigned_at=datetime.utcnow(),
    )


class ItemRejected(Exception):
    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


@dataclass
class ItemResult:
    kind: str
    item: dict[str, Any]
    status: str
    record_id: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload = {"kind": self.kind, "status": self.status, **self.item}
        if self.record_id:
            payload["id"] = self.record_id
        if self.reason:
            payload["reason"] = self.reason
            payload["message"] = self.message
        return payload


@dataclass
class CommitResult:
    results: list[ItemResult] = field(default_factory=list)

    @property
    def registered_count(self) -> int:
        return sum(1 for r in self.results if r.kind == "registration" and r.status == "committed")

    @property
    def volunteer_count(self) -> int:
        return sum(1 for r in self.results if r.kind == "volunteer" and r.status == "committed")

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if r.status == "failed")

    @property
    def committed_any(self) -> bool:
        return self.registered_count + self.volunteer_count > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.failed_count == 0,
            "registeredCount": self.registered_count,
            "volunteerCount": self.volunteer_count,
            "failedCount": self.failed_count,
            "results": [result.to_dict() for result in self.results],
        }


class RegistrationCommitter:
    """Writes a validated batch one item per transaction.

    Every transaction locks the row it counts against and re-runs the
    conflict check before inserting; a rejected item does not stop the rest.
    """

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    def commit_batch(
        self,
        session_id: str,
        family_id: str,
        registered_by: str,
        registrations: list[PendingRegistration],
        assignments: list[PendingVolunteerAssignment],
    ) -> CommitResult:
        outcome = CommitResult()
        for item in registrations:
            outcome.results.append(
                self._attempt(
                    "registration",
                    item,
                    lambda session, item=item: self._insert_registration(
                        session, session_id, family_id, registered_by, item
                    ),
                )
            )
        for item in assignments:
            outcome.results.append(
                self._attempt(
                    "volunteer",
                    item,
                    lambda session, item=item: self._insert_assignment(session, session_id, family_id, item),
                )
            )
        logger.info(
            "Batch for family %s in session %s: %s registered, %s volunteering, %s failed",
            family_id,
            session_id,
            outcome.registered_count,
            outcome.volunteer_count,
            outcome.failed_count,
        )
        return outcome

    def _attempt(
        self,
        kind: str,
        item: PendingRegistration | PendingVolunteerAssignment,
        insert: Callable,
    ) -> ItemResult:
        described = item_to_dict(item)
        try:
            with self._session_factory() as session:
                record = insert(session)
                session.commit()
                record_id = record.id
        except ItemRejected as exc:
            logger.info("Rejected %s %s: %s", kind, described, exc.message)
            return ItemResult(kind, described, "failed", reason=exc.reason, message=exc.message)
        except IntegrityError:
            if kind != "volunteer":
                logger.exception("Failed to save %s %s", kind, described)
                return ItemResult(kind, described, "failed", reason="error", message="Unable to save this item")
            # Partial unique index on guardian/session/period.
            logger.warning("Constraint rejected %s %s", kind, described)
            return ItemResult(
                kind,
                described,
                "failed",
                reason=CONFLICT_GUARDIAN,
                message=f"Guardian is already assigned as a volunteer for the {item.period} period",
            )
        except SQLAlchemyError:
            logger.exception("Failed to save %s %s", kind, described)
            return ItemResult(kind, described, "failed", reason="error", message="Unable to save this item")
        return ItemResult(kind, described, "committed", record_id=record_id)

    @staticmethod
    def _locked_schedule(session, session_id: str, schedule_id: str) -> tuple[Schedule, ClassTeachingRequest]:
        schedule = (
            session.query(Schedule)
            .filter(
                Schedule.id == schedule_id,
                Schedule.session_id == session_id,
                Schedule.status == "published",
            )
            .one_or_none()
        )
        if not schedule:
            raise ItemRejected("invalid_schedule", "Class is no longer on the published schedule")
        class_request = (
            session.query(ClassTeachingRequest)
            .filter(ClassTeachingRequest.id == schedule.class_teaching_request_id)
            .with_for_update()
            .one()
        )
        return schedule, class_request

    def _insert_registration(
        self,
        session,
        session_id: str,
        family_id: str,
        registered_by: str,
        item: PendingRegistration,
    ) -> ClassRegistration:
        child = (
            session.query(Child)
            .filter(Child.id == item.child_id)
            .with_for_update()
            .one_or_none()
        )
        if not child or child.family_id != family_id:
            raise ItemRejected("invalid_child", "Child does not belong to this family")
        schedule, class_request = self._locked_schedule(session, session_id, item.schedule_id)
        taken = (
            session.query(ClassRegistration.id)
            .join(Schedule, ClassRegistration.schedule_id == Schedule.id)
            .filter(
                ClassRegistration.child_id == item.child_id,
                ClassRegistration.session_id == session_id,
                ClassRegistration.status.in_(ACTIVE_REGISTRATION_STATUSES),
                Schedule.period == schedule.period,
            )
            .first()
        )
        if taken:
            raise ItemRejected(
                CONFLICT_CHILD,
                f"Child is already registered for a class in the {schedule.period} period",
            )
        seats = (
            session.query(func.count(ClassRegistration.id))
            .filter(
                ClassRegistration.schedule_id == schedule.id,
                ClassRegistration.status.in_(ACTIVE_REGISTRATION_STATUSES),
            )
            .scalar()
        )
        if seats >= class_request.max_students:
            raise ItemRejected(
                CONFLICT_CLASS_FULL,
                f'Class "{class_request.class_name}" is full ({seats}/{class_request.max_students})',
            )
        record = new_registration(session_id, family_id, registered_by, item)
        session.add(record)
        return record

    def _insert_assignment(
        self,
        session,
        session_id: str,
        family_id: str,
        item: PendingVolunteerAssignment,
    ) -> VolunteerAssignment:
        guardian = (
            session.query(Guardian)
            .filter(Guardian.id == item.guardian_id)
            .with_for_update()
            .one_or_none()
        )
        if not guardian or guardian.family_id != family_id:
            raise ItemRejected("invalid_guardian", "Guardian does not belong to this family")
        busy = (
            session.query(VolunteerAssignment.id)
            .filter(
                VolunteerAssignment.guardian_id == item.guardian_id,
                VolunteerAssignment.session_id == session_id,
                VolunteerAssignment.period == item.period,
                VolunteerAssignment.status != CANCELLED,
            )
            .first()
        )
        if busy:
            raise ItemRejected(
                CONFLICT_GUARDIAN,
                f"Guardian is already assigned as a volunteer for the {item.period} period",
            )
        if item.volunteer_job_id:
            job = (
                session.query(VolunteerJob)
                .filter(
                    VolunteerJob.id == item.volunteer_job_id,
                    VolunteerJob.session_id == session_id,
                    VolunteerJob.is_active.is_(True),
                )
                .with_for_update()
                .one_or_none()
            )
            if not job:
                raise ItemRejected("invalid_job", "Volunteer job is no longer available")
            filled = (
                session.query(func.count(VolunteerAssignment.id))
                .filter(
                    VolunteerAssignment.volunteer_job_id == job.id,
                    VolunteerAssignment.status != CANCELLED,
                )
                .scalar()
            )
            if filled >= job.quantity_available:
                raise ItemRejected(
                    CONFLICT_VOLUNTEER_FULL,
                    f'No spots available for "{job.title}" ({filled}/{job.quantity_available})',
                )
        else:
            _, class_request = self._locked_schedule(session, session_id, item.schedule_id)
            if item.volunteer_type == "helper":
                helpers = (
                    session.query(func.count(VolunteerAssignment.id))
                    .filter(
                        VolunteerAssignment.schedule_id == item.schedule_id,
                        VolunteerAssignment.volunteer_type == "helper",
                        VolunteerAssignment.status != CANCELLED,
                    )
                    .scalar()
                )
                if helpers >= class_request.helpers_needed:
                    raise ItemRejected(
                        CONFLICT_VOLUNTEER_FULL,
                        f'No helper spots available for "{class_request.class_name}" '
                        f"({helpers}/{class_request.helpers_needed})",
                    )
        record = new_assignment(session_id, family_id, item)
        session.add(record)
        return record
