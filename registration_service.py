from __future__ import annotations

import logging
from collections import Counter
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import func

from models import (
    Child,
    ClassRegistration,
    ClassTeachingRequest,
    CoopSession,
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
    BatchRequest,
    Conflict,
    ValidationResult,
    compute_volunteer_hours,
    parse_batch_payload,
)
from registration_commit import RegistrationCommitter
from slot_keys import NON_PERIOD, PERIODS

WINDOW_DATE_FORMAT = "%m/%d/%Y"

logger = logging.getLogger(__name__)


class RegistrationClosedError(PermissionError):
    pass


def check_registration_window(coop_session: CoopSession, is_teacher_family: bool, now: datetime) -> None:
    start = coop_session.registration_start
    end = coop_session.registration_end
    if now > end:
        raise RegistrationClosedError(f"Registration closed on {end.strftime(WINDOW_DATE_FORMAT)}")
    if now >= start:
        return
    early = coop_session.teacher_registration_start
    if is_teacher_family and early:
        if now >= early:
            return
        raise RegistrationClosedError(
            f"Teacher early registration opens on {early.strftime(WINDOW_DATE_FORMAT)}"
        )
    raise RegistrationClosedError(f"Registration opens on {start.strftime(WINDOW_DATE_FORMAT)}")


class RegistrationValidator:
    """Checks a family batch against committed data and computes its hours."""

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    def resolve_family(self, guardian_id: str) -> str:
        with self._session_factory() as session:
            guardian = session.get(Guardian, guardian_id)
        if not guardian:
            raise LookupError("Family not found")
        return guardian.family_id

    def teaching_periods(self, session_id: str, family_id: str) -> list[str]:
        """Periods any guardian of the family teaches an approved class in."""
        with self._session_factory() as session:
            rows = (
                session.query(Schedule.period)
                .join(ClassTeachingRequest, Schedule.class_teaching_request_id == ClassTeachingRequest.id)
                .join(Guardian, ClassTeachingRequest.guardian_id == Guardian.id)
                .filter(
                    Schedule.session_id == session_id,
                    ClassTeachingRequest.status == "approved",
                    Guardian.family_id == family_id,
                )
                .distinct()
                .all()
            )
        return [period for (period,) in rows]

    def resolve_batch(self, batch: BatchRequest, family_id: str) -> BatchRequest:
        """Fail fast on items that can never be committed; fill in periods.

        Registration and class-volunteer periods come from the published
        schedule row, whatever the client sent.
        """
        session_id = batch.session_id
        with self._session_factory() as session:
            schedules = {
                schedule.id: (schedule, class_request)
                for schedule, class_request in (
                    session.query(Schedule, ClassTeachingRequest)
                    .join(ClassTeachingRequest, Schedule.class_teaching_request_id == ClassTeachingRequest.id)
                    .filter(Schedule.session_id == session_id, Schedule.status == "published")
                    .all()
                )
            }
            children = {
                child_id
                for (child_id,) in session.query(Child.id).filter(Child.family_id == family_id).all()
            }
            guardians = {
                guardian_id
                for (guardian_id,) in session.query(Guardian.id).filter(Guardian.family_id == family_id).all()
            }
            jobs = {
                job.id: job
                for job in session.query(VolunteerJob)
                .filter(VolunteerJob.session_id == session_id, VolunteerJob.is_active.is_(True))
                .all()
            }

        registrations = []
        for item in batch.registrations:
            if item.schedule_id not in schedules:
                raise ValueError("Invalid schedule selected")
            if item.child_id not in children:
                raise ValueError("Child does not belong to this family")
            schedule, class_request = schedules[item.schedule_id]
            registrations.append(
                replace(item, period=schedule.period, class_name=item.class_name or class_request.class_name)
            )

        assignments = []
        for item in batch.volunteer_assignments:
            if item.guardian_id not in guardians:
                raise ValueError("Guardian does not belong to this family")
            if item.volunteer_job_id:
                job = jobs.get(item.volunteer_job_id)
                if not job:
                    raise ValueError("Invalid volunteer job selected")
                if job.job_type == NON_PERIOD:
                    period = NON_PERIOD
                elif item.period in PERIODS:
                    period = item.period
                else:
                    raise ValueError(f'Volunteer job "{job.title}" needs a period')
                assignments.append(replace(item, period=period, job_title=item.job_title or job.title))
            else:
                if item.schedule_id not in schedules:
                    raise ValueError("Invalid schedule selected")
                schedule, class_request = schedules[item.schedule_id]
                assignments.append(
                    replace(item, period=schedule.period, class_name=item.class_name or class_request.class_name)
                )
        return replace(batch, registrations=registrations, volunteer_assignments=assignments)

    def validate(self, batch: BatchRequest, family_id: str) -> ValidationResult:
        """Collect every conflict and compute hours; batch must be resolved."""
        conflicts = self._collect_conflicts(batch)
        hours = compute_volunteer_hours(
            (item.period for item in batch.registrations),
            (item.period for item in batch.volunteer_assignments),
            self.teaching_periods(batch.session_id, family_id),
        )
        return ValidationResult(hours=hours, conflicts=conflicts)

    def _collect_conflicts(self, batch: BatchRequest) -> list[Conflict]:
        session_id = batch.session_id
        conflicts: list[Conflict] = []
        seats_claimed: Counter = Counter()
        child_periods: set[tuple[str, str]] = set()
        guardian_periods: set[tuple[str, str]] = set()
        helpers_claimed: Counter = Counter()
        jobs_claimed: Counter = Counter()

        with self._session_factory() as session:
            for item in batch.registrations:
                class_request = (
                    session.query(ClassTeachingRequest)
                    .join(Schedule, Schedule.class_teaching_request_id == ClassTeachingRequest.id)
                    .filter(Schedule.id == item.schedule_id)
                    .one()
                )
                taken = (
                    session.query(func.count(ClassRegistration.id))
                    .filter(
                        ClassRegistration.schedule_id == item.schedule_id,
                        ClassRegistration.status.in_(ACTIVE_REGISTRATION_STATUSES),
                    )
                    .scalar()
                ) + seats_claimed[item.schedule_id]
                if taken >= class_request.max_students:
                    conflicts.append(
                        Conflict(
                            type=CONFLICT_CLASS_FULL,
                            period=item.period,
                            message=f'Class "{class_request.class_name}" is full ({taken}/{class_request.max_students})',
                            schedule_id=item.schedule_id,
                            class_name=class_request.class_name,
                        )
                    )
                seats_claimed[item.schedule_id] += 1

                already = (
                    session.query(ClassRegistration.id)
                    .join(Schedule, ClassRegistration.schedule_id == Schedule.id)
                    .filter(
                        ClassRegistration.child_id == item.child_id,
                        ClassRegistration.session_id == session_id,
                        ClassRegistration.status.in_(ACTIVE_REGISTRATION_STATUSES),
                        Schedule.period == item.period,
                    )
                    .first()
                )
                if already or (item.child_id, item.period) in child_periods:
                    conflicts.append(
                        Conflict(
                            type=CONFLICT_CHILD,
                            period=item.period,
                            message=f"Child is already registered for a class in the {item.period} period",
                            schedule_id=item.schedule_id,
                            class_name=item.class_name,
                        )
                    )
                child_periods.add((item.child_id, item.period))

            for item in batch.volunteer_assignments:
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
                if busy or (item.guardian_id, item.period) in guardian_periods:
                    conflicts.append(
                        Conflict(
                            type=CONFLICT_GUARDIAN,
                            period=item.period,
                            message=f"Guardian is already assigned as a volunteer for the {item.period} period",
                            schedule_id=item.schedule_id,
                            volunteer_job_id=item.volunteer_job_id,
                            class_name=item.class_name,
                            job_title=item.job_title,
                        )
                    )
                guardian_periods.add((item.guardian_id, item.period))

                if item.volunteer_type == "helper":
                    class_request = (
                        session.query(ClassTeachingRequest)
                        .join(Schedule, Schedule.class_teaching_request_id == ClassTeachingRequest.id)
                        .filter(Schedule.id == item.schedule_id)
                        .one()
                    )
                    helpers = (
                        session.query(func.count(VolunteerAssignment.id))
                        .filter(
                            VolunteerAssignment.schedule_id == item.schedule_id,
                            VolunteerAssignment.volunteer_type == "helper",
                            VolunteerAssignment.status != CANCELLED,
                        )
                        .scalar()
                    ) + helpers_claimed[item.schedule_id]
                    if helpers >= class_request.helpers_needed:
                        conflicts.append(
                            Conflict(
                                type=CONFLICT_VOLUNTEER_FULL,
                                period=item.period,
                                message=f'No helper spots available for "{class_request.class_name}" '
                                f"({helpers}/{class_request.helpers_needed})",
                                schedule_id=item.schedule_id,
                                class_name=class_request.class_name,
                            )
                        )
                    helpers_claimed[item.schedule_id] += 1
                elif item.volunteer_job_id:
                    job = session.get(VolunteerJob, item.volunteer_job_id)
                    filled = (
                        session.query(func.count(VolunteerAssignment.id))
                        .filter(
                            VolunteerAssignment.volunteer_job_id == item.volunteer_job_id,
                            VolunteerAssignment.status != CANCELLED,
                        )
                        .scalar()
                    ) + jobs_claimed[item.volunteer_job_id]
                    if filled >= job.quantity_available:
                        conflicts.append(
                            Conflict(
                                type=CONFLICT_VOLUNTEER_FULL,
                                period=item.period,
                                message=f'No spots available for "{job.title}" ({filled}/{job.quantity_available})',
                                volunteer_job_id=item.volunteer_job_id,
                                job_title=job.title,
                            )
                        )
                    jobs_claimed[item.volunteer_job_id] += 1
        return conflicts


class RegistrationManager:
    """Runs a family's batch from payload to committed rows or a refusal."""

    def __init__(
        self,
        session_factory: Callable,
        override_manager,
        fee_manager=None,
        committer: Optional[RegistrationCommitter] = None,
        validator: Optional[RegistrationValidator] = None,
    ):
        self._session_factory = session_factory
        self._override_manager = override_manager
        self._fee_manager = fee_manager
        self._committer = committer or RegistrationCommitter(session_factory)
        self._validator = validator or RegistrationValidator(session_factory)

    def _prepare(self, guardian_id: str, payload: Any, now: Optional[datetime]) -> tuple[BatchRequest, str]:
        batch = parse_batch_payload(payload)
        family_id = self._validator.resolve_family(guardian_id)
        with self._session_factory() as session:
            coop_session = session.get(CoopSession, batch.session_id)
        if not coop_session:
            raise LookupError("Session not found")
        is_teacher_family = bool(self._validator.teaching_periods(batch.session_id, family_id))
        try:
            check_registration_window(coop_session, is_teacher_family, now or datetime.utcnow())
        except RegistrationClosedError as exc:
            logger.warning("Registration refused for family %s in session %s: %s", family_id, batch.session_id, exc)
            raise
        return self._validator.resolve_batch(batch, family_id), family_id

    def preview(self, guardian_id: str, payload: Any, now: Optional[datetime] = None) -> dict[str, Any]:
        batch, family_id = self._prepare(guardian_id, payload, now)
        result = self._validator.validate(batch, family_id).to_dict()
        result["hasApprovedOverride"] = self._override_manager.has_approved_override(batch.session_id, family_id)
        return result

    def submit_batch(self, guardian_id: str, payload: Any, now: Optional[datetime] = None) -> dict[str, Any]:
        """Validate and commit a batch.

        The returned ``outcome`` is one of ``conflicts``, ``hours_unmet``,
        ``override_requested`` or ``committed``.
        """
        batch, family_id = self._prepare(guardian_id, payload, now)
        session_id = batch.session_id
        validation = self._validator.validate(batch, family_id)

        if validation.has_conflicts:
            return {
                "outcome": "conflicts",
                "success": False,
                "error": "Registration conflicts found",
                "conflicts": [conflict.to_dict() for conflict in validation.conflicts],
            }

        hours = validation.hours
        if not hours.requirements_met and not self._override_manager.has_approved_override(session_id, family_id):
            if not batch.request_admin_override:
                return {
                    "outcome": "hours_unmet",
                    "success": False,
                    "error": "Volunteer requirements not met",
                    "canRequestOverride": True,
                    **hours.to_dict(),
                }
            status = self._override_manager.request_override(
                session_id,
                family_id,
                guardian_id,
                batch.registrations,
                batch.volunteer_assignments,
                hours,
            )
            return {
                "outcome": "override_requested",
                "success": True,
                "adminOverrideRequested": True,
                "overrideId": status["id"],
                "message": "Your registration is pending admin review of volunteer hours",
                **hours.to_dict(),
            }

        committed = self._committer.commit_batch(
            session_id,
            family_id,
            guardian_id,
            batch.registrations,
            batch.volunteer_assignments,
        )
        if committed.committed_any:
            self._recalculate_fees(session_id, family_id)
            self._override_manager.mark_completed(session_id, family_id)
        result = committed.to_dict()
        result["outcome"] = "committed"
        result.update(hours.to_dict())
        return result

    def family_status(self, guardian_id: str, session_id: str) -> dict[str, Any]:
        if not session_id:
            raise ValueError("sessionId is required")
        family_id = self._validator.resolve_family(guardian_id)
        with self._session_factory() as session:
            registrations = (
                session.query(ClassRegistration, Schedule, ClassTeachingRequest)
                .join(Schedule, ClassRegistration.schedule_id == Schedule.id)
                .join(ClassTeachingRequest, Schedule.class_teaching_request_id == ClassTeachingRequest.id)
                .filter(
                    ClassRegistration.session_id == session_id,
                    ClassRegistration.family_id == family_id,
                )
                .all()
            )
            assignments = (
                session.query(VolunteerAssignment)
                .filter(
                    VolunteerAssignment.session_id == session_id,
                    VolunteerAssignment.family_id == family_id,
                    VolunteerAssignment.status != CANCELLED,
                )
                .all()
            )
        fees = self._fee_manager.get_family_session_fee_status(session_id, family_id) if self._fee_manager else None
        return {
            "familyId": family_id,
            "sessionId": session_id,
            "registrationStatus": self._override_manager.get_status(session_id, family_id),
            "registrations": [
                {
                    "id": registration.id,
                    "childId": registration.child_id,
                    "scheduleId": registration.schedule_id,
                    "className": class_request.class_name,
                    "period": schedule.period,
                    "status": registration.status,
                }
                for registration, schedule, class_request in registrations
            ],
            "volunteerAssignments": [
                {
                    "id": assignment.id,
                    "guardianId": assignment.guardian_id,
                    "period": assignment.period,
                    "volunteerType": assignment.volunteer_type,
                    "scheduleId": assignment.schedule_id,
                    "volunteerJobId": assignment.volunteer_job_id,
                    "status": assignment.status,
                }
                for assignment in assignments
            ],
            "fees": fees,
        }

    def _recalculate_fees(self, session_id: str, family_id: str) -> None:
        if not self._fee_manager:
            return
        try:
            self._fee_manager.create_or_update_family_session_fee(session_id, family_id)
        except Exception:
            logger.exception("Fee recalculation failed for family %s in session %s", family_id, session_id)
