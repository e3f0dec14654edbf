from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError

from models import (
    ClassRegistration,
    Family,
    FamilyRegistrationStatus,
    VolunteerAssignment,
)
from registration_batch import (
    HourSummary,
    PendingRegistration,
    PendingVolunteerAssignment,
)
from registration_commit import new_assignment, new_registration

STATUS_IN_PROGRESS = "in_progress"
STATUS_PENDING_OVERRIDE = "admin_override"
STATUS_APPROVED = "approved"
STATUS_DENIED = "denied"
STATUS_COMPLETED = "completed"

OVERRIDE_TRANSITIONS = {
    STATUS_IN_PROGRESS: {STATUS_PENDING_OVERRIDE, STATUS_COMPLETED},
    STATUS_PENDING_OVERRIDE: {STATUS_APPROVED, STATUS_DENIED},
    STATUS_DENIED: {STATUS_PENDING_OVERRIDE, STATUS_COMPLETED},
    STATUS_COMPLETED: {STATUS_PENDING_OVERRIDE, STATUS_COMPLETED},
    STATUS_APPROVED: set(),
}

logger = logging.getLogger(__name__)


class OverrideStateError(ValueError):
    status_code = 409


def override_reason(hours: HourSummary) -> str:
    return f"Volunteer hours not met: {hours.fulfilled_hours}/{hours.required_hours} hours fulfilled"


def _check_transition(current: str, target: str) -> None:
    if target not in OVERRIDE_TRANSITIONS.get(current, set()):
        if current == STATUS_PENDING_OVERRIDE and target == STATUS_PENDING_OVERRIDE:
            raise OverrideStateError("An override request is already pending for this session")
        raise OverrideStateError(f"Cannot move registration status from {current} to {target}")


class OverrideManager:
    """Per family/session registration outcome and the admin override review."""

    def __init__(self, session_factory: Callable, fee_manager=None):
        self._session_factory = session_factory
        self._fee_manager = fee_manager

    @staticmethod
    def _find(session, session_id: str, family_id: str) -> Optional[FamilyRegistrationStatus]:
        return (
            session.query(FamilyRegistrationStatus)
            .filter(
                FamilyRegistrationStatus.session_id == session_id,
                FamilyRegistrationStatus.family_id == family_id,
            )
            .with_for_update()
            .one_or_none()
        )

    def get_status(self, session_id: str, family_id: str) -> Optional[dict[str, Any]]:
        with self._session_factory() as session:
            record = self._find(session, session_id, family_id)
        return self._status_to_dict(record) if record else None

    def has_approved_override(self, session_id: str, family_id: str) -> bool:
        status = self.get_status(session_id, family_id)
        return bool(status and status["status"] == STATUS_APPROVED)

    def request_override(
        self,
        session_id: str,
        family_id: str,
        registered_by: str,
        registrations: list[PendingRegistration],
        assignments: list[PendingVolunteerAssignment],
        hours: HourSummary,
    ) -> dict[str, Any]:
        """Hold the batch as pending rows and open (or reopen) the review."""
        now = datetime.utcnow()
        with self._session_factory() as session:
            record = self._find(session, session_id, family_id)
            if record:
                _check_transition(record.status, STATUS_PENDING_OVERRIDE)
            else:
                record = FamilyRegistrationStatus(
                    session_id=session_id,
                    family_id=family_id,
                    created_at=now,
                )
                session.add(record)
            record.status = STATUS_PENDING_OVERRIDE
            record.volunteer_requirements_met = False
            record.admin_override = True
            record.admin_override_reason = override_reason(hours)
            record.overridden_by = None
            record.overridden_at = None
            record.completed_at = None
            record.updated_at = now
            session.add_all(
                [new_registration(session_id, family_id, registered_by, item, status="pending") for item in registrations]
                + [new_assignment(session_id, family_id, item, status="pending") for item in assignments]
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if not assignments:
                    raise
                # Partial unique index on guardian/session/period.
                periods = ", ".join(sorted({item.period for item in assignments}))
                logger.warning("Constraint rejected override hold for family %s in session %s", family_id, session_id)
                raise OverrideStateError(f"Guardian is already assigned as a volunteer for the {periods} period")
            result = self._status_to_dict(record)
        logger.info(
            "Override requested for family %s in session %s (%s/%s hours)",
            family_id,
            session_id,
            hours.fulfilled_hours,
            hours.required_hours,
        )
        return result

    def approve(self, override_id: str, admin_id: str, reason: Optional[str] = None) -> dict[str, Any]:
        now = datetime.utcnow()
        with self._session_factory() as session:
            record = self._get_for_update(session, override_id)
            _check_transition(record.status, STATUS_APPROVED)
            record.status = STATUS_APPROVED
            record.overridden_by = admin_id
            record.overridden_at = now
            record.updated_at = now
            if reason:
                record.admin_override_reason = reason
            session.query(ClassRegistration).filter(
                ClassRegistration.session_id == record.session_id,
                ClassRegistration.family_id == record.family_id,
                ClassRegistration.status == "pending",
            ).update({ClassRegistration.status: "registered"}, synchronize_session=False)
            session.query(VolunteerAssignment).filter(
                VolunteerAssignment.session_id == record.session_id,
                VolunteerAssignment.family_id == record.family_id,
                VolunteerAssignment.status == "pending",
            ).update({VolunteerAssignment.status: "assigned"}, synchronize_session=False)
            session.commit()
            result = self._status_to_dict(record)
        logger.info("Override %s approved by %s", override_id, admin_id)
        self._recalculate_fees(result["sessionId"], result["familyId"])
        return result

    def deny(self, override_id: str, admin_id: str, reason: Optional[str] = None) -> dict[str, Any]:
        now = datetime.utcnow()
        with self._session_factory() as session:
            record = self._get_for_update(session, override_id)
            _check_transition(record.status, STATUS_DENIED)
            record.status = STATUS_DENIED
            record.overridden_by = admin_id
            record.overridden_at = now
            record.updated_at = now
            if reason:
                record.admin_override_reason = reason
            session.query(ClassRegistration).filter(
                ClassRegistration.session_id == record.session_id,
                ClassRegistration.family_id == record.family_id,
                ClassRegistration.status == "pending",
            ).delete(synchronize_session=False)
            session.query(VolunteerAssignment).filter(
                VolunteerAssignment.session_id == record.session_id,
                VolunteerAssignment.family_id == record.family_id,
                VolunteerAssignment.status == "pending",
            ).delete(synchronize_session=False)
            session.commit()
            result = self._status_to_dict(record)
        logger.info("Override %s denied by %s", override_id, admin_id)
        return result

    def mark_completed(self, session_id: str, family_id: str) -> Optional[dict[str, Any]]:
        """Close an existing status row after a normal commit; never creates one."""
        now = datetime.utcnow()
        with self._session_factory() as session:
            record = self._find(session, session_id, family_id)
            if not record or STATUS_COMPLETED not in OVERRIDE_TRANSITIONS.get(record.status, set()):
                return None
            record.status = STATUS_COMPLETED
            record.volunteer_requirements_met = True
            record.completed_at = now
            record.updated_at = now
            session.commit()
            return self._status_to_dict(record)

    def list_requests(self, session_id: Optional[str] = None, status: str = STATUS_PENDING_OVERRIDE) -> list[dict[str, Any]]:
        with self._session_factory() as session:
            query = (
                session.query(FamilyRegistrationStatus, Family)
                .join(Family, FamilyRegistrationStatus.family_id == Family.id)
                .filter(FamilyRegistrationStatus.status == status)
            )
            if session_id:
                query = query.filter(FamilyRegistrationStatus.session_id == session_id)
            rows = query.order_by(FamilyRegistrationStatus.updated_at.desc()).all()
        results = []
        for record, family in rows:
            payload = self._status_to_dict(record)
            payload["familyName"] = family.name
            results.append(payload)
        return results

    def _get_for_update(self, session, override_id: str) -> FamilyRegistrationStatus:
        record = (
            session.query(FamilyRegistrationStatus)
            .filter(FamilyRegistrationStatus.id == override_id)
            .with_for_update()
            .one_or_none()
        )
        if not record:
            raise LookupError("Override request not found")
        return record

    def _recalculate_fees(self, session_id: str, family_id: str) -> None:
        if not self._fee_manager:
            return
        try:
            self._fee_manager.create_or_update_family_session_fee(session_id, family_id)
        except Exception:
            logger.exception("Fee recalculation failed for family %s in session %s", family_id, session_id)

    @staticmethod
    def _status_to_dict(record: FamilyRegistrationStatus) -> dict[str, Any]:
        return {
            "id": record.id,
            "sessionId": record.session_id,
            "familyId": record.family_id,
            "status": record.status,
            "volunteerRequirementsMet": bool(record.volunteer_requirements_met),
            "adminOverride": bool(record.admin_override),
            "adminOverrideReason": record.admin_override_reason,
            "overriddenBy": record.overridden_by,
            "overriddenAt": record.overridden_at.isoformat() if record.overridden_at else None,
            "completedAt": record.completed_at.isoformat() if record.completed_at else None,
            "updatedAt": record.updated_at.isoformat() if record.updated_at else None,
        }
