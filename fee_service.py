from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Callable, Optional

from models import (
    ClassRegistration,
    ClassTeachingRequest,
    FamilySessionFee,
    Schedule,
    SessionFeeConfig,
)

logger = logging.getLogger(__name__)


def _fee_status(paid_amount: float, total_fee: float) -> str:
    if paid_amount >= total_fee:
        return "paid"
    if paid_amount > 0:
        return "partial"
    return "pending"


class FeeManager:
    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    def calculate_family_session_fees(self, session_id: str, family_id: str) -> dict[str, Any]:
        with self._session_factory() as session:
            config = (
                session.query(SessionFeeConfig)
                .filter(SessionFeeConfig.session_id == session_id)
                .one_or_none()
            )
            if not config:
                raise LookupError(f"No fee configuration found for session {session_id}")
            rows = (
                session.query(ClassRegistration.child_id, ClassTeachingRequest)
                .join(Schedule, ClassRegistration.schedule_id == Schedule.id)
                .join(ClassTeachingRequest, Schedule.class_teaching_request_id == ClassTeachingRequest.id)
                .filter(
                    ClassRegistration.session_id == session_id,
                    ClassRegistration.family_id == family_id,
                    ClassRegistration.status == "registered",
                )
                .all()
            )
        children_count = len({child_id for child_id, _ in rows})
        registration_fee = 0.0
        if children_count:
            registration_fee = config.first_child_fee + max(0, children_count - 1) * config.additional_child_fee
        class_fees = sum(
            (class_request.fee_amount or 0.0)
            for _, class_request in rows
            if class_request.requires_fee
        )
        return {
            "registrationFee": registration_fee,
            "classFees": class_fees,
            "totalFee": registration_fee + class_fees,
            "childrenCount": children_count,
            "dueDate": config.due_date,
        }

    def create_or_update_family_session_fee(self, session_id: str, family_id: str) -> str:
        calculation = self.calculate_family_session_fees(session_id, family_id)
        now = datetime.utcnow()
        with self._session_factory() as session:
            fee = (
                session.query(FamilySessionFee)
                .filter(
                    FamilySessionFee.session_id == session_id,
                    FamilySessionFee.family_id == family_id,
                )
                .one_or_none()
            )
            if not fee:
                fee = FamilySessionFee(session_id=session_id, family_id=family_id, paid_amount=0.0)
                session.add(fee)
            fee.registration_fee = calculation["registrationFee"]
            fee.class_fees = calculation["classFees"]
            fee.total_fee = calculation["totalFee"]
            fee.due_date = calculation["dueDate"]
            fee.status = _fee_status(fee.paid_amount or 0.0, fee.total_fee)
            fee.calculated_at = now
            fee.updated_at = now
            session.commit()
            fee_id = fee.id
        logger.info(
            "Fees for family %s in session %s: %.2f",
            family_id,
            session_id,
            calculation["totalFee"],
        )
        return fee_id

    def get_family_session_fee_status(
        self,
        session_id: str,
        family_id: str,
        today: Optional[date] = None,
    ) -> Optional[dict[str, Any]]:
        with self._session_factory() as session:
            fee = (
                session.query(FamilySessionFee)
                .filter(
                    FamilySessionFee.session_id == session_id,
                    FamilySessionFee.family_id == family_id,
                )
                .one_or_none()
            )
        if not fee:
            return None
        today = today or datetime.utcnow().date()
        return {
            "id": fee.id,
            "registrationFee": fee.registration_fee,
            "classFees": fee.class_fees,
            "totalFee": fee.total_fee,
            "paidAmount": fee.paid_amount,
            "status": fee.status,
            "dueDate": fee.due_date.isoformat() if fee.due_date else None,
            "isOverdue": bool(fee.due_date and today > fee.due_date),
            "remainingAmount": fee.total_fee - fee.paid_amount,
        }
