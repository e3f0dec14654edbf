from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Optional

from slot_keys import NON_PERIOD, is_hour_bearing, normalize_period

ACTIVE_REGISTRATION_STATUSES = ("registered", "pending")
CANCELLED = "cancelled"

VOLUNTEER_TYPES = ("teacher", "helper", "co_teacher", "volunteer_job")
CLASS_VOLUNTEER_TYPES = ("teacher", "helper", "co_teacher")

CONFLICT_CLASS_FULL = "class_full"
CONFLICT_VOLUNTEER_FULL = "volunteer_full"
CONFLICT_CHILD = "child_conflict"
CONFLICT_GUARDIAN = "guardian_conflict"


@dataclass
class PendingRegistration:
    schedule_id: str
    child_id: str
    period: str
    class_name: str = ""
    teacher: Optional[str] = None
    classroom: Optional[str] = None


@dataclass
class PendingVolunteerAssignment:
    guardian_id: str
    period: str
    volunteer_type: str
    schedule_id: Optional[str] = None
    volunteer_job_id: Optional[str] = None
    class_name: Optional[str] = None
    job_title: Optional[str] = None
    guardian_name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.class_name or self.job_title or "volunteer job"


@dataclass
class Conflict:
    type: str
    period: str
    message: str
    schedule_id: Optional[str] = None
    volunteer_job_id: Optional[str] = None
    class_name: Optional[str] = None
    job_title: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "type": self.type,
            "period": self.period,
            "message": self.message,
            "scheduleId": self.schedule_id,
            "volunteerJobId": self.volunteer_job_id,
            "className": self.class_name,
            "jobTitle": self.job_title,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(frozen=True)
class HourSummary:
    required_hours: int
    fulfilled_hours: int

    @property
    def requirements_met(self) -> bool:
        return self.fulfilled_hours >= self.required_hours

    def to_dict(self) -> dict[str, Any]:
        return {
            "requiredHours": self.required_hours,
            "fulfilledHours": self.fulfilled_hours,
            "volunteerRequirementsMet": self.requirements_met,
        }


@dataclass
class ValidationResult:
    hours: HourSummary
    conflicts: list[Conflict] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def can_request_override(self) -> bool:
        return not self.hours.requirements_met and not self.conflicts

    def to_dict(self) -> dict[str, Any]:
        payload = self.hours.to_dict()
        payload["conflicts"] = [conflict.to_dict() for conflict in self.conflicts]
        payload["canRequestOverride"] = self.can_request_override
        return payload


@dataclass
class BatchRequest:
    session_id: str
    registrations: list[PendingRegistration]
    volunteer_assignments: list[PendingVolunteerAssignment]
    request_admin_override: bool = False


def compute_volunteer_hours(
    registration_periods: Iterable[str],
    assignment_periods: Iterable[str],
    teaching_periods: Iterable[str],
) -> HourSummary:
    """Required vs. fulfilled volunteer hours for one family batch.

    Required: one hour per distinct non-lunch period a child is registered in.
    Fulfilled: one hour per batch assignment (period-based and non_period jobs
    alike) plus one hour per distinct non-lunch period the family already
    teaches in this session.
    """
    required = {period for period in registration_periods if is_hour_bearing(period)}
    assignment_periods = list(assignment_periods)
    period_based = sum(1 for period in assignment_periods if period != NON_PERIOD)
    non_period = sum(1 for period in assignment_periods if period == NON_PERIOD)
    taught = {period for period in teaching_periods if is_hour_bearing(period)}
    return HourSummary(
        required_hours=len(required),
        fulfilled_hours=period_based + non_period + len(taught),
    )


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_registration(raw: Any) -> PendingRegistration:
    if not isinstance(raw, dict):
        raise ValueError("registrations must be objects")
    schedule_id = _text(raw.get("scheduleId"))
    child_id = _text(raw.get("childId"))
    if not schedule_id or not child_id:
        raise ValueError("each registration needs scheduleId and childId")
    period = normalize_period(raw.get("period"))
    if raw.get("period") and not period:
        raise ValueError(f"invalid period '{raw.get('period')}'")
    return PendingRegistration(
        schedule_id=schedule_id,
        child_id=child_id,
        period=period or "",
        class_name=_text(raw.get("className")) or "",
        teacher=_text(raw.get("teacher")),
        classroom=_text(raw.get("classroom")),
    )


def _parse_assignment(raw: Any) -> PendingVolunteerAssignment:
    if not isinstance(raw, dict):
        raise ValueError("volunteerAssignments must be objects")
    guardian_id = _text(raw.get("guardianId"))
    volunteer_type = _text(raw.get("volunteerType"))
    if not guardian_id:
        raise ValueError("each volunteer assignment needs guardianId")
    if volunteer_type not in VOLUNTEER_TYPES:
        raise ValueError(f"invalid volunteerType '{raw.get('volunteerType')}'")
    schedule_id = _text(raw.get("scheduleId"))
    volunteer_job_id = _text(raw.get("volunteerJobId"))
    if volunteer_type == "volunteer_job" and not volunteer_job_id:
        raise ValueError("volunteer_job assignments need volunteerJobId")
    if volunteer_type != "volunteer_job" and not schedule_id:
        raise ValueError(f"{volunteer_type} assignments need scheduleId")
    period = normalize_period(raw.get("period"), allow_non_period=True)
    if raw.get("period") and not period:
        raise ValueError(f"invalid period '{raw.get('period')}'")
    return PendingVolunteerAssignment(
        guardian_id=guardian_id,
        period=period or "",
        volunteer_type=volunteer_type,
        schedule_id=schedule_id if volunteer_type != "volunteer_job" else None,
        volunteer_job_id=volunteer_job_id if volunteer_type == "volunteer_job" else None,
        class_name=_text(raw.get("className")),
        job_title=_text(raw.get("jobTitle")),
        guardian_name=_text(raw.get("guardianName")),
    )


def parse_batch_payload(payload: Any) -> BatchRequest:
    if not payload or not isinstance(payload, dict):
        raise ValueError("expected JSON payload")
    session_id = _text(payload.get("sessionId"))
    if not session_id:
        raise ValueError("sessionId is required")
    registrations = payload.get("registrations") or []
    assignments = payload.get("volunteerAssignments") or []
    if not isinstance(registrations, list) or not isinstance(assignments, list):
        raise ValueError("registrations and volunteerAssignments must be lists")
    if not registrations and not assignments:
        raise ValueError("nothing to register")
    return BatchRequest(
        session_id=session_id,
        registrations=[_parse_registration(raw) for raw in registrations],
        volunteer_assignments=[_parse_assignment(raw) for raw in assignments],
        request_admin_override=bool(payload.get("requestAdminOverride")),
    )


def item_to_dict(item: PendingRegistration | PendingVolunteerAssignment) -> dict[str, Any]:
    data = asdict(item)
    return {
        "".join(part.capitalize() if index else part for index, part in enumerate(key.split("_"))): value
        for key, value in data.items()
        if value is not None
    }
