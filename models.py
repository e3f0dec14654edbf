from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)

from db import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Family(Base):
    __tablename__ = "families"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    email = Column(String)
    phone = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)


class Guardian(Base):
    __tablename__ = "guardians"

    # Matches the user id issued by the identity provider.
    id = Column(String, primary_key=True, default=_new_id)
    family_id = Column(String, ForeignKey("families.id", ondelete="CASCADE"), index=True, nullable=False)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String)
    role = Column(String, nullable=False, default="user")
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Child(Base):
    __tablename__ = "children"

    id = Column(String, primary_key=True, default=_new_id)
    family_id = Column(String, ForeignKey("families.id", ondelete="CASCADE"), index=True, nullable=False)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    grade = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)


class CoopSession(Base):
    __tablename__ = "sessions"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    start_date = Column(Date)
    end_date = Column(Date)
    registration_start = Column(DateTime, nullable=False)
    registration_end = Column(DateTime, nullable=False)
    teacher_registration_start = Column(DateTime)
    is_active = Column(Boolean, nullable=False, default=False)


class Classroom(Base):
    __tablename__ = "classrooms"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    description = Column(Text)


class ClassTeachingRequest(Base):
    __tablename__ = "class_teaching_requests"

    id = Column(String, primary_key=True, default=_new_id)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    guardian_id = Column(String, ForeignKey("guardians.id", ondelete="CASCADE"), index=True, nullable=False)
    class_name = Column(String, nullable=False)
    description = Column(Text)
    grade_range = Column(String)
    max_students = Column(Integer, nullable=False, default=20)
    helpers_needed = Column(Integer, nullable=False, default=1)
    co_teacher = Column(String)
    requires_fee = Column(Boolean, nullable=False, default=False)
    fee_amount = Column(Float)
    status = Column(String, nullable=False, default="pending")


class Schedule(Base):
    __tablename__ = "schedules"

    id = Column(String, primary_key=True, default=_new_id)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    class_teaching_request_id = Column(
        String, ForeignKey("class_teaching_requests.id", ondelete="CASCADE"), nullable=False
    )
    classroom_id = Column(String, ForeignKey("classrooms.id", ondelete="CASCADE"), nullable=False)
    period = Column(String, index=True, nullable=False)
    status = Column(String, nullable=False, default="draft")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("session_id", "classroom_id", "period", name="uq_schedule_slot"),
    )


class ScheduleDraft(Base):
    __tablename__ = "schedule_drafts"

    id = Column(String, primary_key=True, default=_new_id)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    created_by = Column(String, ForeignKey("guardians.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class ScheduleDraftEntry(Base):
    __tablename__ = "schedule_draft_entries"

    id = Column(String, primary_key=True, default=_new_id)
    draft_id = Column(String, ForeignKey("schedule_drafts.id", ondelete="CASCADE"), index=True, nullable=False)
    class_teaching_request_id = Column(
        String, ForeignKey("class_teaching_requests.id", ondelete="CASCADE"), nullable=False
    )
    classroom_id = Column(String, ForeignKey("classrooms.id", ondelete="CASCADE"), nullable=False)
    period = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("draft_id", "classroom_id", "period", name="uq_draft_entry_slot"),
    )


class DraftSelection(Base):
    __tablename__ = "draft_selections"

    id = Column(Integer, primary_key=True)
    user_id = Column(String, ForeignKey("guardians.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    last_opened_draft_id = Column(String, ForeignKey("schedule_drafts.id", ondelete="SET NULL"))
    opened_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "session_id", name="uq_draft_selection_user_session"),
    )


class VolunteerJob(Base):
    __tablename__ = "volunteer_jobs"

    id = Column(String, primary_key=True, default=_new_id)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text)
    job_type = Column(String, nullable=False, default="non_period")
    quantity_available = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)


class ClassRegistration(Base):
    __tablename__ = "class_registrations"

    id = Column(String, primary_key=True, default=_new_id)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    schedule_id = Column(String, ForeignKey("schedules.id", ondelete="CASCADE"), index=True, nullable=False)
    child_id = Column(String, ForeignKey("children.id", ondelete="CASCADE"), index=True, nullable=False)
    family_id = Column(String, ForeignKey("families.id", ondelete="CASCADE"), index=True, nullable=False)
    registered_by = Column(String, ForeignKey("guardians.id"), nullable=False)
    status = Column(String, nullable=False, default="registered")
    registered_at = Column(DateTime, default=datetime.utcnow)


class VolunteerAssignment(Base):
    __tablename__ = "volunteer_assignments"

    id = Column(String, primary_key=True, default=_new_id)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    guardian_id = Column(String, ForeignKey("guardians.id", ondelete="CASCADE"), index=True, nullable=False)
    family_id = Column(String, ForeignKey("families.id", ondelete="CASCADE"), index=True, nullable=False)
    period = Column(String, nullable=False)
    volunteer_type = Column(String, nullable=False)
    schedule_id = Column(String, ForeignKey("schedules.id", ondelete="CASCADE"), index=True)
    volunteer_job_id = Column(String, ForeignKey("volunteer_jobs.id", ondelete="CASCADE"), index=True)
    status = Column(String, nullable=False, default="assigned")
    assigned_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index(
            "uq_guardian_session_period_active",
            "guardian_id",
            "session_id",
            "period",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )


class FamilyRegistrationStatus(Base):
    __tablename__ = "family_registration_status"

    id = Column(String, primary_key=True, default=_new_id)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    family_id = Column(String, ForeignKey("families.id", ondelete="CASCADE"), nullable=False)
    status = Column(String, nullable=False, default="in_progress")
    volunteer_requirements_met = Column(Boolean, nullable=False, default=False)
    admin_override = Column(Boolean, nullable=False, default=False)
    admin_override_reason = Column(Text)
    overridden_by = Column(String, ForeignKey("guardians.id"))
    overridden_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("family_id", "session_id", name="uq_family_registration_status"),
    )


class SessionFeeConfig(Base):
    __tablename__ = "session_fee_configs"

    id = Column(String, primary_key=True, default=_new_id)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), unique=True, nullable=False)
    first_child_fee = Column(Float, nullable=False, default=0)
    additional_child_fee = Column(Float, nullable=False, default=0)
    due_date = Column(Date, nullable=False)


class FamilySessionFee(Base):
    __tablename__ = "family_session_fees"

    id = Column(String, primary_key=True, default=_new_id)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    family_id = Column(String, ForeignKey("families.id", ondelete="CASCADE"), nullable=False)
    registration_fee = Column(Float, nullable=False, default=0)
    class_fees = Column(Float, nullable=False, default=0)
    total_fee = Column(Float, nullable=False, default=0)
    paid_amount = Column(Float, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending")
    due_date = Column(Date, nullable=False)
    calculated_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("family_id", "session_id", name="uq_family_session_fee"),
    )
