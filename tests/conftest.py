"""
Shared fixtures: an in-memory SQLite database built the same way as
production, a seeded cooperative, and a Flask test client.

Seeded cooperative (session "Fall Term", registration open now):
- Rivera family: guardians Ana (ana) and Ben (ben), children Mia and Leo.
- Okafor family: guardian Tunde (tunde) teaches Art (Room 1, first) and
  Lunch Club (Room 1, lunch); child Ada.
- Chen family: guardian Wei (wei) teaches Science (Room 2, first, one seat)
  and Music (Room 1, second).
- Staff: admin and moderator accounts.
- Volunteer jobs: Cleanup Crew (non_period, 1 spot), Hall Monitor
  (period_based, 2 spots).
"""

from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest

import auth
from db import build_engine, build_session_factory, init_db
from flask_app import create_app
from models import (
    Child,
    Classroom,
    ClassTeachingRequest,
    CoopSession,
    Family,
    Guardian,
    Schedule,
    SessionFeeConfig,
    VolunteerJob,
)

TEST_JWT_SECRET = "test-secret"


def seed_coop(session_factory, published=True):
    now = datetime.utcnow()
    ids = SimpleNamespace()
    with session_factory() as session:
        term = CoopSession(
            name="Fall Term",
            start_date=(now + timedelta(days=40)).date(),
            end_date=(now + timedelta(days=120)).date(),
            registration_start=now - timedelta(days=1),
            registration_end=now + timedelta(days=30),
            teacher_registration_start=now - timedelta(days=8),
            is_active=True,
        )
        rivera = Family(name="Rivera")
        okafor = Family(name="Okafor")
        chen = Family(name="Chen")
        staff = Family(name="Staff")
        session.add_all([term, rivera, okafor, chen, staff])
        session.flush()

        ana = Guardian(family_id=rivera.id, first_name="Ana", last_name="Rivera")
        ben = Guardian(family_id=rivera.id, first_name="Ben", last_name="Rivera")
        tunde = Guardian(family_id=okafor.id, first_name="Tunde", last_name="Okafor")
        wei = Guardian(family_id=chen.id, first_name="Wei", last_name="Chen")
        admin = Guardian(family_id=staff.id, first_name="Ada", last_name="Admin", role="admin")
        moderator = Guardian(family_id=staff.id, first_name="Max", last_name="Mod", role="moderator")
        mia = Child(family_id=rivera.id, first_name="Mia", last_name="Rivera", grade="3")
        leo = Child(family_id=rivera.id, first_name="Leo", last_name="Rivera", grade="5")
        ada = Child(family_id=okafor.id, first_name="Ada", last_name="Okafor", grade="4")
        room1 = Classroom(name="Room 1")
        room2 = Classroom(name="Room 2")
        session.add_all([ana, ben, tunde, wei, admin, moderator, mia, leo, ada, room1, room2])
        session.flush()

        art = ClassTeachingRequest(
            session_id=term.id,
            guardian_id=tunde.id,
            class_name="Art",
            max_students=2,
            helpers_needed=1,
            requires_fee=True,
            fee_amount=25.0,
            status="approved",
        )
        lunch_club = ClassTeachingRequest(
            session_id=term.id,
            guardian_id=tunde.id,
            class_name="Lunch Club",
            max_students=10,
            helpers_needed=1,
            status="approved",
        )
        science = ClassTeachingRequest(
            session_id=term.id,
            guardian_id=wei.id,
            class_name="Science",
            max_students=1,
            helpers_needed=1,
            status="approved",
        )
        music = ClassTeachingRequest(
            session_id=term.id,
            guardian_id=wei.id,
            class_name="Music",
            max_students=20,
            helpers_needed=2,
            status="approved",
        )
        pending_class = ClassTeachingRequest(
            session_id=term.id,
            guardian_id=wei.id,
            class_name="Chess",
            status="pending",
        )
        session.add_all([art, lunch_club, science, music, pending_class])
        session.flush()

        status = "published" if published else "draft"
        art_slot = Schedule(
            session_id=term.id,
            class_teaching_request_id=art.id,
            classroom_id=room1.id,
            period="first",
            status=status,
        )
        lunch_slot = Schedule(
            session_id=term.id,
            class_teaching_request_id=lunch_club.id,
            classroom_id=room1.id,
            period="lunch",
            status=status,
        )
        science_slot = Schedule(
            session_id=term.id,
            class_teaching_request_id=science.id,
            classroom_id=room2.id,
            period="first",
            status=status,
        )
        music_slot = Schedule(
            session_id=term.id,
            class_teaching_request_id=music.id,
            classroom_id=room1.id,
            period="second",
            status=status,
        )
        cleanup = VolunteerJob(session_id=term.id, title="Cleanup Crew", job_type="non_period", quantity_available=1)
        hall = VolunteerJob(session_id=term.id, title="Hall Monitor", job_type="period_based", quantity_available=2)
        fee_config = SessionFeeConfig(
            session_id=term.id,
            first_child_fee=100.0,
            additional_child_fee=50.0,
            due_date=date(2030, 1, 15),
        )
        session.add_all([art_slot, lunch_slot, science_slot, music_slot, cleanup, hall, fee_config])
        session.commit()

        ids.session_id = term.id
        ids.rivera = rivera.id
        ids.okafor = okafor.id
        ids.chen = chen.id
        ids.ana = ana.id
        ids.ben = ben.id
        ids.tunde = tunde.id
        ids.wei = wei.id
        ids.admin = admin.id
        ids.moderator = moderator.id
        ids.mia = mia.id
        ids.leo = leo.id
        ids.ada = ada.id
        ids.room1 = room1.id
        ids.room2 = room2.id
        ids.art = art.id
        ids.lunch_club = lunch_club.id
        ids.science = science.id
        ids.music = music.id
        ids.chess = pending_class.id
        ids.art_slot = art_slot.id
        ids.lunch_slot = lunch_slot.id
        ids.science_slot = science_slot.id
        ids.music_slot = music_slot.id
        ids.cleanup = cleanup.id
        ids.hall = hall.id
    return ids


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def coop(session_factory):
    return seed_coop(session_factory)


@pytest.fixture
def app(session_factory):
    app = create_app(
        session_factory=session_factory,
        config={"TESTING": True, "JWT_SECRET": TEST_JWT_SECRET, "AUTH_API_URL": None},
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers():
    def factory(guardian_id, role="user"):
        token = auth.issue_token(guardian_id, role=role, secret=TEST_JWT_SECRET)
        return {"Authorization": f"Bearer {token}"}

    return factory


def registration(schedule_id, child_id, period="first", class_name=""):
    return {"scheduleId": schedule_id, "childId": child_id, "period": period, "className": class_name}


def volunteer(guardian_id, volunteer_type="helper", period="first", schedule_id=None, job_id=None):
    item = {"guardianId": guardian_id, "volunteerType": volunteer_type, "period": period}
    if schedule_id:
        item["scheduleId"] = schedule_id
    if job_id:
        item["volunteerJobId"] = job_id
    return item
