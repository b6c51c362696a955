from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from exam_portal.config import Settings
from exam_portal.database import MemoryStore
from exam_portal.main import create_app
from exam_portal.schemas import Exam, User
from exam_portal.security import PasswordHasher

from tests.support import (
    ENCRYPTION_KEY,
    PASSWORD,
    START,
    Account,
    FrozenClock,
    RecordingMailer,
    bearer,
    iso,
)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


@pytest.fixture
def settings():
    return Settings(secret_key="test-secret", encryption_key=ENCRYPTION_KEY, bcrypt_rounds=4)


@pytest.fixture
def app(settings, store, mailer, clock):
    return create_app(settings=settings, store=store, mailer=mailer, clock=clock)


@pytest.fixture
def portal(app):
    return app.state.portal


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def seed_user(store, hasher, clock):
    """Insert a verified account directly into the store."""

    def _seed(username, role="student", **overrides):
        values = dict(
            username=username,
            email=f"{username}@example.com",
            password_hash=hasher.hash(PASSWORD),
            role=role,
            email_verified=True,
            created_at=clock.now(),
        )
        values.update(overrides)
        return store.create_document("user", User(**values))

    return _seed


@pytest.fixture
def login(client, mailer):
    """Run both login stages and return the full-session token."""

    def _login(username, password=PASSWORD):
        response = client.post("/api/auth/login", json={"username": username, "password": password})
        assert response.status_code == 200, response.text
        temp_token = response.json()["tempToken"]
        assert client.post("/api/auth/send-otp", headers=bearer(temp_token)).status_code == 200
        code = mailer.last_code(f"{username}@example.com")
        response = client.post("/api/auth/verify-otp", json={"otp": code}, headers=bearer(temp_token))
        assert response.status_code == 200, response.text
        return response.json()["token"]

    return _login


@pytest.fixture
def account(seed_user, login):
    def _account(username, role="student"):
        uid = seed_user(username, role)
        token = login(username)
        return Account(uid, username, f"{username}@example.com", role, token, bearer(token))

    return _account


@pytest.fixture
def instructor(account):
    return account("instructor1", "instructor")


@pytest.fixture
def student(account):
    return account("student1")


@pytest.fixture
def admin(account):
    return account("admin1", "admin")


@pytest.fixture
def exam_window():
    start = START + timedelta(hours=1)
    return start, start + timedelta(hours=2)


@pytest.fixture
def create_exam(client, exam_window):
    def _create(headers, questions, title="Midterm", start=None, end=None):
        start = start or exam_window[0]
        end = end or exam_window[1]
        response = client.post("/api/exams/exam", headers=headers, json={
            "title": title,
            "description": "Closed book",
            "startTime": iso(start),
            "endTime": iso(end),
            "questions": questions,
        })
        assert response.status_code == 201, response.text
        return response.json()["examId"]

    return _create


@pytest.fixture
def enroll(client):
    def _enroll(headers, exam_id, student_id):
        response = client.post(f"/api/exams/exam/{exam_id}/enroll-student", headers=headers, json={"studentId": student_id})
        assert response.status_code == 200, response.text

    return _enroll


@pytest.fixture
def stored_exam(store, clock, exam_window):
    """Insert an exam record without content, for authorization checks."""

    def _exam(instructor_id, start=None, end=None):
        return store.create_document("exam", Exam(
            title="Stored exam",
            questions_encrypted="-",
            content_hash="-",
            instructor_id=instructor_id,
            start_time=start or exam_window[0],
            end_time=end or exam_window[1],
            created_at=clock.now(),
        ))

    return _exam
