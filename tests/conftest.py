"""Shared pytest fixtures: app on in-memory SQLite plus record factories."""
from datetime import datetime, timedelta

import pytest

from app import create_app
from extensions import db
from models import CHW, ROLE_PERMISSIONS, AdminUser, Role
from utils.tag_manager import enroll_patient
from utils.visit_ledger import EPOCH, create_visit

PASSWORD = "Field-Worker#2024"
ADMIN_PASSWORD = "Admin@12345!"


@pytest.fixture
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    monkeypatch.setenv("DEFAULT_ADMIN_PASSWORD", ADMIN_PASSWORD)
    application = create_app("testing")
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    """Application context for service-level tests (not shared with the test client)."""
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


def to_millis(moment: datetime) -> int:
    return (moment - EPOCH) // timedelta(milliseconds=1)


@pytest.fixture
def make_chw():
    counter = {"n": 0}

    def factory(chw_code=None, region="North", is_active=True, password=PASSWORD):
        counter["n"] += 1
        n = counter["n"]
        chw = CHW(
            chw_code=chw_code or f"CHW-{n:03d}",
            name=f"Worker {n}",
            email=f"worker{n}@example.org",
            phone=f"+25470000{n:04d}",
            license_number=f"LIC-{n:05d}",
            wallet_address=f"0x{n:040x}",
            region=region,
            is_active=is_active,
            is_verified=True,
        )
        chw.set_password(password)
        db.session.add(chw)
        db.session.commit()
        return chw

    return factory


@pytest.fixture
def make_patient():
    counter = {"n": 0}

    def factory(patient_code=None, **extra):
        counter["n"] += 1
        payload = {"patient_id": patient_code or f"PAT-{counter['n']:04d}", "consent_given": True}
        payload.update(extra)
        return enroll_patient(payload)

    return factory


@pytest.fixture
def make_visit():
    def factory(chw, patient, tag, when, latitude=-1.2921, longitude=36.8219, now=None, **extra):
        payload = {
            "patient_id": patient.patient_code,
            "location": {"latitude": latitude, "longitude": longitude},
            "timestamp": to_millis(when),
            "tag_payload": tag.token,
            "tag_kind": tag.kind,
            "signature": "0xsigned",
        }
        payload.update(extra)
        return create_visit(chw, payload, now=now)

    return factory


@pytest.fixture
def make_admin():
    def factory(username="reviewer", role_name="supervisor", password=ADMIN_PASSWORD):
        role = Role.get_or_create(role_name, permissions=ROLE_PERMISSIONS.get(role_name, ()))
        admin = AdminUser(
            username=username,
            email=f"{username}@example.org",
            full_name=username.title(),
            role=role,
        )
        admin.set_password(password)
        db.session.add(admin)
        db.session.commit()
        return admin

    return factory
