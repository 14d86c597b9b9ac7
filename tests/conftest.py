import os
from datetime import timedelta

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["EXPOSE_RESET_TOKEN"] = "true"
os.environ["SECRET_KEY"] = "test-secret-key"

import pytest
from fastapi.testclient import TestClient

from ridebooking import auth, crud
from ridebooking.db import Base, SessionLocal, engine
from ridebooking.main import app
from ridebooking.models import Role, utcnow

PASSWORD = "Passw0rd"


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def future(**delta) -> str:
    delta = delta or {"hours": 1}
    return (utcnow() + timedelta(**delta)).isoformat()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def register(client, email="alice@co.com", employee_id="EMP001", department="Engineering"):
    resp = client.post("/api/auth/register", json={
        "first_name": "Alice",
        "last_name": "Smith",
        "email": email,
        "password": PASSWORD,
        "phone": "+14155550100",
        "department": department,
        "employee_id": employee_id,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def login(client, email="alice@co.com", password=PASSWORD):
    return client.post("/api/auth/login", json={"email": email, "password": password})


@pytest.fixture
def user_token(client):
    return register(client)["token"]


@pytest.fixture
def other_token(client):
    return register(client, email="bob@co.com", employee_id="EMP002", department="Sales")["token"]


def make_admin(db_session, email="admin@co.com", employee_id="ADM001"):
    admin = crud.create_user(
        db_session,
        email=email,
        password=PASSWORD,
        first_name="Ada",
        last_name="Admin",
        phone="+14155550199",
        department="Operations",
        employee_id=employee_id,
        role=Role.ADMIN,
    )
    return admin, auth.create_user_token(admin)


@pytest.fixture
def admin(db_session):
    return make_admin(db_session)


@pytest.fixture
def admin_token(admin):
    return admin[1]


def create_ride(client, token, **overrides):
    body = {"pickup": "Tech Park, Electronic City", "drop": "Koramangala", "schedule_time": future()}
    body.update(overrides)
    resp = client.post("/api/rides", json=body, headers=bearer(token))
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["ride"]
