from conftest import bearer

from ridebooking import auth
from ridebooking.init_db import seed_admin
from ridebooking.models import User


def test_seed_admin_is_idempotent(db_session, monkeypatch):
    monkeypatch.setenv("ADMIN_EMAIL", "Root@Co.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "Secret123")
    monkeypatch.setenv("ADMIN_EMPLOYEE_ID", "root01")

    first = seed_admin(db_session)
    second = seed_admin(db_session)

    assert first.id == second.id
    assert db_session.query(User).count() == 1
    assert first.email == "root@co.com"
    assert first.employee_id == "ROOT01"
    assert first.is_admin
    assert auth.verify_password("Secret123", first.hashed_password)


def test_seeded_admin_can_use_admin_routes(client, db_session):
    admin = seed_admin(db_session)
    token = auth.create_user_token(admin)
    assert client.get("/api/admin/rides", headers=bearer(token)).status_code == 200
