import csv
import io
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from conftest import PASSWORD, bearer, create_ride, future, login, register

from ridebooking import audit
from ridebooking.models import AdminAction, AdminActionType, TargetType


def test_every_decision_leaves_exactly_one_audit_record(client, db_session, user_token, admin):
    admin_user, admin_token = admin
    approved = create_ride(client, user_token)
    rejected = create_ride(client, user_token)

    client.put(f"/api/admin/rides/{approved['id']}/approve", headers=bearer(admin_token))
    client.patch(
        f"/api/admin/rides/{rejected['id']}/reject", json={"reason": "Out of policy"}, headers=bearer(admin_token)
    )

    for ride, action in ((approved, "approve_ride"), (rejected, "reject_ride")):
        records = (
            db_session.query(AdminAction)
            .filter(AdminAction.target_type == "ride", AdminAction.target_id == str(ride["id"]))
            .all()
        )
        assert len(records) == 1
        record = records[0]
        assert record.action == action
        assert record.admin_id == admin_user.id
        assert record.previous_value == {"status": "pending"}
        assert record.success is True

    rejection = db_session.query(AdminAction).filter(AdminAction.action == "reject_ride").one()
    assert rejection.reason == "Out of policy"
    assert rejection.new_value == {"status": "rejected"}


def test_failed_transition_is_not_audited(client, db_session, user_token, admin_token):
    ride = create_ride(client, user_token)
    client.patch(f"/api/rides/{ride['id']}/cancel", headers=bearer(user_token))

    resp = client.put(f"/api/admin/rides/{ride['id']}/approve", headers=bearer(admin_token))
    assert resp.status_code == 400
    assert db_session.query(AdminAction).count() == 0


def test_admin_actions_endpoint_filters_and_pages(client, user_token, admin):
    admin_user, admin_token = admin
    ride_ids = [create_ride(client, user_token)["id"] for _ in range(3)]
    for ride_id in ride_ids:
        client.put(f"/api/admin/rides/{ride_id}/approve", headers=bearer(admin_token))

    resp = client.get(
        "/api/admin/actions", params={"action": "approve_ride", "limit": 2}, headers=bearer(admin_token)
    )
    data = resp.json()["data"]
    assert resp.status_code == 200
    assert data["pagination"]["total"] == 3
    assert len(data["actions"]) == 2
    assert data["actions"][0]["target_id"] == str(ride_ids[-1])
    assert data["actions"][0]["admin"]["id"] == admin_user.id

    one = client.get(
        "/api/admin/actions", params={"target_id": str(ride_ids[0])}, headers=bearer(admin_token)
    ).json()["data"]
    assert [a["action"] for a in one["actions"]] == ["approve_ride"]


def test_admin_actions_by_date_window(client, user_token, admin_token):
    ride = create_ride(client, user_token)
    client.put(f"/api/admin/rides/{ride['id']}/approve", headers=bearer(admin_token))

    around_now = client.get(
        "/api/admin/actions",
        params={"start_date": future(hours=-1), "end_date": future(hours=1)},
        headers=bearer(admin_token),
    ).json()["data"]
    assert [a["target_id"] for a in around_now["actions"]] == [str(ride["id"])]

    later = client.get(
        "/api/admin/actions", params={"start_date": future(hours=1)}, headers=bearer(admin_token)
    ).json()["data"]
    assert later["actions"] == []
    assert later["pagination"]["total"] == 0


def test_failed_audit_write_keeps_the_approval(
    client, db_session, user_token, admin_token, monkeypatch, caplog
):
    ride = create_ride(client, user_token)
    real_commit = Session.commit

    def commit(self):
        if any(isinstance(obj, AdminAction) for obj in self.new):
            raise SQLAlchemyError("admin_actions is unavailable")
        return real_commit(self)

    monkeypatch.setattr(Session, "commit", commit)
    with caplog.at_level(logging.ERROR, logger="ridebooking.audit"):
        resp = client.put(f"/api/admin/rides/{ride['id']}/approve", headers=bearer(admin_token))

    assert resp.status_code == 200
    assert resp.json()["data"]["ride"]["status"] == "approved"
    assert "Failed to record approve_ride" in caplog.text

    monkeypatch.undo()
    fetched = client.get(f"/api/rides/{ride['id']}", headers=bearer(user_token)).json()["data"]["ride"]
    assert fetched["status"] == "approved"
    assert db_session.query(AdminAction).count() == 0


def test_log_action_requires_target_for_rides(db_session, admin):
    admin_user, _ = admin
    assert audit.log_action(db_session, admin_user.id, AdminActionType.APPROVE_RIDE, TargetType.RIDE) is None

    record = audit.log_action(
        db_session, admin_user.id, AdminActionType.EXPORT_DATA, TargetType.SYSTEM, details={"export": "rides"}
    )
    assert record is not None
    assert record.target_id is None
    assert db_session.query(AdminAction).count() == 1


def test_admin_cancel_requires_reason_and_is_audited(client, db_session, user_token, admin_token):
    ride = create_ride(client, user_token)

    missing = client.put(f"/api/admin/rides/{ride['id']}/cancel", json={}, headers=bearer(admin_token))
    assert missing.status_code == 400

    resp = client.put(
        f"/api/admin/rides/{ride['id']}/cancel", json={"reason": "Office closed"}, headers=bearer(admin_token)
    )
    cancelled = resp.json()["data"]["ride"]
    assert resp.status_code == 200
    assert cancelled["status"] == "cancelled"
    assert cancelled["cancellation_reason"] == "Office closed"

    record = db_session.query(AdminAction).one()
    assert record.action == "cancel_ride"
    assert record.reason == "Office closed"


def test_analytics_summary(client, user_token, other_token, admin_token):
    first = create_ride(client, user_token)
    second = create_ride(client, other_token)
    create_ride(client, other_token)
    client.put(f"/api/admin/rides/{first['id']}/approve", headers=bearer(admin_token))
    client.put(f"/api/admin/rides/{second['id']}/reject", json={"reason": "No"}, headers=bearer(admin_token))

    resp = client.get("/api/admin/analytics", headers=bearer(admin_token))
    data = resp.json()["data"]
    summary = data["summary"]
    assert resp.status_code == 200
    assert summary["total_rides"] == 3
    assert summary["pending_rides"] == 1
    assert summary["approved_rides"] == 1
    assert summary["rejected_rides"] == 1
    assert summary["in_progress_rides"] == 0
    assert summary["total_users"] == 2
    assert summary["approval_rate"] == 33.33

    departments = {d["department"]: d["total_rides"] for d in data["department_analytics"]}
    assert departments == {"Sales": 2, "Engineering": 1}
    assert data["fare_analytics"]["total_fare"] == first["estimated_fare"]
    assert sum(m["count"] for m in data["monthly_analytics"]) == 3


def test_analytics_with_no_rides(client, admin_token):
    data = client.get("/api/admin/analytics", headers=bearer(admin_token)).json()["data"]
    assert data["summary"]["total_rides"] == 0
    assert data["summary"]["approval_rate"] == 0
    assert data["department_analytics"] == []
    assert data["fare_analytics"]["avg_fare"] == 0.0


def test_viewing_analytics_is_audited(client, db_session, admin):
    admin_user, admin_token = admin
    client.get("/api/admin/analytics", params={"department": "Sales"}, headers=bearer(admin_token))

    record = db_session.query(AdminAction).one()
    assert record.action == "view_analytics"
    assert record.target_type == "analytics"
    assert record.details["department"] == "Sales"


def test_export_rides_csv(client, db_session, user_token, other_token, admin_token):
    create_ride(client, user_token, drop="Airport")
    create_ride(client, other_token, drop="Station")

    resp = client.get("/api/admin/export/rides", params={"department": "Sales"}, headers=bearer(admin_token))
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert "attachment" in resp.headers["content-disposition"]

    rows = list(csv.DictReader(io.StringIO(resp.text)))
    assert [row["drop"] for row in rows] == ["Station"]
    assert rows[0]["employee_id"] == "EMP002"

    assert db_session.query(AdminAction).one().action == "export_data"


def test_recent_activity_merges_rides_and_actions(client, user_token, admin_token):
    ride = create_ride(client, user_token, drop="Airport")
    client.put(f"/api/admin/rides/{ride['id']}/approve", headers=bearer(admin_token))

    resp = client.get("/api/admin/recent-activity", headers=bearer(admin_token))
    data = resp.json()["data"]
    types = {a["type"] for a in data["activities"]}
    assert resp.status_code == 200
    assert {"ride_approved", "approve_ride"} <= types
    assert data["total"] == len(data["activities"])
    ride_entry = next(a for a in data["activities"] if a["type"] == "ride_approved")
    assert ride_entry["description"] == "Alice Smith's ride to Airport was approved"


def test_admin_creates_and_lists_users(client, db_session, admin_token):
    resp = client.post(
        "/api/users",
        json={
            "first_name": "Dan",
            "last_name": "Brown",
            "email": "dan@co.com",
            "password": PASSWORD,
            "phone": "+14155550123",
            "department": "Finance",
            "employee_id": "EMP010",
            "role": "admin",
        },
        headers=bearer(admin_token),
    )
    assert resp.status_code == 201
    assert resp.json()["data"]["user"]["role"] == "admin"
    assert db_session.query(AdminAction).one().action == "create_user"

    admins = client.get("/api/users", params={"role": "admin"}, headers=bearer(admin_token)).json()["data"]
    assert admins["pagination"]["total"] == 2


def test_users_cannot_list_users(client, user_token):
    assert client.get("/api/users", headers=bearer(user_token)).status_code == 403


def test_admin_updates_user(client, admin_token):
    user = register(client)["user"]
    resp = client.put(
        f"/api/users/{user['id']}", json={"department": "Marketing"}, headers=bearer(admin_token)
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["department"] == "Marketing"


def test_deactivated_user_cannot_log_in_until_reactivated(client, db_session, admin_token):
    user = register(client)["user"]

    resp = client.patch(f"/api/users/{user['id']}/deactivate", headers=bearer(admin_token))
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["is_active"] is False
    assert login(client).status_code == 401

    client.patch(f"/api/users/{user['id']}/activate", headers=bearer(admin_token))
    assert login(client).status_code == 200

    actions = [a.action for a in db_session.query(AdminAction).order_by(AdminAction.id)]
    assert actions == ["deactivate_user", "activate_user"]


def test_admin_cannot_deactivate_self(client, admin):
    admin_user, admin_token = admin
    resp = client.patch(f"/api/users/{admin_user.id}/deactivate", headers=bearer(admin_token))
    assert resp.status_code == 400
