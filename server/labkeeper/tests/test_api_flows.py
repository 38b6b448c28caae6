from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from labkeeper.auth import create_access_token, get_current_user
from labkeeper.db import get_db
from labkeeper.main import app
from labkeeper.models import Item, Lab, Transaction, User
from labkeeper.tests.factories import create_item, create_lab, create_student, create_user, stock


@pytest.fixture()
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with session_factory() as db:
        lab = create_lab(db)
        other_lab = create_lab(db, name="Robotics Lab", code="ROB")
        item = create_item(db)
        stock(db, lab, item, 5)
        users = {
            "student": create_student(db),
            "staff": create_user(db, role="incharge", lab=lab),
            "other_staff": create_user(db, role="incharge", lab=other_lab),
            "faculty": create_user(db, role="faculty", email="guide@uni.test"),
            "admin": create_user(db, role="super_admin", email="admin@uni.test"),
        }
        db.commit()
        context = {
            "lab_id": lab.id,
            "other_lab_id": other_lab.id,
            "item_id": item.id,
            "users": {key: _snapshot(user) for key, user in users.items()},
        }

    with TestClient(app) as test_client:
        yield test_client, session_factory, context

    app.dependency_overrides.pop(get_db, None)


def _snapshot(user):
    return {"id": user.id, "name": user.name, "email": user.email, "role": user.role, "lab_id": user.lab_id}


def _act_as(context, key):
    fields = context["users"][key]
    app.dependency_overrides[get_current_user] = lambda: User(is_active=True, **fields)


def _raise_payload(context, quantity=2):
    return {
        "project_name": "Weather station",
        "faculty_email": "guide@uni.test",
        "expected_return_date": (datetime.utcnow() + timedelta(days=7)).isoformat(),
        "items": [{"lab_id": context["lab_id"], "item_id": context["item_id"], "quantity": quantity}],
    }


def test_health(client):
    test_client, _, _ = client

    response = test_client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_borrow_flow_over_http(client):
    test_client, session_factory, context = client

    _act_as(context, "student")
    created = test_client.post("/api/student/transactions", json=_raise_payload(context))
    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "raised"
    assert body["items"][0]["temp_reserved_quantity"] == 2
    transaction_id = body["transaction_id"]

    with session_factory() as db:
        token = db.query(Transaction).filter(Transaction.transaction_id == transaction_id).one().approval_token

    preview = test_client.get("/api/faculty/approval", params={"token": token})
    assert preview.status_code == 200
    assert preview.json()["transaction_id"] == transaction_id

    approved = test_client.post("/api/faculty/approval/approve", params={"token": token})
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"

    reused = test_client.post("/api/faculty/approval/approve", params={"token": token})
    assert reused.status_code == 404
    assert reused.json()["detail"]["code"] == "NOT_FOUND"

    _act_as(context, "other_staff")
    assert test_client.post(f"/api/lab/transactions/{transaction_id}/issue").status_code == 404

    _act_as(context, "staff")
    issued = test_client.post(f"/api/lab/transactions/{transaction_id}/issue")
    assert issued.status_code == 200
    assert issued.json()["status"] == "active"

    returned = test_client.post(f"/api/lab/transactions/{transaction_id}/complete-return", json={})
    assert returned.status_code == 200
    assert returned.json()["status"] == "completed"

    _act_as(context, "student")
    detail = test_client.get(f"/api/student/transactions/{transaction_id}")
    assert detail.status_code == 200
    assert [entry["to_status"] for entry in detail.json()["timeline"]] == ["raised", "approved", "active", "completed"]


def _approve_over_http(test_client, session_factory, transaction_id):
    with session_factory() as db:
        token = db.query(Transaction).filter(Transaction.transaction_id == transaction_id).one().approval_token
    assert test_client.post("/api/faculty/approval/approve", params={"token": token}).status_code == 200


def test_borrow_spanning_labs_is_refused(client):
    test_client, session_factory, context = client
    with session_factory() as db:
        stock(db, db.get(Lab, context["other_lab_id"]), db.get(Item, context["item_id"]), 5)
        db.commit()
    payload = _raise_payload(context, quantity=1)
    payload["items"].append({"lab_id": context["other_lab_id"], "item_id": context["item_id"], "quantity": 1})

    _act_as(context, "student")
    response = test_client.post("/api/student/transactions", json=payload)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "VALIDATION_ERROR"
    assert test_client.get("/api/student/transactions").json() == []
    assert test_client.post("/api/student/transactions", json=_raise_payload(context, quantity=1)).status_code == 201


def test_super_admin_without_lab_issues_and_returns(client):
    test_client, session_factory, context = client
    _act_as(context, "student")
    transaction_id = test_client.post("/api/student/transactions", json=_raise_payload(context)).json()["transaction_id"]
    _approve_over_http(test_client, session_factory, transaction_id)

    _act_as(context, "admin")
    issued = test_client.post(f"/api/lab/transactions/{transaction_id}/issue")
    assert issued.status_code == 200
    assert issued.json()["status"] == "active"
    assert [row["transaction_id"] for row in test_client.get("/api/lab/transactions").json()] == [transaction_id]

    returned = test_client.post(f"/api/lab/transactions/{transaction_id}/complete-return", json={})
    assert returned.status_code == 200
    assert returned.json()["status"] == "completed"
    assert test_client.get("/api/lab/sessions").status_code == 403


def test_insufficient_stock_is_a_conflict(client):
    test_client, _, context = client
    _act_as(context, "student")

    response = test_client.post("/api/student/transactions", json=_raise_payload(context, quantity=6))

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["code"] == "INSUFFICIENT_STOCK"
    assert detail["violations"] == [
        {"lab_id": context["lab_id"], "item_id": context["item_id"], "requested_qty": 6, "usable_qty": 5}
    ]


def test_second_active_request_is_a_conflict(client):
    test_client, _, context = client
    _act_as(context, "student")

    assert test_client.post("/api/student/transactions", json=_raise_payload(context, quantity=1)).status_code == 201
    response = test_client.post("/api/student/transactions", json=_raise_payload(context, quantity=1))

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "CONFLICT"


def test_past_return_date_is_rejected(client):
    test_client, _, context = client
    _act_as(context, "student")
    payload = _raise_payload(context)
    payload["expected_return_date"] = (datetime.utcnow() - timedelta(days=1)).isoformat()

    response = test_client.post("/api/student/transactions", json=payload)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


def test_roles_are_enforced(client):
    test_client, _, context = client

    _act_as(context, "student")
    assert test_client.get("/api/lab/items").status_code == 403

    _act_as(context, "staff")
    assert test_client.get("/api/student/items").status_code == 403
    items = test_client.get("/api/lab/items")
    assert items.status_code == 200
    assert [row["item"]["sku"] for row in items.json()] == ["ARD-UNO"]


def test_faculty_dashboard_decision(client):
    test_client, _, context = client
    _act_as(context, "student")
    transaction_id = test_client.post("/api/student/transactions", json=_raise_payload(context)).json()["transaction_id"]

    _act_as(context, "faculty")
    pending = test_client.get("/api/faculty/transactions", params={"bucket": "pending"})
    assert [row["transaction_id"] for row in pending.json()] == [transaction_id]

    rejected = test_client.post(
        f"/api/faculty/transactions/{transaction_id}/decision",
        json={"decision": "reject", "reason": "Scope too broad"},
    )
    assert rejected.status_code == 200
    assert rejected.json()["rejected_reason"] == "Scope too broad"

    again = test_client.post(f"/api/faculty/transactions/{transaction_id}/decision", json={"decision": "approve"})
    assert again.status_code == 409


def test_lab_staff_stock_new_item(client):
    test_client, _, context = client
    _act_as(context, "staff")

    created = test_client.post(
        "/api/lab/items",
        json={"sku": "RPI-4", "name": "Raspberry Pi 4", "tracking_type": "asset", "quantity": 2, "vendor": "Robu"},
    )

    assert created.status_code == 201
    body = created.json()
    assert body["inventory"]["total_quantity"] == 2
    assert [asset["asset_tag"] for asset in body["created_assets"]] == ["RPI-4-0001", "RPI-4-0002"]

    assets = test_client.get(f"/api/lab/items/{body['inventory']['item_id']}/assets", params={"status": "available"})
    assert len(assets.json()) == 2


def test_damaged_asset_history_over_http(client):
    test_client, session_factory, context = client
    _act_as(context, "staff")
    created = test_client.post(
        "/api/lab/items",
        json={"sku": "RPI-4", "name": "Raspberry Pi 4", "tracking_type": "asset", "quantity": 2, "vendor": "Robu"},
    )
    item_id = created.json()["inventory"]["item_id"]

    _act_as(context, "student")
    payload = _raise_payload(context, quantity=1)
    payload["items"][0]["item_id"] = item_id
    transaction_id = test_client.post("/api/student/transactions", json=payload).json()["transaction_id"]
    _approve_over_http(test_client, session_factory, transaction_id)

    _act_as(context, "staff")
    borrowed = test_client.post(f"/api/lab/transactions/{transaction_id}/issue").json()["items"][0]
    returned = test_client.post(
        f"/api/lab/transactions/{transaction_id}/complete-return",
        json={
            "damages": [
                {"line_id": borrowed["id"], "damaged_asset_ids": borrowed["asset_ids"], "damage_reason": "Cracked board"}
            ],
            "damage_notes": "Dropped on the bench",
        },
    )
    assert returned.status_code == 200

    history = test_client.get("/api/lab/damaged-assets", params={"item": "raspberry"})
    assert history.status_code == 200
    rows = history.json()
    assert [(row["asset_tag"], row["damage_reason"], row["status"], row["transaction_id"]) for row in rows] == [
        ("RPI-4-0001", "Cracked board", "reported", transaction_id)
    ]
    assert test_client.get("/api/lab/damaged-assets", params={"status": "written_off"}).json() == []

    written_off = test_client.patch(f"/api/lab/damaged-assets/{rows[0]['id']}", json={"status": "written_off"})
    assert written_off.status_code == 200
    assert written_off.json()["status"] == "written_off"
    again = test_client.patch(f"/api/lab/damaged-assets/{rows[0]['id']}", json={"status": "under_repair"})
    assert again.status_code == 409

    _act_as(context, "other_staff")
    assert test_client.get("/api/lab/damaged-assets").json() == []
    _act_as(context, "student")
    assert test_client.get("/api/lab/damaged-assets").status_code == 403


@pytest.mark.real_auth
def test_bearer_token_resolves_caller(client):
    test_client, _, context = client
    student = context["users"]["student"]

    assert test_client.get("/api/student/transactions").status_code == 401
    bad = test_client.get("/api/student/transactions", headers={"Authorization": "Bearer not-a-jwt"})
    assert bad.status_code == 401

    token = create_access_token({"sub": str(student["id"]), "role": student["role"]})
    response = test_client.get("/api/student/transactions", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json() == []
