import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.routers.scans as scans
import database.db as db
from scanner.capture import render_qr_png


@pytest.fixture()
def client(tmp_path, monkeypatch):
    test_db = tmp_path / "edupay_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()

    with TestClient(main.app) as c:
        yield c


def _login(client, email: str, password: str, pin: str | None = None) -> dict:
    res = client.post("/auth/login", json={"email": email, "password": password, "pin": pin})
    assert res.status_code == 200, res.text
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def auth_headers(client):
    return _login(client, config.ADMIN_EMAIL, config.ADMIN_PASSWORD, config.ADMIN_PIN)


def _create_user(client, auth_headers, *, role: str, email: str, assigned_bus: str | None = None) -> dict:
    res = client.post(
        "/users",
        json={
            "name": role.title(),
            "email": email,
            "password": "secret",
            "role": role,
            "assigned_bus": assigned_bus,
        },
        headers=auth_headers,
    )
    assert res.status_code == 200, res.text
    return _login(client, email, "secret")


def _create_student(client, auth_headers, **overrides) -> dict:
    payload = {
        "name": "Alice",
        "class_name": "4A",
        "admin_number": "ADM-001",
        "drop_location": "Gate 1",
        "bus_number": "B1",
        "transport_paid": True,
        "meal_paid": True,
    }
    payload.update(overrides)
    res = client.post("/students", json=payload, headers=auth_headers)
    assert res.status_code == 200, res.text
    return res.json()


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_scanning_config(client):
    res = client.get("/config/scanning")
    assert res.status_code == 200
    body = res.json()
    assert body["admission_cooldown_hours"] == config.ADMISSION_COOLDOWN_HOURS
    assert body["camera_facing"] in {"environment", "user"}


def test_login_rejects_invalid_credentials(client):
    res = client.post(
        "/auth/login",
        json={"email": config.ADMIN_EMAIL, "password": "wrong-password", "pin": config.ADMIN_PIN},
    )
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid email or password."


def test_admin_login_requires_pin(client):
    res = client.post(
        "/auth/login",
        json={"email": config.ADMIN_EMAIL, "password": config.ADMIN_PASSWORD, "pin": "0000"},
    )
    assert res.status_code == 401
    assert res.json()["detail"] == "Incorrect Admin PIN."


def test_me_reports_profile(client, auth_headers):
    res = client.get("/auth/me", headers=auth_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["email"] == config.ADMIN_EMAIL
    assert body["role"] == "ADMIN"
    assert body["can_manage"] is True
    assert body["checks"] is None


def test_endpoints_require_session(client):
    assert client.get("/students").status_code == 401
    assert client.post("/scan", json={"payload": "x"}).status_code == 401
    assert client.get("/scan-logs").status_code == 401
    res = client.get("/students", headers={"Authorization": "Bearer not-a-token"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid or expired session token."


def test_operator_cannot_manage(client, auth_headers):
    staff = _create_user(client, auth_headers, role="STAFF", email="staff@school.com")
    res = client.post(
        "/students",
        json={"name": "X", "class_name": "1", "admin_number": "ADM-X"},
        headers=staff,
    )
    assert res.status_code == 403
    assert client.get("/users", headers=staff).status_code == 403


def test_create_list_and_delete_student(client, auth_headers):
    student = _create_student(client, auth_headers)
    assert student["id"]
    assert student["transport"]["is_paid"] is True

    res = client.get("/students", params={"search": "alice"}, headers=auth_headers)
    assert res.status_code == 200
    assert [s["id"] for s in res.json()] == [student["id"]]

    res = client.get(f"/students/{student['id']}", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["admin_number"] == "ADM-001"

    res = client.delete(f"/students/{student['id']}", headers=auth_headers)
    assert res.status_code == 200
    assert client.get(f"/students/{student['id']}", headers=auth_headers).status_code == 404


def test_duplicate_admin_number_conflict(client, auth_headers):
    _create_student(client, auth_headers)
    res = client.post(
        "/students",
        json={"name": "Other", "class_name": "5B", "admin_number": "adm-001"},
        headers=auth_headers,
    )
    assert res.status_code == 409


def test_invalid_filter_rejected(client, auth_headers):
    res = client.get("/students", params={"filter": "SOMETIMES"}, headers=auth_headers)
    assert res.status_code == 400


def test_payment_toggle_and_summary(client, auth_headers):
    student = _create_student(client, auth_headers, meal_paid=False)

    res = client.put(
        f"/students/{student['id']}/payments/meal",
        json={"is_paid": True},
        headers=auth_headers,
    )
    assert res.status_code == 200
    assert res.json()["meal"]["is_paid"] is True
    assert len(res.json()["meal"]["history"]) == 1

    res = client.put(
        f"/students/{student['id']}/payments/library",
        json={"is_paid": True},
        headers=auth_headers,
    )
    assert res.status_code == 400

    res = client.get("/dashboard/summary", headers=auth_headers)
    assert res.json() == {
        "total": 1,
        "transport_paid": 1,
        "transport_pending": 0,
        "meal_paid": 1,
        "meal_pending": 0,
    }


def test_regenerate_ids(client, auth_headers):
    student = _create_student(client, auth_headers)
    res = client.post(f"/students/{student['id']}/regenerate-id", headers=auth_headers)
    assert res.status_code == 200
    new_id = res.json()["id"]
    assert new_id != student["id"]

    res = client.post("/students/regenerate-ids", headers=auth_headers)
    assert res.json() == {"ok": True, "regenerated": 1}
    assert client.get(f"/students/{new_id}", headers=auth_headers).status_code == 404


def test_csv_import(client, auth_headers):
    _create_student(client, auth_headers)
    csv_text = (
        "Name,Gender,Class,Drop,Admin No,Transport,Meal\n"
        "Bob,Male,5B,Market,ADM-002,yes,no\n"
        "Alice Again,Female,4A,Gate 1,ADM-001,yes,yes\n"
        "short,row\n"
    )
    res = client.post("/students/import", json={"csv_text": csv_text}, headers=auth_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["added"] == 1
    assert [s["admin_number"] for s in body["skipped"]] == ["ADM-001"]

    res = client.post("/students/import", json={"csv_text": "nothing useful"}, headers=auth_headers)
    assert res.status_code == 400


def test_student_qr_png(client, auth_headers):
    student = _create_student(client, auth_headers)
    res = client.get(f"/students/{student['id']}/qr", headers=auth_headers)
    assert res.status_code == 200
    assert res.headers["content-type"] == "image/png"
    assert res.content[:4] == b"\x89PNG"


def test_scan_flow_for_meal_staff(client, auth_headers):
    student = _create_student(client, auth_headers)
    staff = _create_user(client, auth_headers, role="STAFF", email="staff@school.com")

    first = client.post("/scan", json={"payload": student["id"]}, headers=staff)
    assert first.status_code == 200
    assert first.json()["decision_code"] == "APPROVED"
    assert first.json()["cue"] == "approved"

    second = client.post("/scan", json={"payload": student["id"]}, headers=staff)
    assert second.json()["decision_code"] == "REPEATED"
    assert second.json()["message"] == "Repeated: Wait 12h"

    res = client.get("/scan-logs", params={"scanned_by": "staff@school.com"}, headers=auth_headers)
    body = res.json()
    assert body["total"] == 2
    assert [r["decision_code"] for r in body["rows"]] == ["REPEATED", "APPROVED"]

    res = client.get("/scan-logs", params={"search": " blocked "}, headers=auth_headers)
    assert [r["decision_code"] for r in res.json()["rows"]] == ["REPEATED"]
    assert res.json()["total"] == 1
    res = client.get("/scan-logs", params={"search": "ALICE"}, headers=auth_headers)
    assert res.json()["total"] == 2


def test_scan_wrong_bus_and_info_only(client, auth_headers):
    student = _create_student(client, auth_headers, bus_number="B2")
    driver = _create_user(client, auth_headers, role="DRIVER", email="driver@school.com", assigned_bus="B1")

    res = client.post("/scan", json={"payload": student["id"]}, headers=driver)
    assert res.json()["decision_code"] == "WRONG_RESOURCE"
    assert res.json()["expected_resource"] == "B2"

    res = client.post("/scan", json={"payload": student["id"]}, headers=auth_headers)
    assert res.json()["decision_code"] == "INFO_ONLY"
    assert res.json()["student"]["name"] == "Alice"

    res = client.post("/scan", json={"payload": "unknown-id"}, headers=auth_headers)
    assert res.json()["decision_code"] == "NOT_FOUND"

    res = client.get("/scan-logs", params={"decision_code": "wrong_resource"}, headers=auth_headers)
    assert res.json()["total"] == 1
    res = client.get("/scan-logs", params={"decision_code": "BOGUS"}, headers=auth_headers)
    assert res.status_code == 400


def test_scan_in_flight_session_is_rejected(client, auth_headers, monkeypatch):
    student = _create_student(client, auth_headers)
    monkeypatch.setattr(scans, "_IN_FLIGHT", {"station-1"})

    res = client.post(
        "/scan",
        json={"payload": student["id"]},
        headers={**auth_headers, "X-Session-Id": "station-1"},
    )
    assert res.status_code == 409
    assert db.get_scan_logs_total() == 0

    res = client.post(
        "/scan",
        json={"payload": student["id"]},
        headers={**auth_headers, "X-Session-Id": "station-2"},
    )
    assert res.status_code == 200
    assert scans._IN_FLIGHT == {"station-1"}


def test_scan_frame_decodes_qr(client, auth_headers):
    student = _create_student(client, auth_headers)
    staff = _create_user(client, auth_headers, role="STAFF", email="staff@school.com")

    png = render_qr_png(student["id"])
    res = client.post("/scan/frame", files={"file": ("qr.png", png, "image/png")}, headers=staff)
    assert res.status_code == 200
    body = res.json()
    assert body["decoded"] is True
    assert body["decision_code"] == "APPROVED"


def test_scan_frame_without_code_writes_nothing(client, auth_headers):
    ok, buf = cv2.imencode(".png", np.full((120, 120, 3), 255, dtype=np.uint8))
    assert ok
    res = client.post("/scan/frame", files={"file": ("blank.png", buf.tobytes(), "image/png")}, headers=auth_headers)
    assert res.status_code == 200
    assert res.json() == {"decoded": False}

    res = client.post("/scan/frame", files={"file": ("x.png", b"not an image", "image/png")}, headers=auth_headers)
    assert res.status_code == 400

    res = client.post("/scan/frame", files={"file": ("x.txt", b"hello", "text/plain")}, headers=auth_headers)
    assert res.status_code == 400
    assert db.get_scan_logs_total() == 0


def test_users_crud(client, auth_headers):
    _create_user(client, auth_headers, role="SUPERVISOR", email="sup@school.com")
    res = client.post(
        "/users",
        json={"name": "Dup", "email": "SUP@school.com", "password": "x", "role": "STAFF"},
        headers=auth_headers,
    )
    assert res.status_code == 409

    users = client.get("/users", headers=auth_headers).json()
    sup = next(u for u in users if u["email"] == "sup@school.com")
    admin = next(u for u in users if u["role"] == "ADMIN")

    assert client.delete(f"/users/{admin['uid']}", headers=auth_headers).status_code == 400
    assert client.delete(f"/users/{sup['uid']}", headers=auth_headers).status_code == 200
    assert client.delete(f"/users/{sup['uid']}", headers=auth_headers).status_code == 404


def test_term_settings_and_reset_check(client, auth_headers):
    student = _create_student(client, auth_headers)

    res = client.get("/settings", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["term_reset_processed"] is False

    res = client.put("/settings/term", json={"term_end_date": "2000-01-31"}, headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["term_end_date"].startswith("2000-01-31T23:59:59.999")

    res = client.post("/admin/term/check", headers=auth_headers)
    assert res.json() == {"ok": True, "applied": True, "students_changed": 1}

    stored = client.get(f"/students/{student['id']}", headers=auth_headers).json()
    assert stored["transport"]["is_paid"] is False
    assert len(stored["transport"]["history"]) == 1

    res = client.post("/admin/term/check", headers=auth_headers)
    assert res.json()["applied"] is False

    res = client.put("/settings/term", json={"term_end_date": "31/01/2000"}, headers=auth_headers)
    assert res.status_code == 400
