import runpy
from pathlib import Path

import pytest
import uvicorn
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from ai import CONSULT_FALLBACK, AIGateway
from config import Settings
from conftest import fake_openai, signup
from errors import StoreUnavailable
from main import create_app
from mongo import APPOINTMENTS, MEDICAL_RECORDS, MEDICINES, USERS, cart_items_path

PARACETAMOL = {"name": "Paracetamol", "price": 12.0, "image": "/img/para.jpg"}
APPOINTMENT = {"doctor_id": None, "date": "2025-06-20", "time": "10:00", "reason": "checkup"}


def book(client, patient_headers, doctor_uid):
    resp = client.post("/appointments", json={**APPOINTMENT, "doctor_id": doctor_uid}, headers=patient_headers)
    assert resp.status_code == 200, resp.text
    return resp.json()["appointment"]


def test_root(client):
    assert client.get("/").json() == {"message": "FelanoCare portal API is running"}


def test_signup_login_logout(client):
    uid, headers = signup(client, "jane@example.com", name="Jane")
    me = client.get("/me", headers=headers).json()
    assert me["userType"] == "patient"
    assert me["id"] == uid

    login = client.post("/auth/login", json={"email": "jane@example.com", "password": "secret123"})
    assert login.status_code == 200
    assert login.json()["profile"]["name"] == "Jane"

    assert client.post("/auth/logout", headers=headers).json() == {"ok": True}
    resp = client.get("/me", headers=headers)
    assert resp.status_code == 401
    assert resp.json()["status"] == "failed"


def test_auth_errors(client):
    assert client.get("/cart").status_code == 401
    assert client.get("/cart", headers={"Authorization": "Bearer nope"}).status_code == 401
    resp = client.post("/auth/login", json={"email": "ghost@example.com", "password": "secret123"})
    assert resp.status_code == 401
    assert resp.json() == {"message": "Invalid credentials", "status": "failed"}


def test_doctor_signup_requires_license(client):
    resp = client.post("/auth/signup", json={"name": "Dr. X", "email": "x@example.com",
                                             "password": "secret123", "userType": "doctor"})
    assert resp.status_code == 422
    assert resp.json()["status"] == "failed"
    # nothing was registered, so the same email can sign up properly
    signup(client, "x@example.com", user_type="doctor")


def test_profile_update_and_directory(client, doctor, patient):
    doctor_uid, doctor_headers = doctor
    _, patient_headers = patient
    updated = client.put("/me", json={"specialization": "psychology"}, headers=doctor_headers).json()
    assert updated["specialization"] == "psychology"

    assert [d["id"] for d in client.get("/doctors", params={"specialization": "psychology"}).json()] == [doctor_uid]
    assert client.get("/patients", headers=patient_headers).status_code == 403
    assert [p["name"] for p in client.get("/patients", headers=doctor_headers).json()] == ["Jane"]


def test_cart_flow(client, store, patient):
    _, headers = patient
    store.set(MEDICINES, "med-para", PARACETAMOL)
    medicine = client.get("/medicines/med-para").json()
    assert client.get("/medicines/unknown").status_code == 404

    added = client.post("/cart/items", json={"id": medicine["id"]}, headers=headers).json()["item"]
    assert added == {"id": "med-para", "name": "Paracetamol", "price": 12.0, "image": "/img/para.jpg", "quantity": 1}
    client.post("/cart/items", json={"id": "med-para"}, headers=headers)
    cart = client.get("/cart", headers=headers).json()
    assert cart["count"] == 2
    assert cart["total"] == 24.0

    assert client.patch("/cart/items/med-para", json={"delta": -5}, headers=headers).json()["quantity"] == 2
    assert client.patch("/cart/items/med-para", json={"delta": -1}, headers=headers).json()["quantity"] == 1
    assert client.patch("/cart/items/other", json={"delta": 1}, headers=headers).status_code == 404

    for _ in range(2):
        assert client.delete("/cart/items/med-para", headers=headers).status_code == 200
    assert client.get("/cart", headers=headers).json() == {"items": [], "count": 0, "total": 0}


def test_appointment_flow(client, doctor, patient):
    doctor_uid, doctor_headers = doctor
    _, patient_headers = patient
    appointment = book(client, patient_headers, doctor_uid)
    assert appointment["status"] == "pending"
    assert appointment["doctorName"] == "Dr. House"
    assert appointment["patientName"] == "Jane"

    path = f"/appointments/{appointment['id']}/status"
    assert client.patch(path, json={"status": "confirmed"}, headers=patient_headers).status_code == 403
    resp = client.patch(path, json={"status": "completed"}, headers=doctor_headers)
    assert resp.status_code == 409
    assert resp.json()["status"] == "failed"

    assert client.patch(path, json={"status": "confirmed"}, headers=doctor_headers).json()["status"] == "confirmed"
    assert client.patch(path, json={"status": "completed"}, headers=doctor_headers).json()["status"] == "completed"
    assert client.patch(path, json={"status": "cancelled"}, headers=doctor_headers).status_code == 409

    assert [a["status"] for a in client.get("/appointments", headers=patient_headers).json()] == ["completed"]
    assert len(client.get("/appointments", headers=doctor_headers).json()) == 1
    assert client.get(f"/appointments/{appointment['id']}", headers=patient_headers).status_code == 200


def test_appointment_booking_rules(client, doctor, patient):
    doctor_uid, doctor_headers = doctor
    _, patient_headers = patient
    assert client.post("/appointments", json={**APPOINTMENT, "doctor_id": doctor_uid},
                       headers=doctor_headers).status_code == 403
    assert client.post("/appointments", json={**APPOINTMENT, "doctor_id": "ghost"},
                       headers=patient_headers).status_code == 404
    assert client.post("/appointments", json={**APPOINTMENT, "doctor_id": doctor_uid, "reason": " "},
                       headers=patient_headers).status_code == 422
    assert "10:00" in client.get("/appointments/available-times").json()["times"]


def test_other_doctor_cannot_touch_appointment(client, doctor, patient):
    doctor_uid, _ = doctor
    _, patient_headers = patient
    _, other_headers = signup(client, "wilson@example.com", user_type="doctor")
    appointment = book(client, patient_headers, doctor_uid)
    resp = client.patch(f"/appointments/{appointment['id']}/status", json={"status": "confirmed"},
                        headers=other_headers)
    assert resp.status_code == 403
    assert client.get(f"/appointments/{appointment['id']}", headers=other_headers).status_code == 403


def test_prescription_flow(client, doctor, patient):
    _, doctor_headers = doctor
    patient_uid, patient_headers = patient
    body = {"patient_name": "Jane", "patient_id": patient_uid, "instructions": "take after meals",
            "medicines": [{"name": "Paracetamol", "price": 12.0}]}
    assert client.post("/prescriptions", json=body, headers=patient_headers).status_code == 403
    resp = client.post("/prescriptions", json={**body, "medicines": []}, headers=doctor_headers)
    assert resp.status_code == 422
    assert resp.json() == {"message": "Please add at least one medicine", "status": "failed"}

    prescription = client.post("/prescriptions", json=body, headers=doctor_headers).json()["prescription"]
    assert prescription["total"] == 12.0
    assert prescription["doctorName"] == "Dr. House"

    path = f"/prescriptions/{prescription['id']}/status"
    assert client.patch(path, json={"status": "fulfilled"}, headers=doctor_headers).json()["status"] == "fulfilled"
    assert client.patch(path, json={"status": "active"}, headers=doctor_headers).status_code == 409

    mine = client.get("/prescriptions", headers=patient_headers).json()
    assert [p["status"] for p in mine] == ["fulfilled"]
    assert client.get("/prescriptions", params={"status": "active"}, headers=doctor_headers).json() == []
    assert len(client.get("/prescriptions", params={"q": "para"}, headers=doctor_headers).json()) == 1


def test_ai_routes(client, patient, ai_client):
    _, headers = patient
    reply = client.post("/ai/consult", json={"query": "I have a cough"}, headers=headers).json()
    assert reply["fallback"] is False
    assert reply["text"] == "**Rest** and fluids."

    plan = client.post("/ai/meal-plan", json={"age": 30, "weight": 60, "height": 165}, headers=headers).json()
    saved = client.post("/ai/meal-plans", json={"content": plan["content"], "userData": plan["userData"]},
                        headers=headers).json()
    assert [p["id"] for p in client.get("/ai/meal-plans", headers=headers).json()] == [saved["id"]]


def test_ai_outage_is_not_an_error(store, identity):
    app = create_app(Settings(mcp_enabled=False), store=store, identity=identity,
                     ai=AIGateway(client=fake_openai(TimeoutError("slow"))))
    client = TestClient(app)
    _, headers = signup(client, "jane@example.com")
    resp = client.post("/ai/consult", json={"query": "Hello"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["text"] == CONSULT_FALLBACK


def test_cart_live_view(client, store, patient):
    _, headers = patient
    token = headers["Authorization"].split(" ", 1)[1]
    store.set(MEDICINES, "med-para", PARACETAMOL)
    item = {"id": "med-para"}
    with client.websocket_connect(f"/ws/cart?token={token}") as ws:
        assert ws.receive_json() == {"view": "cart", "items": []}
        client.post("/cart/items", json=item, headers=headers)
        update = ws.receive_json()
        assert [i["quantity"] for i in update["items"]] == [1]


def test_live_view_requires_valid_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/cart?token=bogus") as ws:
            ws.receive_json()


def failing(method, path_to_fail):
    def call(path, *args, **kwargs):
        if path == path_to_fail:
            raise StoreUnavailable(f"Document store unavailable ({method.__name__} {path})")
        return method(path, *args, **kwargs)
    return call


def test_signup_is_undone_when_profile_cannot_be_saved(client, store, monkeypatch):
    body = {"name": "Jane", "email": "jane@example.com", "password": "secret123", "userType": "patient"}
    monkeypatch.setattr(store, "set", failing(store.set, USERS))
    resp = client.post("/auth/signup", json=body)
    assert resp.status_code == 503
    assert resp.json()["status"] == "failed"
    assert client.post("/auth/login", json={"email": body["email"], "password": body["password"]}).status_code == 401

    monkeypatch.undo()
    uid, headers = signup(client, "jane@example.com", name="Jane")
    me = client.get("/me", headers=headers).json()
    assert (me["id"], me["userType"]) == (uid, "patient")


def test_cart_uses_catalog_record(client, store, patient):
    patient_uid, headers = patient
    store.set(MEDICINES, "med-para", PARACETAMOL)
    resp = client.post("/cart/items", json={"id": "med-para", "name": "Free pills", "price": 0.0}, headers=headers)
    assert resp.json()["message"] == "Paracetamol added to cart"

    resp = client.post("/cart/items", json={"id": "no-such-med", "price": 0.0}, headers=headers)
    assert resp.status_code == 404
    assert resp.json()["status"] == "failed"

    cart = client.get("/cart", headers=headers).json()
    assert cart["count"] == 1
    assert cart["total"] == 12.0
    assert store.get(cart_items_path(patient_uid), "no-such-med") is None


def test_store_outage_on_cart_leaves_cart_unchanged(client, store, patient, monkeypatch):
    patient_uid, headers = patient
    store.set(MEDICINES, "med-para", PARACETAMOL)
    client.post("/cart/items", json={"id": "med-para"}, headers=headers)

    monkeypatch.setattr(store, "update", failing(store.update, cart_items_path(patient_uid)))
    resp = client.post("/cart/items", json={"id": "med-para"}, headers=headers)
    assert resp.status_code == 503
    assert resp.json() == {"message": f"Document store unavailable (update {cart_items_path(patient_uid)})",
                           "status": "failed"}
    assert store.get(cart_items_path(patient_uid), "med-para")["quantity"] == 1


def test_store_outage_on_status_change_keeps_status(client, store, doctor, patient, monkeypatch):
    doctor_uid, doctor_headers = doctor
    _, patient_headers = patient
    appointment = book(client, patient_headers, doctor_uid)

    monkeypatch.setattr(store, "update", failing(store.update, APPOINTMENTS))
    resp = client.patch(f"/appointments/{appointment['id']}/status", json={"status": "confirmed"},
                        headers=doctor_headers)
    assert resp.status_code == 503
    assert set(resp.json()) == {"message", "status"}
    assert resp.json()["status"] == "failed"
    assert store.get(APPOINTMENTS, appointment["id"])["status"] == "pending"


def test_malformed_appointment_date_does_not_break_listing(client, store, doctor, patient):
    doctor_uid, doctor_headers = doctor
    _, patient_headers = patient
    book(client, patient_headers, doctor_uid)
    store.set(APPOINTMENTS, "apt-legacy", {"doctorId": doctor_uid, "date": "20/06/2025", "status": "pending"})
    store.set(APPOINTMENTS, "apt-undated", {"doctorId": doctor_uid, "status": "pending"})

    resp = client.get("/appointments", headers=doctor_headers)
    assert resp.status_code == 200
    assert len(resp.json()) == 3
    past = client.get("/appointments", params={"period": "past"}, headers=doctor_headers).json()
    assert [a["date"] for a in past] == ["2025-06-20"]


def test_patient_directory_and_records(client, store, doctor, patient):
    _, doctor_headers = doctor
    patient_uid, patient_headers = patient
    signup(client, "bob@example.com", name="Bob")
    client.put("/me", json={"healthStatus": "critical"}, headers=patient_headers)

    assert [p["name"] for p in client.get("/patients", params={"q": "jane"}, headers=doctor_headers).json()] == ["Jane"]
    critical = client.get("/patients", params={"health_status": "critical"}, headers=doctor_headers).json()
    assert [p["id"] for p in critical] == [patient_uid]
    assert client.get("/patients", params={"health_status": "odd"}, headers=doctor_headers).status_code == 422

    store.set(MEDICAL_RECORDS, "r1", {"patientId": patient_uid, "type": "vitals", "date": "2025-06-01",
                                      "data": {"bloodPressure": "120/80"}})
    store.set(MEDICAL_RECORDS, "r2", {"patientId": patient_uid, "type": "prescription", "date": "2025-05-01",
                                      "medications": [{"name": "Ibuprofen"}]})
    summary = client.get(f"/patients/{patient_uid}/records", headers=doctor_headers).json()
    assert summary["patient"]["name"] == "Jane"
    assert [r["id"] for r in summary["records"]] == ["r1", "r2"]
    assert summary["latestVitals"] == {"bloodPressure": "120/80"}
    assert summary["currentMedications"] == [{"name": "Ibuprofen"}]

    assert client.get(f"/patients/{patient_uid}/records", headers=patient_headers).status_code == 403
    assert client.get("/patients/ghost/records", headers=doctor_headers).status_code == 404


def test_records_live_view_is_for_doctors(client, store, doctor, patient):
    _, doctor_headers = doctor
    patient_uid, patient_headers = patient
    doctor_token = doctor_headers["Authorization"].split(" ", 1)[1]
    patient_token = patient_headers["Authorization"].split(" ", 1)[1]

    with client.websocket_connect(f"/ws/records?token={doctor_token}&patient_id={patient_uid}") as ws:
        assert ws.receive_json() == {"view": "records", "items": []}
        store.set(MEDICAL_RECORDS, "r1", {"patientId": patient_uid, "type": "vitals", "data": {}})
        assert [r["id"] for r in ws.receive_json()["items"]] == ["r1"]

    with client.websocket_connect(f"/ws/records?token={patient_token}&patient_id={patient_uid}") as ws:
        assert ws.receive_json()["status"] == "failed"


def test_running_main_serves_app_with_uvicorn(monkeypatch):
    served = {}
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: served.update(app=app, **kwargs))
    runpy.run_path(str(Path(__file__).parent.parent / "main.py"), run_name="__main__")
    assert served["port"] == 8000
    assert served["app"].title == "FelanoCare Portal API"
