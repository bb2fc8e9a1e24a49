from datetime import datetime, timedelta

import pytest

from models.models import drop_db

VEHICLE = {
    "name": "Ahmad",
    "vehicleNumber": "KBL-1234",
    "phone": "0700000000",
    "registerDate": "2024-03-01",
    "planType": "monthly",
    "price": 100,
}


def register(client, **overrides):
    response = client.post("/api/vehicles", json={**VEHICLE, **overrides})
    assert response.status_code == 201, response.get_json()
    return response.get_json()["id"]


def test_health(client):
    assert client.get("/health").get_json()["status"] == "ok"


def test_requests_without_role_are_rejected(client):
    response = client.get("/api/vehicles")

    assert response.status_code == 401
    assert response.get_json() == {"success": False, "message": "Authentication required."}


def test_admin_cannot_use_super_admin_routes(admin_client):
    vehicle_id = register(admin_client)

    assert admin_client.get("/api/dashboard").status_code == 403
    assert admin_client.delete(f"/api/vehicles/{vehicle_id}").status_code == 403
    assert admin_client.patch(f"/api/vehicles/{vehicle_id}", json={"price": 5}).status_code == 403


def test_register_vehicle(admin_client):
    response = admin_client.post("/api/vehicles", json=VEHICLE)
    body = response.get_json()

    assert response.status_code == 201
    assert body["success"] is True
    assert body["expiresAt"] == "2024-04-01T00:00:00"

    detail = admin_client.get(f"/api/vehicles/{body['id']}").get_json()["vehicle"]
    assert detail["createdBy"] == "admin@parking.dev"
    assert detail["expired"] is False
    assert detail["payment"]["status"] == "unpaid"
    assert detail["renewals"] == []


@pytest.mark.parametrize(
    "overrides",
    [{"name": ""}, {"price": -1}, {"registerDate": "yesterday"}, {"planType": "yearly"}],
)
def test_register_vehicle_validation(admin_client, overrides):
    response = admin_client.post("/api/vehicles", json={**VEHICLE, **overrides})

    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_malformed_body_is_rejected(admin_client):
    response = admin_client.post("/api/vehicles", data="not json", content_type="text/plain")

    assert response.status_code == 400
    assert response.get_json()["message"] == "Invalid request body."


def test_vehicle_list_search_filter_and_pagination(admin_client):
    first = register(admin_client, name="Ahmad", vehicleNumber="KBL-1")
    second = register(admin_client, name="Bilal", vehicleNumber="KBL-2")
    register(admin_client, name="Bilal", vehicleNumber="HRT-3")
    admin_client.post(f"/api/vehicles/{first}/payment", json={"amount": 100})
    admin_client.post(f"/api/vehicles/{second}/payment", json={"amount": 40})

    paid = admin_client.get("/api/vehicles?status=paid").get_json()["vehicles"]
    partial = admin_client.get("/api/vehicles?status=partial").get_json()["vehicles"]
    unpaid = admin_client.get("/api/vehicles?status=unpaid").get_json()["vehicles"]
    assert [v["id"] for v in paid] == [first]
    assert [v["id"] for v in partial] == [second]
    assert [v["vehicleNumber"] for v in unpaid] == ["HRT-3"]

    bilal = admin_client.get("/api/vehicles?q=bilal").get_json()["vehicles"]
    assert {v["vehicleNumber"] for v in bilal} == {"KBL-2", "HRT-3"}

    page = admin_client.get("/api/vehicles?per_page=2&page=2").get_json()
    assert len(page["vehicles"]) == 1
    assert page["pagination"] == {"page": 2, "perPage": 2, "total": 3, "totalPages": 2}


def test_unknown_payment_filter(admin_client):
    response = admin_client.get("/api/vehicles?status=overdue")

    assert response.status_code == 400


def test_vehicle_payments(admin_client):
    vehicle_id = register(admin_client)

    response = admin_client.post(f"/api/vehicles/{vehicle_id}/payment", json={"amount": 40})
    assert response.get_json() == {"success": True, "paidAmount": 40, "paid": False}

    response = admin_client.post(f"/api/vehicles/{vehicle_id}/payment", json={"amount": 60})
    assert response.get_json() == {"success": True, "paidAmount": 100, "paid": True}

    response = admin_client.put(f"/api/vehicles/{vehicle_id}/payment", json={"amount": 70})
    assert response.get_json() == {"success": True, "paidAmount": 70, "paid": False}

    response = admin_client.post(f"/api/vehicles/{vehicle_id}/payment", json={"amount": "lots"})
    assert response.status_code == 400

    response = admin_client.post("/api/vehicles/999/payment", json={"amount": 10})
    assert response.status_code == 404
    assert response.get_json()["message"] == "Vehicle not found."


def test_plain_renewal_requires_expiry(admin_client, clock):
    vehicle_id = register(admin_client)

    response = admin_client.post(f"/api/vehicles/{vehicle_id}/renew")
    assert response.status_code == 409
    assert response.get_json()["message"] == "Vehicle has not expired yet."

    clock.now = datetime(2024, 4, 2)
    response = admin_client.post(f"/api/vehicles/{vehicle_id}/renew")
    body = response.get_json()
    assert response.status_code == 200
    assert body["registerDate"] == "2024-04-01T00:00:00"
    assert body["expiresAt"] == "2024-05-01T00:00:00"


def test_renewal_with_payment(admin_client):
    vehicle_id = register(admin_client)
    admin_client.post(f"/api/vehicles/{vehicle_id}/payment", json={"amount": 100})

    response = admin_client.post(f"/api/vehicles/{vehicle_id}/renew-payment", json={"amount": 100})
    body = response.get_json()

    assert body["success"] is True
    assert body["registerDate"] == "2024-04-01T00:00:00"
    assert body["expiresAt"] == "2024-05-01T00:00:00"
    assert body["paidAmount"] == 100
    assert body["paid"] is True

    detail = admin_client.get(f"/api/vehicles/{vehicle_id}").get_json()["vehicle"]
    assert detail["renewedBy"] == "admin@parking.dev"
    assert detail["renewals"][0]["paymentAmount"] == 100


def test_super_admin_edit_recomputes_expiry(super_client):
    vehicle_id = register(super_client)

    response = super_client.patch(f"/api/vehicles/{vehicle_id}", json={"planType": "weekly"})
    vehicle = response.get_json()["vehicle"]

    assert vehicle["planType"] == "weekly"
    assert vehicle["expiresAt"] == "2024-03-08T00:00:00"
    assert vehicle["expired"] is True

    response = super_client.patch(f"/api/vehicles/{vehicle_id}", json={})
    assert response.status_code == 400


def test_hourly_flow(admin_client, clock):
    response = admin_client.post("/api/active-hourly", json={"vehicleNumber": "kbl-9", "hourlyRate": 5})
    active_id = response.get_json()["id"]
    assert response.status_code == 201

    duplicate = admin_client.post("/api/active-hourly", json={"vehicleNumber": "KBL-9"})
    assert duplicate.status_code == 409

    clock.now += timedelta(minutes=75)
    [running] = admin_client.get("/api/active-hourly").get_json()["vehicles"]
    assert running["vehicleNumber"] == "KBL-9"
    assert running["current"]["billableHours"] == 2
    assert running["current"]["totalPrice"] == 10

    response = admin_client.post(f"/api/active-hourly/{active_id}/stop")
    settled = response.get_json()["session"]
    assert response.status_code == 201
    assert settled["totalPrice"] == 10
    assert settled["bufferApplied"] is True
    assert settled["payment"]["status"] == "unpaid"
    assert admin_client.get("/api/active-hourly").get_json()["vehicles"] == []

    admin_client.post(f"/api/hourly/{settled['id']}/payment", json={"amount": 4})
    admin_client.post(f"/api/hourly/{settled['id']}/payment", json={"amount": -1})
    assert admin_client.get("/api/hourly?total=true").get_json()["total"] == 3

    entries = admin_client.get("/api/hourly?status=partial").get_json()["entries"]
    assert [entry["id"] for entry in entries] == [settled["id"]]


def test_discard_active_vehicle(admin_client):
    active_id = admin_client.post("/api/active-hourly", json={"vehicleNumber": "KBL-9"}).get_json()["id"]

    assert admin_client.delete("/api/active-hourly").status_code == 400
    assert admin_client.delete(f"/api/active-hourly?id={active_id}").status_code == 200
    assert admin_client.delete(f"/api/active-hourly?id={active_id}").status_code == 404


def test_night_sessions(super_client):
    response = super_client.post("/api/night", json={"vehicleNumber": "MZR-1"})
    night_id = response.get_json()["id"]

    [entry] = super_client.get("/api/night").get_json()["entries"]
    assert entry["price"] == 30
    assert entry["payment"]["status"] == "unpaid"

    response = super_client.post(f"/api/night/{night_id}/payment", json={"amount": 30})
    assert response.get_json()["paid"] is True

    response = super_client.patch(f"/api/night/{night_id}", json={"price": 45})
    assert response.get_json()["session"]["payment"]["status"] == "partial"

    assert super_client.delete(f"/api/night/{night_id}").status_code == 200
    assert super_client.get("/api/night").get_json()["entries"] == []
    assert super_client.delete(f"/api/night/{night_id}").status_code == 404


def test_dashboard(super_client, clock):
    first = register(super_client, registerDate="2024-03-02", price=100)
    register(super_client, registerDate="2024-03-05", planType="weekly", price=30)
    register(super_client, registerDate="2024-02-20", price=100)
    super_client.post(f"/api/vehicles/{first}/payment", json={"amount": 100})
    super_client.post("/api/night", json={"vehicleNumber": "MZR-1", "price": 25})

    stats = super_client.get("/api/dashboard").get_json()["stats"]

    assert stats["monthlyPlans"] == {
        "monthly": {"amount": 100, "count": 1},
        "weekly": {"amount": 30, "count": 1},
    }
    assert stats["totalVehicles"] == 3
    assert stats["expiredVehicles"] == 1
    assert stats["nightSessions"] == 1
    assert stats["revenue"] == {"vehicles": 100, "hourly": 0, "night": 0, "total": 100}


def test_unknown_route_returns_json(admin_client):
    response = admin_client.get("/api/parking-lots")

    assert response.status_code == 404
    assert response.get_json()["success"] is False


def test_database_failure_returns_json(admin_client):
    drop_db()

    response = admin_client.get("/api/vehicles")
    assert response.status_code == 500
    assert response.get_json() == {"success": False, "message": "Failed to load records."}

    response = admin_client.post("/api/active-hourly", json={"vehicleNumber": "KBL-9"})
    assert response.status_code == 500
    assert response.get_json() == {"success": False, "message": "Failed to load active vehicles."}

    response = admin_client.get("/api/active-hourly")
    assert response.status_code == 500
    assert response.get_json()["success"] is False
