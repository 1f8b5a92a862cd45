import json
import sqlite3
import time

from sqlalchemy.orm import sessionmaker

from booking_core.core.config import settings
from booking_core.database import create_db_engine, get_db
from booking_core.utils.signatures import SIGNATURE_HEADER, sign_payload

BOOKINGS = "/api/v1/bookings"
WEBHOOK = "/api/v1/webhooks/payments"


def _payload(catalog, start="2030-01-07T10:00:00", **extra):
    data = {
        "provider_id": catalog.internal,
        "service_id": catalog.trim,
        "start_time": start,
        "client_id": catalog.client,
        "addon_ids": [catalog.towel],
    }
    data.update(extra)
    return data


def test_create_and_read_booking(client, catalog):
    res = client.post(f"{BOOKINGS}/", json=_payload(catalog))
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["status"] == "confirmed"
    assert body["kind"] == "internal"
    assert body["price"] == "32.25"
    assert body["end_time"].startswith("2030-01-07T10:45")
    assert [line["addon_id"] for line in body["addon_lines"]] == [catalog.towel]

    read = client.get(f"{BOOKINGS}/{body['id']}")
    assert read.status_code == 200
    assert read.json()["id"] == body["id"]


def test_offset_start_time_is_stored_in_utc(client, catalog):
    res = client.post(f"{BOOKINGS}/", json=_payload(catalog, start="2030-01-07T12:00:00+02:00"))
    assert res.status_code == 201, res.text
    assert res.json()["start_time"].startswith("2030-01-07T10:00")


def test_overlap_is_409(client, catalog):
    assert client.post(f"{BOOKINGS}/", json=_payload(catalog)).status_code == 201
    res = client.post(f"{BOOKINGS}/", json=_payload(catalog, start="2030-01-07T10:30:00"))
    assert res.status_code == 409
    assert res.json()["detail"]["message"]


def test_lock_wait_expiry_is_503(client, engine, catalog, monkeypatch):
    from booking_core.main import app

    monkeypatch.setattr(settings, "DB_LOCK_TIMEOUT_MS", 200)
    fast = create_db_engine(str(engine.url))
    FastSession = sessionmaker(bind=fast, autoflush=False, autocommit=False, expire_on_commit=False)

    def override_db():
        session = FastSession()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    holder = sqlite3.connect(engine.url.database, isolation_level=None)
    holder.execute("BEGIN IMMEDIATE")
    try:
        res = client.post(f"{BOOKINGS}/", json=_payload(catalog))
    finally:
        holder.execute("ROLLBACK")
        holder.close()
    assert res.status_code == 503
    assert res.json()["detail"]["message"]

    res = client.post(f"{BOOKINGS}/", json=_payload(catalog))
    assert res.status_code == 201, res.text
    fast.dispose()


def test_unknown_provider_is_404(client, catalog):
    res = client.post(f"{BOOKINGS}/", json=_payload(catalog, provider_id=9999))
    assert res.status_code == 404
    assert "provider_id" in res.json()["detail"]["field_errors"]


def test_fee_charging_provider_is_400(client, catalog):
    res = client.post(
        f"{BOOKINGS}/",
        json=_payload(catalog, provider_id=catalog.standard, service_id=catalog.haircut, addon_ids=[]),
    )
    assert res.status_code == 400


def test_missing_identity_is_400(client, catalog):
    payload = _payload(catalog)
    del payload["client_id"]
    res = client.post(f"{BOOKINGS}/", json=payload)
    assert res.status_code == 400
    assert res.json()["detail"]["message"] == "Invalid request"


def test_missing_booking_is_404(client):
    res = client.get(f"{BOOKINGS}/424242")
    assert res.status_code == 404
    assert res.json()["detail"]["field_errors"] == {"booking_id": "not found"}


def test_manual_booking(client, catalog):
    payload = _payload(
        catalog,
        provider_id=catalog.standard,
        service_id=catalog.haircut,
        addon_ids=[],
        price="45.00",
        platform_fee="2.00",
        provider_payout="40.00",
    )
    res = client.post(f"{BOOKINGS}/manual", json=payload)
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["kind"] == "manual"
    assert body["payment_status"] == "manual"
    assert body["price"] == "45.00"


def test_manual_booking_rejects_negative_amounts(client, catalog):
    payload = _payload(catalog, price="-1.00", platform_fee="0", provider_payout="0")
    assert client.post(f"{BOOKINGS}/manual", json=payload).status_code == 400


def test_list_provider_bookings(client, catalog):
    first = client.post(f"{BOOKINGS}/", json=_payload(catalog, start="2030-01-07T08:00:00")).json()
    second = client.post(f"{BOOKINGS}/", json=_payload(catalog, start="2030-01-07T12:00:00")).json()

    res = client.get(f"{BOOKINGS}/provider/{catalog.internal}")
    assert [b["id"] for b in res.json()] == [first["id"], second["id"]]

    res = client.get(
        f"{BOOKINGS}/provider/{catalog.internal}",
        params={"window_start": "2030-01-07T11:00:00", "window_end": "2030-01-07T13:00:00"},
    )
    assert [b["id"] for b in res.json()] == [second["id"]]


def test_status_changes(client, catalog):
    booking_id = client.post(f"{BOOKINGS}/", json=_payload(catalog)).json()["id"]

    res = client.patch(f"{BOOKINGS}/{booking_id}/status", json={"status": "completed"})
    assert res.status_code == 200
    assert res.json()["status"] == "completed"

    res = client.patch(f"{BOOKINGS}/{booking_id}/status", json={"status": "cancelled"})
    assert res.status_code == 409


def test_future_booking_cannot_be_marked_missed(client, catalog):
    booking_id = client.post(f"{BOOKINGS}/", json=_payload(catalog)).json()["id"]
    res = client.patch(f"{BOOKINGS}/{booking_id}/status", json={"status": "missed"})
    assert res.status_code == 409
    assert client.get(f"{BOOKINGS}/{booking_id}").json()["status"] == "confirmed"


def test_refund_status_is_not_accepted_from_clients(client, catalog):
    booking_id = client.post(f"{BOOKINGS}/", json=_payload(catalog)).json()["id"]
    res = client.patch(f"{BOOKINGS}/{booking_id}/status", json={"status": "refunded"})
    assert res.status_code == 400


def test_addon_line_endpoints(client, catalog):
    body = client.post(f"{BOOKINGS}/", json=_payload(catalog)).json()
    booking_id = body["id"]

    res = client.post(f"{BOOKINGS}/{booking_id}/addons", json={"addon_id": catalog.oil})
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["addon_total"] == "9.75"
    oil_line = next(line for line in body["addon_lines"] if line["addon_id"] == catalog.oil)

    res = client.patch(f"{BOOKINGS}/{booking_id}/addons/{oil_line['id']}", json={"price": "1.00"})
    assert res.status_code == 200
    assert res.json()["addon_total"] == "8.25"

    res = client.delete(f"{BOOKINGS}/{booking_id}/addons/{oil_line['id']}")
    assert res.status_code == 200
    assert res.json()["addon_total"] == "7.25"
    assert res.json()["price"] == "32.25"

    res = client.post(f"{BOOKINGS}/{booking_id}/addons", json={"addon_id": catalog.beard})
    assert res.status_code == 404


def _signed(event):
    raw = json.dumps(event).encode("utf-8")
    return raw, {SIGNATURE_HEADER: sign_payload("whsec_test_secret", raw), "Content-Type": "application/json"}


def test_webhook_creates_booking_then_acknowledges_duplicate(client, catalog):
    event = {
        "id": "evt_api_1",
        "type": "payment_intent.succeeded",
        "created": int(time.time()),
        "data": {
            "id": "pi_api_1",
            "amount": 338,
            "currency": "usd",
            "metadata": {
                "providerId": str(catalog.standard),
                "serviceId": str(catalog.haircut),
                "date": "2030-01-07T09:00:00Z",
                "addonIds": str(catalog.beard),
                "clientId": str(catalog.client),
            },
        },
    }
    raw, headers = _signed(event)

    res = client.post(WEBHOOK, content=raw, headers=headers)
    assert res.status_code == 200, res.text
    first = res.json()
    assert first["received"] is True
    assert first["outcome"] == "created"

    res = client.post(WEBHOOK, content=raw, headers=headers)
    assert res.status_code == 200
    assert res.json()["outcome"] == "noop"
    assert res.json()["booking_id"] == first["booking_id"]

    booking = client.get(f"{BOOKINGS}/{first['booking_id']}").json()
    assert booking["status"] == "confirmed"
    assert booking["payment_status"] == "succeeded"
    assert booking["transaction_id"] == "pi_api_1"


def test_webhook_rejects_bad_signature(client):
    raw = json.dumps({"id": "evt_x", "type": "settlement.succeeded", "created": int(time.time()), "data": {}})
    res = client.post(WEBHOOK, content=raw, headers={SIGNATURE_HEADER: "t=1,v1=deadbeef"})
    assert res.status_code == 400

    res = client.post(WEBHOOK, content=raw)
    assert res.status_code == 400


def test_webhook_ignores_unknown_types(client):
    raw, headers = _signed({"id": "evt_y", "type": "invoice.paid", "created": int(time.time()), "data": {}})
    res = client.post(WEBHOOK, content=raw, headers=headers)
    assert res.status_code == 200
    assert res.json()["outcome"] == "ignored"


def test_healthz(client):
    res = client.get("/healthz")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"
