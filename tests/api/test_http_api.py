"""
HTTP surface: routing, principal headers, error mapping and device telemetry.

The in-memory database shares one connection between the test session and
every request's session_scope, so setup data is committed before the first
request.
"""

import hashlib
import hmac
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from solar_config import DeviceRegistration, TelemetryConfig, get_active_config
from solar_kernel.models.meter_reading import MeterReading
from solar_services.http_api import create_app

DEVICE_TOKEN = "tok-alpha"
DEVICE_SECRET = "alpha-signing-secret"


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def notify_payment_approved(self, payment, invoice):
        self.calls.append((payment, invoice))


def auth(principal):
    headers = {
        "X-Principal-Id": str(principal.id),
        "X-Principal-Role": principal.role.value,
    }
    if principal.organization_id is not None:
        headers["X-Principal-Organization"] = str(principal.organization_id)
    return headers


def sign(body: bytes, secret: str = DEVICE_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def committed_application(session, application):
    session.commit()
    return application


@pytest.fixture
def client(engine, deterministic_clock, notifier, committed_application):
    base = get_active_config()
    config = replace(
        base,
        telemetry=TelemetryConfig(
            devices=(
                DeviceRegistration(
                    token=DEVICE_TOKEN,
                    device_id="DEV-ALPHA",
                    application_id=committed_application.id,
                    secret=DEVICE_SECRET,
                ),
            )
        ),
    )
    app = create_app(config=config, clock=deterministic_clock, notifier=notifier)
    with TestClient(app) as test_client:
        yield test_client


def open_session(client, application, customer):
    response = client.post(
        "/bid-sessions",
        json={"application_id": str(application.id)},
        headers=auth(customer),
    )
    assert response.status_code == 201, response.text
    return response.json()


def submit_bid(client, installer, **target):
    body = {
        "price": "1500000.00",
        "proposal": "5 kW rooftop system",
        "warranty": "10 years",
        "estimated_days": 14,
    }
    body.update({k: str(v) for k, v in target.items()})
    return client.post("/bids", json=body, headers=auth(installer))


class TestAuthentication:

    def test_missing_principal_is_401(self, client, committed_application):
        response = client.post(
            "/bid-sessions", json={"application_id": str(committed_application.id)}
        )

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "HTTP_401"
        assert error["category"] == "unauthorized"

    def test_malformed_principal_is_401(self, client, committed_application):
        response = client.post(
            "/bid-sessions",
            json={"application_id": str(committed_application.id)},
            headers={"X-Principal-Id": "not-a-uuid", "X-Principal-Role": "customer"},
        )
        assert response.status_code == 401

    def test_unknown_role_is_401(self, client, committed_application):
        response = client.post(
            "/bid-sessions",
            json={"application_id": str(committed_application.id)},
            headers={"X-Principal-Id": str(uuid4()), "X-Principal-Role": "admin"},
        )
        assert response.status_code == 401

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/cron/expire-bids", headers={"X-Correlation-Id": "req-42"})
        assert response.headers["X-Correlation-Id"] == "req-42"

    def test_correlation_id_is_generated(self, client):
        response = client.get("/cron/expire-bids")
        assert response.headers["X-Correlation-Id"]


class TestBidEndpoints:

    def test_open_session_uses_configured_window(
        self, client, committed_application, customer, deterministic_clock
    ):
        body = open_session(client, committed_application, customer)

        assert body["status"] == "open"
        assert body["application_id"] == str(committed_application.id)
        assert body["bid_count"] == 0

    def test_stranger_cannot_open_session(self, client, committed_application, other_customer):
        response = client.post(
            "/bid-sessions",
            json={"application_id": str(committed_application.id)},
            headers=auth(other_customer),
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_unknown_application_is_404(self, client, customer):
        response = client.post(
            "/bid-sessions",
            json={"application_id": str(uuid4())},
            headers=auth(customer),
        )

        assert response.status_code == 404
        assert response.json()["error"]["category"] == "not_found"

    @pytest.mark.parametrize("hours", [0, -5])
    def test_non_positive_duration_is_422(
        self, client, committed_application, customer, hours
    ):
        response = client.post(
            "/bid-sessions",
            json={"application_id": str(committed_application.id), "duration_hours": hours},
            headers=auth(customer),
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_explicit_duration_sets_deadline(
        self, client, committed_application, customer
    ):
        response = client.post(
            "/bid-sessions",
            json={"application_id": str(committed_application.id), "duration_hours": 24},
            headers=auth(customer),
        )

        assert response.status_code == 201, response.text
        body = response.json()
        started = datetime.fromisoformat(body["started_at"])
        expires = datetime.fromisoformat(body["expires_at"])
        assert expires - started == timedelta(hours=24)

    def test_submit_bid_by_application_creates_session(
        self, client, committed_application, installer
    ):
        response = submit_bid(client, installer, application_id=committed_application.id)

        assert response.status_code == 201, response.text
        bid = response.json()
        assert bid["status"] == "pending"
        assert bid["price"] == "1500000.00"
        assert bid["organization_id"] == str(installer.organization_id)

    def test_submit_bid_without_target_is_422(self, client, installer):
        response = submit_bid(client, installer)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_non_positive_price_is_422(self, client, committed_application, installer):
        response = client.post(
            "/bids",
            json={
                "application_id": str(committed_application.id),
                "price": "0",
                "proposal": "x",
                "warranty": "y",
                "estimated_days": 3,
            },
            headers=auth(installer),
        )

        assert response.status_code == 422
        assert response.json()["error"]["category"] == "validation"

    def test_select_then_reselect(
        self, client, committed_application, customer, make_installer
    ):
        bid_session = open_session(client, committed_application, customer)
        first = submit_bid(client, make_installer(), bid_session_id=bid_session["id"]).json()
        second = submit_bid(client, make_installer(), bid_session_id=bid_session["id"]).json()

        response = client.post(f"/bids/{first['id']}/select", headers=auth(customer))

        assert response.status_code == 200, response.text
        result = response.json()
        assert result["session"]["status"] == "closed"
        assert result["accepted"]["id"] == first["id"]
        assert result["rejected_bid_ids"] == [second["id"]]

        again = client.post(f"/bids/{second['id']}/select", headers=auth(customer))
        assert again.status_code == 409
        assert again.json()["error"]["category"] == "invalid_state"

    def test_get_session_lists_bids(
        self, client, committed_application, customer, installer
    ):
        bid_session = open_session(client, committed_application, customer)
        submit_bid(client, installer, bid_session_id=bid_session["id"])

        response = client.get(f"/bid-sessions/{bid_session['id']}", headers=auth(customer))

        assert response.status_code == 200
        body = response.json()
        assert body["session"]["bid_count"] == 1
        assert len(body["bids"]) == 1

    def test_get_unknown_session_is_404(self, client, officer):
        response = client.get(f"/bid-sessions/{uuid4()}", headers=auth(officer))
        assert response.status_code == 404

    def test_patch_bid_status(self, client, committed_application, customer, installer):
        bid_session = open_session(client, committed_application, customer)
        bid = submit_bid(client, installer, bid_session_id=bid_session["id"]).json()

        response = client.patch(
            f"/bids/{bid['id']}", json={"status": "rejected"}, headers=auth(customer)
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"


class TestCronEndpoint:

    def test_anonymous_sweep(
        self, client, committed_application, customer, installer, deterministic_clock
    ):
        bid_session = open_session(client, committed_application, customer)
        submit_bid(client, installer, bid_session_id=bid_session["id"])
        deterministic_clock.advance_hours(49)

        response = client.post("/cron/expire-bids")

        assert response.status_code == 200
        body = response.json()
        assert body["sessions_expired"] == 1
        assert body["bids_expired"] == 1
        assert body["session_ids"] == [bid_session["id"]]

    def test_customer_may_not_trigger_sweep(self, client, customer):
        response = client.get("/cron/expire-bids", headers=auth(customer))
        assert response.status_code == 403


class TestBillingEndpoints:

    @pytest.fixture
    def readings(self, session, committed_application, add_reading):
        add_reading(
            committed_application.id, datetime(2024, 1, 5, tzinfo=timezone.utc), 300, 100, 500
        )
        session.commit()

    def test_generate_monthly_twice(self, client, readings, committed_application):
        first = client.post("/invoices/generate-monthly", json={"month": 1, "year": 2024})
        second = client.post("/invoices/generate-monthly", json={"month": 1, "year": 2024})

        assert first.status_code == 200, first.text
        (bill,) = first.json()["created"]
        assert bill["amount"] == "20800.00"
        assert bill["status"] == "pending"
        assert second.json()["created"] == []
        assert second.json()["skipped_application_ids"] == [str(committed_application.id)]

    def test_invalid_month_is_422(self, client):
        response = client.post("/invoices/generate-monthly", json={"month": 13, "year": 2024})
        assert response.status_code == 422

    def test_energy_summaries_for_owner(self, client, readings, committed_application, customer):
        response = client.get(
            f"/applications/{committed_application.id}/energy", headers=auth(customer)
        )

        assert response.status_code == 200
        (summary,) = response.json()
        assert (summary["year"], summary["month"]) == (2024, 1)
        assert summary["amount_due"] == "20800.00"

    def test_energy_summaries_for_stranger(
        self, client, readings, committed_application, other_customer
    ):
        response = client.get(
            f"/applications/{committed_application.id}/energy", headers=auth(other_customer)
        )
        assert response.status_code == 403


class TestPaymentEndpoints:

    def _register(self, client, application, intent="pi_http"):
        return client.post(
            "/payments",
            json={
                "provider_intent_id": intent,
                "customer_id": str(application.customer_id),
                "amount": "25000",
                "type": "installation",
                "application_id": str(application.id),
            },
        )

    def test_register_and_confirm(self, client, committed_application, notifier):
        registered = self._register(client, committed_application)
        assert registered.status_code == 201, registered.text
        assert registered.json()["status"] == "pending"

        confirmed = client.post("/payments/confirm", json={"provider_intent_id": "pi_http"})

        assert confirmed.status_code == 200, confirmed.text
        body = confirmed.json()
        assert body["invoice_created"] is True
        assert body["already_settled"] is False
        assert body["invoice"]["status"] == "paid"
        assert body["payment"]["status"] == "succeeded"
        assert len(notifier.calls) == 1

        replay = client.post("/payments/confirm", json={"provider_intent_id": "pi_http"})
        assert replay.json()["already_settled"] is True
        assert replay.json()["invoice"]["id"] == body["invoice"]["id"]
        assert len(notifier.calls) == 1

    def test_duplicate_intent_is_409(self, client, committed_application):
        self._register(client, committed_application)

        response = self._register(client, committed_application)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "DUPLICATE_PAYMENT_INTENT"

    def test_unknown_intent_is_404(self, client):
        response = client.post("/payments/confirm", json={"provider_intent_id": "pi_nope"})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PAYMENT_NOT_FOUND"


class TestMeterReadingEndpoints:

    def _reading(self, application):
        return {
            "application_id": str(application.id),
            "reading_date": "2024-02-10T12:00:00Z",
            "kwh_generated": "12.5",
            "kwh_exported": "4",
            "kwh_imported": "1",
        }

    def test_officer_records_reading(self, client, committed_application, officer):
        response = client.post(
            "/meter-readings", json=self._reading(committed_application), headers=auth(officer)
        )

        assert response.status_code == 201, response.text
        assert response.json()["application_id"] == str(committed_application.id)

    def test_customer_forbidden(self, client, committed_application, customer):
        response = client.post(
            "/meter-readings", json=self._reading(committed_application), headers=auth(customer)
        )
        assert response.status_code == 403


class TestDeviceTelemetry:

    BODY = json.dumps(
        {
            "kWh_generated": 3.2,
            "kWh_exported": 1.1,
            "kWh_imported": 0.4,
            "timestamp": "2024-02-10T12:00:00Z",
        }
    ).encode()

    def _post(self, client, body=BODY, token=DEVICE_TOKEN, signature=None):
        headers = {"Content-Type": "application/json"}
        if token is not None:
            headers["X-Device-Token"] = token
        if signature is not False:
            headers["X-Device-Signature"] = signature or sign(body)
        return client.post("/iot/measurements", content=body, headers=headers)

    def test_signed_measurement_is_stored(self, client, session, committed_application):
        response = self._post(client)

        assert response.status_code == 202, response.text
        body = response.json()
        assert body["application_id"] == str(committed_application.id)
        assert body["kwh_exported"] == "1.100"
        session.expire_all()
        assert session.query(MeterReading).one().source == "DEV-ALPHA"

    def test_bad_signature_is_401(self, client, captured_logs):
        response = self._post(client, signature=sign(self.BODY, "wrong"))

        assert response.status_code == 401
        assert any(r["message"] == "device_signature_rejected" for r in captured_logs())

    def test_unknown_token_is_401(self, client):
        assert self._post(client, token="tok-unknown").status_code == 401

    def test_missing_headers_is_401(self, client):
        assert self._post(client, token=None).status_code == 401
        assert self._post(client, signature=False).status_code == 401

    def test_invalid_json_is_400(self, client):
        body = b"{not json"
        assert self._post(client, body=body, signature=sign(body)).status_code == 400

    def test_missing_field_is_422(self, client):
        body = json.dumps({"kWh_generated": 1}).encode()
        response = self._post(client, body=body, signature=sign(body))

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_negative_value_is_422(self, client):
        body = json.dumps(
            {
                "kWh_generated": -1,
                "kWh_exported": 0,
                "kWh_imported": 0,
                "timestamp": "2024-02-10T12:00:00Z",
            }
        ).encode()
        response = self._post(client, body=body, signature=sign(body))

        assert response.status_code == 422
        assert response.json()["error"]["category"] == "validation"


class TestApplicationEndpoint:

    def test_officer_advances_status(self, client, committed_application, officer):
        response = client.patch(
            f"/applications/{committed_application.id}/status",
            json={"status": "installation_in_progress"},
            headers=auth(officer),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "installation_in_progress"

    def test_backwards_move_is_409(self, client, committed_application, officer):
        response = client.patch(
            f"/applications/{committed_application.id}/status",
            json={"status": "pending"},
            headers=auth(officer),
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_STATUS_TRANSITION"
