"""Tests for the REST surface."""

import httpx
import pytest

from restapi.router import create_app


@pytest.fixture
async def client(settings, db_manager, clock, providers, cipher):
    app = create_app(
        settings=settings,
        db_manager=db_manager,
        clock=clock,
        providers=providers,
        cipher=cipher,
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def create_active_loan(client, customer_id: int) -> dict:
    response = await client.post(
        "/loans/",
        json={"customer_id": customer_id, "amount": 12_000_000, "interest_rate": 12.0, "term": 12},
    )
    assert response.status_code == 201
    loan_id = response.json()["data"]["id"]

    assert (await client.post(f"/loans/{loan_id}/status", json={"status": "approved"})).status_code == 200
    assert (await client.post(f"/loans/{loan_id}/disburse")).status_code == 200
    response = await client.post(f"/loans/{loan_id}/status", json={"status": "active"})
    assert response.status_code == 200
    return (await client.get(f"/loans/{loan_id}")).json()["data"]


class TestHealthCheck:
    async def test_healthy(self, client, settings) -> None:
        response = await client.get("/health_check/")
        assert response.status_code == 200
        assert response.json() == {"service_name": settings.APP_NAME, "status": "healthy"}


class TestLoanEndpoints:
    """Tests for /loans."""

    async def test_create_loan(self, client, make_customer) -> None:
        customer = await make_customer()

        response = await client.post(
            "/loans/",
            json={"customer_id": customer.id, "amount": 12_000_000, "interest_rate": 12.0, "term": 12},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["contract_number"] == "KOP-2024-0001"
        assert body["data"]["status"] == "pending"
        assert abs(body["data"]["monthly_payment"] - 1_066_185) <= 1

    async def test_invalid_request_uses_envelope(self, client, make_customer) -> None:
        customer = await make_customer()

        response = await client.post(
            "/loans/",
            json={"customer_id": customer.id, "amount": 0, "interest_rate": 12.0, "term": 12},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert any("amount" in error["field"] for error in body["data"])

    async def test_unknown_customer(self, client) -> None:
        response = await client.post(
            "/loans/",
            json={"customer_id": 999, "amount": 1_000_000, "interest_rate": 12.0, "term": 12},
        )
        assert response.status_code == 404
        assert response.json()["success"] is False

    async def test_second_open_loan_conflicts(self, client, make_customer) -> None:
        customer = await make_customer()
        payload = {"customer_id": customer.id, "amount": 1_000_000, "interest_rate": 12.0, "term": 12}
        await client.post("/loans/", json=payload)

        response = await client.post("/loans/", json=payload)
        assert response.status_code == 409
        assert "active loan" in response.json()["message"]

    async def test_lifecycle(self, client, make_customer) -> None:
        customer = await make_customer()
        loan = await create_active_loan(client, customer.id)

        assert loan["status"] == "active"
        assert len(loan["installments"]) == 12
        assert loan["installments"][0]["due_date"] == "2024-04-01T09:00:00"

        listing = (await client.get("/loans/", params={"status": "active"})).json()
        assert listing["data"]["total"] == 1

    async def test_illegal_transition(self, client, make_customer) -> None:
        customer = await make_customer()
        loan_id = (await client.post(
            "/loans/",
            json={"customer_id": customer.id, "amount": 1_000_000, "interest_rate": 12.0, "term": 6},
        )).json()["data"]["id"]

        response = await client.post(f"/loans/{loan_id}/disburse")
        assert response.status_code == 409

        response = await client.post(f"/loans/{loan_id}/status", json={"status": "completed"})
        assert response.status_code == 409

    async def test_update_loan(self, client, make_customer) -> None:
        customer = await make_customer()
        loan_id = (await client.post(
            "/loans/",
            json={"customer_id": customer.id, "amount": 12_000_000, "interest_rate": 12.0, "term": 12},
        )).json()["data"]["id"]

        response = await client.put(
            f"/loans/{loan_id}",
            json={"amount": 6_000_000, "interest_rate": 12.0, "term": 12},
        )
        assert response.status_code == 200
        assert abs(response.json()["data"]["monthly_payment"] - 533_093) <= 1

    async def test_get_missing_loan(self, client) -> None:
        response = await client.get("/loans/12345")
        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "loan not found", "data": None}

    async def test_pay_installment(self, client, make_customer) -> None:
        customer = await make_customer()
        loan = await create_active_loan(client, customer.id)
        installment = loan["installments"][0]

        response = await client.post(
            f"/loans/installments/{installment['id']}/pay",
            json={"amount": installment["amount_due"]},
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "paid"

        response = await client.post(
            f"/loans/installments/{installment['id']}/pay",
            json={"amount": 1000},
        )
        assert response.status_code == 409

    async def test_overdue_listing(self, client, make_customer, clock) -> None:
        customer = await make_customer()
        loan = await create_active_loan(client, customer.id)
        clock.advance(days=41)  # 2024-04-11 09:00

        response = await client.get("/loans/installments/overdue")

        assert response.status_code == 200
        overdue = response.json()["data"]
        assert len(overdue) == 1
        assert overdue[0]["days_past_due"] == 10
        assert overdue[0]["contract_number"] == loan["contract_number"]


class TestNotificationEndpoints:
    """Tests for /notifications."""

    async def test_schedule_and_duplicate(self, client, make_customer, templates, clock, email_provider) -> None:
        customer = await make_customer()
        loan = await create_active_loan(client, customer.id)
        clock.advance(days=24)
        payload = {
            "installment_id": loan["installments"][0]["id"],
            "template_id": templates[-7].id,
            "channel": "email",
            "recipient": "siti@example.com",
        }

        response = await client.post("/notifications/", json=payload)
        assert response.status_code == 201
        log = response.json()["data"]
        assert log["status"] == "sent"
        assert len(email_provider.sent) == 1

        response = await client.post("/notifications/", json=payload)
        assert response.status_code == 409

        response = await client.get(f"/notifications/{log['id']}")
        assert response.status_code == 200
        assert response.json()["data"]["attempts"] == 1

    async def test_rate_limited(self, client, make_customer, templates, clock) -> None:
        customer = await make_customer()
        loan = await create_active_loan(client, customer.id)
        clock.advance(days=28)
        payload = {
            "installment_id": loan["installments"][0]["id"],
            "template_id": templates[-3].id,
            "channel": "whatsapp",
            "recipient": "081234567890",
        }
        assert (await client.post("/notifications/", json=payload)).status_code == 201

        payload["installment_id"] = loan["installments"][1]["id"]
        response = await client.post("/notifications/", json=payload)
        assert response.status_code == 429

    async def test_pending_queue(self, client, make_customer, templates, clock) -> None:
        customer = await make_customer()
        loan = await create_active_loan(client, customer.id)
        clock.advance(days=24)
        payload = {
            "installment_id": loan["installments"][0]["id"],
            "template_id": templates[-7].id,
            "channel": "email",
            "recipient": "siti@example.com",
            "scheduled_for": "2024-03-25T08:00:00",
        }
        assert (await client.post("/notifications/", json=payload)).json()["data"]["status"] == "sent"

        response = await client.get("/notifications/pending")
        assert response.status_code == 200
        assert response.json()["data"] == []

    async def test_send_test_message(self, client, whatsapp_provider) -> None:
        response = await client.post(
            "/notifications/test",
            json={"channel": "whatsapp", "recipient": "081234567890", "body": "Tes"},
        )
        assert response.status_code == 200
        assert whatsapp_provider.sent == [("081234567890", "", "Tes")]

    async def test_missing_log(self, client) -> None:
        assert (await client.get("/notifications/999")).status_code == 404


class TestSchedulerEndpoints:
    """Tests for /scheduler."""

    async def test_status(self, client) -> None:
        response = await client.get("/scheduler/status")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["running"] is False
        assert data["job_count"] == 3
        assert data["timezone"] == "Asia/Jakarta"

    async def test_trigger_reminders(self, client, make_customer, templates, clock) -> None:
        customer = await make_customer()
        await create_active_loan(client, customer.id)
        clock.advance(days=24)

        response = await client.post("/scheduler/trigger/reminders")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["scheduled"] == 1

    async def test_trigger_dpd_and_pending(self, client, make_customer, clock) -> None:
        customer = await make_customer()
        await create_active_loan(client, customer.id)
        clock.advance(days=41)

        response = await client.post("/scheduler/trigger/dpd")
        assert response.json()["data"] == {"updated": 1}

        response = await client.post("/scheduler/trigger/pending")
        assert response.json()["data"]["processed"] == 0
