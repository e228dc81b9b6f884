"""API tests through the FastAPI application."""

from decimal import Decimal
from typing import Any
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from payroll_versioning.api.app import create_app
from payroll_versioning.api.dependencies import get_db_session

API = "/api/v1"


def version_payload(net_pay: str = "1000.00", *, calculated: bool = False, **overrides: Any) -> dict:
    deductions = Decimal("200.00")
    salary = Decimal(net_pay) + deductions
    payload = {
        "reason": "INITIAL",
        "created_by": "calc-engine",
        "net_pay": net_pay,
        "total_perceptions": str(salary),
        "total_deductions": str(deductions),
        "worked_days": "15",
        "line_items": [
            {"concept_code": "P001", "concept_name": "Sueldo", "amount": str(salary), "kind": "PERCEPTION"},
            {"concept_code": "D001", "concept_name": "ISR", "amount": str(deductions), "kind": "DEDUCTION"},
        ],
        "fiscal_parameters": {
            "tax_table_id": "ISR-2024-Q",
            "social_security_table_id": "IMSS-2024",
            "effective_date": "2024-01-01",
            "reference_values": {"UMA": "108.57"},
            "formulas": [{"concept_code": "D001", "expression": "isr(base_gravable)"}],
        },
        "calculated": calculated,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
async def client(session_factory, calculator, stamping_provider):
    """Test client bound to the per-test database."""
    app = create_app(calculator=calculator, stamping_provider=stamping_provider)

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def api_receipt(client) -> dict:
    period = (await client.post(f"{API}/periods", json={"code": "2024-Q02"})).json()
    response = await client.post(
        f"{API}/periods/{period['period_id']}/receipts",
        json={"employee_id": str(uuid4())},
    )
    assert response.status_code == 201
    return response.json()


async def _approve_and_authorize(client, receipt: dict) -> None:
    receipt_id = receipt["receipt_id"]
    response = await client.post(
        f"{API}/receipts/{receipt_id}/versions", json=version_payload(calculated=True)
    )
    assert response.status_code == 201
    response = await client.post(
        f"{API}/receipts/{receipt_id}/transitions",
        json={"to_status": "APPROVED", "actor": "supervisor"},
    )
    assert response.status_code == 200
    response = await client.post(
        f"{API}/critical-actions",
        json={
            "action": "AUTHORIZE_STAMPING",
            "target_id": receipt["period_id"],
            "requested_by": "payroll.manager",
            "justification": "Quincena reviewed",
        },
    )
    assert response.status_code == 201


class TestHealth:
    """Health endpoints."""

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert data["pending_critical_actions"] == 0

    async def test_live_and_ready(self, client):
        assert (await client.get("/live")).json() == {"status": "alive"}
        assert (await client.get("/ready")).json() == {"status": "ready"}


class TestVersionEndpoints:
    """Receipt versions over HTTP."""

    async def test_correction_scenario(self, client, api_receipt):
        receipt_id = api_receipt["receipt_id"]

        first = await client.post(f"{API}/receipts/{receipt_id}/versions", json=version_payload())
        second = await client.post(
            f"{API}/receipts/{receipt_id}/versions",
            json=version_payload("950.00", reason="CORRECTION", created_by="payroll.analyst"),
        )

        assert first.status_code == 201
        assert second.status_code == 201
        assert second.json()["version"] == 2
        assert len(second.json()["line_items"]) == 2

        history = (await client.get(f"{API}/receipts/{receipt_id}/history")).json()
        assert [(h["version"], h["status"], h["is_current"]) for h in history] == [
            (2, "PENDING", True),
            (1, "SUPERSEDED", False),
        ]

        comparison = (await client.get(f"{API}/receipts/{receipt_id}/compare?a=1&b=2")).json()
        assert Decimal(comparison["net_pay_difference"]) == Decimal("-50")
        assert comparison["perceptions_diff"][0]["type"] == "MODIFIED"

        receipt = (await client.get(f"{API}/receipts/{receipt_id}")).json()
        assert receipt["current_version"] == 2
        assert receipt["status"] == "PENDING"

    async def test_unknown_receipt(self, client):
        response = await client.get(f"{API}/receipts/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["code"] == "RECEIPT_NOT_FOUND"

    async def test_float_like_payload_quantized(self, client, api_receipt):
        response = await client.post(
            f"{API}/receipts/{api_receipt['receipt_id']}/versions",
            json=version_payload("950.505"),
        )

        assert response.status_code == 201
        assert Decimal(response.json()["net_pay"]) == Decimal("950.51")

    async def test_recalculate(self, client, api_receipt):
        response = await client.post(
            f"{API}/receipts/{api_receipt['receipt_id']}/recalculate",
            json={"requested_by": "payroll.analyst"},
        )

        assert response.status_code == 201
        assert response.json()["created_reason"] == "RECALCULATION"
        assert Decimal(response.json()["net_pay"]) == Decimal("1000")

    async def test_snapshot_and_verify(self, client, api_receipt):
        receipt_id = api_receipt["receipt_id"]
        await client.post(f"{API}/receipts/{receipt_id}/versions", json=version_payload())

        snapshot = (await client.get(f"{API}/receipts/{receipt_id}/versions/1/snapshot")).json()
        assert snapshot["payload"]["reference_values"] == {"UMA": "108.57"}

        report = (await client.post(f"{API}/receipts/{receipt_id}/versions/1/verify")).json()
        assert report["status"] == "VERIFIED"

        period_report = (
            await client.post(f"{API}/periods/{api_receipt['period_id']}/verify")
        ).json()
        assert period_report["total"] == 1
        assert period_report["corrupted"] == []

    async def test_can_modify(self, client, api_receipt):
        response = await client.get(f"{API}/receipts/{api_receipt['receipt_id']}/can-modify")

        assert response.status_code == 200
        assert response.json()["can_modify"] is True


class TestStampingEndpoints:
    """Authorization and stamping over HTTP."""

    async def test_stamping_flow(self, client, api_receipt):
        receipt_id = api_receipt["receipt_id"]
        period_id = api_receipt["period_id"]
        await _approve_and_authorize(client, api_receipt)

        eligibility = (await client.get(f"{API}/periods/{period_id}/stamping-eligibility")).json()
        assert eligibility["eligible"] is True

        response = await client.post(
            f"{API}/receipts/{receipt_id}/transitions",
            json={"to_status": "STAMPING", "actor": "stamper"},
        )
        assert response.status_code == 200
        forged = await client.post(
            f"{API}/receipts/{receipt_id}/transitions",
            json={"to_status": "STAMP_OK", "actor": "operator"},
        )
        assert forged.status_code == 409
        assert forged.json()["code"] == "INVALID_TRANSITION"

        stamped = await client.post(f"{API}/receipts/{receipt_id}/stamp", json={"actor": "stamper"})
        assert stamped.status_code == 200
        assert stamped.json()["status"] == "STAMP_OK"
        assert stamped.json()["stamp_uuid"]

        blocked = await client.post(
            f"{API}/receipts/{receipt_id}/versions",
            json=version_payload("900.00", reason="CORRECTION"),
        )
        assert blocked.status_code == 409
        assert blocked.json()["code"] == "STATE_CONFLICT"

    async def test_stamping_without_authorization(self, client, api_receipt):
        receipt_id = api_receipt["receipt_id"]
        await client.post(
            f"{API}/receipts/{receipt_id}/versions", json=version_payload(calculated=True)
        )
        await client.post(
            f"{API}/receipts/{receipt_id}/transitions",
            json={"to_status": "APPROVED", "actor": "supervisor"},
        )

        response = await client.post(
            f"{API}/receipts/{receipt_id}/transitions",
            json={"to_status": "STAMPING", "actor": "stamper"},
        )

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"


class TestCriticalActionEndpoints:
    """Dual control over HTTP."""

    async def test_pending_confirmation(self, client, api_receipt):
        period_id = api_receipt["period_id"]
        await _approve_and_authorize(client, api_receipt)

        requested = await client.post(
            f"{API}/critical-actions",
            json={
                "action": "REVOKE_AUTHORIZATION",
                "target_id": period_id,
                "requested_by": "payroll.manager",
                "justification": "Attendance file replaced",
            },
        )
        assert requested.status_code == 202
        assert requested.json()["status"] == "PENDING_APPROVAL"
        pending_id = requested.json()["pending"]["pending_action_id"]

        pending = (await client.get(f"{API}/critical-actions/pending?target_id={period_id}")).json()
        assert [p["pending_action_id"] for p in pending] == [pending_id]

        self_confirm = await client.post(
            f"{API}/critical-actions/pending/{pending_id}/confirm",
            json={"approver": "payroll.manager"},
        )
        assert self_confirm.status_code == 400
        assert self_confirm.json()["code"] == "SELF_APPROVAL"

        confirmed = await client.post(
            f"{API}/critical-actions/pending/{pending_id}/confirm",
            json={"approver": "finance.director"},
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "APPROVED"
        assert confirmed.json()["record"]["second_approver"] == "finance.director"

        history = (await client.get(f"{API}/periods/{period_id}/authorizations")).json()
        assert history[0]["revoked_by"] == "payroll.manager"

    async def test_reject_pending(self, client, api_receipt):
        period_id = api_receipt["period_id"]
        await _approve_and_authorize(client, api_receipt)
        requested = await client.post(
            f"{API}/critical-actions",
            json={
                "action": "REVOKE_AUTHORIZATION",
                "target_id": period_id,
                "requested_by": "payroll.manager",
                "justification": "Attendance file replaced",
            },
        )
        pending_id = requested.json()["pending"]["pending_action_id"]

        rejected = await client.post(
            f"{API}/critical-actions/pending/{pending_id}/reject",
            json={"approver": "finance.director", "reason": "Original file is correct"},
        )

        assert rejected.status_code == 200
        assert rejected.json()["outcome"] == "DENIED"

    async def test_denial_is_logged(self, client, api_receipt):
        period_id = api_receipt["period_id"]

        response = await client.post(
            f"{API}/critical-actions",
            json={
                "action": "CLOSE_PERIOD",
                "target_id": period_id,
                "requested_by": "payroll.manager",
                "justification": "",
            },
        )
        assert response.status_code == 400
        assert response.json()["code"] == "JUSTIFICATION_REQUIRED"

        log = (await client.get(f"{API}/critical-actions?target_id={period_id}")).json()
        assert [(r["action"], r["outcome"]) for r in log] == [("CLOSE_PERIOD", "DENIED")]
