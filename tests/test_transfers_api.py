"""HTTP surface: authentication, error bodies and a transfer driven end to end."""
from datetime import date, timedelta

import pytest
from httpx import AsyncClient, ASGITransport

from medistock.core.security import create_access_token
from medistock.database import get_db
from medistock.main import app


def in_days(days):
    return (date.today() + timedelta(days=days)).isoformat()


def bearer(actor):
    claims = {"org": str(actor.organization_id), "role": actor.role, "username": actor.username}
    if actor.department_id:
        claims["dept"] = str(actor.department_id)
    token = create_access_token(actor.user_id, additional_claims=claims)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
async def stocked_pharmacy(client, ids, pharmacist):
    """Pharmacy ledger for the test product with two lots, through the API."""
    response = await client.post(
        f"/api/v1/departments/{ids.pharmacy}/stocks",
        json={"product_id": str(ids.product), "min_stock_level": 10},
        headers=bearer(pharmacist),
    )
    assert response.status_code == 201, f"Create stock failed: {response.text}"
    stock_id = response.json()["id"]

    for lot_number, expiry, quantity in (("LOT-LATE", in_days(300), 100), ("LOT-SOON", in_days(45), 40)):
        response = await client.post(
            f"/api/v1/stocks/{stock_id}/batches",
            json={"lot_number": lot_number, "quantity": quantity, "expiry_date": expiry, "cost_price": "1.25"},
            headers=bearer(pharmacist),
        )
        assert response.status_code == 201, f"Register batch failed: {response.text}"

    return stock_id


@pytest.fixture
async def transfer(client, ids, nurse):
    response = await client.post(
        "/api/v1/transfers",
        json={
            "code": "TR-API-1",
            "title": "Ward A restock",
            "requesting_department_id": str(ids.ward),
            "supplying_department_id": str(ids.pharmacy),
            "priority": "HIGH",
            "items": [{"product_id": str(ids.product), "requested_quantity": 60}],
        },
        headers=bearer(nurse),
    )
    assert response.status_code == 201, f"Create transfer failed: {response.text}"
    return response.json()


async def test_requests_without_token_are_rejected(client):
    response = await client.get("/api/v1/transfers")

    assert response.status_code in (401, 403)


async def test_invalid_token_is_rejected(client):
    response = await client.get("/api/v1/transfers", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401


async def test_create_transfer(transfer, ids):
    assert transfer["code"] == "TR-API-1"
    assert transfer["status"] == "PENDING"
    assert transfer["priority"] == "HIGH"
    assert len(transfer["items"]) == 1
    assert transfer["items"][0]["status"] == "PENDING"


async def test_list_transfers_by_direction(client, transfer, ids, pharmacist):
    outgoing = await client.get(
        "/api/v1/transfers",
        params={"department_id": str(ids.pharmacy), "direction": "outgoing"},
        headers=bearer(pharmacist),
    )
    incoming = await client.get(
        "/api/v1/transfers",
        params={"department_id": str(ids.pharmacy), "direction": "incoming"},
        headers=bearer(pharmacist),
    )

    assert outgoing.status_code == 200, f"List failed: {outgoing.text}"
    assert [t["code"] for t in outgoing.json()["items"]] == ["TR-API-1"]
    assert incoming.json()["total"] == 0


async def test_list_rejects_status_the_rollup_never_produces(client, transfer, pharmacist):
    response = await client.get(
        "/api/v1/transfers",
        params={"status": "DELIVERED"},
        headers=bearer(pharmacist),
    )

    assert response.status_code == 422


async def test_transfer_lifecycle(client, stocked_pharmacy, transfer, ids, pharmacist, nurse):
    transfer_id = transfer["id"]
    item_id = transfer["items"][0]["id"]

    response = await client.post(
        f"/api/v1/transfers/{transfer_id}/items/{item_id}/approve",
        json={"approved_quantity": 50},
        headers=bearer(pharmacist),
    )
    assert response.status_code == 200, f"Approve failed: {response.text}"
    assert response.json()["status"] == "APPROVED"

    response = await client.get(
        f"/api/v1/transfers/{transfer_id}/items/{item_id}/allocation",
        headers=bearer(pharmacist),
    )
    assert response.status_code == 200, f"Allocation preview failed: {response.text}"
    preview = response.json()
    assert [(a["lot_number"], a["quantity"]) for a in preview["allocations"]] == [
        ("LOT-SOON", 40), ("LOT-LATE", 10),
    ]
    assert preview["shortfall"] == 0

    response = await client.post(
        f"/api/v1/transfers/{transfer_id}/items/{item_id}/prepare",
        json={},
        headers=bearer(pharmacist),
    )
    assert response.status_code == 200, f"Prepare failed: {response.text}"
    item = response.json()["items"][0]
    assert item["status"] == "PREPARED"
    assert item["prepared_quantity"] == 50
    receipts = [{"batch_id": b["batch_id"], "received_quantity": b["quantity"]} for b in item["batches"]]

    response = await client.post(
        f"/api/v1/transfers/{transfer_id}/items/{item_id}/deliver",
        json={"receipts": receipts},
        headers=bearer(nurse),
    )
    assert response.status_code == 200, f"Deliver failed: {response.text}"
    delivered = response.json()
    assert delivered["status"] == "COMPLETED"
    assert delivered["items"][0]["received_quantity"] == 50

    response = await client.get(f"/api/v1/transfers/{transfer_id}/history", headers=bearer(nurse))
    history = response.json()
    assert [h["action"] for h in history] == ["DELIVERED", "PREPARED", "APPROVED", "CREATED"]
    assert [h["sequence"] for h in history] == [4, 3, 2, 1]

    response = await client.get(f"/api/v1/departments/{ids.ward}/stocks", headers=bearer(nurse))
    (ward_stock,) = response.json()["items"]
    assert ward_stock["available_quantity"] == 50
    assert ward_stock["total_quantity"] == 50

    response = await client.get(f"/api/v1/stocks/{stocked_pharmacy}/consistency", headers=bearer(pharmacist))
    consistency = response.json()
    assert consistency["is_consistent"] is True
    assert consistency["ledger"]["total_quantity"] == 90


async def test_engine_errors_carry_code_and_status(client, stocked_pharmacy, transfer, nurse, pharmacist, admin):
    transfer_id = transfer["id"]
    item_id = transfer["items"][0]["id"]
    approve_url = f"/api/v1/transfers/{transfer_id}/items/{item_id}/approve"

    response = await client.post(approve_url, json={"approved_quantity": 10}, headers=bearer(nurse))
    assert response.status_code == 403
    assert response.json()["code"] == "PERMISSION_DENIED"

    response = await client.post(approve_url, json={"approved_quantity": 61}, headers=bearer(pharmacist))
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["detail"]["requested_quantity"] == 60

    response = await client.post(
        f"/api/v1/transfers/{transfer_id}/items/{item_id}/prepare",
        json={},
        headers=bearer(pharmacist),
    )
    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_TRANSITION"
    assert response.json()["detail"]["current_status"] == "PENDING"

    response = await client.post(
        f"/api/v1/transfers/{transfer_id}/cancel",
        json={"reason": "  "},
        headers=bearer(admin),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"

    response = await client.get(
        "/api/v1/transfers/00000000-0000-0000-0000-000000000000",
        headers=bearer(nurse),
    )
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


async def test_prepare_beyond_available_stock(client, stocked_pharmacy, ids, nurse, pharmacist):
    response = await client.post(
        "/api/v1/transfers",
        json={
            "code": "TR-API-BIG",
            "requesting_department_id": str(ids.ward),
            "supplying_department_id": str(ids.pharmacy),
            "items": [{"product_id": str(ids.product), "requested_quantity": 500}],
        },
        headers=bearer(nurse),
    )
    transfer_id = response.json()["id"]
    item_id = response.json()["items"][0]["id"]
    await client.post(
        f"/api/v1/transfers/{transfer_id}/approve-all",
        headers=bearer(pharmacist),
    )

    response = await client.post(
        f"/api/v1/transfers/{transfer_id}/items/{item_id}/prepare",
        json={},
        headers=bearer(pharmacist),
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "INSUFFICIENT_STOCK"
    assert body["detail"]["requested"] == 500
    assert body["detail"]["available"] == 140


async def test_stock_reports_reorder_point(client, ids, pharmacist):
    response = await client.post(
        f"/api/v1/departments/{ids.pharmacy}/stocks",
        json={"product_id": str(ids.other_product), "reorder_point": 50},
        headers=bearer(pharmacist),
    )
    assert response.status_code == 201, f"Create stock failed: {response.text}"
    assert response.json()["needs_reorder"] is True
    stock_id = response.json()["id"]

    response = await client.post(
        f"/api/v1/stocks/{stock_id}/batches",
        json={"lot_number": "LOT-R", "quantity": 80, "expiry_date": in_days(200)},
        headers=bearer(pharmacist),
    )
    assert response.status_code == 201, f"Register batch failed: {response.text}"

    response = await client.get(f"/api/v1/departments/{ids.pharmacy}/stocks", headers=bearer(pharmacist))
    (stock,) = response.json()["items"]
    assert stock["available_quantity"] == 80
    assert stock["needs_reorder"] is False


async def test_cancel_pending_transfer(client, transfer, admin):
    response = await client.post(
        f"/api/v1/transfers/{transfer['id']}/cancel",
        json={"reason": "Requested twice"},
        headers=bearer(admin),
    )

    assert response.status_code == 200, f"Cancel failed: {response.text}"
    body = response.json()
    assert body["status"] == "CANCELLED"
    assert body["cancel_reason"] == "Requested twice"


async def test_root(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert "version" in response.json()
