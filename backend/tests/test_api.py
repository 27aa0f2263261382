import base64

import httpx
import pytest
import pytest_asyncio

from fakes import SPEEDMART_REPLY, FakeVisionClient
from receiptflow.api.dependencies import get_db_session
from receiptflow.api.main import create_app
from receiptflow.models.enums import PlanType
from receiptflow.services.usage_service import PlanLimits, UsageGate


@pytest_asyncio.fixture
async def pipeline(make_pipeline):
    return make_pipeline(FakeVisionClient(reply=SPEEDMART_REPLY))


@pytest_asyncio.fixture
async def client(pipeline):
    app = create_app(pipeline=pipeline)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def _headers(owner_id: int) -> dict:
    return {"X-User-Id": str(owner_id)}


async def _upload(client, owner_id: int, data: bytes, name: str = "receipt.png", content_type: str = "image/png", **form):
    return await client.post(
        "/receipts",
        files={"file": (name, data, content_type)},
        data={"create_expense": "false", **form},
        headers=_headers(owner_id),
    )


@pytest.mark.asyncio
async def test_health(client):
    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_detailed_health_checks_database(pipeline, sessions):
    app = create_app(pipeline=pipeline)

    async def _session():
        async with sessions() as db:
            yield db

    app.dependency_overrides[get_db_session] = _session
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        res = await ac.get("/health/detailed")
    assert res.status_code == 200
    assert res.json() == {"status": "healthy", "services": {"database": "healthy"}}


@pytest.mark.asyncio
async def test_upload_requires_owner_header(client, png_bytes):
    res = await client.post("/receipts", files={"file": ("r.png", png_bytes, "image/png")})
    assert res.status_code == 401
    res = await client.get("/receipts", headers={"X-User-Id": "abc"})
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_upload_get_correct_delete(client, pipeline, make_user, png_bytes):
    owner_id = await make_user()

    res = await _upload(client, owner_id, png_bytes)
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["success"] is True
    assert body["status"] == "completed"
    assert body["extracted_data"]["store_name"] == "99 Speedmart"
    receipt_id = body["receipt"]["id"]

    res = await client.get(f"/receipts/{receipt_id}", headers=_headers(owner_id))
    assert res.status_code == 200
    assert res.json()["status"] == "completed"

    res = await client.patch(
        f"/receipts/{receipt_id}/corrections",
        json={"total_amount": "20.00", "colour": "red"},
        headers=_headers(owner_id),
    )
    assert res.status_code == 200
    body = res.json()
    assert body["receipt"]["extracted_data"]["total_amount"] == "20.00"
    assert [issue["field"] for issue in body["issues"]] == ["colour"]

    res = await client.get("/receipts", headers=_headers(owner_id))
    assert [r["id"] for r in res.json()["receipts"]] == [receipt_id]

    await pipeline.dispatcher.drain()
    res = await client.get("/receipts/usage", headers=_headers(owner_id))
    assert res.json()["used"] == 1

    res = await client.delete(f"/receipts/{receipt_id}", headers=_headers(owner_id))
    assert res.status_code == 204
    res = await client.get(f"/receipts/{receipt_id}", headers=_headers(owner_id))
    assert res.status_code == 404
    assert res.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_receipts_are_scoped_to_owner(client, make_user, png_bytes):
    owner_id = await make_user()
    intruder = await make_user()
    receipt_id = (await _upload(client, owner_id, png_bytes)).json()["receipt"]["id"]

    assert (await client.get(f"/receipts/{receipt_id}", headers=_headers(intruder))).status_code == 404
    assert (await client.delete(f"/receipts/{receipt_id}", headers=_headers(intruder))).status_code == 404
    res = await client.get("/receipts", headers=_headers(intruder))
    assert res.json()["receipts"] == []


@pytest.mark.asyncio
async def test_unsupported_upload_is_415(client, make_user):
    owner_id = await make_user()
    res = await _upload(client, owner_id, b"%PDF-1.4", name="r.pdf", content_type="application/pdf")
    assert res.status_code == 415
    assert res.json()["error"] == "unsupported_media"


@pytest.mark.asyncio
async def test_quota_exceeded_is_402(make_pipeline, sessions, make_user, png_bytes):
    gate = UsageGate(
        sessions,
        limits={
            PlanType.FREE: PlanLimits(plan=PlanType.FREE, monthly_receipt_scans=0),
            PlanType.PREMIUM: PlanLimits(plan=PlanType.PREMIUM, monthly_receipt_scans=float("inf")),
        },
    )
    app = create_app(pipeline=make_pipeline(FakeVisionClient(reply=SPEEDMART_REPLY), usage_gate=gate))
    owner_id = await make_user()
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        res = await _upload(ac, owner_id, png_bytes)
    assert res.status_code == 402
    assert res.json()["error"] == "quota_exceeded"


@pytest.mark.asyncio
async def test_correcting_in_flight_or_missing_receipt(client, make_user):
    owner_id = await make_user()
    res = await client.patch("/receipts/12345/corrections", json={"store_name": "X"}, headers=_headers(owner_id))
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_review_and_stats_endpoints(client, make_user, png_bytes):
    owner_id = await make_user()
    await _upload(client, owner_id, png_bytes)

    res = await client.get("/receipts/review", headers=_headers(owner_id))
    assert res.status_code == 200
    assert res.json() == []

    res = await client.get("/receipts/stats", params={"days": 7}, headers=_headers(owner_id))
    assert res.status_code == 200
    body = res.json()
    assert body["total_processed"] == 1
    assert body["top_stores"][0]["store_name"] == "99 Speedmart"

    res = await client.get("/receipts/stats", params={"days": 0}, headers=_headers(owner_id))
    assert res.status_code == 422
    assert res.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_bad_paging_is_422(client, make_user):
    owner_id = await make_user()
    res = await client.get("/receipts", params={"limit": 500}, headers=_headers(owner_id))
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_base64_upload_search_and_failed_listing(client, make_user, png_bytes):
    owner_id = await make_user()
    data_url = "data:image/png;base64," + base64.b64encode(png_bytes).decode()

    res = await client.post(
        "/receipts/base64",
        json={"image": data_url, "options": {"create_expense": False}},
        headers=_headers(owner_id),
    )
    assert res.status_code == 201, res.text
    receipt_id = res.json()["receipt"]["id"]

    res = await client.get("/receipts/search", params={"q": "speedmart"}, headers=_headers(owner_id))
    assert res.status_code == 200
    assert [r["id"] for r in res.json()] == [receipt_id]

    res = await client.get("/receipts/search", params={"q": " "}, headers=_headers(owner_id))
    assert res.status_code == 422

    res = await client.get("/receipts/failed", headers=_headers(owner_id))
    assert res.status_code == 200
    assert res.json() == []

    res = await client.post("/receipts/base64", json={"image": "not a data url"}, headers=_headers(owner_id))
    assert res.status_code == 415


@pytest.mark.asyncio
async def test_correction_without_valid_fields_is_422(client, make_user, png_bytes):
    owner_id = await make_user()
    receipt_id = (await _upload(client, owner_id, png_bytes)).json()["receipt"]["id"]

    res = await client.patch(
        f"/receipts/{receipt_id}/corrections", json={"total_amount": "abc"}, headers=_headers(owner_id)
    )
    assert res.status_code == 422
    assert res.json()["error"] == "validation_error"

    res = await client.get(f"/receipts/{receipt_id}", headers=_headers(owner_id))
    assert res.json()["extracted_data"]["total_amount"] == "15.30"
