import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
@pytest.mark.smoke
async def test_backoffice_happy_path(admin_client: AsyncClient, serial_allocator):  # noqa: ARG001
    """Quotation, custody sheet and notification flows in one pass."""
    quotation = await admin_client.post("/api/quotations", json={
        "customer_name": "Smoke Farm",
        "location": "Buraydah",
        "mobile": "0500000000",
        "items": [{"category": "الجيد", "horsepower": "10", "total_with_tax": 1150}],
    })
    assert quotation.status_code == 201, quotation.text
    number = quotation.json()["quote_number"]
    detail = await admin_client.get(f"/api/quotations/{number}")
    assert detail.json()["location"] == "Buraydah"
    assert len(detail.json()["items"]) == 1

    sheet = await admin_client.post("/api/instant-expenses/sheets",
                                    json={"employeeId": "buyer", "custodyNumber": "500", "custodyAmount": "2000"})
    assert sheet.status_code == 201, sheet.text
    line = await admin_client.post(f"/api/instant-expenses/sheets/{sheet.json()['id']}/lines",
                                   json={"reason": "Panels", "amount": 1200})
    assert line.status_code == 201, line.text

    sent = await admin_client.post("/api/notifications/send",
                                   json={"message": f"Quotation {number} ready", "type": "user", "targetUserId": 1})
    assert sent.json()["count"] == 1
    bell = await admin_client.get("/api/notifications/1")
    assert bell.json()[0]["message"] == f"Quotation {number} ready"
