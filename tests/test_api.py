import io
import time

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook

from statement_backend import api_app
from statement_backend.services import build_services

MARCH = {"startDate": "2024-03-01", "endDate": "2024-03-31"}


@pytest.fixture
def client(settings, source):
    api_app.set_services(build_services(settings, source=source))
    with TestClient(api_app.app) as c:
        yield c
    api_app.set_services(None)


def _generate(client, **body):
    resp = client.post("/statements/generate", json={**MARCH, **body})
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health(client):
    assert client.get("/health").json() == {"ok": True, "status": "running"}


def test_generate_single_property(client):
    st = _generate(client, ownerId="o1", propertyId="101", calculationType="checkout")
    assert st["owner_payout"] == 675.0
    assert st["status"] == "draft"
    assert client.get(f"/statements/{st['id']}").json()["id"] == st["id"]


def test_generate_group_and_list(client):
    _generate(client, groupId="g1")
    listing = client.get("/statements", params={"owner_id": "o1"}).json()
    assert listing["count"] == 1
    assert listing["statements"][0]["group_name"] == "Lake Group"


def test_generate_requires_target(client):
    resp = client.post("/statements/generate", json=MARCH)
    assert resp.status_code == 400


def test_generate_bad_dates(client):
    resp = client.post("/statements/generate", json={"propertyId": "101", "startDate": "2024-03-31",
                                                      "endDate": "2024-03-01"})
    assert resp.status_code == 400
    assert resp.json()["error_type"] == "ValidationError"


def test_source_failure_is_bad_gateway(client):
    resp = client.post("/statements/generate", json={**MARCH, "propertyId": "204"})
    assert resp.status_code == 502


def test_unknown_statement_is_404(client):
    assert client.get("/statements/999").status_code == 404


def test_bulk_generation_job(client):
    resp = client.post("/statements/generate", json={**MARCH, "ownerId": "all"})
    assert resp.status_code == 202
    body = resp.json()
    assert body["statusUrl"] == f"/statements/jobs/{body['jobId']}"

    job = None
    for _ in range(200):
        job = client.get(body["statusUrl"]).json()
        if job["status"] in ("completed", "failed"):
            break
        time.sleep(0.02)
    assert job["status"] == "completed"
    assert job["progress"] == job["total"] == 6
    assert job["result"]["summary"]["generated"] == 4
    assert job["result"]["summary"]["skipped"] == 1
    assert len(job["result"]["errors"]) == 1


def test_unknown_job_is_404(client):
    assert client.get("/statements/jobs/job_999").status_code == 404


def test_edit_visibility(client):
    st = _generate(client, propertyId="101")
    resp = client.put(f"/statements/{st['id']}/edit",
                      json={"itemVisibilityUpdates": [{"globalIndex": 1, "hidden": False}]})
    assert resp.status_code == 200
    assert resp.json()["owner_payout"] == 525.0

    stale = client.put(f"/statements/{st['id']}/edit",
                       json={"itemVisibilityUpdates": [{"globalIndex": 9, "hidden": True}]})
    assert stale.status_code == 400


def test_edit_custom_reservation(client):
    st = _generate(client, propertyId="101")
    resp = client.put(f"/statements/{st['id']}/edit", json={"customReservationToAdd": {
        "guestName": "Walk-in", "checkInDate": "2024-03-20", "checkOutDate": "2024-03-22", "amount": 250,
    }})
    assert resp.status_code == 200
    assert resp.json()["total_revenue"] == 1250.0


def test_reconfigure(client):
    st = _generate(client, propertyId="201")
    resp = client.post(f"/statements/{st['id']}/reconfigure", json={**MARCH, "calculationType": "calendar"})
    assert resp.status_code == 200
    assert resp.json()["total_revenue"] == 400.0

    bad = client.post(f"/statements/{st['id']}/reconfigure",
                      json={"startDate": "2024-03-31", "endDate": "2024-03-01"})
    assert bad.status_code == 400
    assert client.get(f"/statements/{st['id']}").json()["calculation_type"] == "calendar"


def test_status_and_lock(client):
    st = _generate(client, propertyId="101")
    assert client.put(f"/statements/{st['id']}/status", json={"status": "final"}).status_code == 200
    resp = client.put(f"/statements/{st['id']}/status", json={"status": "sent", "payoutStatus": "paid"})
    assert resp.json()["payout_status"] == "paid"
    locked = client.put(f"/statements/{st['id']}/edit", json={"reservationIdsToRemove": ["R1"]})
    assert locked.status_code == 400
    assert client.put(f"/statements/{st['id']}/status", json={"status": "bogus"}).status_code == 400


def test_available_reservations(client):
    st = _generate(client, propertyId="101")
    body = client.get(f"/statements/{st['id']}/available-reservations").json()
    assert [r["source_id"] for r in body["reservations"]] == ["R2"]


def test_download(client):
    st = _generate(client, propertyId="101")
    resp = client.get(f"/statements/{st['id']}/download")
    assert resp.status_code == 200
    assert "attachment" in resp.headers["content-disposition"]
    wb = load_workbook(io.BytesIO(resp.content))
    assert "Summary" in wb.sheetnames


def test_pm_fee_import(client, source):
    csv = b"id,name,internalName,pm%\n101,Beach,BH,18%\n999,Ghost,G,10\n"
    resp = client.post("/listings/pm-fees/import", files={"file": ("fees.csv", csv, "text/csv")})
    assert resp.status_code == 200
    assert resp.json()["updated_count"] == 1
    assert resp.json()["error_count"] == 1
    assert source.listings["101"].pm_fee_percentage == 18.0


def test_schedules(client):
    tags = [s["tag"] for s in client.get("/schedules").json()["schedules"]]
    assert "WEEKLY" in tags

    result = client.post("/schedules/run", params={"date": "2024-03-11"}).json()
    assert {r["tag"] for r in result["runs"]} == {"WEEKLY", "BI-WEEKLY A"}
    activity = client.get("/activity", params={"action": "AUTO_GENERATE"}).json()
    assert activity["count"] == 2


def test_settings_update(client):
    resp = client.patch("/settings", json={"tech_fee": 60.0})
    assert resp.json()["settings"]["tech_fee"] == 60.0
    st = _generate(client, propertyId="101")
    assert st["tech_fee"] == 60.0
    assert client.patch("/settings", json={"auto_time": "25:00"}).status_code == 400
