"""API tests for audit ingestion, query and report."""

import time

import pytest

from phi_audit.api.middleware.auth import INVALID_TOKEN, NO_TOKEN
from tests.helpers import auth_headers, make_token

OFFICER = ["compliance_officer"]


def event_body(**fields):
    body = {
        "id": "evt-1",
        "timestamp": "2026-03-01T12:00:00.000Z",
        "userId": "user-1",
        "event": "PHI_VIEW",
        "action": "Viewed patient chart",
        "result": "success",
        "userEmail": "clinician@example.com",
        "phiAccessed": True,
        "patientId": "patient-42",
    }
    body.update(fields)
    return body


class TestIngestionEndpoints:
    """Test POST /audit/logs and /audit/batch."""

    @pytest.mark.asyncio
    async def test_submit_log(self, client, store, crypto):
        response = await client.post(
            "/audit/logs",
            json=event_body(),
            headers={"X-Correlation-ID": "corr-123", "User-Agent": "clinic-web/2.0"},
        )

        assert response.status_code == 201
        assert response.json() == {"message": "Audit log stored successfully", "id": "evt-1"}
        assert response.headers["X-Correlation-ID"] == "corr-123"

        stored = await store.get("evt-1")
        assert stored.session_id == "corr-123"
        assert stored.user_agent == "clinic-web/2.0"
        assert stored.ip_address == "127.0.0.1"
        assert crypto.is_ciphertext(stored.patient_id)

    @pytest.mark.asyncio
    async def test_submit_log_validation_error(self, client, store):
        response = await client.post("/audit/logs", json=event_body(patientId=None))

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["field"] == "patientId"
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_submit_batch(self, client, store):
        events = [event_body(id=f"evt-{i}") for i in range(3)]

        response = await client.post("/audit/batch", json=events)

        assert response.status_code == 201
        assert response.json() == {
            "message": "Batch audit logs stored successfully",
            "count": 3,
            "ids": ["evt-0", "evt-1", "evt-2"],
        }
        assert await store.count() == 3

    @pytest.mark.asyncio
    async def test_batch_over_limit(self, client, store):
        events = [event_body(id=f"evt-{i}") for i in range(26)]

        response = await client.post("/audit/batch", json=events)

        assert response.status_code == 400
        assert response.json()["field"] == "logs"
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_batch_names_bad_entry(self, client):
        events = [event_body(id="good"), event_body(id="bad", timestamp="soon")]

        response = await client.post("/audit/batch", json=events)

        assert response.status_code == 400
        assert response.json()["entryId"] == "bad"
        assert response.json()["field"] == "timestamp"

    @pytest.mark.asyncio
    async def test_batch_must_be_a_list(self, client):
        response = await client.post("/audit/batch", json={"logs": "nope"})

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/audit/logs", "/audit/batch"])
    async def test_preflight(self, client, path):
        response = await client.options(path)

        assert response.status_code == 200
        assert response.json() == {"message": "OK"}


class TestQueryEndpoint:
    """Test GET /audit/logs."""

    @pytest.mark.asyncio
    async def test_requires_token(self, client):
        response = await client.get("/audit/logs")

        assert response.status_code == 401
        assert response.json() == {"valid": False, "reason": NO_TOKEN}
        assert response.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_rejects_bad_token(self, client):
        response = await client.get("/audit/logs", headers=auth_headers("not.a.token"))

        assert response.status_code == 401
        assert response.json()["reason"] == INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_rejects_expired_token(self, client):
        now = time.time()
        token = make_token(roles=OFFICER, issued_at=now - 7200, expires_at=now - 3600)

        response = await client.get("/audit/logs", headers=auth_headers(token))

        assert response.status_code == 401
        assert response.json() == {"valid": False, "reason": "Token expired"}

    @pytest.mark.asyncio
    async def test_phi_window_rechecked(self, client):
        now = time.time()
        token = make_token(roles=OFFICER, issued_at=now - 16 * 60, expires_at=now + 3600)

        response = await client.get("/audit/logs?userId=user-1", headers=auth_headers(token))

        assert response.status_code == 401
        assert response.json() == {
            "error": "SESSION_EXPIRED",
            "message": "PHI session expired",
            "reason": "PHI session expired",
        }

    @pytest.mark.asyncio
    async def test_forbidden_without_reader_role(self, client):
        token = make_token(sub="therapist-1", roles=["therapist"])

        response = await client.get("/audit/logs?userId=user-1", headers=auth_headers(token))

        assert response.status_code == 403
        assert response.json() == {"error": "UNAUTHORIZED", "message": "Not authorized"}

    @pytest.mark.asyncio
    async def test_query_decrypts_and_self_audits(self, client, services, store):
        await client.post("/audit/logs", json=event_body())
        await services.ingestion.wait_idle()
        token = make_token(sub="officer-1", roles=OFFICER, sid="sess-officer")

        response = await client.get("/audit/logs?userId=user-1", headers=auth_headers(token))

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["cursor"] is None
        log = body["logs"][0]
        assert log["patientId"] == "patient-42"
        assert log["userEmail"] == "clinician@example.com"
        assert log["integrityValid"] is True

        views = await client.get("/audit/logs?userId=officer-1&eventType=PHI_VIEW", headers=auth_headers(token))
        assert views.json()["count"] == 1
        assert views.json()["logs"][0]["details"]["recordIds"] == ["evt-1"]

    @pytest.mark.asyncio
    async def test_security_officer_sees_sealed_values(self, client, services):
        await client.post("/audit/logs", json=event_body())
        await services.ingestion.wait_idle()
        token = make_token(sub="sec-1", roles=["security_officer"])

        response = await client.get("/audit/logs?patientId=patient-42", headers=auth_headers(token))

        log = response.json()["logs"][0]
        assert log["patientId"].startswith("enc:v1:")

    @pytest.mark.asyncio
    async def test_pagination(self, client, services):
        for i in range(3):
            await client.post("/audit/logs", json=event_body(id=f"e{i}", timestamp=f"2026-03-01T12:0{i}:00Z", phiAccessed=False, patientId=None))
        await services.ingestion.wait_idle()
        headers = auth_headers(make_token(roles=OFFICER))

        first = (await client.get("/audit/logs?userId=user-1&limit=2", headers=headers)).json()
        second = (await client.get(f"/audit/logs?userId=user-1&limit=2&cursor={first['cursor']}", headers=headers)).json()

        assert [log["id"] for log in first["logs"]] == ["e2", "e1"]
        assert [log["id"] for log in second["logs"]] == ["e0"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params,field",
        [
            ("userId=user-1&limit=0", "limit"),
            ("userId=user-1&startDate=03/01/2026", "startDate"),
            ("userId=user-1&cursor=%25%25", "cursor"),
        ],
    )
    async def test_bad_query_params(self, client, params, field):
        headers = auth_headers(make_token(roles=OFFICER))

        response = await client.get(f"/audit/logs?{params}", headers=headers)

        assert response.status_code == 400
        assert response.json()["field"] == field


class TestReportEndpoint:
    @pytest.mark.asyncio
    async def test_report(self, client, services):
        await client.post("/audit/logs", json=event_body(id="a"))
        await client.post("/audit/logs", json=event_body(id="b", event="AUTH_FAILURE", result="failure", phiAccessed=False, patientId=None))
        await services.ingestion.wait_idle()
        headers = auth_headers(make_token(roles=OFFICER))

        response = await client.get("/audit/report?startDate=2026-03-01&endDate=2026-03-01", headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["totalEvents"] == 2
        assert body["phiAccess"] == 1
        assert body["securityEvents"] == 1
        assert body["uniqueUsers"] == 1
        assert body["endDate"] == "2026-03-01T23:59:59.999Z"

    @pytest.mark.asyncio
    async def test_report_forbidden(self, client):
        headers = auth_headers(make_token(roles=["therapist"]))

        response = await client.get("/audit/report?startDate=2026-03-01&endDate=2026-03-02", headers=headers)

        assert response.status_code == 403
