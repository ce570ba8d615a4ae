"""
API Tests

Tests the admin HTTP surface end to end through FastAPI's TestClient:
- Admin predicate
- Status-code mapping of the error taxonomy
- Health, segment and AI endpoints
"""

import pytest

from tests.conftest import ALERTS_REPLY, INSIGHT_REPLY, QUERY_REPLY, FakeCompletionService


class TestAuthentication:
    """Test the admin predicate"""

    def test_missing_key_is_401(self, make_client):
        response = make_client().post("/api/admin/ai", json={"type": "alerts"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_wrong_key_is_403(self, make_client):
        response = make_client().post("/api/admin/ai", json={"type": "alerts"}, headers={"X-API-Key": "nope"})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_no_configured_key_allows(self, make_client):
        response = make_client(admin_key=None).post("/api/admin/ai", json={"type": "alerts"})

        assert response.status_code == 200

    def test_health_endpoint_is_public(self, make_client):
        response = make_client().get("/health")

        assert response.status_code == 200
        assert response.json()["ai_capability"] == "unconfigured"

    def test_correlation_id_echoed(self, make_client, admin_headers):
        headers = dict(admin_headers, **{"X-Correlation-ID": "trace-123"})

        response = make_client().post("/api/admin/ai", json={}, headers=headers)

        assert response.headers["X-Correlation-ID"] == "trace-123"
        assert response.json()["error"]["correlation_id"] == "trace-123"


class TestAIEndpoint:
    """Test POST /api/admin/ai status mapping"""

    def test_missing_type_is_400(self, make_client, admin_headers):
        response = make_client().post("/api/admin/ai", json={}, headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "BAD_REQUEST"

    def test_malformed_context_is_400(self, make_client, admin_headers):
        response = make_client(FakeCompletionService(QUERY_REPLY)).post(
            "/api/admin/ai", json={"type": "query", "query": "hi", "context": "oops"}, headers=admin_headers
        )

        assert response.status_code == 400

    def test_alerts_without_ai_is_200(self, make_client, admin_headers):
        response = make_client().post("/api/admin/ai", json={"type": "alerts"}, headers=admin_headers)

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["data"]["degraded"] is True
        assert len(body["data"]["alerts"]) >= 1

    def test_alerts_with_ai(self, make_client, admin_headers):
        response = make_client(FakeCompletionService(ALERTS_REPLY)).post(
            "/api/admin/ai", json={"type": "alerts"}, headers=admin_headers
        )

        assert response.json()["data"]["source"] == "ai"

    def test_insight_without_ai_is_503(self, make_client, admin_headers):
        response = make_client().post("/api/admin/ai", json={"type": "insight", "customerId": "alice"},
                                      headers=admin_headers)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "AI_UNAVAILABLE"

    def test_insight_unknown_customer_is_404(self, make_client, admin_headers):
        response = make_client(FakeCompletionService(INSIGHT_REPLY)).post(
            "/api/admin/ai", json={"type": "insight", "customerId": "ghost"}, headers=admin_headers
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_insight(self, make_client, admin_headers):
        response = make_client(FakeCompletionService(INSIGHT_REPLY)).post(
            "/api/admin/ai", json={"type": "insight", "customerId": "alice"}, headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["data"]["churnAnalysis"] == "Very low churn risk."

    def test_rate_limited_is_429(self, make_client, admin_headers):
        client = make_client(FakeCompletionService(QUERY_REPLY), quota=1)
        payload = {"type": "query", "query": "Top customer?"}

        assert client.post("/api/admin/ai", json=payload, headers=admin_headers).status_code == 200
        response = client.post("/api/admin/ai", json=payload, headers=admin_headers)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMITED"
        assert response.headers["Retry-After"] == "3600"


class TestCustomerHealth:
    """Test GET /api/admin/customers/{id}/health"""

    def test_health_report(self, make_client, admin_headers):
        response = make_client().get("/api/admin/customers/bob/health", headers=admin_headers)

        data = response.json()["data"]
        assert response.status_code == 200
        assert data["customerId"] == "bob"
        assert data["score"]["label"] in {"Champion", "Loyal", "Promising", "At Risk", "Lost"}
        assert len(data["recommendedActions"]) == 3
        assert "Repeat Buyers" in data["segments"]

    def test_unknown_customer(self, make_client, admin_headers):
        response = make_client().get("/api/admin/customers/ghost/health", headers=admin_headers)

        assert response.status_code == 404


class TestSegments:
    """Test segment endpoints"""

    RULE = {"version": 1, "rule": {"type": "comparison", "field": "total_orders", "operator": "gte", "value": 3}}

    def test_presets(self, make_client, admin_headers):
        response = make_client().get("/api/admin/segments/presets", headers=admin_headers)

        ids = [segment["id"] for segment in response.json()["data"]]
        assert "preset_vip" in ids
        assert response.json()["data"][0]["definition"]["version"] == 1

    def test_create_list_and_members(self, make_client, admin_headers):
        client = make_client()

        created = client.post("/api/admin/segments", json={"name": "Regulars", "definition": self.RULE},
                              headers=admin_headers)
        assert created.status_code == 201
        segment_id = created.json()["data"]["id"]

        listed = client.get("/api/admin/segments", headers=admin_headers).json()["data"]
        assert listed[0]["memberCount"] == 2

        members = client.get(f"/api/admin/segments/{segment_id}/members", headers=admin_headers).json()["data"]
        assert {m["id"] for m in members["members"]} == {"alice", "bob"}

        fetched = client.get(f"/api/admin/segments/{segment_id}", headers=admin_headers)
        assert fetched.json()["data"]["name"] == "Regulars"

    def test_create_with_legacy_rows(self, make_client, admin_headers):
        legacy = {"rules": [{"field": "total_spent", "operator": "gte", "value": "500"}]}

        response = make_client().post("/api/admin/segments", json={"name": "Big", "definition": legacy},
                                      headers=admin_headers)

        assert response.status_code == 201
        assert response.json()["data"]["definition"]["version"] == 1

    @pytest.mark.parametrize("body", [
        {"name": "", "definition": RULE},
        {"name": "Bad", "definition": {"version": 1, "rule": {"type": "bogus"}}},
        {"definition": RULE},
    ])
    def test_invalid_segment_is_400(self, make_client, admin_headers, body):
        response = make_client().post("/api/admin/segments", json=body, headers=admin_headers)

        assert response.status_code == 400

    def test_preview(self, make_client, admin_headers):
        rule = {"version": 1, "rule": {"type": "comparison", "field": "health_label", "operator": "eq",
                                       "value": "lost"}}

        response = make_client().post("/api/admin/segments/preview", json={"definition": rule, "limit": 2},
                                      headers=admin_headers)

        data = response.json()["data"]
        assert data["memberCount"] == 3
        assert data["totalCustomers"] == 5
        assert len(data["members"]) == 2

    def test_preset_members(self, make_client, admin_headers):
        response = make_client().get("/api/admin/segments/preset_new/members", headers=admin_headers)

        assert [m["id"] for m in response.json()["data"]["members"]] == ["erin"]

    def test_unknown_segment(self, make_client, admin_headers):
        response = make_client().get("/api/admin/segments/missing", headers=admin_headers)

        assert response.status_code == 404
