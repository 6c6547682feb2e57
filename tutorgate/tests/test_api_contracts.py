"""HTTP contract tests: tool invocation, activation claim, feedback and entitlements."""

import pytest
from fastapi.testclient import TestClient

from tutorgate.features.activation.service import issue_activation_code, revoke_activation_code
from tutorgate.features.tools.generator import GenerationError
from tutorgate.features.usage.service import count_recent, get_usage_event, record_usage
from tutorgate.main import app

CALLER = {"cf-connecting-ip": "10.0.0.5"}
DAY = 24 * 60 * 60


class FakeGenerator:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def generate(self, request, *, identity, tier):
        self.calls.append((request.tool, identity, tier))
        if self.fail:
            raise GenerationError("model timed out")
        return {"text": f"answer for {request.tool}"}


@pytest.fixture
def generator(monkeypatch):
    fake = FakeGenerator()
    monkeypatch.setattr(app.state, "content_generator", fake)
    return fake


@pytest.fixture
def client():
    return TestClient(app)


def _learn(client, headers=CALLER, **extra):
    body = {"tool": "learn", "topic": "recursion", **extra}
    return client.post("/v1/tools/invoke", json=body, headers=headers)


def test_learn_allowed_and_recorded(client, generator, settings):
    response = _learn(client)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["tool"] == "learn"
    assert data["identity"] == "subnet-10.0.0"
    assert data["tier"] == "free"
    assert data["remaining"] == 0
    assert data["content"] == {"text": "answer for learn"}

    event = get_usage_event(data["event_id"])
    assert event.action == "learn"
    assert event.category == "basic"
    assert event.metadata["topic"] == "recursion"
    assert generator.calls == [("learn", "subnet-10.0.0", "free")]


def test_second_free_call_is_rate_limited(client, generator, settings):
    assert _learn(client).status_code == 200

    response = _learn(client, headers={"cf-connecting-ip": "10.0.0.200"})

    assert response.status_code == 429
    error = response.json()["error"]
    assert error["code"] == "limit_exceeded"
    assert error["kind"] == "LIMIT_EXCEEDED"
    assert error["remaining"] == 0
    assert error["cooldown_expiry"]
    retry_after = int(response.headers["retry-after"])
    assert 0 < retry_after <= DAY
    assert len(generator.calls) == 1


def test_free_follow_up_is_forbidden(client, generator, settings):
    parent = _learn(client).json()["data"]["event_id"]

    response = client.post(
        "/v1/tools/invoke",
        json={"tool": "trace_walkthrough", "parent_event_id": parent},
        headers=CALLER,
    )

    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "forbidden"
    assert error["kind"] == "FORBIDDEN"
    assert settings.UPGRADE_URL in error["hint"]


def test_premium_follow_up_via_pairing_code(client, generator, settings):
    parent = _learn(client).json()["data"]["event_id"]
    code = issue_activation_code("sub_1")
    claim = client.post("/v1/activation/claim", json={"code": code, "device_id": "device-A"})
    pairing_code = claim.json()["pairing_code"]

    response = client.post(
        "/v1/tools/invoke",
        json={"tool": "explain_simple", "parent_event_id": parent, "pairing_code": pairing_code},
        headers=CALLER,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["tier"] == "premium"
    assert data["linked"] is True
    assert data["remaining"] is None
    assert get_usage_event(data["event_id"]).correlation_id == parent


def test_follow_up_unknown_parent(client, generator, settings):
    code = issue_activation_code("sub_1")
    client.post("/v1/activation/claim", json={"code": code, "device_id": "device-A"})

    response = client.post(
        "/v1/tools/invoke",
        json={"tool": "similar_problem", "parent_event_id": "no-such-event"},
        headers=CALLER,
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "parent_not_found"


def test_follow_up_on_other_identity_event(client, generator, settings):
    other_parent = record_usage("subnet-192.168.1", "basic", {"topic": "loops"}, action="learn")
    code = issue_activation_code("sub_1")
    client.post("/v1/activation/claim", json={"code": code, "device_id": "device-A"})

    response = client.post(
        "/v1/tools/invoke",
        json={"tool": "similar_problem", "parent_event_id": other_parent},
        headers=CALLER,
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "parent_not_found"
    assert generator.calls == []


def test_generator_failure_does_not_cost_quota(client, monkeypatch, settings):
    monkeypatch.setattr(app.state, "content_generator", FakeGenerator(fail=True))

    response = _learn(client)

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "generation_failed"
    assert count_recent("subnet-10.0.0", DAY) == 0


def test_no_generator_configured(client, settings):
    response = _learn(client)
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "generation_unavailable"


def test_unknown_tool_is_validation_error(client, generator, settings):
    response = client.post("/v1/tools/invoke", json={"tool": "teleport"}, headers=CALLER)

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"
    assert generator.calls == []


def test_extra_fields_rejected(client, generator, settings):
    response = _learn(client, unexpected="x")
    assert response.status_code == 422


def test_claim_success_returns_pairing_code(client, settings):
    code = issue_activation_code("sub_1")

    response = client.post("/v1/activation/claim", json={"code": code.lower(), "device_id": "device-A"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["code"] == code
    assert body["state"] == "claimed"
    assert body["pairing_code"]
    assert body["pairing_expires_at"]


def test_claim_unknown_code(client, settings):
    response = client.post("/v1/activation/claim", json={"code": "ABCD-EFGH", "device_id": "device-A"})

    assert response.status_code == 404
    error = response.json()["error"]
    assert error["code"] == "invalid_code"
    assert error["kind"] == "INVALID_CODE"
    assert error["hint"]


def test_claim_revoked_code(client, settings):
    code = issue_activation_code("sub_1")
    revoke_activation_code("sub_1")

    response = client.post("/v1/activation/claim", json={"code": code, "device_id": "device-A"})

    assert response.status_code == 410
    assert response.json()["error"]["kind"] == "CODE_REVOKED"


def test_claim_other_device(client, settings):
    code = issue_activation_code("sub_1")
    client.post("/v1/activation/claim", json={"code": code, "device_id": "device-A"})

    response = client.post("/v1/activation/claim", json={"code": code, "device_id": "device-B"})

    assert response.status_code == 409
    assert response.json()["error"]["kind"] == "DEVICE_MISMATCH"


def test_feedback_round_trip(client, generator, settings):
    event_id = _learn(client).json()["data"]["event_id"]

    response = client.post(f"/v1/usage/{event_id}/feedback", json={"decision": "no", "reason": "too_advanced"})

    assert response.status_code == 200
    assert response.json()["data"] == {"event_id": event_id, "decision": "no", "reason": "too_advanced"}


def test_feedback_unknown_event(client, settings):
    response = client.post("/v1/usage/missing/feedback", json={"decision": "yes"})
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_feedback_invalid_reason(client, settings):
    response = client.post("/v1/usage/anything/feedback", json={"decision": "yes", "reason": "bogus"})
    assert response.status_code == 422


def test_entitlements_me(client, generator, settings):
    _learn(client)

    response = client.get("/v1/entitlements/me", headers=CALLER)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["identity"] == "subnet-10.0.0"
    assert data["tier"] == "free"
    assert data["used"] == 1
    assert data["remaining"] == 0
    assert data["cooldown_expiry"]


def test_request_id_echoed(client, settings):
    response = client.get("/v1/entitlements/me", headers={"x-request-id": "req-123", **CALLER})
    assert response.headers["x-request-id"] == "req-123"


def test_request_id_on_errors(client, settings):
    response = client.post("/v1/activation/claim", json={"code": "ABCD-EFGH", "device_id": "device-A"})
    assert response.headers["x-request-id"]
    assert response.json()["error"]["request_id"] == response.headers["x-request-id"]
