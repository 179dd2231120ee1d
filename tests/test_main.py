from __future__ import annotations

from fastapi.testclient import TestClient
import pytest

from main import app, get_clock, get_controller, get_generator, get_payment_verifier
from script_builder.config import Settings, get_settings
from script_builder.errors import PaymentRequired, UpstreamError
from script_builder.rate_limit import AdmissionController

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-headers": "Content-Type, Authorization",
    "access-control-allow-methods": "POST, OPTIONS",
}


class FakeGenerator:
    def __init__(self) -> None:
        self.calls = []
        self.text = "A calm script."
        self.error: Exception | None = None

    def complete(self, messages, *, max_tokens):  # noqa: D401
        """Record the call and return canned text."""

        self.calls.append((messages, max_tokens))
        if self.error:
            raise self.error
        return self.text


class FakeVerifier:
    def __init__(self) -> None:
        self.paid = set()
        self.checked = []

    def is_paid(self, session_id):
        self.checked.append(session_id)
        return session_id in self.paid

    def require_paid(self, session_id):
        if not session_id or not self.is_paid(session_id):
            raise PaymentRequired("Payment not verified.")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000_000

    def __call__(self) -> int:
        return self.now


@pytest.fixture()
def api_client():
    fakes = {
        "generator": FakeGenerator(),
        "verifier": FakeVerifier(),
        "clock": FakeClock(),
        "controller": AdmissionController(),
    }
    app.dependency_overrides[get_generator] = lambda: fakes["generator"]
    app.dependency_overrides[get_payment_verifier] = lambda: fakes["verifier"]
    app.dependency_overrides[get_clock] = lambda: fakes["clock"]
    app.dependency_overrides[get_controller] = lambda: fakes["controller"]
    app.dependency_overrides[get_settings] = lambda: Settings(max_prompt_chars=4000)
    client = TestClient(app)
    try:
        yield client, fakes
    finally:
        app.dependency_overrides.clear()


def assert_json_with_cors(response):
    assert response.headers["content-type"] == "application/json"
    for name, value in CORS_HEADERS.items():
        assert response.headers[name] == value


def test_preview_generation_returns_text(api_client):
    client, fakes = api_client

    response = client.post(
        "/api/generate", json={"prompt": "my notes", "tone": "gentle", "audience": "makers"}
    )

    assert response.status_code == 200
    assert response.json() == {"text": "A calm script."}
    assert_json_with_cors(response)
    messages, max_tokens = fakes["generator"].calls[0]
    assert max_tokens == 600
    assert "my notes" in messages[1]["content"]
    assert "- Tone: gentle" in messages[1]["content"]


def test_netlify_path_alias_is_served(api_client):
    client, _ = api_client

    response = client.post("/.netlify/functions/generate", json={"prompt": "notes"})

    assert response.status_code == 200


def test_options_is_preflight_noop(api_client):
    client, fakes = api_client

    response = client.options("/api/generate")

    assert response.status_code == 200
    assert response.json() == {"text": ""}
    assert_json_with_cors(response)
    assert len(fakes["controller"]) == 0


def test_other_methods_are_not_allowed(api_client):
    client, _ = api_client

    response = client.get("/api/generate")

    assert response.status_code == 405
    assert response.json() == {"error": "Method not allowed."}
    assert_json_with_cors(response)


def test_invalid_json_body(api_client):
    client, fakes = api_client

    response = client.post(
        "/api/generate", content="{not json", headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON body."}
    assert_json_with_cors(response)
    assert fakes["generator"].calls == []


def test_missing_prompt(api_client):
    client, _ = api_client

    response = client.post("/api/generate", json={"prompt": "   "})

    assert response.status_code == 400
    assert response.json() == {"error": "Missing prompt."}


def test_prompt_over_limit_names_the_limit(api_client):
    client, _ = api_client

    response = client.post("/api/generate", json={"prompt": "x" * 4001})

    assert response.status_code == 400
    assert "4000" in response.json()["error"]


def test_cooldown_returns_429_with_wait_seconds(api_client):
    client, fakes = api_client
    client.post("/api/generate", json={"prompt": "one"})
    fakes["clock"].now += 1000

    response = client.post("/api/generate", json={"prompt": "two"})

    assert response.status_code == 429
    assert response.json() == {"error": "Cooldown active: wait 2s before the next request."}
    assert response.headers["retry-after"] == "2"
    assert_json_with_cors(response)
    assert len(fakes["generator"].calls) == 1


def test_window_limit_returns_fixed_message(api_client):
    client, fakes = api_client
    for _ in range(10):
        assert client.post("/api/generate", json={"prompt": "notes"}).status_code == 200
        fakes["clock"].now += 3000

    response = client.post("/api/generate", json={"prompt": "notes"})

    assert response.status_code == 429
    assert response.json() == {
        "error": "Rate limit reached: max 10 requests per 10 minutes per IP."
    }
    assert "retry-after" not in response.headers


def test_clients_are_keyed_by_forwarded_address(api_client):
    client, fakes = api_client

    first = client.post(
        "/api/generate", json={"prompt": "a"}, headers={"X-Forwarded-For": "203.0.113.1"}
    )
    second = client.post(
        "/api/generate", json={"prompt": "b"}, headers={"X-Forwarded-For": "203.0.113.2"}
    )

    assert first.status_code == second.status_code == 200
    assert "203.0.113.1" in fakes["controller"]
    assert "203.0.113.2" in fakes["controller"]


def test_full_mode_without_session_is_forbidden(api_client):
    client, fakes = api_client

    response = client.post("/api/generate", json={"prompt": "notes", "mode": "full"})

    assert response.status_code == 403
    assert response.json() == {"error": "Payment not verified."}
    assert_json_with_cors(response)
    assert fakes["generator"].calls == []


def test_full_mode_with_unpaid_session_is_forbidden(api_client):
    client, fakes = api_client

    response = client.post(
        "/api/generate", json={"prompt": "notes", "mode": "full", "session_id": "cs_open"}
    )

    assert response.status_code == 403
    assert fakes["verifier"].checked == ["cs_open"]


def test_full_mode_with_paid_session_uses_full_budget(api_client):
    client, fakes = api_client
    fakes["verifier"].paid.add("cs_paid")

    response = client.post(
        "/api/generate", json={"prompt": "notes", "mode": "full", "session_id": "cs_paid"}
    )

    assert response.status_code == 200
    _, max_tokens = fakes["generator"].calls[0]
    assert max_tokens == 1600


def test_upstream_status_is_relayed(api_client):
    client, fakes = api_client
    fakes["generator"].error = UpstreamError("Quota exceeded", status_code=429)

    response = client.post("/api/generate", json={"prompt": "notes"})

    assert response.status_code == 429
    assert response.json() == {"error": "Quota exceeded"}
    assert_json_with_cors(response)


def test_unexpected_fault_returns_generic_500(api_client):
    client, fakes = api_client
    fakes["generator"].error = KeyError("choices")

    response = client.post("/api/generate", json={"prompt": "notes"})

    assert response.status_code == 500
    assert response.json()["error"].startswith("Server error:")
    assert "choices" in response.json()["error"]
    assert_json_with_cors(response)


def test_verify_session_paid_and_unpaid(api_client):
    client, fakes = api_client
    fakes["verifier"].paid.add("cs_paid")

    paid = client.post("/api/verify-session", json={"session_id": "cs_paid"})
    unpaid = client.post("/.netlify/functions/verifySession", json={"session_id": "cs_open"})

    assert paid.status_code == 200
    assert paid.json() == {"ok": True}
    assert unpaid.status_code == 403
    assert unpaid.json() == {"ok": False, "error": "Payment not verified."}


def test_verify_session_requires_session_id(api_client):
    client, _ = api_client

    response = client.post("/api/verify-session", json={})

    assert response.status_code == 400
    assert response.json() == {"error": "Missing session_id."}


def test_verify_session_options_and_method_guard(api_client):
    client, _ = api_client

    assert client.options("/api/verify-session").json() == {"ok": True}
    assert client.delete("/api/verify-session").status_code == 405


def test_healthz(api_client):
    client, _ = api_client

    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_deeply_nested_body_is_invalid_json(api_client):
    client, fakes = api_client

    response = client.post("/api/generate", content=b"[" * 20_000 + b"]" * 20_000)

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON body."}
    assert_json_with_cors(response)
    assert fakes["generator"].calls == []


def test_oversized_body_is_rejected_before_parsing(api_client):
    client, _ = api_client

    response = client.post("/api/generate", content=b"[" * 100_000 + b"]" * 100_000)

    assert response.status_code == 400
    assert response.json() == {"error": "Request body too large."}


def test_oversized_verify_body_is_rejected(api_client):
    client, _ = api_client

    response = client.post("/api/verify-session", content=b" " * 60_000 + b"{}")

    assert response.status_code == 400
    assert response.json() == {"error": "Request body too large."}


def test_unrouted_method_uses_error_body(api_client):
    client, _ = api_client

    response = client.request("TRACE", "/api/generate")

    assert response.status_code == 405
    assert response.json() == {"error": "Method not allowed."}
    assert_json_with_cors(response)


def test_unknown_path_uses_error_body(api_client):
    client, _ = api_client

    response = client.get("/nope")

    assert response.status_code == 404
    assert response.json() == {"error": "Not Found"}
    assert_json_with_cors(response)


def test_sub_minute_window_message(api_client):
    client, fakes = api_client
    fakes["controller"] = AdmissionController(max_requests=1, window_ms=30_000)
    client.post("/api/generate", json={"prompt": "notes"})
    fakes["clock"].now += 3000

    response = client.post("/api/generate", json={"prompt": "notes"})

    assert response.status_code == 429
    assert response.json() == {
        "error": "Rate limit reached: max 1 requests per 30 seconds per IP."
    }


def test_serve_runs_uvicorn(monkeypatch):
    import uvicorn

    import main

    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))
    monkeypatch.setenv("PORT", "9000")

    main.serve()

    assert calls == [(("main:app",), {"host": "0.0.0.0", "port": 9000})]
