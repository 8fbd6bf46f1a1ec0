import os
import sys
from pathlib import Path

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("OPENAI_API_KEY", "test-key")

import app  # noqa: E402
import routes.ai  # noqa: E402
from config import Settings  # noqa: E402
from middleware import FixedWindowRateLimiter  # noqa: E402

ALLOWED = "http://localhost:5173"
BODY = {"provider": "ollama", "chapter": {"summary": "A boy leaves home."}}


def make_client(**overrides) -> TestClient:
    return TestClient(app.create_app(Settings(**overrides)))


def stub_provider(monkeypatch):
    calls = []

    def fake_provider_json(*args, **kwargs):
        calls.append(1)
        return {"questions": [{"question": "Why did he leave?"}]}

    monkeypatch.setattr(routes.ai, "provider_json", fake_provider_json)
    return calls


def test_disallowed_origin_is_forbidden(monkeypatch):
    calls = stub_provider(monkeypatch)

    resp = make_client().post("/api/ai/generate-questions", json=BODY, headers={"Origin": "https://evil.example"})

    assert resp.status_code == 403
    assert resp.json() == {"error": "Origin not allowed."}
    assert resp.headers["x-frame-options"] == "SAMEORIGIN"
    assert calls == []


def test_allowed_origin_gets_cors_headers(monkeypatch):
    stub_provider(monkeypatch)

    resp = make_client().post("/api/ai/generate-questions", json=BODY, headers={"Origin": ALLOWED})

    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == ALLOWED
    assert resp.headers["vary"] == "Origin"


def test_preflight_short_circuits():
    resp = make_client().options(
        "/api/ai/grade",
        headers={"Origin": ALLOWED, "Access-Control-Request-Method": "POST"},
    )

    assert resp.status_code == 204
    assert resp.headers["access-control-allow-origin"] == ALLOWED
    assert "X-Provider-Api-Key" in resp.headers["access-control-allow-headers"]


def test_oversized_body_is_rejected(monkeypatch):
    calls = stub_provider(monkeypatch)
    body = dict(BODY, chapter={"summary": "x" * 2048})

    resp = make_client(max_body_bytes=1024).post("/api/ai/generate-questions", json=body)

    assert resp.status_code == 413
    assert resp.json() == {"error": "Request body too large."}
    assert calls == []


def test_forty_first_request_is_rate_limited(monkeypatch):
    calls = stub_provider(monkeypatch)
    client = make_client(rate_limit_max=40, rate_limit_window_seconds=60)

    for _ in range(40):
        assert client.post("/api/ai/generate-questions", json=BODY).status_code == 200
    assert len(calls) == 40

    resp = client.post("/api/ai/generate-questions", json=BODY)

    assert resp.status_code == 429
    assert resp.json() == {"error": "Too many AI requests. Please retry in a minute."}
    assert resp.headers["ratelimit-limit"] == "40"
    assert resp.headers["ratelimit-remaining"] == "0"
    assert int(resp.headers["retry-after"]) <= 60
    assert len(calls) == 40


def test_health_is_not_rate_limited():
    client = make_client(rate_limit_max=1)
    for _ in range(3):
        assert client.get("/api/health").status_code == 200


def test_callers_are_counted_separately(monkeypatch):
    stub_provider(monkeypatch)
    client = make_client(rate_limit_max=1)

    first = client.post("/api/ai/generate-questions", json=BODY, headers={"X-Forwarded-For": "10.0.0.1"})
    other = client.post("/api/ai/generate-questions", json=BODY, headers={"X-Forwarded-For": "10.0.0.2"})
    again = client.post("/api/ai/generate-questions", json=BODY, headers={"X-Forwarded-For": "10.0.0.1"})

    assert (first.status_code, other.status_code, again.status_code) == (200, 200, 429)


def test_limiter_window_resets():
    now = [0.0]
    limiter = FixedWindowRateLimiter(limit=2, window_seconds=60, clock=lambda: now[0])

    assert limiter.hit("a").allowed
    assert limiter.hit("a").allowed
    blocked = limiter.hit("a")
    assert not blocked.allowed
    assert blocked.reset_in == 60

    now[0] = 61.0
    decision = limiter.hit("a")
    assert decision.allowed
    assert decision.remaining == 1
