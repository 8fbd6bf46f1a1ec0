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
from coach import normalize_questions  # noqa: E402
from config import Settings  # noqa: E402
from errors import UpstreamFailure  # noqa: E402


def make_client(**overrides) -> TestClient:
    return TestClient(app.create_app(Settings(**overrides)))


def test_local_alias_generates_single_question(monkeypatch):
    calls = []

    def fake_provider_json(target, api_key, system_prompt, user_prompt, cfg=None):
        calls.append((target, api_key, user_prompt))
        return {"questions": [{"question": "Why did he leave?", "rubric": "mentions motivation"}, {"question": ""}]}

    monkeypatch.setattr(routes.ai, "provider_json", fake_provider_json)

    resp = make_client().post(
        "/api/ai/generate-questions",
        json={"provider": "local", "chapter": {"summary": "A boy leaves home."}, "count": 3},
    )

    assert resp.status_code == 200
    assert resp.json() == {
        "questions": [{"id": "q1", "question": "Why did he leave?", "rubric": "mentions motivation"}]
    }
    target, api_key, user_prompt = calls[0]
    assert target.provider == "ollama"
    assert target.base_url == "http://127.0.0.1:11434"
    assert api_key == ""
    assert "Return exactly 3 questions." in user_prompt
    assert "A boy leaves home." in user_prompt


def test_no_usable_questions_is_bad_gateway(monkeypatch):
    monkeypatch.setattr(routes.ai, "provider_json", lambda *a, **k: {"questions": [{"question": "  "}]})

    resp = make_client().post("/api/ai/generate-questions", json={"provider": "ollama"})

    assert resp.status_code == 502
    assert resp.json() == {"error": "AI provider returned no usable questions."}


def test_upstream_status_is_passed_through(monkeypatch):
    def fail(*args, **kwargs):
        raise UpstreamFailure("Incorrect API key provided.", status_code=401)

    monkeypatch.setattr(routes.ai, "provider_json", fail)

    resp = make_client().post(
        "/api/ai/generate-questions",
        json={"provider": "openai"},
        headers={"X-Provider-Api-Key": "sk-bad"},
    )

    assert resp.status_code == 401
    assert resp.json() == {"error": "Incorrect API key provided."}


def test_header_key_wins_over_server_key(monkeypatch):
    seen = {}

    def fake_provider_json(target, api_key, *args, **kwargs):
        seen["key"] = api_key
        return {"questions": [{"question": "What changed?"}]}

    monkeypatch.setattr(routes.ai, "provider_json", fake_provider_json)

    client = make_client(openai_api_key="server-key")
    client.post("/api/ai/generate-questions", json={"provider": "openai"}, headers={"X-Provider-Api-Key": "user-key"})
    assert seen["key"] == "user-key"

    client.post("/api/ai/generate-questions", json={"provider": "openai"})
    assert seen["key"] == "server-key"


def test_unexpected_errors_are_generic(monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("secret payload sk-live-123")

    monkeypatch.setattr(routes.ai, "provider_json", boom)

    client = TestClient(app.create_app(Settings()), raise_server_exceptions=False)
    resp = client.post("/api/ai/generate-questions", json={"provider": "ollama"})

    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error."}
    assert "sk-live" not in resp.text


def test_normalize_questions_caps_and_dedupes_ids():
    parsed = {
        "questions": [
            {"id": "q2", "question": "First"},
            {"id": "q2", "question": "Second"},
            {"question": "Third"},
            "not an object",
            {"question": "Fourth"},
        ]
    }
    questions = normalize_questions(parsed, expected_count=3)

    assert [q.question for q in questions] == ["First", "Second", "Third"]
    ids = [q.id for q in questions]
    assert len(set(ids)) == 3
    assert ids[0] == "q2"


def test_normalize_questions_clamps_text():
    questions = normalize_questions({"questions": [{"question": "x" * 900, "rubric": "r" * 3000}]}, 6)
    assert len(questions[0].question) == 500
    assert len(questions[0].rubric) == 2000


def test_normalize_questions_tolerates_wrong_shape():
    assert normalize_questions(["nope"], 6) == []
    assert normalize_questions({"questions": "nope"}, 6) == []
