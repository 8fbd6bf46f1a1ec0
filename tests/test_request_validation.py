import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("OPENAI_API_KEY", "test-key")

import app  # noqa: E402
from coach import parse_generate_request, parse_grade_request, resolve_api_key  # noqa: E402
from config import Settings  # noqa: E402
from errors import InvalidRequest  # noqa: E402

CFG = Settings()


def make_client() -> TestClient:
    return TestClient(app.create_app(Settings()))


@pytest.mark.parametrize(
    "body, message",
    [
        ({"provider": "gemini"}, 'Provider must be one of: "ollama", "openai", "anthropic".'),
        ({"provider": "ollama", "model": "bad model!"}, "Model contains invalid characters."),
        ({"provider": "ollama", "baseUrl": "not a url"}, "Invalid Ollama base URL."),
        ({"provider": "ollama", "baseUrl": "ftp://host:21"}, "Ollama base URL must use http or https."),
        ({"provider": "ollama", "baseUrl": "http://127.0.0.1:99999"}, "Invalid Ollama base URL."),
        ({"provider": "ollama", "baseUrl": "http://127.0.0.1:port"}, "Invalid Ollama base URL."),
        ({"provider": "ollama", "baseUrl": "http:// :11434"}, "Invalid Ollama base URL."),
        ({"provider": "ollama", "baseUrl": "http://gpu box:11434"}, "Invalid Ollama base URL."),
    ],
)
def test_invalid_fields_are_rejected(body, message):
    with pytest.raises(InvalidRequest) as exc:
        parse_generate_request(body, CFG)
    assert exc.value.status_code == 400
    assert exc.value.message == message


def test_non_object_body_is_invalid():
    with pytest.raises(InvalidRequest) as exc:
        parse_generate_request(["provider", "ollama"], CFG)
    assert exc.value.message == "Invalid request body."


def test_defaults_and_clamps():
    data = parse_generate_request(
        {"provider": " OpenAI ", "count": 99, "difficulty": "brutal", "style": "Critical_Thinking", "baseUrl": "ftp://x"},
        CFG,
    )
    assert data.provider == "openai"
    assert data.model == "gpt-4o-mini"
    assert data.base_url is None
    assert data.count == 15
    assert data.difficulty == "mixed"
    assert data.style == "critical_thinking"

    assert parse_generate_request({"provider": "ollama", "count": 0}, CFG).count == 1
    assert parse_generate_request({"provider": "ollama", "count": "abc"}, CFG).count == 6


def test_base_url_loses_trailing_slash():
    data = parse_generate_request({"provider": "ollama", "ollamaBaseUrl": "http://gpu-box:11434/"}, CFG)
    assert data.base_url == "http://gpu-box:11434"


def test_chapter_fields_are_trimmed_and_clamped():
    data = parse_generate_request(
        {"provider": "ollama", "chapter": {"label": "  Chapter 1  ", "summary": "s" * 8000}},
        CFG,
    )
    assert data.chapter.label == "Chapter 1"
    assert len(data.chapter.summary) == 7000


def test_grade_takes_first_twenty_answers():
    answers = [{"questionId": f"q{i}", "question": "Q?", "studentAnswer": "A"} for i in range(25)]
    data = parse_grade_request({"provider": "ollama", "answers": answers}, CFG)

    assert len(data.answers) == 20
    assert data.answers[-1].question_id == "q19"
    assert data.chapter.reflection == ""


def test_missing_api_key_for_cloud_provider():
    with pytest.raises(InvalidRequest) as exc:
        resolve_api_key("anthropic", None, Settings())
    assert exc.value.message == 'Missing API key for provider "anthropic".'


def test_api_key_resolution():
    cfg = Settings(openai_api_key="env-key")
    assert resolve_api_key("openai", "  header-key ", cfg) == "header-key"
    assert resolve_api_key("openai", "", cfg) == "env-key"
    assert resolve_api_key("ollama", None, cfg) == ""


def test_malformed_json_is_rejected_over_http():
    resp = make_client().post(
        "/api/ai/generate-questions",
        content="{not json",
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid request body."}


def test_missing_key_is_rejected_over_http():
    resp = make_client().post("/api/ai/grade", json={
        "provider": "anthropic",
        "answers": [{"questionId": "q1", "question": "Why?", "studentAnswer": "Because."}],
    })
    assert resp.status_code == 400
    assert resp.json() == {"error": 'Missing API key for provider "anthropic".'}


def test_out_of_range_port_never_reaches_provider(monkeypatch):
    import routes.ai

    def should_not_run(*args, **kwargs):
        raise AssertionError("provider must not be called")

    monkeypatch.setattr(routes.ai, "provider_json", should_not_run)

    resp = make_client().post(
        "/api/ai/generate-questions",
        json={"provider": "ollama", "baseUrl": "http://127.0.0.1:99999"},
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid Ollama base URL."}
