import json
import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("OPENAI_API_KEY", "test-key")

import journal  # noqa: E402
from stores import (  # noqa: E402
    KEY_AI_MODEL,
    KEY_AI_PROVIDER,
    KEY_SESSION,
    JsonFileStore,
    MemoryStore,
    Workspace,
    load_json,
    save_json,
    user_data_key,
)


def test_load_json_falls_back_on_missing_or_corrupt():
    store = MemoryStore({"bad": "{oops"})
    assert load_json(store, "missing", []) == []
    assert load_json(store, "bad", {"x": 1}) == {"x": 1}

    save_json(store, "good", {"a": [1, 2]})
    assert load_json(store, "good", None) == {"a": [1, 2]}


def test_json_file_store_round_trip(tmp_path):
    store = JsonFileStore(str(tmp_path / "data"))
    assert store.get(user_data_key("u1")) is None

    store.set(user_data_key("u1"), '{"books": []}')
    assert store.get(user_data_key("u1")) == '{"books": []}'

    store.remove(user_data_key("u1"))
    store.remove(user_data_key("u1"))
    assert store.get(user_data_key("u1")) is None


def test_workspace_reads_session_pointer():
    store = MemoryStore({KEY_SESSION: json.dumps("u1")})
    assert Workspace(store).user_id == "u1"

    ws = Workspace(MemoryStore())
    assert ws.user_id is None
    ws.sign_in("u2")
    assert Workspace(ws.store).user_id == "u2"
    ws.sign_out()
    assert Workspace(ws.store).user_id is None


def test_workspace_normalizes_on_load():
    blob = {"books": [{"id": "b1", "title": "Dune"}], "chapters": [{"id": "c1", "bookId": "ghost"}]}
    store = MemoryStore({user_data_key("u1"): json.dumps(blob)})
    ws = Workspace(store, user_id="u1")

    data = ws.load_user_data()
    assert [b.id for b in data.books] == ["b1"]
    assert data.chapters == []

    data, _ = journal.add_book(data, "u1", "Emma")
    ws.save_user_data(data)
    assert len(json.loads(store.get(user_data_key("u1")))["books"]) == 2


def test_workspace_corrupt_blob_loads_empty():
    store = MemoryStore({user_data_key("u1"): "not json"})
    assert Workspace(store, user_id="u1").load_user_data() == journal.create_empty_user_data()


def test_workspace_requires_user():
    with pytest.raises(RuntimeError):
        Workspace(MemoryStore()).load_user_data()


def test_theme_defaults_to_light():
    ws = Workspace(MemoryStore())
    assert ws.theme == "light"
    ws.theme = "dark"
    assert ws.theme == "dark"
    with pytest.raises(ValueError):
        ws.theme = "sepia"


def test_provider_settings_defaults_and_switching():
    ws = Workspace(MemoryStore({KEY_AI_PROVIDER: "nonsense"}))
    assert ws.provider_settings() == {
        "provider": "ollama",
        "model": "tinyllama:latest",
        "ollamaBaseUrl": "http://127.0.0.1:11434",
    }

    updated = ws.update_provider_settings(provider="openai")
    assert updated["model"] == "gpt-4o-mini"

    updated = ws.update_provider_settings(model="gpt-4.1")
    assert (updated["provider"], updated["model"]) == ("openai", "gpt-4.1")

    updated = ws.update_provider_settings(provider="local", ollama_base_url="http://gpu:11434///")
    assert updated["provider"] == "ollama"
    assert updated["model"] == "tinyllama:latest"
    assert updated["ollamaBaseUrl"] == "http://gpu:11434"
    assert ws.store.get(KEY_AI_MODEL) == "tinyllama:latest"
