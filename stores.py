# stores.py
# Key-value persistence for the journal, plus the per-session Workspace.

import json
import os
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import structlog

from config import PROVIDER_ALIASES, PROVIDERS, settings, with_no_trailing_slash
from journal import normalize_user_data
from models import UserData

logger = structlog.get_logger("stores")

KEY_USERS = "bo_users_v1"
KEY_SESSION = "bo_session_v1"
KEY_THEME = "bo_theme_v1"
KEY_AI_PROVIDER = "bo_ai_provider_v1"
KEY_AI_MODEL = "bo_ai_model_v1"
KEY_AI_OLLAMA_BASE_URL = "bo_ai_ollama_base_url_v1"

THEMES = ("light", "dark")
DEFAULT_PROVIDER = "ollama"


def user_data_key(user_id: str) -> str:
    return f"bo_user_{user_id}_data_v1"


# ----------------------------
# Stores
# ----------------------------

class KeyValueStore(ABC):
    """String keys to raw string values, like browser localStorage."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    def remove(self, key: str) -> None: ...


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)


class JsonFileStore(KeyValueStore):
    """One file per key under ``root``. Keys are sanitized into file names."""

    def __init__(self, root: str):
        self.root = root
        os.makedirs(root, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.root, re.sub(r"[^a-zA-Z0-9._-]", "_", key) + ".json")

    def get(self, key: str) -> Optional[str]:
        try:
            with open(self._path(key), "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("store_read_failed", key=key, error=type(e).__name__)
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(value)
        os.replace(tmp, path)

    def remove(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass


def load_json(store: KeyValueStore, key: str, fallback: Any) -> Any:
    raw = store.get(key)
    if raw is None:
        return fallback
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("store_corrupt_value", key=key)
        return fallback


def save_json(store: KeyValueStore, key: str, value: Any) -> None:
    store.set(key, json.dumps(value, ensure_ascii=False))


# ----------------------------
# Workspace
# ----------------------------

class Workspace:
    """Application-scoped context: which store, which user, which theme."""

    def __init__(self, store: KeyValueStore, user_id: Optional[str] = None):
        self.store = store
        self.user_id = user_id if user_id is not None else self._session_user()

    def _session_user(self) -> Optional[str]:
        session = load_json(self.store, KEY_SESSION, None)
        return session if isinstance(session, str) and session else None

    # --- users / session

    def users(self) -> List[Dict[str, Any]]:
        rows = load_json(self.store, KEY_USERS, [])
        return [u for u in rows if isinstance(u, dict) and isinstance(u.get("id"), str)] if isinstance(rows, list) else []

    def sign_in(self, user_id: str) -> None:
        self.user_id = user_id
        save_json(self.store, KEY_SESSION, user_id)

    def sign_out(self) -> None:
        self.user_id = None
        save_json(self.store, KEY_SESSION, None)

    def _require_user(self) -> str:
        if not self.user_id:
            raise RuntimeError("No signed-in user.")
        return self.user_id

    # --- user data

    def load_user_data(self) -> UserData:
        raw = load_json(self.store, user_data_key(self._require_user()), None)
        return normalize_user_data(raw)

    def save_user_data(self, data: UserData) -> None:
        save_json(self.store, user_data_key(self._require_user()), data.to_json())

    # --- theme

    @property
    def theme(self) -> str:
        value = self.store.get(KEY_THEME)
        return value if value in THEMES else "light"

    @theme.setter
    def theme(self, value: str) -> None:
        if value not in THEMES:
            raise ValueError(f"Unknown theme: {value!r}")
        self.store.set(KEY_THEME, value)

    # --- provider settings

    def provider_settings(self) -> Dict[str, str]:
        provider = _provider_or_default(self.store.get(KEY_AI_PROVIDER))
        return {
            "provider": provider,
            "model": (self.store.get(KEY_AI_MODEL) or "").strip() or settings.default_models[provider],
            "ollamaBaseUrl": with_no_trailing_slash(self.store.get(KEY_AI_OLLAMA_BASE_URL) or "") or settings.ollama_base_url,
        }

    def update_provider_settings(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        ollama_base_url: Optional[str] = None,
    ) -> Dict[str, str]:
        """Switching provider without naming a model resets it to that provider's default."""
        current = self.provider_settings()
        next_provider = _provider_or_default(provider) if provider is not None else current["provider"]
        if model is not None:
            next_model = model.strip() or settings.default_models[next_provider]
        elif next_provider == current["provider"]:
            next_model = current["model"]
        else:
            next_model = settings.default_models[next_provider]
        if ollama_base_url is not None:
            next_base_url = with_no_trailing_slash(ollama_base_url) or settings.ollama_base_url
        else:
            next_base_url = current["ollamaBaseUrl"]

        self.store.set(KEY_AI_PROVIDER, next_provider)
        self.store.set(KEY_AI_MODEL, next_model)
        self.store.set(KEY_AI_OLLAMA_BASE_URL, next_base_url)
        return {"provider": next_provider, "model": next_model, "ollamaBaseUrl": next_base_url}


def _provider_or_default(value: Optional[str]) -> str:
    name = (value or "").strip().lower()
    name = PROVIDER_ALIASES.get(name, name)
    return name if name in PROVIDERS else DEFAULT_PROVIDER
