# config.py
# Environment loading and tunable knobs for the AI gateway.

import os
from typing import Dict, List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv(".env.server.local")
load_dotenv()


# ----------------------------
# Environment helpers
# ----------------------------

def env_int(name: str, fallback: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return fallback
    try:
        return int(round(float(raw)))
    except ValueError:
        return fallback


def with_no_trailing_slash(url: str) -> str:
    return str(url or "").strip().rstrip("/")


PROVIDERS: List[str] = ["ollama", "openai", "anthropic"]
PROVIDER_ALIASES: Dict[str, str] = {"local": "ollama"}
PROVIDER_LABELS: Dict[str, str] = {"ollama": "Ollama", "openai": "OpenAI", "anthropic": "Anthropic"}

DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:4173",
    "http://127.0.0.1:4173",
    "http://localhost:8787",
    "http://127.0.0.1:8787",
]

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


# ----------------------------
# Config knobs (tunable)
# ----------------------------

class Settings(BaseModel):
    port: int = 8787

    # Request policy
    max_body_bytes: int = 64 * 1024
    rate_limit_max: int = 40
    rate_limit_window_seconds: int = 60
    allowed_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))

    # Providers
    ollama_base_url: str = "http://127.0.0.1:11434"
    default_models: Dict[str, str] = Field(
        default_factory=lambda: {
            "ollama": "tinyllama:latest",
            "openai": "gpt-4o-mini",
            "anthropic": "claude-3-5-sonnet-latest",
        }
    )
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    provider_timeout_seconds: float = 120.0
    temperature: float = 0.2
    anthropic_max_tokens: int = 1400

    # Payload limits
    max_model_content_chars: int = 25000
    max_api_key_chars: int = 400

    @classmethod
    def from_env(cls) -> "Settings":
        origins_raw = os.getenv("AI_ALLOWED_ORIGINS", ",".join(DEFAULT_ALLOWED_ORIGINS))
        return cls(
            port=env_int("AI_PROXY_PORT", env_int("PORT", 8787)),
            max_body_bytes=env_int("AI_MAX_BODY_BYTES", 64 * 1024),
            rate_limit_max=env_int("AI_RATE_LIMIT_MAX", 40),
            rate_limit_window_seconds=env_int("AI_RATE_LIMIT_WINDOW_SECONDS", 60),
            allowed_origins=[o.strip() for o in origins_raw.split(",") if o.strip()],
            ollama_base_url=with_no_trailing_slash(os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434")),
            default_models={
                "ollama": os.getenv("OLLAMA_MODEL", "tinyllama:latest"),
                "openai": os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
                "anthropic": os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-latest"),
            },
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            provider_timeout_seconds=float(env_int("AI_PROVIDER_TIMEOUT_SECONDS", 120)),
        )


settings = Settings.from_env()
