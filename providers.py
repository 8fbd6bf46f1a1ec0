# providers.py
# Upstream LLM calls. One attempt per client request, no retries: the user
# retries explicitly from the UI.

from typing import Any, Dict, Optional

import requests
import structlog

from coach import parse_model_json, require_json
from config import (
    ANTHROPIC_MESSAGES_URL,
    ANTHROPIC_VERSION,
    OPENAI_CHAT_URL,
    PROVIDER_LABELS,
    Settings,
    settings as default_settings,
)
from errors import UpstreamFailure
from models import ProviderTarget
from utils import build_openai_headers, clamp_text

logger = structlog.get_logger("providers")


def provider_error_message(payload: Any, fallback: str) -> str:
    """Prefer the provider's own error text (``error`` or ``error.message``)."""
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, str) and err.strip():
            return err.strip()
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
    return fallback


def _post_json(
    provider: str,
    url: str,
    headers: Dict[str, str],
    payload: Dict[str, Any],
    cfg: Settings,
    unreachable: str,
) -> Any:
    label = PROVIDER_LABELS[provider]
    try:
        r = requests.post(url, json=payload, headers=headers, timeout=cfg.provider_timeout_seconds)
    except requests.RequestException as e:
        logger.warning("provider_unreachable", provider=provider, error=type(e).__name__)
        raise UpstreamFailure(unreachable)

    try:
        data = r.json()
    except ValueError:
        data = None

    if not r.ok:
        logger.warning("provider_error_status", provider=provider, status=r.status_code)
        raise UpstreamFailure(
            provider_error_message(data, f"{label} request failed ({r.status_code})."),
            status_code=r.status_code,
        )
    return data


def _empty(provider: str) -> UpstreamFailure:
    logger.warning("provider_empty_content", provider=provider)
    return UpstreamFailure(f"{PROVIDER_LABELS[provider]} returned an empty response.")


def call_ollama(model: str, base_url: str, system_prompt: str, user_prompt: str, cfg: Settings) -> str:
    data = _post_json(
        "ollama",
        f"{base_url}/api/chat",
        {"Content-Type": "application/json"},
        {
            "model": model,
            "stream": False,
            "format": "json",
            "options": {"temperature": cfg.temperature},
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        },
        cfg,
        unreachable=f"Could not connect to Ollama at {base_url}.",
    )
    message = data.get("message") if isinstance(data, dict) else None
    content = clamp_text(message.get("content") if isinstance(message, dict) else None, cfg.max_model_content_chars)
    if not content:
        raise _empty("ollama")
    return content


def call_openai(model: str, api_key: str, system_prompt: str, user_prompt: str, cfg: Settings) -> str:
    data = _post_json(
        "openai",
        OPENAI_CHAT_URL,
        build_openai_headers(api_key),
        {
            "model": model,
            "temperature": cfg.temperature,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        },
        cfg,
        unreachable="Could not reach OpenAI.",
    )
    content = ""
    choices = data.get("choices") if isinstance(data, dict) else None
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if isinstance(message, dict):
            content = clamp_text(message.get("content"), cfg.max_model_content_chars)
    if not content:
        raise _empty("openai")
    return content


def call_anthropic(model: str, api_key: str, system_prompt: str, user_prompt: str, cfg: Settings) -> str:
    data = _post_json(
        "anthropic",
        ANTHROPIC_MESSAGES_URL,
        {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        },
        {
            "model": model,
            "max_tokens": cfg.anthropic_max_tokens,
            "temperature": cfg.temperature,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        },
        cfg,
        unreachable="Could not reach Anthropic.",
    )
    blocks = data.get("content") if isinstance(data, dict) else None
    texts = [
        b["text"]
        for b in (blocks if isinstance(blocks, list) else [])
        if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
    ]
    content = clamp_text("\n".join(texts), cfg.max_model_content_chars)
    if not content:
        raise _empty("anthropic")
    return content


def provider_json(
    target: ProviderTarget,
    api_key: str,
    system_prompt: str,
    user_prompt: str,
    cfg: Optional[Settings] = None,
) -> Any:
    """Call the selected provider and return its answer parsed as JSON."""
    cfg = cfg or default_settings
    if target.provider == "openai":
        content = call_openai(target.model, api_key, system_prompt, user_prompt, cfg)
    elif target.provider == "anthropic":
        content = call_anthropic(target.model, api_key, system_prompt, user_prompt, cfg)
    else:
        content = call_ollama(target.model, target.base_url or cfg.ollama_base_url, system_prompt, user_prompt, cfg)
    return require_json(parse_model_json(content, cfg.max_model_content_chars))
