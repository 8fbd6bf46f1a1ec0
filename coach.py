"""
Coach gateway logic
-------------------
Everything between the raw JSON body and the normalized response, minus the
network call itself (see providers.py):

- parse_generate_request / parse_grade_request: validate + clamp untrusted input
- resolve_api_key: header override, then server-side environment default
- build_generate_prompt / build_grade_prompt: deterministic instruction blocks
- parse_model_json: tolerant extraction of the model's JSON answer
- normalize_questions / normalize_grades: repair model output into the fixed schema
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlsplit

import structlog

from config import PROVIDER_ALIASES, PROVIDERS, Settings, settings as default_settings, with_no_trailing_slash
from errors import InvalidRequest, UpstreamFailure
from models import (
    AI_DIFFICULTIES,
    AI_QUESTION_STYLES,
    AnswerRow,
    BookContext,
    ChapterContext,
    GenerateInput,
    GeneratedQuestion,
    GradeInput,
    GradeResult,
)
from prompt_packs import get_prompt_pack, render_prompt_template
from utils import clamp_int, clamp_text

logger = structlog.get_logger("coach")

_MODEL_RE = re.compile(r"^[a-zA-Z0-9._:/-]+$")
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)

MAX_ANSWERS = 20


# ----------------------------
# Field readers
# ----------------------------

def read_provider(value: Any) -> str:
    provider = clamp_text(value, 20).lower()
    provider = PROVIDER_ALIASES.get(provider, provider)
    if provider not in PROVIDERS:
        raise InvalidRequest('Provider must be one of: "ollama", "openai", "anthropic".')
    return provider


def sanitize_model(provider: str, raw: Any, cfg: Settings) -> str:
    model = clamp_text(raw, 120)
    if not model:
        model = clamp_text(cfg.default_models.get(provider) or cfg.default_models.get("ollama"), 120)
    if not model:
        raise InvalidRequest("Model is required.")
    if not _MODEL_RE.match(model):
        raise InvalidRequest("Model contains invalid characters.")
    return model


def sanitize_base_url(raw: Any, cfg: Settings) -> str:
    value = with_no_trailing_slash(clamp_text(raw, 500) or cfg.ollama_base_url)
    try:
        parts = urlsplit(value)
        parts.port  # raises ValueError when non-numeric or outside 0-65535
    except ValueError:
        raise InvalidRequest("Invalid Ollama base URL.")
    if not parts.scheme:
        raise InvalidRequest("Invalid Ollama base URL.")
    if parts.scheme not in ("http", "https"):
        raise InvalidRequest("Ollama base URL must use http or https.")
    host = parts.hostname or ""
    if not host.strip() or any(ch.isspace() for ch in parts.netloc):
        raise InvalidRequest("Invalid Ollama base URL.")
    return value


def read_count(value: Any) -> int:
    return clamp_int(value, 1, 15, 6)


def read_difficulty(value: Any) -> str:
    difficulty = clamp_text(value, 20).lower()
    return difficulty if difficulty in AI_DIFFICULTIES else "mixed"


def read_style(value: Any) -> str:
    style = clamp_text(value, 32).lower()
    return style if style in AI_QUESTION_STYLES else "comprehension"


def _object(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _read_target(body: Dict[str, Any], cfg: Settings) -> Dict[str, Any]:
    provider = read_provider(body.get("provider"))
    target: Dict[str, Any] = {
        "provider": provider,
        "model": sanitize_model(provider, body.get("model"), cfg),
    }
    if provider == "ollama":
        target["base_url"] = sanitize_base_url(body.get("baseUrl") or body.get("ollamaBaseUrl"), cfg)
    return target


def _read_book(body: Dict[str, Any]) -> BookContext:
    book = _object(body.get("book"))
    return BookContext(
        title=clamp_text(book.get("title"), 300),
        author=clamp_text(book.get("author"), 300),
    )


def _read_chapter(body: Dict[str, Any], with_reflection: bool) -> ChapterContext:
    chapter = _object(body.get("chapter"))
    return ChapterContext(
        label=clamp_text(chapter.get("label"), 300),
        summary=clamp_text(chapter.get("summary"), 7000),
        takeaways=clamp_text(chapter.get("takeaways"), 5000),
        reflection=clamp_text(chapter.get("reflection"), 5000) if with_reflection else "",
    )


# ----------------------------
# Request parsing
# ----------------------------

def parse_generate_request(body: Any, cfg: Optional[Settings] = None) -> GenerateInput:
    cfg = cfg or default_settings
    if not isinstance(body, dict):
        raise InvalidRequest("Invalid request body.")

    return GenerateInput(
        **_read_target(body, cfg),
        book=_read_book(body),
        chapter=_read_chapter(body, with_reflection=True),
        count=read_count(body.get("count")),
        difficulty=read_difficulty(body.get("difficulty")),
        style=read_style(body.get("style")),
    )


def parse_grade_request(body: Any, cfg: Optional[Settings] = None) -> GradeInput:
    cfg = cfg or default_settings
    if not isinstance(body, dict):
        raise InvalidRequest("Invalid request body.")

    target = _read_target(body, cfg)
    answers_raw = body.get("answers") if isinstance(body.get("answers"), list) else []

    answers: List[AnswerRow] = []
    for row in answers_raw[:MAX_ANSWERS]:
        row = _object(row)
        question_id = clamp_text(row.get("questionId"), 120)
        question = clamp_text(row.get("question"), 700)
        student_answer = clamp_text(row.get("studentAnswer"), 10000)
        if question_id and question and student_answer:
            answers.append(AnswerRow(question_id=question_id, question=question, student_answer=student_answer))

    if not answers:
        raise InvalidRequest("At least one answer is required.")

    return GradeInput(
        **target,
        book=_read_book(body),
        chapter=_read_chapter(body, with_reflection=False),
        answers=answers,
    )


def resolve_api_key(provider: str, header_value: Optional[str], cfg: Optional[Settings] = None) -> str:
    """Header key wins over the server default. The local provider needs none."""
    cfg = cfg or default_settings
    if provider == "ollama":
        return ""

    from_header = clamp_text(header_value, cfg.max_api_key_chars)
    from_env = clamp_text(
        cfg.openai_api_key if provider == "openai" else cfg.anthropic_api_key,
        cfg.max_api_key_chars,
    )
    api_key = from_header or from_env
    if not api_key:
        raise InvalidRequest(f'Missing API key for provider "{provider}".')
    return api_key


# ----------------------------
# Prompt builders
# ----------------------------

def _book_block(book: BookContext) -> str:
    return "\n".join([
        "Book:",
        f"- Title: {book.title or '(unknown)'}",
        f"- Author: {book.author or '(unknown)'}",
    ])


def _chapter_block(chapter: ChapterContext, with_reflection: bool) -> str:
    lines = [
        "Chapter:",
        f"- Label: {chapter.label or '(unknown)'}",
        f"- Summary: {chapter.summary or '(none)'}",
        f"- Takeaways: {chapter.takeaways or '(none)'}",
    ]
    if with_reflection:
        lines.append(f"- Reflection: {chapter.reflection or '(none)'}")
    return "\n".join(lines)


def _answers_block(answers: List[AnswerRow]) -> str:
    return "\n".join(
        f"{idx}. questionId={a.question_id}\nQuestion: {a.question}\nStudent Answer: {a.student_answer}"
        for idx, a in enumerate(answers, start=1)
    )


def build_generate_prompt(data: GenerateInput) -> Tuple[str, str]:
    """Return (system_prompt, user_prompt)."""
    pack = get_prompt_pack("generate_questions")
    user = render_prompt_template(
        pack.templates.user,
        {
            "count": data.count,
            "difficulty": data.difficulty,
            "style": data.style,
            "output_shape": pack.output_shape,
            "book_block": _book_block(data.book),
            "chapter_block": _chapter_block(data.chapter, with_reflection=True),
        },
    )
    return pack.templates.system, user


def build_grade_prompt(data: GradeInput) -> Tuple[str, str]:
    """Return (system_prompt, user_prompt)."""
    pack = get_prompt_pack("grade_answers")
    user = render_prompt_template(
        pack.templates.user,
        {
            "output_shape": pack.output_shape,
            "book_block": _book_block(data.book),
            "chapter_block": _chapter_block(data.chapter, with_reflection=False),
            "answers_block": _answers_block(data.answers),
        },
    )
    return pack.templates.system, user


# ----------------------------
# Model JSON extraction
# ----------------------------

@dataclass(frozen=True)
class ParsedJson:
    value: Any
    strategy: str  # "raw" | "fenced" | "braces"


@dataclass(frozen=True)
class ParseFailure:
    attempts: int


ParseOutcome = Union[ParsedJson, ParseFailure]


def _json_candidates(text: str) -> List[Tuple[str, str]]:
    candidates = [("raw", text)]
    fenced = _FENCED_JSON_RE.search(text)
    if fenced and fenced.group(1).strip():
        candidates.append(("fenced", fenced.group(1).strip()))
    first, last = text.find("{"), text.rfind("}")
    if first >= 0 and last > first:
        candidates.append(("braces", text[first:last + 1]))
    return candidates


def parse_model_json(content: Any, max_chars: int = 25000) -> ParseOutcome:
    """Try the text as-is, then a fenced block, then the outermost braces."""
    text = clamp_text(content, max_chars)
    candidates = _json_candidates(text)
    for strategy, candidate in candidates:
        try:
            value = json.loads(candidate)
        except ValueError:
            continue
        if strategy != "raw":
            logger.warning("model_json_fallback", strategy=strategy)
        return ParsedJson(value=value, strategy=strategy)
    return ParseFailure(attempts=len(candidates))


def require_json(outcome: ParseOutcome) -> Any:
    if isinstance(outcome, ParseFailure):
        raise UpstreamFailure("Provider did not return valid JSON.")
    return outcome.value


# ----------------------------
# Output normalization
# ----------------------------

def _rows(parsed: Any, key: str) -> List[Dict[str, Any]]:
    rows = parsed.get(key) if isinstance(parsed, dict) else None
    if not isinstance(rows, list):
        return []
    return [r for r in rows if isinstance(r, dict)]


def normalize_questions(parsed: Any, expected_count: int) -> List[GeneratedQuestion]:
    out: List[GeneratedQuestion] = []
    used_ids: set[str] = set()

    for row in _rows(parsed, "questions"):
        if len(out) >= expected_count:
            break
        question = clamp_text(row.get("question"), 500)
        if not question:
            continue
        qid = clamp_text(row.get("id"), 120)
        if not qid or qid in used_ids:
            n = len(out) + 1
            while f"q{n}" in used_ids:
                n += 1
            qid = f"q{n}"
        used_ids.add(qid)
        out.append(GeneratedQuestion(id=qid, question=question, rubric=clamp_text(row.get("rubric"), 2000)))
    return out


def normalize_grades(parsed: Any, answers: List[AnswerRow]) -> List[GradeResult]:
    """Keep rows that answer a known question; the first row per question wins."""
    known_ids = {a.question_id for a in answers}
    seen: set[str] = set()
    out: List[GradeResult] = []

    for row in _rows(parsed, "results"):
        question_id = clamp_text(row.get("questionId"), 120)
        if not question_id or question_id not in known_ids or question_id in seen:
            continue
        seen.add(question_id)
        out.append(
            GradeResult(
                question_id=question_id,
                score=clamp_int(row.get("score"), 0, 100, 0),
                feedback=clamp_text(row.get("feedback"), 2000),
                ideal_answer=clamp_text(row.get("idealAnswer"), 2000),
            )
        )
    return out
