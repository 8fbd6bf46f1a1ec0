# coach_client.py
# Client side of the AI coach: HTTP calls to the gateway plus the busy-state
# machine that merges results into the journal.

import threading
from enum import Enum
from typing import Any, Dict, List, Optional

import requests
import structlog

from journal import (
    JournalError,
    apply_generated_questions,
    apply_grade_results,
    draft_answer_map,
    find_book,
    questions_for_chapter,
    selected_chapter,
)
from models import AnswerRow, GeneratedQuestion, GradeResult, UserData
from utils import chapter_label, clamp_int, clamp_str

logger = structlog.get_logger("coach_client")

DEFAULT_GATEWAY_URL = "http://127.0.0.1:8787"


class GatewayRequestError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def api_error_message(payload: Any, status_code: int) -> str:
    if isinstance(payload, dict) and isinstance(payload.get("error"), str) and payload["error"].strip():
        return payload["error"].strip()
    return f"Request failed ({status_code})"


class GatewayClient:
    def __init__(self, base_url: str = DEFAULT_GATEWAY_URL, session: Optional[requests.Session] = None, timeout: float = 150.0):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _post(self, path: str, body: Dict[str, Any], api_key: Optional[str] = None) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if api_key and api_key.strip():
            headers["X-Provider-Api-Key"] = api_key.strip()

        try:
            r = self.session.post(f"{self.base_url}{path}", json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("gateway_unreachable", path=path, error=type(e).__name__)
            raise GatewayRequestError("Could not reach the AI gateway.") from e

        try:
            payload = r.json()
        except ValueError:
            payload = None

        if not r.ok:
            raise GatewayRequestError(api_error_message(payload, r.status_code), r.status_code)
        return payload if isinstance(payload, dict) else {}

    def generate_questions(
        self,
        provider_settings: Dict[str, str],
        book: Dict[str, str],
        chapter: Dict[str, str],
        count: int,
        difficulty: str,
        style: str,
        api_key: Optional[str] = None,
    ) -> List[GeneratedQuestion]:
        payload = self._post(
            "/api/ai/generate-questions",
            {**provider_settings, "book": book, "chapter": chapter, "count": count, "difficulty": difficulty, "style": style},
            api_key,
        )
        rows = payload.get("questions") if isinstance(payload.get("questions"), list) else []
        return [
            GeneratedQuestion(
                id=row["id"] if isinstance(row.get("id"), str) else "",
                question=row["question"],
                rubric=clamp_str(row.get("rubric"), 2000),
            )
            for row in rows
            if isinstance(row, dict) and isinstance(row.get("question"), str)
        ]

    def grade_answers(
        self,
        provider_settings: Dict[str, str],
        book: Dict[str, str],
        chapter: Dict[str, str],
        answers: List[AnswerRow],
        api_key: Optional[str] = None,
    ) -> List[GradeResult]:
        payload = self._post(
            "/api/ai/grade",
            {**provider_settings, "book": book, "chapter": chapter, "answers": [a.to_json() for a in answers]},
            api_key,
        )
        rows = payload.get("results") if isinstance(payload.get("results"), list) else []
        return [
            GradeResult(
                question_id=row["questionId"],
                score=clamp_int(row.get("score"), 0, 100, 0),
                feedback=clamp_str(row.get("feedback"), 2000),
                ideal_answer=clamp_str(row.get("idealAnswer"), 2000),
            )
            for row in rows
            if isinstance(row, dict) and isinstance(row.get("questionId"), str) and row["questionId"]
        ]


# ----------------------------
# Coach session
# ----------------------------

class CoachState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    GRADING = "grading"


class CoachBusy(RuntimeError):
    """Another AI action is already in flight."""


class CoachSession:
    """
    One coach per signed-in user. At most one AI action runs at a time;
    a failed action leaves the journal untouched and records ``last_error``.
    """

    def __init__(
        self,
        client: GatewayClient,
        user_id: str,
        provider_settings: Dict[str, str],
        api_key: Optional[str] = None,
    ):
        self.client = client
        self.user_id = user_id
        self.provider_settings = provider_settings
        self.api_key = api_key
        self.state = CoachState.IDLE
        self.last_error: Optional[str] = None
        self._lock = threading.Lock()

    def _begin(self, state: CoachState) -> None:
        with self._lock:
            if self.state is not CoachState.IDLE:
                raise CoachBusy(f"AI coach is busy ({self.state.value}).")
            self.state = state
            self.last_error = None

    def _finish(self) -> None:
        with self._lock:
            self.state = CoachState.IDLE

    def _fail(self, data: UserData, message: str) -> UserData:
        self.last_error = message
        return data

    def generate(self, data: UserData) -> UserData:
        book = find_book(data, data.ai_coach.selected_book_id or "")
        chapter = selected_chapter(data)
        if book is None or chapter is None:
            return self._fail(data, "Select a book and chapter first.")

        config = data.ai_coach.last_config
        self._begin(CoachState.GENERATING)
        try:
            questions = self.client.generate_questions(
                self.provider_settings,
                book={"title": book.title, "author": book.author},
                chapter={
                    "label": chapter_label(chapter),
                    "summary": clamp_str(chapter.summary, 6000),
                    "takeaways": clamp_str(chapter.takeaways, 4000),
                    "reflection": clamp_str(chapter.reflection, 4000),
                },
                count=config.count,
                difficulty=config.difficulty,
                style=config.style,
                api_key=self.api_key,
            )
            return apply_generated_questions(data, self.user_id, book.id, chapter.id, questions, config)
        except (GatewayRequestError, JournalError) as e:
            return self._fail(data, str(e) or "Failed to generate AI questions.")
        finally:
            self._finish()

    def grade(self, data: UserData) -> UserData:
        book = find_book(data, data.ai_coach.selected_book_id or "")
        chapter = selected_chapter(data)
        if book is None or chapter is None:
            return self._fail(data, "Select a book and chapter first.")

        questions = questions_for_chapter(data, chapter.id)
        if not questions:
            return self._fail(data, "Generate questions before grading answers.")

        drafts = draft_answer_map(data, chapter.id)
        rows = [
            AnswerRow(question_id=q.id, question=q.question, student_answer=drafts.get(q.id, "").strip())
            for q in questions
        ]
        rows = [r for r in rows if r.student_answer]
        if not rows:
            return self._fail(data, "Write at least one answer before grading.")

        self._begin(CoachState.GRADING)
        try:
            results = self.client.grade_answers(
                self.provider_settings,
                book={"title": book.title, "author": book.author},
                chapter={
                    "label": chapter_label(chapter),
                    "summary": clamp_str(chapter.summary, 6000),
                    "takeaways": clamp_str(chapter.takeaways, 4000),
                },
                answers=rows,
                api_key=self.api_key,
            )
            data, _ = apply_grade_results(data, self.user_id, book.id, chapter.id, rows, results)
            return data
        except (GatewayRequestError, JournalError) as e:
            return self._fail(data, str(e) or "Failed to grade answers.")
        finally:
            self._finish()
