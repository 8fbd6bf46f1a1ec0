# /models.py
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from utils import clamp_int, clamp_str, now_iso, to_int, to_number


# ----------------------------
# Lenient field coercion
# ----------------------------
# Stored blobs come from an older client and may be stale or corrupted.
# Every field below repairs itself instead of failing validation.

def _text(max_len: int) -> BeforeValidator:
    return BeforeValidator(lambda v: clamp_str(v, max_len))


def _optional_text(max_len: int) -> BeforeValidator:
    return BeforeValidator(lambda v: clamp_str(v, max_len) or None)


def _choice(allowed: tuple, default: str) -> BeforeValidator:
    return BeforeValidator(lambda v: v if isinstance(v, str) and v in allowed else default)


def _optional_number(v: Any) -> Optional[int]:
    n = to_number(v)
    return None if n is None else to_int(n, 0)


def _timestamp(v: Any) -> str:
    return v if isinstance(v, str) and v else now_iso()


def _optional_timestamp(v: Any) -> Optional[str]:
    return v if isinstance(v, str) and v else None


def _optional_id(v: Any) -> Optional[str]:
    return v if isinstance(v, str) and v else None


def _meta(v: Any) -> Optional[Dict[str, str]]:
    if not isinstance(v, dict):
        return None
    return {k: clamp_str(val, 500) for k, val in v.items() if isinstance(k, str) and isinstance(val, str)}


BOOK_STATUSES = ("in_progress", "completed", "abandoned")
AI_DIFFICULTIES = ("easy", "medium", "hard", "mixed")
AI_QUESTION_STYLES = ("comprehension", "critical_thinking", "mixed")
HISTORY_EVENT_TYPES = (
    "book_created",
    "book_updated",
    "book_deleted",
    "chapter_created",
    "chapter_updated",
    "chapter_deleted",
    "qa_created",
    "qa_updated",
    "qa_deleted",
    "ai_questions_generated",
    "ai_answers_graded",
    "export",
)

BookStatus = Literal["in_progress", "completed", "abandoned"]
AIDifficulty = Literal["easy", "medium", "hard", "mixed"]
AIQuestionStyle = Literal["comprehension", "critical_thinking", "mixed"]
HistoryEventType = Literal[
    "book_created",
    "book_updated",
    "book_deleted",
    "chapter_created",
    "chapter_updated",
    "chapter_deleted",
    "qa_created",
    "qa_updated",
    "qa_deleted",
    "ai_questions_generated",
    "ai_answers_graded",
    "export",
]

Timestamp = Annotated[str, BeforeValidator(_timestamp)]
OptionalTimestamp = Annotated[Optional[str], BeforeValidator(_optional_timestamp)]
OptionalId = Annotated[Optional[str], BeforeValidator(_optional_id)]
Score = Annotated[int, BeforeValidator(lambda v: clamp_int(v, 0, 100, 0))]
Difficulty = Annotated[AIDifficulty, _choice(AI_DIFFICULTIES, "mixed")]
QuestionStyle = Annotated[AIQuestionStyle, _choice(AI_QUESTION_STYLES, "comprehension")]


class CamelModel(BaseModel):
    """Records serialize with the camelCase keys the browser client persisted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ----------------------------
# Journal records
# ----------------------------

class Book(CamelModel):
    id: str
    title: Annotated[str, _text(300)] = ""
    author: Annotated[str, _text(300)] = ""
    genre: Annotated[Optional[str], _optional_text(120)] = None
    cover_data_url: Annotated[Optional[str], _optional_text(3_000_000)] = None
    status: Annotated[BookStatus, _choice(BOOK_STATUSES, "in_progress")] = "in_progress"
    started_at: OptionalTimestamp = None
    finished_at: OptionalTimestamp = None
    created_at: Timestamp = Field(default_factory=now_iso)
    updated_at: Timestamp = Field(default_factory=now_iso)


class ChapterEntry(CamelModel):
    id: str
    book_id: str
    number: Annotated[Optional[int], BeforeValidator(_optional_number)] = None
    title: Annotated[Optional[str], _optional_text(300)] = None
    completed_at: OptionalTimestamp = None
    summary: Annotated[str, _text(20000)] = ""
    takeaways: Annotated[str, _text(20000)] = ""
    quotes: Annotated[str, _text(20000)] = ""
    reflection: Annotated[str, _text(20000)] = ""
    created_at: Timestamp = Field(default_factory=now_iso)
    updated_at: Timestamp = Field(default_factory=now_iso)


class QA(CamelModel):
    id: str
    chapter_id: str
    question: Annotated[str, _text(2000)] = ""
    answer: Annotated[str, _text(10000)] = ""
    created_at: Timestamp = Field(default_factory=now_iso)
    updated_at: Timestamp = Field(default_factory=now_iso)


class HistoryEvent(CamelModel):
    id: str
    type: HistoryEventType
    ts: Timestamp = Field(default_factory=now_iso)
    user_id: Annotated[str, _text(200)] = ""
    book_id: OptionalId = None
    chapter_id: OptionalId = None
    qa_id: OptionalId = None
    label: Annotated[str, _text(500)] = ""
    meta: Annotated[Optional[Dict[str, str]], BeforeValidator(_meta)] = None


# ----------------------------
# AI coach records
# ----------------------------

class AICoachConfig(CamelModel):
    count: Annotated[int, BeforeValidator(lambda v: clamp_int(v, 1, 15, 6))] = 6
    difficulty: Difficulty = "mixed"
    style: QuestionStyle = "comprehension"


class AIGeneratedQuestion(CamelModel):
    id: str
    chapter_id: str
    question: Annotated[str, _text(500)]
    rubric: Annotated[str, _text(2000)] = ""
    created_at: Timestamp = Field(default_factory=now_iso)
    difficulty: Difficulty = "mixed"
    style: QuestionStyle = "comprehension"


class AIDraftAnswer(CamelModel):
    chapter_id: str
    question_id: str
    answer: Annotated[str, _text(10000)]
    updated_at: Timestamp = Field(default_factory=now_iso)


class AIGradeResult(CamelModel):
    question_id: str
    question: Annotated[str, _text(500)]
    student_answer: Annotated[str, _text(10000)]
    score: Score = 0
    feedback: Annotated[str, _text(2000)] = ""
    ideal_answer: Annotated[str, _text(2000)] = ""


class AIFeedbackEntry(CamelModel):
    id: str
    book_id: str
    chapter_id: str
    created_at: Timestamp = Field(default_factory=now_iso)
    difficulty: Difficulty = "mixed"
    style: QuestionStyle = "comprehension"
    average_score: Score = 0
    results: List[AIGradeResult] = Field(default_factory=list)


class AICoachData(CamelModel):
    selected_book_id: Optional[str] = None
    selected_chapter_id: Optional[str] = None
    last_config: AICoachConfig = Field(default_factory=AICoachConfig)
    generated_questions: List[AIGeneratedQuestion] = Field(default_factory=list)
    draft_answers: List[AIDraftAnswer] = Field(default_factory=list)
    feedback_history: List[AIFeedbackEntry] = Field(default_factory=list)


class UserData(CamelModel):
    books: List[Book] = Field(default_factory=list)
    chapters: List[ChapterEntry] = Field(default_factory=list)
    qas: List[QA] = Field(default_factory=list)
    history: List[HistoryEvent] = Field(default_factory=list)
    ai_coach: AICoachData = Field(default_factory=AICoachData)


# ----------------------------
# Gateway inputs (already validated and clamped)
# ----------------------------

class BookContext(CamelModel):
    title: str = ""
    author: str = ""


class ChapterContext(CamelModel):
    label: str = ""
    summary: str = ""
    takeaways: str = ""
    reflection: str = ""


class AnswerRow(CamelModel):
    question_id: str
    question: str
    student_answer: str


class ProviderTarget(CamelModel):
    provider: str
    model: str
    base_url: Optional[str] = None


class GenerateInput(ProviderTarget):
    book: BookContext
    chapter: ChapterContext
    count: int = 6
    difficulty: AIDifficulty = "mixed"
    style: AIQuestionStyle = "comprehension"


class GradeInput(ProviderTarget):
    book: BookContext
    chapter: ChapterContext
    answers: List[AnswerRow]


# ----------------------------
# Gateway outputs
# ----------------------------

class GeneratedQuestion(CamelModel):
    id: str
    question: str
    rubric: str = ""


class GradeResult(CamelModel):
    question_id: str
    score: int
    feedback: str = ""
    ideal_answer: str = ""


class GenerateQuestionsResponse(CamelModel):
    questions: List[GeneratedQuestion]


class GradeResponse(CamelModel):
    results: List[GradeResult]


class HealthResponse(BaseModel):
    ok: bool = True
    providers: List[str]
