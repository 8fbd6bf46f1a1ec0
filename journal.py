"""
Reading journal state
---------------------
Pure functions over ``UserData``. Nothing here touches storage or the network.

normalize_user_data repairs any stored blob (stale schema, corrupted fields,
dangling references) into a consistent value. It is idempotent and never
raises. The mutation helpers below return a new ``UserData`` each time so a
cascading delete is one state replacement.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Type, TypeVar

from pydantic import ValidationError

from models import (
    AI_DIFFICULTIES,
    AI_QUESTION_STYLES,
    HISTORY_EVENT_TYPES,
    QA,
    AICoachConfig,
    AICoachData,
    AIDraftAnswer,
    AIFeedbackEntry,
    AIGeneratedQuestion,
    AIGradeResult,
    AnswerRow,
    Book,
    CamelModel,
    ChapterEntry,
    GeneratedQuestion,
    GradeResult,
    HistoryEvent,
    UserData,
)
from utils import chapter_label, chapter_sort_key, clamp_str, now_iso, uid

MAX_HISTORY_EVENTS = 2000
MAX_FEEDBACK_ENTRIES = 500

M = TypeVar("M", bound=CamelModel)


class JournalError(ValueError):
    """A user action that cannot be applied (unknown id, missing title, ...)."""


def create_empty_ai_coach_data() -> AICoachData:
    return AICoachData()


def create_empty_user_data() -> UserData:
    return UserData(ai_coach=create_empty_ai_coach_data())


def is_ai_difficulty(value: Any) -> bool:
    return isinstance(value, str) and value in AI_DIFFICULTIES


def is_ai_question_style(value: Any) -> bool:
    return isinstance(value, str) and value in AI_QUESTION_STYLES


def is_known_history_type(value: Any) -> bool:
    return isinstance(value, str) and value in HISTORY_EVENT_TYPES


# ----------------------------
# Normalization
# ----------------------------

def _is_id(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def _records(
    rows: Any,
    model: Type[M],
    now: str,
    required: Sequence[str] = ("id",),
    stamps: Sequence[str] = ("createdAt", "updatedAt"),
) -> List[M]:
    """Validate each row leniently; rows without their key fields are dropped."""
    if not isinstance(rows, list):
        return []
    out: List[M] = []
    for row in rows:
        if not isinstance(row, dict) or not all(_is_id(row.get(k)) for k in required):
            continue
        row = dict(row)
        for key in stamps:
            if not (isinstance(row.get(key), str) and row.get(key)):
                row[key] = now
        try:
            out.append(model.model_validate(row))
        except ValidationError:
            continue
    return out


def _refers(row: Dict[str, Any], key: str, ids: Set[str]) -> bool:
    value = row.get(key)
    return _is_id(value) and value in ids


def _has_text(value: Any, max_len: int) -> bool:
    return bool(clamp_str(value, max_len).strip())


def _select_pointers(ai: Dict[str, Any], book_ids: Set[str], chapters: List[ChapterEntry]) -> Tuple[Optional[str], Optional[str]]:
    selected_book = ai.get("selectedBookId")
    if not (_is_id(selected_book) and selected_book in book_ids):
        return None, None

    book_chapters = [ch for ch in chapters if ch.book_id == selected_book]
    selected_chapter = ai.get("selectedChapterId")
    if _is_id(selected_chapter) and any(ch.id == selected_chapter for ch in book_chapters):
        return selected_book, selected_chapter
    return selected_book, (book_chapters[0].id if book_chapters else None)


def normalize_user_data(raw: Any, now: Optional[str] = None) -> UserData:
    if isinstance(raw, UserData):
        raw = raw.to_json()
    if not isinstance(raw, dict):
        raw = {}
    now = now or now_iso()

    books = _records(raw.get("books"), Book, now)
    book_ids = {b.id for b in books}

    chapter_rows = [r for r in _list(raw.get("chapters")) if isinstance(r, dict) and _refers(r, "bookId", book_ids)]
    chapters = _records(chapter_rows, ChapterEntry, now, required=("id", "bookId"))
    chapter_ids = {ch.id for ch in chapters}

    qa_rows = [r for r in _list(raw.get("qas")) if isinstance(r, dict) and _refers(r, "chapterId", chapter_ids)]
    qas = _records(qa_rows, QA, now, required=("id", "chapterId"))

    history_rows = [r for r in _list(raw.get("history")) if isinstance(r, dict) and is_known_history_type(r.get("type"))]
    history = _records(history_rows, HistoryEvent, now, stamps=("ts",))

    ai = raw.get("aiCoach") if isinstance(raw.get("aiCoach"), dict) else {}

    question_rows = [
        r for r in _list(ai.get("generatedQuestions"))
        if isinstance(r, dict) and _refers(r, "chapterId", chapter_ids) and _has_text(r.get("question"), 500)
    ]
    generated = _records(question_rows, AIGeneratedQuestion, now, required=("id", "chapterId"), stamps=("createdAt",))
    generated_ids = {q.id for q in generated}

    draft_rows = [
        r for r in _list(ai.get("draftAnswers"))
        if isinstance(r, dict)
        and _refers(r, "chapterId", chapter_ids)
        and _refers(r, "questionId", generated_ids)
        and _has_text(r.get("answer"), 10000)
    ]
    drafts = _records(draft_rows, AIDraftAnswer, now, required=("chapterId", "questionId"), stamps=("updatedAt",))

    feedback: List[AIFeedbackEntry] = []
    for row in _list(ai.get("feedbackHistory")):
        if not (
            isinstance(row, dict)
            and _is_id(row.get("id"))
            and _refers(row, "bookId", book_ids)
            and _refers(row, "chapterId", chapter_ids)
            and isinstance(row.get("results"), list)
        ):
            continue
        results = [
            r for r in row["results"]
            if isinstance(r, dict)
            and isinstance(r.get("questionId"), str)
            and isinstance(r.get("question"), str)
            and isinstance(r.get("studentAnswer"), str)
        ]
        if not results:
            continue
        feedback.extend(_records([{**row, "results": results}], AIFeedbackEntry, now, stamps=("createdAt",)))
        if len(feedback) >= MAX_FEEDBACK_ENTRIES:
            break

    selected_book, selected_chapter = _select_pointers(ai, book_ids, chapters)
    last_config = ai.get("lastConfig") if isinstance(ai.get("lastConfig"), dict) else {}

    return UserData(
        books=books,
        chapters=chapters,
        qas=qas,
        history=history,
        ai_coach=AICoachData(
            selected_book_id=selected_book,
            selected_chapter_id=selected_chapter,
            last_config=AICoachConfig.model_validate(last_config),
            generated_questions=generated,
            draft_answers=drafts,
            feedback_history=feedback,
        ),
    )


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


# ----------------------------
# Read helpers
# ----------------------------

def find_book(data: UserData, book_id: str) -> Optional[Book]:
    return next((b for b in data.books if b.id == book_id), None)


def find_chapter(data: UserData, chapter_id: str) -> Optional[ChapterEntry]:
    return next((ch for ch in data.chapters if ch.id == chapter_id), None)


def chapters_by_book(data: UserData) -> Dict[str, List[ChapterEntry]]:
    out: Dict[str, List[ChapterEntry]] = {}
    for ch in data.chapters:
        out.setdefault(ch.book_id, []).append(ch)
    for chapters in out.values():
        chapters.sort(key=chapter_sort_key)
    return out


def qas_by_chapter(data: UserData) -> Dict[str, List[QA]]:
    out: Dict[str, List[QA]] = {}
    for qa in data.qas:
        out.setdefault(qa.chapter_id, []).append(qa)
    for qas in out.values():
        qas.sort(key=lambda qa: qa.updated_at, reverse=True)
    return out


def search_books(data: UserData, query: str = "") -> List[Book]:
    """Most recently updated first; matches title, author or genre."""
    books = sorted(data.books, key=lambda b: b.updated_at, reverse=True)
    q = (query or "").strip().lower()
    if not q:
        return books
    return [b for b in books if q in b.title.lower() or q in b.author.lower() or q in (b.genre or "").lower()]


def questions_for_chapter(data: UserData, chapter_id: str) -> List[AIGeneratedQuestion]:
    rows = [q for q in data.ai_coach.generated_questions if q.chapter_id == chapter_id]
    return sorted(rows, key=lambda q: q.created_at, reverse=True)


def draft_answer_map(data: UserData, chapter_id: str) -> Dict[str, str]:
    return {d.question_id: d.answer for d in data.ai_coach.draft_answers if d.chapter_id == chapter_id}


def feedback_for_chapter(data: UserData, chapter_id: str) -> List[AIFeedbackEntry]:
    rows = [e for e in data.ai_coach.feedback_history if e.chapter_id == chapter_id]
    return sorted(rows, key=lambda e: e.created_at, reverse=True)


def selected_chapter(data: UserData) -> Optional[ChapterEntry]:
    """The coach's current chapter, falling back to the selected book's first chapter."""
    book_id = data.ai_coach.selected_book_id
    if not book_id or not find_book(data, book_id):
        return None
    options = chapters_by_book(data).get(book_id, [])
    chosen = next((ch for ch in options if ch.id == data.ai_coach.selected_chapter_id), None)
    return chosen or (options[0] if options else None)


# ----------------------------
# History
# ----------------------------

def push_history(
    data: UserData,
    event_type: str,
    user_id: str,
    label: str,
    book_id: Optional[str] = None,
    chapter_id: Optional[str] = None,
    qa_id: Optional[str] = None,
    meta: Optional[Dict[str, str]] = None,
    now: Optional[str] = None,
) -> UserData:
    event = HistoryEvent(
        id=uid("h"),
        type=event_type,
        ts=now or now_iso(),
        user_id=user_id,
        book_id=book_id,
        chapter_id=chapter_id,
        qa_id=qa_id,
        label=label,
        meta=meta,
    )
    return data.model_copy(update={"history": [event, *data.history][:MAX_HISTORY_EVENTS]})


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


# ----------------------------
# Books
# ----------------------------

BOOK_FIELDS = ("title", "author", "genre", "cover_data_url", "status", "started_at", "finished_at")
CHAPTER_FIELDS = ("number", "title", "completed_at", "summary", "takeaways", "quotes", "reflection")


def _require_book(data: UserData, book_id: str) -> Book:
    book = find_book(data, book_id)
    if book is None:
        raise JournalError("Book not found.")
    return book


def _require_chapter(data: UserData, chapter_id: str) -> ChapterEntry:
    chapter = find_chapter(data, chapter_id)
    if chapter is None:
        raise JournalError("Chapter not found.")
    return chapter


def _pick(changes: Dict[str, Any], allowed: Iterable[str]) -> Dict[str, Any]:
    unknown = set(changes) - set(allowed)
    if unknown:
        raise JournalError(f"Unknown fields: {', '.join(sorted(unknown))}.")
    return dict(changes)


def add_book(data: UserData, user_id: str, title: str, author: str = "", **fields: Any) -> Tuple[UserData, Book]:
    if not (title or "").strip():
        raise JournalError("Title is required.")
    ts = now_iso()
    book = Book.model_validate({
        **_pick(fields, BOOK_FIELDS),
        "id": uid("b"),
        "title": title.strip(),
        "author": (author or "").strip(),
        "created_at": ts,
        "updated_at": ts,
    })
    data = data.model_copy(update={"books": [book, *data.books]})
    data = push_history(data, "book_created", user_id, f"Added book: {book.title}", book_id=book.id, now=ts)
    return data, book


def update_book(data: UserData, user_id: str, book_id: str, **changes: Any) -> UserData:
    current = _require_book(data, book_id)
    ts = now_iso()
    merged = {**current.model_dump(), **_pick(changes, BOOK_FIELDS), "updated_at": ts}
    if not (merged.get("title") or "").strip():
        raise JournalError("Title is required.")
    book = Book.model_validate(merged)
    data = data.model_copy(update={"books": [book if b.id == book_id else b for b in data.books]})
    return push_history(data, "book_updated", user_id, f"Updated book: {book.title}", book_id=book.id, now=ts)


def _without_chapters(data: UserData, doomed: Set[str]) -> Dict[str, Any]:
    """Drop everything keyed to the given chapters."""
    ai = data.ai_coach
    coach = ai.model_copy(update={
        "selected_chapter_id": None if ai.selected_chapter_id in doomed else ai.selected_chapter_id,
        "generated_questions": [q for q in ai.generated_questions if q.chapter_id not in doomed],
        "draft_answers": [a for a in ai.draft_answers if a.chapter_id not in doomed],
        "feedback_history": [e for e in ai.feedback_history if e.chapter_id not in doomed],
    })
    return {
        "chapters": [ch for ch in data.chapters if ch.id not in doomed],
        "qas": [qa for qa in data.qas if qa.chapter_id not in doomed],
        "ai_coach": coach,
    }


def delete_book(data: UserData, user_id: str, book_id: str) -> UserData:
    """Remove a book and cascade to its chapters, their Q&A and all AI artifacts."""
    book = _require_book(data, book_id)
    doomed = {ch.id for ch in data.chapters if ch.book_id == book_id}
    update = _without_chapters(data, doomed)
    coach = update["ai_coach"]
    update["ai_coach"] = coach.model_copy(update={
        "selected_book_id": None if coach.selected_book_id == book_id else coach.selected_book_id,
        "feedback_history": [e for e in coach.feedback_history if e.book_id != book_id],
    })
    update["books"] = [b for b in data.books if b.id != book_id]
    data = data.model_copy(update=update)
    return push_history(data, "book_deleted", user_id, f"Deleted book: {book.title}", book_id=book_id)


# ----------------------------
# Chapters
# ----------------------------

def add_chapter(data: UserData, user_id: str, book_id: str, **fields: Any) -> Tuple[UserData, ChapterEntry]:
    _require_book(data, book_id)
    ts = now_iso()
    chapter = ChapterEntry.model_validate({
        **_pick(fields, CHAPTER_FIELDS),
        "id": uid("ch"),
        "book_id": book_id,
        "created_at": ts,
        "updated_at": ts,
    })
    data = data.model_copy(update={"chapters": [*data.chapters, chapter]})
    data = push_history(
        data, "chapter_created", user_id, f"Added {chapter_label(chapter)}",
        book_id=book_id, chapter_id=chapter.id, now=ts,
    )
    return data, chapter


def update_chapter(data: UserData, user_id: str, chapter_id: str, **changes: Any) -> UserData:
    current = _require_chapter(data, chapter_id)
    ts = now_iso()
    chapter = ChapterEntry.model_validate({**current.model_dump(), **_pick(changes, CHAPTER_FIELDS), "updated_at": ts})
    data = data.model_copy(update={"chapters": [chapter if ch.id == chapter_id else ch for ch in data.chapters]})
    return push_history(
        data, "chapter_updated", user_id, f"Updated {chapter_label(chapter)}",
        book_id=chapter.book_id, chapter_id=chapter_id, now=ts,
    )


def delete_chapter(data: UserData, user_id: str, chapter_id: str) -> UserData:
    chapter = _require_chapter(data, chapter_id)
    data = data.model_copy(update=_without_chapters(data, {chapter_id}))
    return push_history(
        data, "chapter_deleted", user_id, f"Deleted {chapter_label(chapter)}",
        book_id=chapter.book_id, chapter_id=chapter_id,
    )


# ----------------------------
# Q&A
# ----------------------------

def add_qa(data: UserData, user_id: str, chapter_id: str, question: str, answer: str = "") -> Tuple[UserData, QA]:
    chapter = _require_chapter(data, chapter_id)
    if not (question or "").strip():
        raise JournalError("Question is required.")
    ts = now_iso()
    qa = QA(id=uid("qa"), chapter_id=chapter_id, question=question.strip(), answer=answer or "", created_at=ts, updated_at=ts)
    data = data.model_copy(update={"qas": [qa, *data.qas]})
    data = push_history(
        data, "qa_created", user_id, "Added question",
        book_id=chapter.book_id, chapter_id=chapter_id, qa_id=qa.id, now=ts,
    )
    return data, qa


def update_qa(data: UserData, user_id: str, qa_id: str, question: Optional[str] = None, answer: Optional[str] = None) -> UserData:
    current = next((qa for qa in data.qas if qa.id == qa_id), None)
    if current is None:
        raise JournalError("Question not found.")
    ts = now_iso()
    qa = QA.model_validate({
        **current.model_dump(),
        "question": current.question if question is None else question,
        "answer": current.answer if answer is None else answer,
        "updated_at": ts,
    })
    chapter = find_chapter(data, qa.chapter_id)
    data = data.model_copy(update={"qas": [qa if q.id == qa_id else q for q in data.qas]})
    return push_history(
        data, "qa_updated", user_id, "Updated question",
        book_id=chapter.book_id if chapter else None, chapter_id=qa.chapter_id, qa_id=qa_id, now=ts,
    )


def delete_qa(data: UserData, user_id: str, qa_id: str) -> UserData:
    current = next((qa for qa in data.qas if qa.id == qa_id), None)
    if current is None:
        raise JournalError("Question not found.")
    chapter = find_chapter(data, current.chapter_id)
    data = data.model_copy(update={"qas": [q for q in data.qas if q.id != qa_id]})
    return push_history(
        data, "qa_deleted", user_id, "Deleted question",
        book_id=chapter.book_id if chapter else None, chapter_id=current.chapter_id, qa_id=qa_id,
    )


# ----------------------------
# AI coach state
# ----------------------------

def _with_coach(data: UserData, **changes: Any) -> UserData:
    return data.model_copy(update={"ai_coach": data.ai_coach.model_copy(update=changes)})


def select_ai_book(data: UserData, book_id: Optional[str]) -> UserData:
    """Select a book, keeping the current chapter only if it belongs to it."""
    next_book = book_id if book_id and find_book(data, book_id) else None
    options = chapters_by_book(data).get(next_book, []) if next_book else []
    keep = next((ch.id for ch in options if ch.id == data.ai_coach.selected_chapter_id), None)
    return _with_coach(
        data,
        selected_book_id=next_book,
        selected_chapter_id=keep or (options[0].id if options else None),
    )


def select_ai_chapter(data: UserData, chapter_id: Optional[str]) -> UserData:
    return _with_coach(data, selected_chapter_id=chapter_id or None)


def update_ai_config(
    data: UserData,
    count: Optional[int] = None,
    difficulty: Optional[str] = None,
    style: Optional[str] = None,
) -> UserData:
    """Apply valid changes; invalid values keep the previous setting."""
    prev = data.ai_coach.last_config
    config = AICoachConfig(
        count=prev.count if count is None else AICoachConfig(count=count).count,
        difficulty=difficulty if is_ai_difficulty(difficulty) else prev.difficulty,
        style=style if is_ai_question_style(style) else prev.style,
    )
    return _with_coach(data, last_config=config)


def update_ai_draft_answer(data: UserData, chapter_id: str, question_id: str, answer: str) -> UserData:
    """Upsert a draft; an empty answer removes it."""
    text = clamp_str(answer, 10000)
    drafts = list(data.ai_coach.draft_answers)
    index = next((i for i, d in enumerate(drafts) if d.chapter_id == chapter_id and d.question_id == question_id), None)

    if index is not None:
        if not text.strip():
            drafts.pop(index)
        else:
            drafts[index] = drafts[index].model_copy(update={"answer": text, "updated_at": now_iso()})
    elif text.strip():
        drafts.insert(0, AIDraftAnswer(chapter_id=chapter_id, question_id=question_id, answer=text))
    return _with_coach(data, draft_answers=drafts)


def apply_generated_questions(
    data: UserData,
    user_id: str,
    book_id: str,
    chapter_id: str,
    questions: Sequence[GeneratedQuestion],
    config: Optional[AICoachConfig] = None,
) -> UserData:
    """Replace the chapter's coach questions (and its drafts) with a fresh set."""
    config = config or data.ai_coach.last_config
    ts = now_iso()
    seen: Set[str] = set()
    fresh: List[AIGeneratedQuestion] = []

    for item in questions:
        text = clamp_str(item.question.strip(), 500)
        if not text:
            continue
        qid = item.id.strip() or uid("gq")
        if qid in seen:
            qid = uid("gq")
        seen.add(qid)
        fresh.append(AIGeneratedQuestion(
            id=qid,
            chapter_id=chapter_id,
            question=text,
            rubric=item.rubric,
            created_at=ts,
            difficulty=config.difficulty,
            style=config.style,
        ))

    if not fresh:
        raise JournalError("The AI service returned no usable questions.")

    ai = data.ai_coach
    data = _with_coach(
        data,
        selected_book_id=book_id,
        selected_chapter_id=chapter_id,
        generated_questions=[*fresh, *(q for q in ai.generated_questions if q.chapter_id != chapter_id)],
        draft_answers=[a for a in ai.draft_answers if a.chapter_id != chapter_id],
    )
    return push_history(
        data, "ai_questions_generated", user_id, f"Generated {_plural(len(fresh), 'AI question')}",
        book_id=book_id, chapter_id=chapter_id,
        meta={"difficulty": config.difficulty, "style": config.style, "count": str(len(fresh))},
        now=ts,
    )


def apply_grade_results(
    data: UserData,
    user_id: str,
    book_id: str,
    chapter_id: str,
    answers: Sequence[AnswerRow],
    results: Sequence[GradeResult],
    config: Optional[AICoachConfig] = None,
) -> Tuple[UserData, AIFeedbackEntry]:
    """Record a graded attempt as a feedback entry (newest first, capped)."""
    config = config or data.ai_coach.last_config
    by_id = {a.question_id: a for a in answers}
    graded = [
        AIGradeResult(
            question_id=r.question_id,
            question=by_id[r.question_id].question,
            student_answer=by_id[r.question_id].student_answer,
            score=r.score,
            feedback=r.feedback,
            ideal_answer=r.ideal_answer,
        )
        for r in results
        if r.question_id in by_id
    ]
    if not graded:
        raise JournalError("The AI service returned no usable grade results.")

    ts = now_iso()
    average = sum(g.score for g in graded) / len(graded)
    entry = AIFeedbackEntry(
        id=uid("aif"),
        book_id=book_id,
        chapter_id=chapter_id,
        created_at=ts,
        difficulty=config.difficulty,
        style=config.style,
        average_score=average,
        results=graded,
    )
    data = _with_coach(data, feedback_history=[entry, *data.ai_coach.feedback_history][:MAX_FEEDBACK_ENTRIES])
    data = push_history(
        data, "ai_answers_graded", user_id, f"Graded {_plural(len(graded), 'AI answer')}",
        book_id=book_id, chapter_id=chapter_id,
        meta={"averageScore": str(entry.average_score)},
        now=ts,
    )
    return data, entry
