from typing import Any

import structlog
from fastapi import APIRouter, Body, Request

from coach import (
    build_generate_prompt,
    build_grade_prompt,
    normalize_grades,
    normalize_questions,
    parse_generate_request,
    parse_grade_request,
    resolve_api_key,
)
from errors import UpstreamFailure
from models import GenerateQuestionsResponse, GradeResponse
from providers import provider_json

router = APIRouter(prefix="/api/ai", tags=["ai"])
logger = structlog.get_logger("routes.ai")

API_KEY_HEADER = "x-provider-api-key"


@router.post("/generate-questions", response_model=GenerateQuestionsResponse)
def generate_questions(request: Request, body: Any = Body(None)):
    cfg = request.app.state.settings
    data = parse_generate_request(body, cfg)
    api_key = resolve_api_key(data.provider, request.headers.get(API_KEY_HEADER), cfg)

    system_prompt, user_prompt = build_generate_prompt(data)
    parsed = provider_json(data, api_key, system_prompt, user_prompt, cfg)

    questions = normalize_questions(parsed, data.count)
    if not questions:
        raise UpstreamFailure("AI provider returned no usable questions.")

    logger.info("ai_questions_generated", provider=data.provider, model=data.model, count=len(questions))
    return GenerateQuestionsResponse(questions=questions)


@router.post("/grade", response_model=GradeResponse)
def grade_answers(request: Request, body: Any = Body(None)):
    cfg = request.app.state.settings
    data = parse_grade_request(body, cfg)
    api_key = resolve_api_key(data.provider, request.headers.get(API_KEY_HEADER), cfg)

    system_prompt, user_prompt = build_grade_prompt(data)
    parsed = provider_json(data, api_key, system_prompt, user_prompt, cfg)

    results = normalize_grades(parsed, data.answers)
    if not results:
        raise UpstreamFailure("AI provider returned no usable grade results.")

    logger.info(
        "ai_answers_graded",
        provider=data.provider,
        model=data.model,
        requested=len(data.answers),
        graded=len(results),
    )
    return GradeResponse(results=results)
