# app.py
# FastAPI backend for the reading coach.
# Goals:
# - Forward AI question generation and grading to one of three providers
# - Validate and clamp every untrusted field before any upstream call
# - Never leak upstream payloads, stack traces or credentials to the caller
# - Reject disallowed origins and over-eager callers at the policy layer

import logging
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, settings
from middleware import install_policy

# --- Configure structlog + stdlib logging
logging.basicConfig(format="%(message)s", level=logging.INFO,)
structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.INFO), processors=[structlog.processors.add_log_level, structlog.processors.TimeStamper(fmt="iso"), structlog.processors.JSONRenderer(), ],)
logger = structlog.get_logger("app")


# ----------------------------
# Error rendering
# ----------------------------
# Every error body is {"error": "<message>"}.

async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        message = "Not found."
    elif isinstance(exc.detail, str) and exc.detail:
        message = exc.detail
    else:
        message = "Request failed."
    return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=getattr(exc, "headers", None))


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Invalid request body."})


async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    # Type only: messages may embed payloads or keys.
    logger.error("unexpected_error", path=request.url.path, error=type(exc).__name__)
    return JSONResponse(status_code=500, content={"error": "Internal server error."})


# ----------------------------
# FastAPI app
# ----------------------------
from routes.ai import router as ai_router
from routes.health import router as health_router


def create_app(cfg: Optional[Settings] = None) -> FastAPI:
    cfg = cfg or settings
    application = FastAPI(title="Reading Coach AI Gateway")
    application.state.settings = cfg

    install_policy(application, cfg)

    application.add_exception_handler(StarletteHTTPException, _http_error)
    application.add_exception_handler(RequestValidationError, _validation_error)
    application.add_exception_handler(Exception, _unexpected_error)

    application.include_router(health_router)
    application.include_router(ai_router)
    return application


app = create_app()


def main() -> None:
    import uvicorn

    logger.info("gateway_starting", port=settings.port, allowed_origins=settings.allowed_origins)
    uvicorn.run(app, host="127.0.0.1", port=settings.port)


if __name__ == "__main__":
    main()
