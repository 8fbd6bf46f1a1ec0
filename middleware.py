# middleware.py
# Request policy applied before any route runs: security headers, origin
# allow-list (CORS), body size cap and the AI rate limiter.

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from config import Settings

logger = structlog.get_logger("policy")

SECURITY_HEADERS = {
    "Cache-Control": "no-store",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
}

RATE_LIMITED_PREFIX = "/api/ai"


# ----------------------------
# Fixed-window rate limiter
# ----------------------------

@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_in: int  # whole seconds until the window resets


class FixedWindowRateLimiter:
    """N hits per caller per window. Process-local; not shared across instances."""

    def __init__(self, limit: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.limit = max(1, limit)
        self.window_seconds = max(1, window_seconds)
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}  # key -> (window_start, hits)

    def hit(self, key: str) -> RateDecision:
        now = self._clock()
        start, hits = self._windows.get(key, (now, 0))
        if now - start >= self.window_seconds:
            start, hits = now, 0
        hits += 1
        self._windows[key] = (start, hits)
        if len(self._windows) > 10_000:
            self._prune(now)

        reset_in = max(0, math.ceil(start + self.window_seconds - now))
        return RateDecision(
            allowed=hits <= self.limit,
            limit=self.limit,
            remaining=max(0, self.limit - hits),
            reset_in=reset_in,
        )

    def reset(self) -> None:
        self._windows.clear()

    def _prune(self, now: float) -> None:
        expired = [k for k, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for k in expired:
            del self._windows[k]


def client_key(request: Request) -> str:
    """Caller identity: the address our single trusted proxy saw, else the peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    hops = [h.strip() for h in forwarded.split(",") if h.strip()]
    if hops:
        return hops[-1]
    return request.client.host if request.client else "unknown"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# ----------------------------
# Installation
# ----------------------------

def install_policy(app: FastAPI, cfg: Settings) -> None:
    """Register policy middlewares. The last registered runs first."""
    limiter = FixedWindowRateLimiter(cfg.rate_limit_max, cfg.rate_limit_window_seconds)
    app.state.rate_limiter = limiter
    allowed_origins = set(cfg.allowed_origins)

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if not request.url.path.startswith(RATE_LIMITED_PREFIX):
            return await call_next(request)

        decision = limiter.hit(client_key(request))
        headers = {
            "RateLimit-Limit": str(decision.limit),
            "RateLimit-Remaining": str(decision.remaining),
            "RateLimit-Reset": str(decision.reset_in),
        }
        if not decision.allowed:
            logger.info("rate_limited", kind="rate_limited", path=request.url.path)
            response = _error(429, "Too many AI requests. Please retry in a minute.")
            headers["Retry-After"] = str(decision.reset_in)
        else:
            response = await call_next(request)
        response.headers.update(headers)
        return response

    @app.middleware("http")
    async def body_size_cap(request: Request, call_next):
        length = request.headers.get("content-length")
        if length and length.isdigit() and int(length) > cfg.max_body_bytes:
            return _error(413, "Request body too large.")
        return await call_next(request)

    # Not CORSMiddleware: disallowed origins get a 403 error body and any
    # allowed preflight is answered 204 before routing.
    @app.middleware("http")
    async def origin_allow_list(request: Request, call_next):
        origin = request.headers.get("origin")
        if not origin:
            return await call_next(request)

        if origin not in allowed_origins:
            logger.info("origin_rejected", kind="origin_not_allowed", origin=origin[:200])
            return _error(403, "Origin not allowed.")

        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            response = await call_next(request)
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Vary"] = "Origin"
        response.headers["Access-Control-Allow-Methods"] = "POST,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type,X-Provider-Api-Key"
        response.headers["Access-Control-Max-Age"] = "86400"
        return response

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response
