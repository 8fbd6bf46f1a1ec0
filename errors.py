"""Error taxonomy surfaced by the gateway.

Every error body is ``{"error": "<message>"}``; the exception handler in
``app.py`` renders ``detail`` under that key.
"""

from fastapi import HTTPException


class GatewayError(HTTPException):
    kind = "internal"

    def __init__(self, status_code: int, message: str):
        super().__init__(status_code=status_code, detail=message)

    @property
    def message(self) -> str:
        return str(self.detail)


class InvalidRequest(GatewayError):
    """Malformed, missing or out-of-range client input. Never reaches a provider."""

    kind = "invalid_request"

    def __init__(self, message: str):
        super().__init__(400, message)


class UpstreamFailure(GatewayError):
    """Network error, non-2xx, empty or unusable provider output."""

    kind = "upstream_failure"

    def __init__(self, message: str, status_code: int = 502):
        # Only pass through statuses that are themselves HTTP errors.
        if not 400 <= status_code <= 599:
            status_code = 502
        super().__init__(status_code, message)
