"""Error taxonomy for the credit and quota engine.

Every error is an ``HTTPException`` so services can raise them directly and FastAPI
renders them; ``detail`` always carries a machine-readable ``code``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException


class EngineError(HTTPException):
    status_code_default = 500
    code = "engine_error"

    def __init__(self, message: str, **data: Any):
        self.message = message
        self.data = data
        detail: Dict[str, Any] = {"code": self.code, "message": message}
        detail.update({key: value for key, value in data.items() if value is not None})
        super().__init__(status_code=self.status_code_default, detail=detail)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(EngineError):
    """Malformed or missing identity/payload. Raised before any mutation."""

    status_code_default = 422
    code = "validation_error"


class RateLimitExceeded(EngineError):
    status_code_default = 429
    code = "rate_limit_exceeded"

    def __init__(self, status: Any, request_id: Optional[str] = None):
        self.status = status
        super().__init__(
            "Rate limit exceeded. Try again after the reset time.",
            hourly_remaining=status.hourly_remaining,
            daily_remaining=status.daily_remaining,
            reset_at=status.reset_at.isoformat(),
            request_id=request_id,
        )


class InsufficientCredits(EngineError):
    status_code_default = 402
    code = "insufficient_credits"

    def __init__(self, user_id: str, total_available: int = 0):
        self.user_id = user_id
        super().__init__(
            "Insufficient credits. Purchase a credit pack or wait for the daily reset.",
            total_available=total_available,
        )


class UnknownPriceTier(EngineError):
    status_code_default = 422
    code = "unknown_price_tier"

    def __init__(self, amount_cents: int):
        self.amount_cents = amount_cents
        super().__init__(f"No credit pack is priced at {amount_cents} cents.", amount_cents=amount_cents)


class GenerationFailed(EngineError):
    status_code_default = 502
    code = "generation_failed"


class StorageUnavailable(EngineError):
    """Credit/quota store unreachable. Callers deny the request (fail closed)."""

    status_code_default = 503
    code = "storage_unavailable"


class InvalidTransition(EngineError):
    status_code_default = 409
    code = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move a {current} request to {target}.", **{"from": current, "to": target})


class RequestNotFound(EngineError):
    status_code_default = 404
    code = "request_not_found"
