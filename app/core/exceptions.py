from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found", details: dict[str, Any] | None = None):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND, details=details)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Ledger errors. Every failure of a ledger operation is one of these; callers
# map them to user-facing text.


class StoreUnavailable(AppError):
    """Persistence unreachable or timed out. Retryable; never means zero."""

    def __init__(self, message: str = "Ledger store unavailable", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="STORE_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"retryable": True, **(details or {})},
        )


class AlreadyConsumed(ConflictError):
    def __init__(self, code: str):
        super().__init__("Card has already been used", details={"code": code})
        self.code = "ALREADY_CONSUMED"


class CardDisabled(ConflictError):
    def __init__(self, code: str, reason: str = "disabled"):
        super().__init__("Card is not active", details={"code": code, "reason": reason})
        self.code = "CARD_DISABLED"


class InvalidAmount(BadRequestError):
    def __init__(self, message: str = "Amount must be a positive integer", details: dict[str, Any] | None = None):
        super().__init__(message, details=details)
        self.code = "INVALID_AMOUNT"


class SelfTransfer(BadRequestError):
    def __init__(self):
        super().__init__("Cannot transfer points to yourself")
        self.code = "SELF_TRANSFER"


class RecipientNotFound(NotFoundError):
    def __init__(self, recipient: str):
        super().__init__("Recipient not found", details={"recipient": recipient})
        self.code = "RECIPIENT_NOT_FOUND"


class InsufficientBalance(BadRequestError):
    def __init__(self, owner_id: str, requested: int, available: int):
        super().__init__(
            "Insufficient points balance",
            details={"owner_id": owner_id, "requested": requested, "available": available},
        )
        self.code = "INSUFFICIENT_BALANCE"
        self.requested = requested
        self.available = available


class RewardUnavailable(ConflictError):
    def __init__(self, reward_id: str, reason: str):
        super().__init__("Reward is not available", details={"reward_id": reward_id, "reason": reason})
        self.code = "REWARD_UNAVAILABLE"


class InvalidStatusTransition(ConflictError):
    def __init__(self, redemption_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot move redemption from {current} to {requested}",
            details={"redemption_id": redemption_id, "current": current, "requested": requested},
        )
        self.code = "INVALID_STATUS_TRANSITION"


class PartialCommitDetected(AppError):
    """One half of a paired ledger write is missing and could not be repaired."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="PARTIAL_COMMIT_DETECTED",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": jsonable_encoder(exc.errors())},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=422,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
