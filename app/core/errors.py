import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for errors that map onto a user-facing response."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "error"
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(LedgerError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthenticated"
    default_message = "Authentication required"


class AccountNotFound(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "account_not_found"
    default_message = "User not found"


class NoAllocationRemaining(LedgerError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    code = "no_allocation_remaining"
    default_message = "You have used all of your posts for this month. Buy credits to post more."


class InsufficientCredits(LedgerError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    code = "insufficient_credits"
    default_message = "Not enough credits for this tool. Buy credits to continue."

    def __init__(self, message: str | None = None, balance: int = 0, required: int = 0):
        super().__init__(message)
        self.balance = balance
        self.required = required


class UpstreamUnavailable(LedgerError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "upstream_unavailable"
    default_message = "The AI service is temporarily unavailable. Your credits were not charged."


class InvalidWebhookSignature(LedgerError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "invalid_signature"
    default_message = "Invalid webhook signature"


class LedgerConflict(LedgerError):
    """Concurrent writers kept winning; the caller (or the provider) should retry."""

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"
    default_message = "The account was updated concurrently. Please retry."


class ValidationError(LedgerError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"
    default_message = "Invalid request"


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    content = {"error": exc.code, "detail": exc.message}
    if isinstance(exc, InsufficientCredits):
        content["balance"] = exc.balance
        content["required"] = exc.required
    return JSONResponse(status_code=exc.status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LedgerError, ledger_error_handler)
