"""
Error taxonomy for the auth API and the FastAPI handlers that render it.

Every handler answers with the same envelope as successful responses:
``{"success": false, "message": ..., ...}``. Details that could leak
internal configuration are only attached outside production.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.config import get_settings
from utils.responses import NO_STORE_HEADERS

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base domain exception carrying its HTTP status."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: Optional[str] = None, *, extra: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code
        self.extra = extra or {}
        super().__init__(message)

    def public_extra(self, production: bool) -> Dict[str, Any]:
        return dict(self.extra)


class ValidationError(AppError):
    """Missing or malformed input."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(AppError):
    """Unknown subject (user lookup by email or phone failed)."""

    status_code = status.HTTP_404_NOT_FOUND


class OTPError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST

    MESSAGES = {
        "NOT_FOUND": "Invalid OTP or OTP not found",
        "EXPIRED": "OTP has expired",
        "MISMATCH": "Invalid OTP",
    }

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or self.MESSAGES.get(reason, "Invalid OTP"), code=reason)


class DeliveryError(AppError):
    """Outbound email could not be handed to the relay."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, result, message: Optional[str] = None, *, dev_otp: Optional[str] = None):
        self.result = result
        self.dev_otp = dev_otp
        super().__init__(message or result.error or "Failed to send email", code=result.kind)

    def public_extra(self, production: bool) -> Dict[str, Any]:
        extra: Dict[str, Any] = {"smtpErrorCode": self.result.kind}
        if production:
            return extra
        if self.result.hint:
            extra["hint"] = self.result.hint
        if self.result.detail:
            extra["error"] = self.result.detail
        if self.result.config:
            extra["smtpConfig"] = self.result.config
        if self.dev_otp:
            extra["devOtp"] = self.dev_otp
        return extra


class InternalError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Internal server error", *, detail: Optional[str] = None):
        self.detail = detail
        super().__init__(message)

    def public_extra(self, production: bool) -> Dict[str, Any]:
        if production or not self.detail:
            return {}
        return {"error": self.detail}


def _error_body(message: str, code: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "message": message}
    if code:
        body["code"] = code
    body.update(extra)
    return body


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    production = get_settings().is_production
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} at {request.url.path}: {exc.message} (code={exc.code})")
    else:
        logger.info(f"{type(exc).__name__} at {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.message, exc.code, **exc.public_extra(production)),
        headers=NO_STORE_HEADERS,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info(f"Malformed request at {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body("Invalid request body", "VALIDATION"),
        headers=NO_STORE_HEADERS,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error at {request.url.path}: {exc}")
    extra: Dict[str, Any] = {}
    if not get_settings().is_production:
        extra["error"] = str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("Internal server error", **extra),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
