from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.services.payments.errors import (
    OrderNotCancelable,
    OrderNotFound,
    PaymentError,
    ProviderError,
    ProviderUnavailable,
    SignatureInvalid,
    SubscriptionNotFound,
    TransitionRejected,
    UnknownProvider,
    WebhookDeferred,
)

logger = logging.getLogger(__name__)


def _error_payload(code: str, message: str, details: object, request_id: str | None):
    return {"code": code, "message": message, "details": details, "request_id": request_id}


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else "unknown"


def _json_error(
    request: Request, status_code: int, code: str, message: str, details: object = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=_error_payload(code, message, details, _request_id(request)),
    )


def payment_error_response(request: Request, exc: PaymentError) -> JSONResponse:
    if isinstance(exc, SignatureInvalid):
        # Uniform body whatever the underlying reason.
        return _json_error(request, 401, "signature_invalid", "Signature verification failed")
    if isinstance(exc, TransitionRejected):
        return _json_error(
            request,
            409,
            exc.reason,
            "Order cannot move to the requested state",
            {"from_status": exc.from_status, "to_status": exc.to_status},
        )
    if isinstance(exc, OrderNotCancelable):
        return _json_error(
            request, 409, "order_not_cancelable", str(exc), {"status": exc.status}
        )
    if isinstance(exc, (OrderNotFound, UnknownProvider)):
        code = "order_not_found" if isinstance(exc, OrderNotFound) else "unknown_provider"
        return _json_error(request, 404, code, str(exc))
    if isinstance(exc, SubscriptionNotFound):
        return _json_error(request, 404, "subscription_not_found", str(exc))
    if isinstance(exc, ProviderUnavailable):
        return _json_error(
            request,
            503,
            "provider_unavailable",
            "Payment provider is temporarily unavailable",
            {"provider": exc.provider, "retryable": True},
        )
    if isinstance(exc, ProviderError):
        return _json_error(
            request,
            502,
            "provider_error",
            "Payment provider rejected the request",
            {"provider": exc.provider, "retryable": False},
        )
    if isinstance(exc, WebhookDeferred):
        return _json_error(
            request,
            503,
            "webhook_deferred",
            "Webhook could not be applied, retry later",
            {"provider": exc.provider, "retryable": True},
        )
    logger.exception("Unmapped payment error on %s %s", request.method, request.url.path)
    return _json_error(request, 500, "internal_error", "Internal server error")


def register_error_handlers(app) -> None:
    @app.exception_handler(PaymentError)
    async def payment_exception_handler(request: Request, exc: PaymentError):
        return payment_error_response(request, exc)

    async def _handle_http_exception(request: Request, status_code: int, detail: object):
        code = f"http_{status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return _json_error(request, status_code, code, message, details)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return await _handle_http_exception(request, exc.status_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return await _handle_http_exception(request, exc.status_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        def _sanitize_input(value):
            if isinstance(value, bytes):
                return value.decode("utf-8", errors="replace")
            if isinstance(value, dict):
                return {key: _sanitize_input(val) for key, val in value.items()}
            if isinstance(value, (list, tuple, set)):
                return [_sanitize_input(item) for item in value]
            if isinstance(value, (str, int, float, bool)) or value is None:
                return value
            return str(value)

        errors = []
        for error in exc.errors():
            error_copy = dict(error)
            if "input" in error_copy:
                error_copy["input"] = _sanitize_input(error_copy.get("input"))
            error_copy.pop("ctx", None)
            errors.append(error_copy)
        return _json_error(request, 422, "validation_error", "Validation error", errors)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return _json_error(request, 500, "internal_error", "Internal server error")
