"""
FastAPI Middleware

Provides request/response middleware for:
- Correlation ID injection
- Request logging (with contact masking)
- Global error handling
- Concurrency gate for webhook endpoints
"""
import asyncio
import time
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException
from app.core.validation import EmailValidator

logger = get_logger(__name__)

WEBHOOK_PATH_PREFIX = "/webhooks/"
GENERIC_ERROR_MESSAGE = "Internal server error"


def _is_webhook_path(path: str) -> bool:
    return path.startswith(WEBHOOK_PATH_PREFIX)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID to requests"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


def _safe_query_params(request: Request) -> dict[str, str]:
    """?email= בהיסטוריית תגמולים - ממסכים לפני כתיבה ללוג"""
    params = dict(request.query_params)
    if "email" in params:
        params["email"] = EmailValidator.mask(params["email"])
    return params


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and responses"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        start_time = time.time()
        path = request.url.path

        logger.info(
            f"Request started: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "query_params": _safe_query_params(request),
                "client_host": request.client.host if request.client else None,
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {path}",
                extra_data={
                    "method": request.method,
                    "path": path,
                    "duration_seconds": round(time.time() - start_time, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        log_level = "info" if response.status_code < 400 else "warning"
        getattr(logger, log_level)(
            f"Request completed: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_seconds": round(time.time() - start_time, 4),
            }
        )
        return response


class WebhookConcurrencyMiddleware(BaseHTTPMiddleware):
    """
    Admission gate for webhook endpoints.

    At most ``max_concurrency`` webhook requests are processed at once;
    the rest wait for a free slot instead of getting a 429. Non-webhook
    paths are not gated.
    """

    def __init__(self, app: FastAPI, *, max_concurrency: int = 100) -> None:
        super().__init__(app)
        self._max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        if not _is_webhook_path(request.url.path):
            return await call_next(request)

        if self._semaphore.locked():
            logger.info(
                "Webhook concurrency limit reached, waiting for a slot",
                extra_data={
                    "path": request.url.path,
                    "max_concurrency": self._max_concurrency,
                },
            )

        async with self._semaphore:
            return await call_next(request)


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Handle application exceptions"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )

    # webhooks מחזירים גוף שטוח {"error": "..."} - הפלטפורמות רק מתעדות אותו
    if _is_webhook_path(request.url.path):
        content = {"error": exc.message}
    else:
        content = exc.to_dict()

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions. Details stay in the logs."""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )

    if _is_webhook_path(request.url.path):
        content = {"error": GENERIC_ERROR_MESSAGE}
    else:
        content = {
            "error": {
                "code": "ERR_1000",
                "message": GENERIC_ERROR_MESSAGE,
                "details": {}
            }
        }

    return JSONResponse(
        status_code=500,
        content=content,
        headers={"X-Correlation-ID": get_correlation_id()}
    )


def setup_middleware(app: FastAPI) -> None:
    """Setup all middleware for the application"""
    from app.core.config import settings

    # ב-Starlette, ה-middleware האחרון שנוסף הוא ה-outermost.
    # סדר עיבוד בקשה: CorrelationId → RequestLogging → WebhookConcurrency → app
    app.add_middleware(
        WebhookConcurrencyMiddleware,
        max_concurrency=settings.WEBHOOK_MAX_CONCURRENCY,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
