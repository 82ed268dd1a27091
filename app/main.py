import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.errors import ApiError, error_response
from app.logging_utils import setup_json_logging
from app.routers import notifications
from app.services.notification_scheduler import NotificationScheduler
from app.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("app.request")


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "anonymous")
    request.state.actor_id = getattr(request.state, "actor_id", None)

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "anonymous"),
                "actor_id": getattr(request.state, "actor_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


def _validation_message(exc: RequestValidationError) -> str:
    parts: list[str] = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        text = str(error.get("msg", "Invalid value"))
        parts.append(f"{location}: {text}" if location else text)
    return "; ".join(parts) or "Invalid request."


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=400,
        code="VALIDATION_ERROR",
        message=_validation_message(exc),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(notifications.router)


@app.on_event("startup")
async def start_notification_scheduler() -> None:
    if getattr(app.state, "notification_scheduler", None) is not None:
        return

    scheduler = NotificationScheduler(settings)
    app.state.notification_scheduler = scheduler
    scheduler.start()


@app.on_event("shutdown")
async def stop_notification_scheduler() -> None:
    scheduler: NotificationScheduler | None = getattr(app.state, "notification_scheduler", None)
    if scheduler is not None:
        await scheduler.stop()
    app.state.notification_scheduler = None


@app.get("/health")
def health() -> dict[str, Any]:
    scheduler: NotificationScheduler | None = getattr(app.state, "notification_scheduler", None)
    return {
        "status": "ok",
        "notification_scheduler": {
            "running": bool(scheduler is not None and scheduler.is_running),
            "cleanup_enabled": settings.notification_cleanup_enabled,
            "retention_days": settings.notification_retention_days,
            "cleanup_hour": settings.notification_cleanup_hour,
            "last_cleanup_date": (
                scheduler.last_cleanup_date.isoformat()
                if scheduler is not None and scheduler.last_cleanup_date is not None
                else None
            ),
        },
    }
