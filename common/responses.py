from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from common.errors import ServiceError

logger = structlog.get_logger(__name__)

STATUS_LABELS = {
    200: "SUCCESS",
    400: "BAD REQUEST",
    404: "NOT FOUND",
    500: "INTERNAL SERVER ERROR",
}


class WebResponse(BaseModel):
    code: int
    status: str
    data: Any = None


def success(data: Any) -> WebResponse:
    return WebResponse(code=200, status=STATUS_LABELS[200], data=data)


def error_response(code: int, message: str, label: str = None) -> JSONResponse:
    body = WebResponse(code=code, status=label or STATUS_LABELS.get(code, "ERROR"), data=message)
    return JSONResponse(status_code=code, content=body.model_dump())


def _describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid payload"
    first = errors[0]
    # loc looks like ("body", "quantity"); drop the leading section name
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    if first.get("type") == "json_invalid" or not field:
        return "invalid payload"
    return f"{field}: {first.get('msg', 'invalid value')}"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        logger.info(
            "request_rejected",
            error=type(exc).__name__,
            reason=exc.message,
            path=request.url.path,
        )
        return error_response(exc.status_code, exc.message, exc.label)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return error_response(400, _describe_validation_error(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        return error_response(500, "internal server error")
