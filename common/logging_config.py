"""
Structured logging shared by both services.

Both apps call setup_logging() once at startup; modules obtain loggers
with structlog.get_logger(__name__) at import time.
"""
import logging
import sys
import time
from typing import Any
from uuid import uuid4

import structlog


def setup_logging(service_name: str, level: str = "INFO", json_logs: bool = False) -> None:
    def add_service(logger: Any, method_name: str, event_dict: dict) -> dict:
        event_dict["service"] = service_name
        return event_dict

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_service,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Quiet per-request client logs
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info("logging_configured", level=level, json_logs=json_logs)


async def bind_request_context(request, call_next):
    """HTTP middleware binding a request id into every log line of the request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request.headers.get("x-request-id") or str(uuid4()),
        method=request.method,
        path=request.url.path,
    )
    started = time.perf_counter()
    response = await call_next(request)
    structlog.get_logger(__name__).info(
        "request_completed",
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response
