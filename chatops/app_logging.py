"""Logging setup for the chat operations service.

Records from every ``chatops.*`` module go to ``app.log``; the HTTP
middleware writes one JSON line per request to ``access.log``. Gateway
webhooks carry API keys in headers and base64 media in bodies, so both are
scrubbed before anything is written. Webhook requests are additionally
tagged with the gateway event and instance name.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

APP_LOGGER_NAME = "chatops"
ACCESS_LOGGER_NAME = "uvicorn.access"
MAX_LOGGED_VALUE_LENGTH = 512
UNLOGGED_PATHS = frozenset({"/api/health", "/api/metrics"})
WEBHOOK_PATH_PREFIX = "/api/webhooks/"

SENSITIVE_FIELDS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "apikey",
        "api_key",
        "x-webhook-token",
        "token",
        "base64",
        "jpegthumbnail",
    }
)


@dataclass(frozen=True)
class LogOptions:
    log_dir: str
    level: int
    json_lines: bool
    request_bodies: bool
    retention_days: int
    rotate_utc: bool

    @classmethod
    def from_env(cls) -> "LogOptions":
        level_name = os.getenv("LOG_LEVEL", "INFO").upper()
        return cls(
            log_dir=os.getenv("LOG_DIR", "logs"),
            level=getattr(logging, level_name, logging.INFO),
            json_lines=_flag("LOG_JSON"),
            request_bodies=_flag("LOG_REQUEST_BODIES"),
            retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
            rotate_utc=_flag("LOG_ROTATE_UTC"),
        )


def _flag(name: str) -> bool:
    return os.getenv(name, "false").lower() == "true"


class JsonFormatter(logging.Formatter):
    """One JSON object per record, used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - simple
        entry = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def _scrub(data: object) -> object:
    """Mask credentials and clip oversized values, recursively."""

    if isinstance(data, dict):
        return {
            key: "***" if str(key).lower() in SENSITIVE_FIELDS else _scrub(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_scrub(item) for item in data]
    if isinstance(data, str) and len(data) > MAX_LOGGED_VALUE_LENGTH:
        return data[:MAX_LOGGED_VALUE_LENGTH] + "...(truncated)"
    return data


def _decode_body(body: bytes) -> Any:
    try:
        return json.loads(body)
    except ValueError:
        return body.decode("utf-8", errors="replace")


def _gateway_tags(path: str, body: Any) -> dict[str, Any]:
    """Event and instance of a gateway webhook, for grepping access.log."""

    if not path.startswith(WEBHOOK_PATH_PREFIX) or not isinstance(body, dict):
        return {}
    tags = {"gateway_event": body.get("event") or path.rsplit("/", 1)[-1]}
    instance = body.get("instance") or body.get("instanceName")
    if isinstance(instance, dict):
        instance = instance.get("instanceName")
    if instance:
        tags["gateway_instance"] = instance
    return tags


def _install_access_logging(app: FastAPI) -> None:
    """Log every request except health and metrics checks.

    The incoming ``X-Request-Id`` (or a generated one) is stored on
    ``request.state`` and echoed back in the response headers.
    """

    log_bodies = LogOptions.from_env().request_bodies
    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        path = request.url.path
        if path in UNLOGGED_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        body: Any = None
        if log_bodies or path.startswith(WEBHOOK_PATH_PREFIX):
            raw = await request.body()

            async def replay() -> dict:  # pragma: no cover - internal
                return {"type": "http.request", "body": raw, "more_body": False}

            request._receive = replay  # type: ignore[attr-defined]
            body = _decode_body(raw) if raw else None

        response = await call_next(request)

        peer = request.client.host if request.client else None
        entry: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": request.headers.get("X-Forwarded-For") or peer,
            "headers": _scrub(dict(request.headers)),
            **_gateway_tags(path, body),
        }
        if log_bodies and body is not None:
            entry["body"] = _scrub(body)

        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(entry, default=str, ensure_ascii=False))
        return response


def _attach_file_handler(
    logger: logging.Logger,
    filename: str,
    options: LogOptions,
    formatter: logging.Formatter,
    *,
    replace: bool,
) -> None:
    if replace:
        logger.handlers.clear()
    if not logger.handlers:
        handler = TimedRotatingFileHandler(
            os.path.join(options.log_dir, filename),
            when="midnight",
            backupCount=options.retention_days,
            utc=options.rotate_utc,
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(options.level)


def init_logging(app: FastAPI | None = None) -> logging.Logger:
    """Configure ``app.log`` and ``access.log`` and return the app logger.

    Uvicorn's own access handlers are replaced so request lines only come
    from the middleware installed on ``app``.
    """

    options = LogOptions.from_env()
    os.makedirs(options.log_dir, exist_ok=True)
    if options.json_lines:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    _attach_file_handler(app_logger, "app.log", options, formatter, replace=False)
    _attach_file_handler(
        logging.getLogger(ACCESS_LOGGER_NAME), "access.log", options, formatter, replace=True
    )

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app)
    return app_logger
