import contextvars
import logging
import logging.handlers
import re
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from core.config import settings
from core.security import verify_token

APP_LOGGER_NAME = "loan_portal"
REQUEST_ID_HEADER = "X-Request-ID"
LOG_FORMAT = "%(levelname)s - %(asctime)s - %(request_id)s - %(user_id)s - %(api)s - %(name)s - %(message)s"

request_id_var = contextvars.ContextVar("request_id", default="-")
user_id_var = contextvars.ContextVar("user_id", default="-")
api_var = contextvars.ContextVar("api", default="-")

# key=value or "key": "value" pairs whose value must never reach a log file
_SECRET_PATTERN = re.compile(
    r"""(?P<key>\b(?:password|new_?password|pass|secret|smtp_password|authorization)\b["']?\s*[:=]\s*["']?)(?P<value>[^\s"',}]+)""",
    re.IGNORECASE,
)


def map_log_level(level_name: str) -> int:
    level = logging.getLevelName((level_name or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def redact(text: str) -> str:
    return _SECRET_PATTERN.sub(lambda m: f"{m.group('key')}***", text)


class ContextFilter(logging.Filter):
    """Stamps request id, user id and route on every record and masks credentials."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.user_id = user_id_var.get()
        record.api = api_var.get()
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg, record.args = cleaned, None
        return True


def _file_handler(log_dir: Path, filename: str, level: int) -> logging.Handler:
    handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(log_dir / filename),
        when="midnight",
        backupCount=max(int(settings.LOG_TTL_DAYS), 0),
        encoding="utf-8",
        utc=True,
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    return handler


def _build_handlers(level: int) -> Dict[str, List[logging.Handler]]:
    console = logging.StreamHandler()
    console.setLevel(level)
    groups: Dict[str, List[logging.Handler]] = {"app": [console], "access": [console]}

    if settings.LOG_TO_FILE:
        log_dir = Path(settings.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        groups["app"] = [_file_handler(log_dir, "app.log", level), _file_handler(log_dir, "error.log", logging.WARNING), console]
        groups["access"] = [_file_handler(log_dir, "access.log", level), console]

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    context = ContextFilter()
    for handler in {h for group in groups.values() for h in group}:
        handler.setFormatter(formatter)
        handler.addFilter(context)
    return groups


def _attach(logger: logging.Logger, handlers: List[logging.Handler], level: int, propagate: bool = False) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)
    for h in handlers:
        logger.addHandler(h)
    logger.setLevel(level)
    logger.propagate = propagate


def configure_logging(app_logger_name: Optional[str] = None) -> logging.Logger:
    """Console logging always; daily rotated app/access/error files when LOG_TO_FILE is on.

    Rotated files are kept for LOG_TTL_DAYS days.
    """
    level = map_log_level(settings.LOG_LEVEL)
    handlers = _build_handlers(level)

    _attach(logging.getLogger(), handlers["app"], level, propagate=True)
    app_logger = logging.getLogger(app_logger_name or APP_LOGGER_NAME)
    _attach(app_logger, handlers["app"], level)
    for name in ("uvicorn", "uvicorn.error", "fastapi"):
        _attach(logging.getLogger(name), handlers["app"], level)
    _attach(logging.getLogger("uvicorn.access"), handlers["access"], level)
    return app_logger


def _bearer_user(request: Request) -> str:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.startswith("Bearer "):
        return "-"
    payload = verify_token(auth_header.split(" ", 1)[1])
    if not payload:
        return "-"
    return payload.get("user_id") or payload.get("sub") or "-"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        tokens = (
            (request_id_var, request_id_var.set(request_id)),
            (user_id_var, user_id_var.set(_bearer_user(request))),
            (api_var, api_var.set(f"{request.method} {request.url.path}")),
        )
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            for var, token in tokens:
                var.reset(token)
