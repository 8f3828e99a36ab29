from __future__ import annotations

import errno
import logging
import re
import sys

import structlog


ACCESS_TOKEN_QUERY_RE = re.compile(r"(access_token=)[A-Za-z0-9_-]+")
APP_SECRET_RE = re.compile(r"(app_?secret[\"'=: ]+)[A-Za-z0-9_-]{8,}", re.IGNORECASE)


def redact_secrets_processor(_, __, event_dict):
    """Processor to redact access tokens and app secrets from log messages."""
    message = str(event_dict.get("event", ""))

    redacted = ACCESS_TOKEN_QUERY_RE.sub(r"\1[REDACTED]", message)
    redacted = APP_SECRET_RE.sub(r"\1[REDACTED]", redacted)

    if redacted != message:
        event_dict["event"] = redacted

    url = event_dict.get("url")
    if isinstance(url, str):
        event_dict["url"] = ACCESS_TOKEN_QUERY_RE.sub(r"\1[REDACTED]", url)

    return event_dict


class SafeStreamHandler(logging.StreamHandler):
    def handleError(self, record: logging.LogRecord) -> None:
        exc = sys.exc_info()[1]
        if isinstance(exc, BrokenPipeError) or (
            isinstance(exc, OSError) and exc.errno == errno.EPIPE
        ):
            try:
                self.stream.close()
            except Exception:
                pass
            return
        super().handleError(record)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def setup_logging(*, debug: bool = False) -> None:
    """Configure structlog with console output and secret redaction."""

    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets_processor,
            structlog.dev.ConsoleRenderer(colors=True)
            if debug
            else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = SafeStreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[handler],
        force=True,
    )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
