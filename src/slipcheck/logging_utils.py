"""Logging configuration with redaction of the lookup credential."""

import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime

REDACTED = "[redacted]"


class SensitiveDataFilter(logging.Filter):
    """Filter that redacts configured secrets from log records."""

    def __init__(self, secrets: Iterable[str | None]):
        super().__init__()
        self._secrets = [secret.strip() for secret in secrets if secret and secret.strip()]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True

        message = record.getMessage()
        sanitized = message
        for secret in self._secrets:
            sanitized = sanitized.replace(secret, REDACTED)
        if sanitized != message:
            record.msg = sanitized
            record.args = ()
        return True


class JsonFormatter(logging.Formatter):
    """Minimal JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(
    level_name: str, fmt: str = "plain", secrets: Iterable[str | None] = ()
) -> None:
    """Configure root logging with optional JSON output and secret redaction."""
    numeric_level = getattr(logging, level_name.upper(), logging.WARNING)

    handler = logging.StreamHandler()
    if (fmt or "plain").lower() == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    handler.setFormatter(formatter)
    handler.addFilter(SensitiveDataFilter(secrets))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric_level)
