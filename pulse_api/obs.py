"""Logging setup for the API and its background workers."""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+", re.I)


def _redact_pii(text: str) -> str:
    """Replace e-mail addresses with ***."""
    return EMAIL_RE.sub("***", text)


class JsonFormatter(logging.Formatter):
    """Render logs as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "campaign_id": getattr(record, "campaign_id", None),
            "recipient_id": getattr(record, "recipient_id", None),
            "msg": _redact_pii(record.getMessage()),
        }
        if record.exc_info:
            data["exc"] = _redact_pii(self.formatException(record.exc_info))
        return json.dumps(data)


def configure_logging(level: str | int = logging.INFO) -> None:
    """Configure the ``pulse`` logger tree with JSON formatting."""

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger("pulse")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
