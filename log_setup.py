"""Logging setup: API-key redaction and optional one-object-per-line JSON output."""

from __future__ import annotations

import json
import logging
import re
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"


def compile_patterns(patterns: Sequence[str]) -> list[re.Pattern[str]]:
    """Compile redaction patterns, skipping (and reporting) any that are invalid."""
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            logger.warning("Ignoring invalid redaction pattern %r: %s", pattern, e)
    return compiled


def redact_string(text: str, patterns: Sequence[str | re.Pattern[str]]) -> str:
    """Replace all matches of the given regex patterns with [REDACTED]."""
    for pattern in patterns:
        try:
            text = re.sub(pattern, REDACTED, text)
        except re.error:
            continue
    return text


class RedactingFilter(logging.Filter):
    """Logging filter that scrubs secrets from the message and its string args."""

    def __init__(self, patterns: Sequence[str], name: str = "") -> None:
        super().__init__(name)
        self._patterns = compile_patterns(patterns)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._patterns:
            return True
        record.msg = redact_string(str(record.msg), self._patterns)
        if isinstance(record.args, tuple):
            record.args = tuple(
                redact_string(a, self._patterns) if isinstance(a, str) else a
                for a in record.args
            )
        elif isinstance(record.args, dict):
            record.args = {
                k: redact_string(v, self._patterns) if isinstance(v, str) else v
                for k, v in record.args.items()
            }
        return True


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter for machine-readable output."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(
    verbose: bool = False,
    json_log: bool = False,
    patterns: Optional[Sequence[str]] = None,
) -> logging.Handler:
    """Install a single stream handler with redaction on the root logger.

    Replaces handlers previously installed by this function so it is safe to
    call more than once. Returns the installed handler.
    """
    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_tier_escalation_handler", False):
            root.removeHandler(existing)

    handler = logging.StreamHandler()
    handler._tier_escalation_handler = True  # type: ignore[attr-defined]
    if json_log:
        handler.setFormatter(JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", "%Y-%m-%d %H:%M:%S")
        )
    if patterns:
        handler.addFilter(RedactingFilter(patterns))

    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    return handler
