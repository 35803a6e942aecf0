"""
Logging setup and PII redaction for log output.

Conversation transcripts are full of customer contact details, and collection
data is regulated. Everything that may carry customer text is passed through
``redact_pii`` before a log line is rendered, in every log mode.
"""

from __future__ import annotations

import logging
import re

import structlog

# Order matters: international phone must precede US phone to avoid partial matches.
PII_PATTERNS: list[tuple[str, re.Pattern, str]] = [
    (
        "email",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[REDACTED_EMAIL]",
    ),
    (
        "phone_intl",
        re.compile(r"\+\d{1,3}[-.\s]?\d{1,4}[-.\s]?\d{1,4}[-.\s]?\d{1,9}\b"),
        "[REDACTED_PHONE_INTL]",
    ),
    (
        "phone_us",
        re.compile(r"\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"),
        "[REDACTED_PHONE]",
    ),
    (
        "ssn",
        re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
        "[REDACTED_SSN]",
    ),
    (
        "account_number",
        re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b"),
        "[REDACTED_ACCOUNT]",
    ),
]

SENSITIVE_KEYS = frozenset({"content", "query", "message", "transcript", "response"})
MAX_DISPLAY_LEN = 80


def redact_pii(text: str) -> str:
    for _, pattern, replacement in PII_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _redact_sensitive_fields(logger, method_name, event_dict):
    """
    Structlog processor that masks customer text in log output.

    PII tokens are replaced before truncation so that full patterns are never
    written out.
    """
    for key in SENSITIVE_KEYS:
        if key in event_dict:
            val = event_dict[key]
            if isinstance(val, str):
                val = redact_pii(val)
                if len(val) > MAX_DISPLAY_LEN:
                    val = val[:MAX_DISPLAY_LEN] + "... [truncated]"
                event_dict[key] = val
    return event_dict


_logging_configured = False


def configure_logging(level: int = logging.WARNING) -> None:
    """Configure structlog over standard-library logging.

    Safe to call more than once; subsequent calls only adjust the level.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        logging.getLogger().setLevel(level)
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            _redact_sensitive_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
