"""Tests for PII redaction in log output."""

from __future__ import annotations

import logging

import pytest

from recollect import log
from recollect.log import MAX_DISPLAY_LEN, _redact_sensitive_fields, configure_logging, redact_pii


class TestRedactPii:
    @pytest.mark.parametrize(
        ("text", "token"),
        [
            ("write to jane.doe@example.com today", "[REDACTED_EMAIL]"),
            ("call +44 20 7946 0958", "[REDACTED_PHONE_INTL]"),
            ("call (555) 123-4567", "[REDACTED_PHONE]"),
            ("ssn 123-45-6789", "[REDACTED_SSN]"),
            ("card 4111 1111 1111 1111", "[REDACTED_ACCOUNT]"),
        ],
    )
    def test_patterns(self, text, token):
        assert token in redact_pii(text)

    def test_plain_text_untouched(self):
        assert redact_pii("customer agreed to pay $250 on Friday") == (
            "customer agreed to pay $250 on Friday"
        )


class TestProcessor:
    def test_sensitive_keys_are_redacted_and_truncated(self):
        event = {
            "event": "retrieval.completed",
            "query": "contact jane@example.com " + "x" * 200,
            "customer_id": "jane@example.com",
        }
        result = _redact_sensitive_fields(None, "info", event)
        assert "jane@example.com" not in result["query"]
        assert result["query"].endswith("... [truncated]")
        assert len(result["query"]) == MAX_DISPLAY_LEN + len("... [truncated]")
        # Identifiers are not free text and pass through.
        assert result["customer_id"] == "jane@example.com"

    def test_non_string_values_pass_through(self):
        event = {"event": "x", "content": ["a@b.co"]}
        assert _redact_sensitive_fields(None, "info", event)["content"] == ["a@b.co"]


class TestConfigureLogging:
    def test_repeat_calls_only_adjust_level(self, monkeypatch):
        monkeypatch.setattr(log, "_logging_configured", False)
        monkeypatch.setattr(logging.getLogger(), "level", logging.getLogger().level)
        configure_logging(logging.WARNING)
        configure_logging(logging.DEBUG)
        assert logging.getLogger().level == logging.DEBUG
        assert log._logging_configured is True
