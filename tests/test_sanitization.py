from __future__ import annotations

import allure

from work_loop.sanitization import sanitize_diagnostic, strip_control_sequences

pytestmark = [
    allure.epic("Agent Invoker"),
    allure.feature("Diagnostics"),
]


def test_strip_control_sequences_removes_terminal_noise() -> None:
    text = "\x1b[1;31merror\x1b[0m \x1b]0;title\x07done\x00\tok\n"

    assert strip_control_sequences(text) == "error done\tok\n"


def test_sanitize_diagnostic_redacts_secrets() -> None:
    text = (
        "Authorization: Bearer abcdefghijklmnop\n"
        "ANTHROPIC_API_KEY=sk-ant-0123456789abcdef\n"
        "GET https://example.com/feed?token=secret123&page=2"
    )

    sanitized = sanitize_diagnostic(text)

    assert "abcdefghijklmnop" not in sanitized
    assert "sk-ant-0123456789abcdef" not in sanitized
    assert "secret123" not in sanitized
    assert "token=[redacted]" in sanitized
    assert "page=2" in sanitized


def test_sanitize_diagnostic_keeps_tail_of_long_output() -> None:
    text = "head " + "x" * 50 + " tail"

    assert sanitize_diagnostic(text, max_chars=10) == "xxxxx tail"
    assert sanitize_diagnostic("  \x1b[0m  ") == ""
