from __future__ import annotations

import re

SECRET_PATTERNS = (
    (re.compile(r"(sk-[A-Za-z0-9_\-]{6,})"), "sk-***"),
    (re.compile(r"(xai-[A-Za-z0-9_\-]{6,})"), "xai-***"),
    (re.compile(r"(AIza[A-Za-z0-9_\-]{10,})"), "AIza***"),
    (re.compile(r"([?&]key=)[^&\s]+"), r"\1***"),
)


def redact_secrets(text: str) -> str:
    """Redact provider API keys or similar secrets from a string."""

    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_text(text: str, max_length: int) -> str:
    """Trim and clamp user-provided text to a safe length."""

    cleaned = text.strip()
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length]
    return cleaned
