"""Keep healing prompts out of logs unless explicitly asked for.

Healing prompts embed raw build output, which regularly contains connection
strings and tokens. By default only a :class:`PromptFingerprint` is logged.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass
from typing import Final

PROMPT_DEBUG_ENV: Final[str] = "HEALING_PIPELINE_PROMPT_DEBUG"

_SECRET_NAMES = (
    "api[_-]?key",
    "access[_-]?token",
    "refresh[_-]?token",
    "auth[_-]?token",
    "client[_-]?secret",
    "private[_-]?key",
    "authorization",
    "password",
    "passwd",
    "pwd",
    "secret",
    "token",
)
_MASK = "[REDACTED]"
_TOKEN_MASK = "[REDACTED_TOKEN]"

# Order matters: "name=value" assignments run before the bare-token shapes.
_SECRET_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(rf"(?i)\b({'|'.join(_SECRET_NAMES)})\b(\s*[:=]\s*)([^\s,;]+)"), rf"\1\2{_MASK}"),
    (re.compile(r"(?i)([?&](?:api[_-]?key|access[_-]?token|token|secret|password|key)=)[^&\s]+"), rf"\1{_MASK}"),
    (re.compile(r"(?i)\bbearer\s+[\w.+/=-]{10,}"), f"Bearer {_MASK}"),
    # JWT: three base64url segments
    (re.compile(r"\b[\w-]{10,}\.[\w-]{10,}\.[\w-]{10,}\b"), _TOKEN_MASK),
    (re.compile(r"\bAKIA[0-9A-Z]{16}\b"), _TOKEN_MASK),
    (re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"), _TOKEN_MASK),
    (re.compile(r"\bsk-(?:ant-|proj-)?[\w-]{16,}\b"), _TOKEN_MASK),
    (re.compile(r"\bxox[abprs]-[A-Za-z0-9-]{10,}\b"), _TOKEN_MASK),
)


def is_prompt_debug_enabled() -> bool:
    """True when full prompt text may be logged.

    ``HEALING_PIPELINE_PROMPT_DEBUG`` decides when it holds a recognisable
    boolean; otherwise full prompts follow the root logger's DEBUG level.
    """
    flag = os.getenv(PROMPT_DEBUG_ENV, "").strip().lower()
    if flag in ("1", "true", "yes", "on"):
        return True
    if flag in ("0", "false", "no", "off"):
        return False
    return logging.getLogger().isEnabledFor(logging.DEBUG)


def redact_sensitive_text(text: str) -> tuple[str, int]:
    """Mask likely secrets in *text*; returns the masked text and the hit count."""
    total = 0
    masked = text or ""
    for pattern, replacement in _SECRET_RULES:
        masked, count = pattern.subn(replacement, masked)
        total += count
    return masked, total


@dataclass(frozen=True, slots=True)
class PromptFingerprint:
    length: int
    sha256: str
    secret_hits: int

    @classmethod
    def of(cls, prompt: str) -> PromptFingerprint:
        text = prompt or ""
        return cls(
            length=len(text),
            sha256=hashlib.sha256(text.encode("utf-8")).hexdigest()[:16],
            secret_hits=redact_sensitive_text(text)[1],
        )


def describe_prompt(prompt: str, *, label: str = "Prompt", debug: bool | None = None) -> str:
    """A single log line for *prompt*: its text in debug mode, its fingerprint otherwise."""
    if debug is None:
        debug = is_prompt_debug_enabled()
    if debug:
        return f"{label}: {prompt or ''}"
    fp = PromptFingerprint.of(prompt)
    return (
        f"{label} fingerprint: len={fp.length} sha256={fp.sha256} secret_hits={fp.secret_hits} "
        f"(set {PROMPT_DEBUG_ENV}=1 to log the full text)"
    )
