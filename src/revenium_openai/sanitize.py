"""
Credential Sanitizer
====================
Redact credential-shaped substrings from captured text before it leaves
the process.
"""

import re

# Applied in order; specific vendor prefixes come before the generic ``sk-``.
_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"pplx-[a-zA-Z0-9_-]{20,}"), "pplx-***REDACTED***"),
    (re.compile(r"sk-proj-[a-zA-Z0-9_-]{48,}"), "sk-proj-***REDACTED***"),
    (re.compile(r"sk-ant-[a-zA-Z0-9_-]{20,}"), "sk-ant-***REDACTED***"),
    (re.compile(r"sk-[a-zA-Z0-9_-]{20,}"), "sk-***REDACTED***"),
    (re.compile(r"AKIA[A-Z0-9]{16}"), "AKIA***REDACTED***"),
    (re.compile(r"ghp_[a-zA-Z0-9]{36,}"), "ghp_***REDACTED***"),
    (re.compile(r"ghs_[a-zA-Z0-9]{36,}"), "ghs_***REDACTED***"),
    (
        re.compile(r"eyJ[a-zA-Z0-9_-]+\.eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+"),
        "***REDACTED_JWT***",
    ),
    (re.compile(r"Bearer\s+[a-zA-Z0-9_\-.+/=]+", re.IGNORECASE), "Bearer ***REDACTED***"),
    (
        re.compile(r"api[_-]?key[\"'\s:=]+[a-zA-Z0-9_\-.+/=]{20,}", re.IGNORECASE),
        "api_key: ***REDACTED***",
    ),
    (
        re.compile(r"token[\"'\s:=]+[a-zA-Z0-9_\-.+/=]{20,}", re.IGNORECASE),
        "token: ***REDACTED***",
    ),
    (
        re.compile(r"password[\"'\s:=]+[\"']?[^\"'\s]{8,}[\"']?", re.IGNORECASE),
        "password: ***REDACTED***",
    ),
    (
        re.compile(r"secret[\"'\s:=]+[\"']?[^\"'\s]{8,}[\"']?", re.IGNORECASE),
        "secret: ***REDACTED***",
    ),
)


def sanitize_credentials(text: str) -> str:
    """
    Replace credential-shaped substrings with redaction markers.

    Idempotent: sanitizing already-sanitized text returns it unchanged.
    """
    if not text:
        return text
    for pattern, replacement in _PATTERNS:
        text = pattern.sub(replacement, text)
    return text
