"""Key material handling.

The API key is caller-held. Nothing in this package logs it or copies it
into an error detail; these helpers scrub it from free text and give a
stable, non-reversible label for correlating log lines.
"""

import hashlib
import re

# YouTube keys, OpenAI-style keys, key/token/secret assignments, long opaque secrets
_SECRET_PATTERNS = (
    re.compile(r"AIza[0-9A-Za-z_\-]{35}"),
    re.compile(r"sk-[A-Za-z0-9]{20,}"),
    re.compile(r"(?i)\b(key|token|secret|password|access_token)=([^&\s\"']+)"),
    re.compile(r"\b[A-Za-z0-9_\-]{40,}\b"),
)

MAX_MESSAGE_LENGTH = 500


def redact_secrets(text: str) -> str:
    """Replace anything that looks like key material with ``[REDACTED]``."""
    for pattern in _SECRET_PATTERNS:
        if pattern.groups == 2:
            text = pattern.sub(lambda m: f"{m.group(1)}=[REDACTED]", text)
        else:
            text = pattern.sub("[REDACTED]", text)
    return text


def sanitize_message(message: object) -> str:
    """Redact secrets, normalize whitespace and bound the length."""
    text = str(message) if message is not None else ""
    text = " ".join(redact_secrets(text).split())
    if not text:
        return "An error occurred during processing"
    return text[:MAX_MESSAGE_LENGTH]


def key_fingerprint(raw_key: str) -> str:
    """Short SHA256 label of an API key, safe to log."""
    if not raw_key:
        return "none"
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()[:12]
