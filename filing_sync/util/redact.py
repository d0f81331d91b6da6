from __future__ import annotations

import re
from typing import Any, Dict, Iterable

REDACTED = "[REDACTED]"

_SENSITIVE_KEY_PARTS = ("token", "secret", "password", "key", "authorization", "credential", "auth")

_JWT_RE = re.compile(r"eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+")
_BEARER_RE = re.compile(r"Bearer\s+[a-zA-Z0-9._~+/=-]+", re.IGNORECASE)
_LONG_TOKEN_RE = re.compile(r"[a-zA-Z0-9]{32,}")
_DSN_PASSWORD_RE = re.compile(r"(://[^:/@\s]+:)([^@\s]+)(@)")
_KEY_VALUE_RE = re.compile(r"\b(password|passwd|secret|token|api[_-]?key)(\s*[=:]\s*)([^\s,;&]+)", re.IGNORECASE)


def _mask_long_token(m: re.Match[str]) -> str:
    s = m.group(0)
    # Hex blobs and mixed-case strings look like credentials; plain words do not.
    if re.fullmatch(r"[a-fA-F0-9]+", s) or re.search(r"[A-Z].*[a-z]|[a-z].*[A-Z]", s):
        return "[TOKEN_REDACTED]"
    return s


def redact(message: Any, secrets: Iterable[str | None] = ()) -> str:
    """Mask credential-looking substrings in a log line or error message.

    Explicit `secrets` (e.g. CRON_SECRET) are replaced verbatim first.
    """
    text = str(message)
    for s in secrets:
        if s and len(s) >= 4:
            text = text.replace(s, REDACTED)
    text = _JWT_RE.sub("[JWT_REDACTED]", text)
    text = _BEARER_RE.sub("Bearer " + REDACTED, text)
    text = _DSN_PASSWORD_RE.sub(r"\1" + REDACTED + r"\3", text)
    text = _KEY_VALUE_RE.sub(r"\1\2" + REDACTED, text)
    return _LONG_TOKEN_RE.sub(_mask_long_token, text)


def redact_mapping(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of `ctx` with sensitive keys masked (recursing into nested dicts)."""
    out: Dict[str, Any] = {}
    for k, v in ctx.items():
        lk = str(k).lower()
        if any(part in lk for part in _SENSITIVE_KEY_PARTS):
            out[k] = REDACTED
        elif isinstance(v, dict):
            out[k] = redact_mapping(v)
        else:
            out[k] = v
    return out
