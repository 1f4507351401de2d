"""
Request tracing for Bot Builder.
A RequestTrace is created by whoever starts a top-level operation (a relay
request, a deployment) and passed explicitly to every step. It owns a
bounded buffer of diagnostic entries that is returned to the caller in the
response envelope, and mirrors each entry to the module logger.
"""
import json
import logging
import re
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional

from config import TRACE_MAX_ENTRIES, secret_values

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = {"authorization", "password", "apikey", "token", "bottoken", "secret"}
SENSITIVE_SUFFIXES = ("_key", "_token", "password", "secret")
_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+", re.IGNORECASE)
_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


def is_sensitive_key(key: Any) -> bool:
    name = str(key).lower().replace("-", "_")
    return name in SENSITIVE_KEYS or name.endswith(SENSITIVE_SUFFIXES)


def redact_text(text: str, secrets: Optional[Iterable[str]] = None) -> str:
    """Replace known secret values and bearer tokens inside a string."""
    for secret in secrets if secrets is not None else secret_values():
        if secret:
            text = text.replace(secret, REDACTED)
    return _BEARER_RE.sub(rf"\g<1>{REDACTED}", text)


def redact(data: Any, secrets: Optional[Iterable[str]] = None) -> Any:
    """
    Return a copy of data with credentials removed.

    Dict values under sensitive keys are replaced wholesale; strings anywhere
    in the structure have configured secret values masked.
    """
    secrets = list(secrets if secrets is not None else secret_values())
    if isinstance(data, dict):
        cleaned = {}
        for key, value in data.items():
            if is_sensitive_key(key):
                cleaned[key] = REDACTED
            else:
                cleaned[key] = redact(value, secrets)
        return cleaned
    if isinstance(data, (list, tuple)):
        return [redact(item, secrets) for item in data]
    if isinstance(data, str):
        return redact_text(data, secrets)
    return data


def excerpt(text: str, limit: int = 200) -> str:
    """Short, redacted excerpt of a payload for diagnostics."""
    text = redact_text(text or "")
    return text if len(text) <= limit else f"{text[:limit]}..."


class RequestTrace:
    """Correlation id plus a bounded, ordered diagnostic log for one operation."""

    def __init__(self, request_id: Optional[str] = None, source: str = "bot-builder",
                 max_entries: int = TRACE_MAX_ENTRIES, secrets: Optional[Iterable[str]] = None):
        self.request_id = request_id or uuid.uuid4().hex[:16]
        self.source = source
        self._secrets = list(secrets) if secrets is not None else None
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=max_entries)
        self._started = time.monotonic()

    def log(self, stage: str, data: Any = None, level: str = "info") -> Dict[str, Any]:
        """Record a diagnostic entry and mirror it to the standard logger."""
        clean = redact(data, self._secrets) if data is not None else None
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "requestId": self.request_id,
            "source": self.source,
            "stage": stage,
            "level": level,
            "duration": int((time.monotonic() - self._started) * 1000),
            "data": clean,
        }
        self._entries.append(entry)
        rendered = clean if isinstance(clean, str) or clean is None else json.dumps(clean, default=str)
        logger.log(_LEVELS.get(level, logging.INFO),
                   f"[{self.source}] [{self.request_id}] {stage}: {rendered}")
        return entry

    def child(self, source: str) -> "RequestTrace":
        """A view on the same buffer tagged with a different source."""
        view = RequestTrace.__new__(RequestTrace)
        view.request_id = self.request_id
        view.source = source
        view._secrets = self._secrets
        view._entries = self._entries
        view._started = self._started
        return view

    @property
    def entries(self) -> List[Dict[str, Any]]:
        return list(self._entries)
