"""Secret redaction for console logs and the per-run log file."""

from __future__ import annotations

import logging
import re
from typing import Sequence

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"


class Redactor:
    """Compiled set of secret patterns; invalid patterns are dropped."""

    def __init__(self, patterns: Sequence[str]) -> None:
        self._compiled: list[re.Pattern[str]] = []
        for pattern in patterns:
            try:
                self._compiled.append(re.compile(pattern))
            except re.error as e:
                logger.warning("Ignoring invalid redaction pattern %r: %s", pattern, e)

    def __bool__(self) -> bool:
        return bool(self._compiled)

    def redact(self, text: str) -> str:
        for regex in self._compiled:
            text = regex.sub(REDACTED, text)
        return text


def redact_string(text: str, patterns: Sequence[str]) -> str:
    """Replace all matches of the given regex patterns with [REDACTED]."""
    return Redactor(patterns).redact(text)


class RedactingFilter(logging.Filter):
    """Logging filter that redacts sensitive patterns from log records."""

    def __init__(self, patterns: Sequence[str] | Redactor, name: str = "") -> None:
        super().__init__(name)
        self._redactor = patterns if isinstance(patterns, Redactor) else Redactor(patterns)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._redactor:
            record.msg = self._redactor.redact(str(record.msg))
            if isinstance(record.args, tuple):
                record.args = tuple(
                    self._redactor.redact(a) if isinstance(a, str) else a
                    for a in record.args
                )
        return True
