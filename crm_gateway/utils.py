"""
Small utilities:
- PII masking for log fields (emails, phones)
- Positive integer parsing for path ids
"""

import re
from typing import Optional

from crm_gateway.config import settings

# Very simple PII masking (emails, phones). Applied to log output only.
EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_RE = re.compile(r"\+?\d[\d\-\s()]{1,}\d")

_POSITIVE_INT_RE = re.compile(r"[0-9]+")


def maybe_redact_pii(text: Optional[str]) -> Optional[str]:
    if not text or not settings.PII_REDACTION_ENABLED:
        return text
    text = EMAIL_RE.sub("[REDACTED_EMAIL]", text)
    text = PHONE_RE.sub("[REDACTED_PHONE]", text)
    return text


def parse_positive_int(raw: Optional[str]) -> Optional[int]:
    """Return the id as int, or None if it is not a plain positive integer."""
    if raw is None or not _POSITIVE_INT_RE.fullmatch(raw.strip()):
        return None
    value = int(raw)
    return value if value > 0 else None
