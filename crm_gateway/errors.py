"""
Error taxonomy for the gateway.

- AuthExchangeError: the authorization-code exchange failed (fatal at startup)
- RefreshError: a scheduled refresh failed; authentication is lost process-wide
- CrmRequestError: a single CRM call failed (transport or 4xx/5xx)
- ValidationError: inbound parameters are missing or malformed
"""

from __future__ import annotations

import json
from typing import Any, Optional


class GatewayError(RuntimeError):
    """Base class for every error this service raises on purpose."""
    pass


class CrmRequestError(GatewayError):
    """
    Raised for any failed CRM call.
    Carries the parsed CRM error payload (when the CRM sent one) so callers
    can branch on `status_code` / `payload` instead of string content.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    @property
    def hint(self) -> Optional[str]:
        if isinstance(self.payload, dict):
            hint = self.payload.get("hint")
            return str(hint) if hint else None
        return None

    @classmethod
    def from_payload(cls, payload: Any, *, status_code: Optional[int], fallback: str) -> "CrmRequestError":
        return cls(display_message(payload, fallback), status_code=status_code, payload=payload)


def display_message(payload: Any, fallback: str) -> str:
    """Pick the most useful human-readable text out of a CRM error payload."""
    if isinstance(payload, dict):
        for key in ("hint", "detail", "title"):
            value = payload.get(key)
            if value:
                return str(value)
    if payload:
        try:
            return json.dumps(payload, ensure_ascii=False)[:500]
        except (TypeError, ValueError):
            return str(payload)[:500]
    return fallback


class AuthExchangeError(GatewayError):
    """The one-time authorization code could not be exchanged for a credential."""
    pass


class RefreshError(GatewayError):
    """A refresh-token exchange failed. Needs a restart with a fresh code."""
    pass


class ValidationError(GatewayError):
    """Inbound request parameters are missing or malformed."""
    pass
