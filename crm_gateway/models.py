"""
Pydantic models for the data this gateway owns or inspects.

Contacts and leads are passed through as plain dicts (CRM payloads);
only the pieces we make decisions on get a model here.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class Credential(BaseModel):
    """OAuth2 token response from the CRM. Replaced wholesale, never merged."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int  # seconds, relative to issuance

    @property
    def authorization(self) -> str:
        return f"{self.token_type} {self.access_token}"


class CustomFieldDescriptor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    code: Optional[str] = None
    name: Optional[str] = None


class ContactIdentity(BaseModel):
    """Natural-person identity as it arrives on the gateway (untyped strings)."""
    name: str
    email: str
    phone: str

    def search_terms(self) -> List[str]:
        # every non-name field, in declaration order
        return [str(v) for v in self.model_dump(exclude={"name"}).values()]


class ReconciliationResult(BaseModel):
    contact: Dict[str, Any]
    lead: Dict[str, Any]
