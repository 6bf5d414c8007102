"""
Contact reconciliation: match-or-create a CRM contact, then attach a new lead.

  1) lookup   GET   api/v4/contacts?query=<email>&query=<phone>   (first match wins)
  2) fields   GET   api/v4/contacts/custom_fields                 (PHONE / EMAIL ids)
  3) upsert   PATCH api/v4/contacts  [{id, ...}]   if matched
              POST  api/v4/contacts  [{...}]       otherwise
  4) lead     POST  api/v4/leads     [{name: "<id> lead", _embedded: {contacts: [{id}]}}]

Steps are strictly ordered per call. Nothing here is atomic across concurrent
calls for the same identity; two racing requests may both create a contact.
A new lead is created every time, even if the contact already has leads.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from crm_gateway.crm_client import CrmClient
from crm_gateway.errors import CrmRequestError
from crm_gateway.logging_setup import get_logger
from crm_gateway.models import ContactIdentity, CustomFieldDescriptor, ReconciliationResult
from crm_gateway.observability import get_tracer
from crm_gateway.utils import maybe_redact_pii

log = get_logger()

CONTACTS_PATH = "api/v4/contacts"
CUSTOM_FIELDS_PATH = "api/v4/contacts/custom_fields"
LEADS_PATH = "api/v4/leads"

# Order matters: values are written PHONE first, then EMAIL.
FIELD_CODES = ("PHONE", "EMAIL")


def _embedded(data: Any, key: str) -> List[Dict[str, Any]]:
    if not isinstance(data, dict):
        return []
    items = (data.get("_embedded") or {}).get(key) or []
    return items if isinstance(items, list) else []


def _first_embedded(data: Any, key: str, action: str) -> Dict[str, Any]:
    items = _embedded(data, key)
    if not items:
        raise CrmRequestError(f"CRM {action} response has no '{key}'", payload=data)
    return items[0]


def build_custom_values(
    fields: Dict[str, CustomFieldDescriptor], identity: ContactIdentity
) -> List[Dict[str, Any]]:
    """Custom field values for the fields the CRM actually has; others are skipped."""
    by_code = {"PHONE": identity.phone, "EMAIL": identity.email}
    values: List[Dict[str, Any]] = []
    for code in FIELD_CODES:
        descriptor = fields.get(code)
        if descriptor is None or not descriptor.id:
            continue
        values.append({"field_id": descriptor.id, "values": [{"value": by_code[code]}]})
    return values


class ReconciliationService:
    def __init__(self, client: CrmClient):
        self._client = client

    async def find_contact(self, identity: ContactIdentity) -> Optional[Dict[str, Any]]:
        """Best-effort lookup by every non-name field; first hit or None."""
        params = [("query", term) for term in identity.search_terms()]
        data = await self._client.get(CONTACTS_PATH, params=params)
        contacts = _embedded(data, "contacts")
        return contacts[0] if contacts else None

    async def contact_fields(self) -> Dict[str, CustomFieldDescriptor]:
        """PHONE/EMAIL descriptors, fetched fresh every time (no cache)."""
        data = await self._client.get(CUSTOM_FIELDS_PATH)
        found: Dict[str, CustomFieldDescriptor] = {}
        for raw in _embedded(data, "custom_fields"):
            try:
                descriptor = CustomFieldDescriptor.model_validate(raw)
            except ValueError as e:
                raise CrmRequestError(f"Malformed custom field descriptor: {e}", payload=data) from e
            if descriptor.code in FIELD_CODES and descriptor.code not in found:
                found[descriptor.code] = descriptor
        return found

    async def upsert_contact(
        self, identity: ContactIdentity, contact_id: Optional[int] = None
    ) -> Dict[str, Any]:
        fields = await self.contact_fields()
        body: Dict[str, Any] = {
            "name": identity.name,
            "custom_fields_values": build_custom_values(fields, identity),
        }
        if contact_id:
            body["id"] = contact_id
            data = await self._client.patch(CONTACTS_PATH, json=[body])
        else:
            data = await self._client.post(CONTACTS_PATH, json=[body])
        return _first_embedded(data, "contacts", "update" if contact_id else "create")

    async def add_lead(self, contact: Dict[str, Any]) -> Dict[str, Any]:
        contact_id = contact.get("id")
        if not contact_id:
            raise CrmRequestError("Resolved contact has no id", payload=contact)
        body = [
            {
                "name": f"{contact_id} lead",
                "_embedded": {"contacts": [{"id": contact_id}]},
            }
        ]
        data = await self._client.post(LEADS_PATH, json=body)
        return _first_embedded(data, "leads", "lead create")

    async def reconcile(self, identity: ContactIdentity) -> ReconciliationResult:
        with get_tracer().start_as_current_span("crm.reconcile"):
            existing = await self.find_contact(identity)
            existing_id = existing.get("id") if existing else None
            contact = await self.upsert_contact(identity, existing_id)
            lead = await self.add_lead(contact)

        log.info(
            "contact_reconciled",
            action="updated" if existing_id else "created",
            contact_id=contact.get("id"),
            lead_id=lead.get("id"),
            email=maybe_redact_pii(identity.email),
            phone=maybe_redact_pii(identity.phone),
        )
        return ReconciliationResult(contact=contact, lead=lead)
