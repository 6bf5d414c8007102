"""
Pass-through readers for contacts and leads.
No logic: the CRM payload goes back to the caller unchanged.
"""

from typing import Any

from crm_gateway.crm_client import CrmClient


class RecordReader:
    def __init__(self, client: CrmClient):
        self._client = client

    async def list_contacts(self) -> Any:
        return await self._client.get("api/v4/contacts", params={"with": "leads"})

    async def get_contact(self, contact_id: int) -> Any:
        return await self._client.get(f"api/v4/contacts/{contact_id}", params={"with": "leads"})

    async def list_leads(self) -> Any:
        return await self._client.get("api/v4/leads", params={"with": "contacts"})

    async def get_lead(self, lead_id: int) -> Any:
        return await self._client.get(f"api/v4/leads/{lead_id}", params={"with": "contacts"})
