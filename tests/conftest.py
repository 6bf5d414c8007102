"""Test fixtures for the CRM gateway.

Provides:
- FakeCrm: an in-memory CRM behind httpx.MockTransport that records requests
- A CredentialStore pre-loaded with a live credential
- A CrmClient wired to the fake CRM
"""

from __future__ import annotations

import json
from collections import defaultdict, deque
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
import pytest_asyncio

from crm_gateway.credentials import CredentialStore
from crm_gateway.crm_client import CrmClient
from crm_gateway.models import Credential

BASE_URL = "https://crm.example"


class FakeCrm:
    """Answers queued responses per (method, path); 404 for anything unexpected."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], deque] = defaultdict(deque)

    def add(self, method: str, path: str, *responses: httpx.Response) -> None:
        self._routes[(method, path)].extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"title": "Not Found", "detail": f"no route {request.url.path}"})
        # the last queued response keeps answering once the others are used up
        return queue.popleft() if len(queue) > 1 else queue[0]

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def json_body(request: httpx.Request) -> Any:
    return json.loads(request.content)


def token_response(access: str, refresh: str, expires_in: int = 86400) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "token_type": "Bearer",
            "expires_in": expires_in,
            "access_token": access,
            "refresh_token": refresh,
        },
    )


@pytest.fixture
def fake_crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture
def store() -> CredentialStore:
    s = CredentialStore()
    s.replace(
        Credential(access_token="live-access", refresh_token="live-refresh", token_type="Bearer", expires_in=86400)
    )
    return s


@pytest_asyncio.fixture
async def crm_client(fake_crm: FakeCrm, store: CredentialStore) -> AsyncGenerator[CrmClient, None]:
    client = CrmClient(BASE_URL, store, transport=fake_crm.transport())
    yield client
    await client.aclose()
