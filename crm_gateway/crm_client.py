"""
Thin async client for the CRM REST API (amoCRM-style, api/v4).

- Bound to the CRM base URL (AMO_URL).
- Reads the live bearer credential from the CredentialStore on EVERY request
  (httpx.Auth hook), so a refresh is picked up without rebuilding the client.
- Any transport error or 4xx/5xx becomes CrmRequestError.
- Returns the decoded JSON body as-is; callers unwrap `_embedded`.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from crm_gateway.credentials import CredentialStore
from crm_gateway.errors import CrmRequestError
from crm_gateway.logging_setup import get_logger
from crm_gateway.observability import CRM_REQUESTS

log = get_logger()

QueryParams = Union[Dict[str, Any], Sequence[Tuple[str, Any]], None]
JsonBody = Union[Dict[str, Any], List[Any], None]


class CredentialAuth(httpx.Auth):
    """Injects `Authorization: <token_type> <access_token>` from the store."""

    def __init__(self, store: CredentialStore):
        self._store = store

    async def async_auth_flow(self, request: httpx.Request):
        request.headers["Authorization"] = await self._store.authorization()
        yield request


class CrmClient:
    def __init__(
        self,
        base_url: str,
        store: CredentialStore,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        # No explicit timeout: the transport default applies to every call.
        self._http = httpx.AsyncClient(
            base_url=base_url,
            auth=CredentialAuth(store),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> "CrmClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def get(self, path: str, params: QueryParams = None) -> Any:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, json: JsonBody = None, *, authenticated: bool = True) -> Any:
        return await self._request("POST", path, json=json, authenticated=authenticated)

    async def patch(self, path: str, json: JsonBody = None) -> Any:
        return await self._request("PATCH", path, json=json)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: QueryParams = None,
        json: JsonBody = None,
        authenticated: bool = True,
    ) -> Any:
        extra: Dict[str, Any] = {}
        if not authenticated:
            extra["auth"] = None  # token endpoint: no bearer header

        t0 = time.perf_counter()
        try:
            r = await self._http.request(method, path, params=params, json=json, **extra)
        except httpx.HTTPError as e:
            CRM_REQUESTS.labels(method=method, status="transport_error").inc()
            log.warning("crm_request_failed", method=method, path=path, err=str(e))
            raise CrmRequestError(str(e) or type(e).__name__) from e

        latency_ms = int((time.perf_counter() - t0) * 1000)
        CRM_REQUESTS.labels(method=method, status=str(r.status_code)).inc()
        log.info("crm_request", method=method, path=path, status=r.status_code, latency_ms=latency_ms)

        if r.status_code >= 400:
            payload = _decode_or_none(r)
            raise CrmRequestError.from_payload(
                payload,
                status_code=r.status_code,
                fallback=f"CRM {method} {path} failed: {r.status_code} {r.text[:300]}".strip(),
            )

        # 204 No Content (e.g. a search with no match) decodes to {}
        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError as e:
            raise CrmRequestError(
                f"CRM {method} {path} returned a non-JSON body",
                status_code=r.status_code,
                payload=r.text[:300],
            ) from e


def _decode_or_none(r: httpx.Response) -> Any:
    if not r.content:
        return None
    try:
        return r.json()
    except ValueError:
        return None
