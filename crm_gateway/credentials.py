"""
OAuth2 credential lifecycle for the CRM.

CredentialStore
  Single-writer / multi-reader cell holding the live credential. The writer
  swaps one immutable snapshot per update, so a reader sees either the old
  (token_type, access_token) pair or the new one, never a mix.

CredentialManager
  UNAUTHENTICATED --authenticate(code)--> AUTHENTICATED --refresh()--> AUTHENTICATED
                                                        \\--refresh fails--> FAILED
  A single recurring task sleeps until `expires_in - margin` and refreshes.
  A reader that still finds the credential expired (the task is late) runs
  the refresh itself under the same lock instead of sending a dead token.
  A failed refresh is terminal: no retry, the operator must restart the
  service with a fresh authorization code.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from crm_gateway.errors import AuthExchangeError, CrmRequestError, RefreshError
from crm_gateway.logging_setup import get_logger
from crm_gateway.models import Credential
from crm_gateway.observability import TOKEN_EXCHANGES

if TYPE_CHECKING:
    from crm_gateway.crm_client import CrmClient

log = get_logger()

TOKEN_PATH = "oauth2/access_token"


@dataclass(frozen=True)
class _Snapshot:
    credential: Credential
    authorization: str
    expires_at: float  # clock() value after which the access token is dead


class CredentialStore:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._snapshot: Optional[_Snapshot] = None
        self._failure: Optional[RefreshError] = None
        # set whenever no refresh is in flight
        self._settled = asyncio.Event()
        self._settled.set()
        self._refresher: Optional[Callable[[], Awaitable[None]]] = None

    def attach_refresher(self, refresher: Callable[[], Awaitable[None]]) -> None:
        """Register the writer's on-demand refresh for readers that find the credential expired."""
        self._refresher = refresher

    @property
    def credential(self) -> Optional[Credential]:
        snap = self._snapshot
        return snap.credential if snap else None

    @property
    def failure(self) -> Optional[RefreshError]:
        return self._failure

    @property
    def refresh_in_flight(self) -> bool:
        return not self._settled.is_set()

    def expired(self) -> bool:
        snap = self._snapshot
        return snap is None or self._clock() >= snap.expires_at

    # ---- writer side (CredentialManager only) ----

    def replace(self, credential: Credential) -> None:
        self._snapshot = _Snapshot(
            credential=credential,
            authorization=credential.authorization,
            expires_at=self._clock() + credential.expires_in,
        )
        self._settled.set()

    def begin_refresh(self) -> None:
        self._settled.clear()

    def end_refresh(self) -> None:
        self._settled.set()

    def invalidate(self, error: RefreshError) -> None:
        self._failure = error
        self._snapshot = None
        self._settled.set()  # wake waiters so they see the failure

    # ---- reader side (CRM client, once per request) ----

    async def authorization(self) -> str:
        self._raise_if_failed()
        snap = self._snapshot
        if snap is None:
            raise AuthExchangeError("CRM credential is not initialized")
        if self._clock() >= snap.expires_at:
            if self._refresher is not None:
                log.info("credential_expired_refreshing")
                await self._refresher()
            elif self.refresh_in_flight:
                log.info("credential_expired_waiting_for_refresh")
                await self._settled.wait()
            self._raise_if_failed()
            snap = self._snapshot
            if snap is None:
                raise AuthExchangeError("CRM credential is not initialized")
        return snap.authorization

    def _raise_if_failed(self) -> None:
        failure = self._failure
        if failure is not None:
            raise RefreshError(f"CRM authentication lost: {failure}") from failure


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class CredentialManager:
    """Owns the credential: the only writer of the CredentialStore."""

    def __init__(
        self,
        client: "CrmClient",
        store: CredentialStore,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        margin_s: int = 10,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._store = store
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._margin_s = margin_s
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.state = AuthState.UNAUTHENTICATED
        self.next_refresh_in: Optional[float] = None
        store.attach_refresher(self.ensure_fresh)

    @property
    def store(self) -> CredentialStore:
        return self._store

    async def authenticate(self, code: str) -> Credential:
        """Exchange the one-time authorization code. Raises AuthExchangeError."""
        if self.state is not AuthState.UNAUTHENTICATED:
            raise AuthExchangeError("Authorization code already consumed; restart with a fresh code")
        if not code:
            raise AuthExchangeError("Missing authorization code")
        if not self._client_id or not self._client_secret:
            raise AuthExchangeError("OAuth client not configured: set CLIENT_ID and CLIENT_SECRET")

        async with self._lock:
            try:
                credential = await self._exchange("authorization_code", code=code)
            except CrmRequestError as e:
                log.error("token_exchange_failed", grant_type="authorization_code", err=e.message)
                raise AuthExchangeError(e.message) from e
            self._apply(credential)
        log.info("token_exchanged", grant_type="authorization_code", next_refresh_in=self.next_refresh_in)
        return credential

    async def refresh(self) -> Credential:
        """Exchange the latest refresh token. Raises RefreshError (terminal)."""
        if self.state is not AuthState.AUTHENTICATED:
            raise RefreshError(f"Cannot refresh in state '{self.state.value}'")

        async with self._lock:
            return await self._refresh_locked()

    async def ensure_fresh(self) -> None:
        """Refresh now if the live credential is expired; concurrent callers share one exchange."""
        async with self._lock:
            if self.state is AuthState.AUTHENTICATED and self._store.expired():
                await self._refresh_locked()

    async def _refresh_locked(self) -> Credential:
        current = self._store.credential
        if self.state is not AuthState.AUTHENTICATED or current is None:
            raise RefreshError("No stored credential to refresh")
        self._store.begin_refresh()
        try:
            credential = await self._exchange("refresh_token", refresh_token=current.refresh_token)
            self._apply(credential)
        except CrmRequestError as e:
            error = RefreshError(e.message)
            self.state = AuthState.FAILED
            self.next_refresh_in = None
            self._store.invalidate(error)
            log.critical(
                "token_refresh_failed",
                err=e.message,
                action="restart the service with a fresh authorization code",
            )
            raise error from e
        finally:
            self._store.end_refresh()
        log.info("token_exchanged", grant_type="refresh_token", next_refresh_in=self.next_refresh_in)
        return credential

    def start(self) -> asyncio.Task:
        """Spawn the recurring refresh task (once)."""
        if self.state is not AuthState.AUTHENTICATED:
            raise AuthExchangeError("authenticate() must succeed before the refresh task starts")
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._refresh_loop(), name="crm-token-refresh")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _refresh_loop(self) -> None:
        while True:
            delay = self.next_refresh_in if self.next_refresh_in is not None else 0
            await self._sleep(delay)
            try:
                await self.refresh()
            except RefreshError:
                # already logged as critical; authentication is gone for good
                return

    async def _exchange(self, grant_type: str, **grant) -> Credential:
        body = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "grant_type": grant_type,
            **grant,
            "redirect_uri": self._redirect_uri,
        }
        try:
            data = await self._client.post(TOKEN_PATH, json=body, authenticated=False)
        except CrmRequestError:
            TOKEN_EXCHANGES.labels(grant_type=grant_type, outcome="error").inc()
            raise
        try:
            credential = Credential.model_validate(data)
        except ValueError as e:
            TOKEN_EXCHANGES.labels(grant_type=grant_type, outcome="error").inc()
            raise CrmRequestError(f"Malformed token response: {e}", payload=data) from e
        TOKEN_EXCHANGES.labels(grant_type=grant_type, outcome="ok").inc()
        return credential

    def _apply(self, credential: Credential) -> None:
        self._store.replace(credential)
        self.state = AuthState.AUTHENTICATED
        self.next_refresh_in = max(0, credential.expires_in - self._margin_s)
