# api/main.py
# FastAPI gateway in front of the CRM.
# - GET /                  reconcile a contact (create or update) and attach a new lead
# - GET /contacts[/{id}]   pass-through readers
# - GET /leads[/{id}]      pass-through readers
# - OAuth2 credential is obtained once at startup and refreshed in the background
# - Domain errors map to readable JSON: 400 validation, 502 CRM failure, 503 auth lost

import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from crm_gateway.config import settings
from crm_gateway.credentials import CredentialManager, CredentialStore
from crm_gateway.crm_client import CrmClient
from crm_gateway.errors import AuthExchangeError, CrmRequestError, RefreshError, ValidationError
from crm_gateway.logging_setup import configure_logging, get_logger
from crm_gateway.models import ContactIdentity
from crm_gateway.observability import (
    REQUEST_COUNT,
    REQUEST_LATENCY,
    configure_tracer,
    metrics_app,
)
from crm_gateway.reconcile import ReconciliationService
from crm_gateway.records import RecordReader
from crm_gateway.utils import parse_positive_int

configure_logging()
log = get_logger()


def _build_lifespan(auth_code: Optional[str]):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_tracer()
        store = CredentialStore()
        client = CrmClient(settings.AMO_URL, store)
        manager = CredentialManager(
            client,
            store,
            client_id=settings.CLIENT_ID,
            client_secret=settings.CLIENT_SECRET,
            redirect_uri=settings.REDIRECT_URL,
            margin_s=settings.TOKEN_REFRESH_MARGIN_S,
        )
        try:
            # No credential, no service: AuthExchangeError aborts startup.
            await manager.authenticate(auth_code or settings.AUTH_CODE or "")
            manager.start()
            app.state.credentials = manager
            app.state.reconciler = ReconciliationService(client)
            app.state.records = RecordReader(client)
            log.info("app_started", port=settings.APP_PORT)
            yield
        finally:
            await manager.stop()
            await client.aclose()
            log.info("app_stopped")

    return lifespan


def get_reconciler(request: Request) -> ReconciliationService:
    return request.app.state.reconciler


def get_records(request: Request) -> RecordReader:
    return request.app.state.records


def _error(http_status: int, description: str, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {"description": description}
    body.update(extra)
    return JSONResponse(status_code=http_status, content=body)


def create_app(auth_code: Optional[str] = None) -> FastAPI:
    app = FastAPI(title=settings.SERVICE_NAME, lifespan=_build_lifespan(auth_code))
    app.mount("/metrics", metrics_app)

    @app.middleware("http")
    async def record_metrics(request: Request, call_next):
        t0 = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        REQUEST_COUNT.labels(endpoint=endpoint, method=request.method, status=str(response.status_code)).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint, method=request.method).observe(time.perf_counter() - t0)
        return response

    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(CrmRequestError)
    async def on_crm_error(request: Request, exc: CrmRequestError):
        log.warning("crm_error", path=request.url.path, status_code=exc.status_code, err=exc.message)
        return _error(502, exc.message, status_code=exc.status_code, error=exc.payload)

    @app.exception_handler(RefreshError)
    @app.exception_handler(AuthExchangeError)
    async def on_auth_error(request: Request, exc: Exception):
        log.error("crm_auth_unavailable", path=request.url.path, err=str(exc))
        return _error(503, str(exc))

    @app.get("/healthz")
    def health() -> str:
        return "ok"

    @app.get("/")
    async def reconcile_contact(
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        reconciler: ReconciliationService = Depends(get_reconciler),
    ) -> Dict[str, Any]:
        if not name or not email or not phone:
            raise ValidationError("Missing parameters")
        result = await reconciler.reconcile(ContactIdentity(name=name, email=email, phone=phone))
        return result.model_dump()

    @app.get("/contacts")
    async def list_contacts(records: RecordReader = Depends(get_records)) -> Any:
        return await records.list_contacts()

    @app.get("/contacts/{contact_id}")
    async def get_contact(contact_id: str, records: RecordReader = Depends(get_records)) -> Any:
        parsed = parse_positive_int(contact_id)
        if parsed is None:
            raise ValidationError("Wrong ID of contact")
        return await records.get_contact(parsed)

    @app.get("/leads")
    async def list_leads(records: RecordReader = Depends(get_records)) -> Any:
        return await records.list_leads()

    @app.get("/leads/{lead_id}")
    async def get_lead(lead_id: str, records: RecordReader = Depends(get_records)) -> Any:
        parsed = parse_positive_int(lead_id)
        if parsed is None:
            raise ValidationError("Wrong ID of lead")
        return await records.get_lead(parsed)

    return app


app = create_app()
