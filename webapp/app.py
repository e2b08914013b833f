"""FastAPI web application for tenant document ingestion and retrieval.

Launch:
    python -m uvicorn webapp.app:app --port 3000

Or via pipeline:
    python pipeline.py serve --port 3000

Every endpoint acts on exactly one tenant, taken from the ``x-client-id``
header or the request body.
"""

import logging
import threading
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Request,
    UploadFile,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from schemas.document import DocumentResult, IngestionRequest, IngestionType
from schemas.errors import ConfigurationError, ProviderError, UnknownTenant, ValidationError
from schemas.query import Query
from schemas.settings import TenantConfig
from vectorstore.ingest import extract_text
from webapp.services import Services, build_services

logger = logging.getLogger(__name__)

_init_lock = threading.Lock()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class IngestBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_id: Optional[str] = Field(None, alias="clientId")
    ingestion_type: str = Field(IngestionType.GENERAL.value, alias="ingestionType")
    source: str
    document_content: str = Field(alias="documentContent")
    scope_id: Optional[str] = Field(None, alias="scopeId")
    scope_url: Optional[str] = Field(None, alias="scopeUrl")


class QueryBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(min_length=1)
    client_id: Optional[str] = Field(None, alias="clientId")
    scope_id: Optional[str] = Field(None, alias="scopeId")
    top_k: Optional[int] = Field(None, alias="topK", ge=1, le=50)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_services(request: Request) -> Services:
    """Components are built on first use so importing the app needs no credentials."""
    services = request.app.state.services
    if services is None:
        with _init_lock:
            if request.app.state.services is None:
                request.app.state.services = build_services()
            services = request.app.state.services
    return services


def resolve_client_id(header_value: Optional[str], body_value: Optional[str]) -> str:
    if header_value and body_value and header_value != body_value:
        raise HTTPException(status_code=400, detail="x-client-id header and body clientId disagree")
    client_id = header_value or body_value
    if not client_id:
        raise HTTPException(status_code=400, detail="client id required (x-client-id header or clientId)")
    return client_id


def _result_response(result: DocumentResult) -> JSONResponse:
    return JSONResponse(
        status_code=200 if result.ok else 400,
        content=result.model_dump(mode="json"),
    )


def _prepare_upload(
    services: Services, request: IngestionRequest, data: bytes,
) -> tuple[IngestionRequest, TenantConfig]:
    """Extract the upload's text and validate the request against the tenant's config."""
    tenant = services.tenants.get(request.client_id)
    text = extract_text(data, request.source)
    request = request.model_copy(update={"document_content": text})
    services.pipeline.load_document(request, tenant.pipeline)
    return request, tenant


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter(prefix="/api")


@router.post("/ingest/file", status_code=202)
async def api_ingest_file(
    background: BackgroundTasks,
    file: UploadFile = File(...),
    ingestion_type: str = Form(IngestionType.GENERAL.value, alias="ingestionType"),
    scope_id: Optional[str] = Form(None, alias="scopeId"),
    scope_url: Optional[str] = Form(None, alias="scopeUrl"),
    client_id: Optional[str] = Form(None, alias="clientId"),
    x_client_id: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """Accept an upload and ingest it in the background.

    Text extraction and request checks run in the thread pool before the 202;
    chunking, embedding and the upsert run after the response.
    """
    tenant_id = resolve_client_id(x_client_id, client_id)
    if not file.filename:
        raise HTTPException(status_code=400, detail="No filename provided")

    data = await file.read()
    request = IngestionRequest(
        client_id=tenant_id,
        ingestion_type=ingestion_type,
        source=file.filename,
        scope_id=scope_id,
        scope_url=scope_url,
    )
    request, tenant = await run_in_threadpool(_prepare_upload, services, request, data)

    background.add_task(services.pipeline.ingest_document, request, tenant.pipeline)
    logger.info(
        "[%s] Accepted upload %s (%d chars)", tenant_id, file.filename, len(request.document_content),
    )
    return {"status": "accepted", "clientId": tenant_id, "source": file.filename}


@router.post("/ingest")
def api_ingest(
    body: IngestBody,
    x_client_id: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """Ingest inline document content synchronously."""
    tenant_id = resolve_client_id(x_client_id, body.client_id)
    tenant = services.tenants.get(tenant_id)
    request = IngestionRequest(
        client_id=tenant_id,
        ingestion_type=body.ingestion_type,
        source=body.source,
        document_content=body.document_content,
        scope_id=body.scope_id,
        scope_url=body.scope_url,
    )
    return _result_response(services.pipeline.ingest_document(request, tenant.pipeline))


@router.post("/query")
def api_query(
    body: QueryBody,
    x_client_id: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """Gate the query and return ranked matches for the tenant."""
    tenant_id = resolve_client_id(x_client_id, body.client_id)
    query = Query(text=body.query, client_id=tenant_id, scope_id=body.scope_id)
    response = services.engine.answer(query, top_k=body.top_k)
    return response.model_dump(by_alias=True, exclude_none=True)


@router.get("/stats")
def api_stats(
    x_client_id: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """Vector counts for one tenant, or for the whole collection without a tenant."""
    if x_client_id:
        services.tenants.get(x_client_id)
        return {"clientId": x_client_id, "count": services.store.count(x_client_id)}
    return services.store.get_stats()


@router.delete("/vectors")
def api_delete_vectors(
    x_client_id: Optional[str] = Header(None),
    client_id: Optional[str] = None,
    services: Services = Depends(get_services),
):
    """Delete every vector owned by the tenant."""
    tenant_id = resolve_client_id(x_client_id, client_id)
    services.tenants.get(tenant_id)
    deleted = services.store.delete_tenant(tenant_id)
    return {"clientId": tenant_id, "deleted": deleted}


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Tenant Knowledge Retrieval",
        description="Multi-tenant document ingestion and relevance-gated retrieval",
        version="1.0.0",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(UnknownTenant)
    async def _unknown_tenant(request: Request, exc: UnknownTenant):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def _invalid(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def _misconfigured(request: Request, exc: ConfigurationError):
        logger.error("Configuration error: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Service misconfigured"})

    @app.exception_handler(ProviderError)
    async def _provider_down(request: Request, exc: ProviderError):
        logger.warning("Provider failure: %s", exc)
        return JSONResponse(status_code=503, content={"detail": "Upstream service unavailable"})

    @app.exception_handler(ValueError)
    async def _bad_value(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    app.include_router(router)
    return app


app = create_app()
