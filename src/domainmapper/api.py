"""HTTP API over the lifecycle manager.

Run with:
    uvicorn --factory domainmapper.api:app_from_env
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from domainmapper import __version__
from domainmapper.bootstrap import Components, build_components
from domainmapper.core.config import load_settings
from domainmapper.core.exceptions import DomainMapperError
from domainmapper.domains.models import MappingStatus, TransferStatus
from domainmapper.observability.metrics import generate_metrics, get_content_type

logger = structlog.get_logger()


class AddDomainRequest(BaseModel):
    owner_id: str
    domain: str


class ApproveRequest(BaseModel):
    upstream_url: str | None = None


class RejectRequest(BaseModel):
    reason: str


class TransferBody(BaseModel):
    new_owner_id: str
    reason: str = ""
    actor_id: str | None = None


class CertificateSetupRequest(BaseModel):
    provider: str | None = None


class TransferRequestBody(BaseModel):
    mapping_id: str
    requester_id: str
    reason: str = ""


class ActorBody(BaseModel):
    actor_id: str | None = None


class RejectTransferBody(BaseModel):
    rejection_reason: str = ""
    actor_id: str | None = None


def create_app(components: Components) -> FastAPI:
    """Create the FastAPI app around an already built component graph."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await components.close()

    app = FastAPI(title="domainmapper", version=__version__, lifespan=lifespan)
    app.state.components = components
    manager = components.manager

    @app.exception_handler(DomainMapperError)
    async def domain_error_handler(request: Request, exc: DomainMapperError) -> JSONResponse:
        logger.info(
            "Request failed",
            path=request.url.path,
            code=exc.code,
            error=exc.message,
        )
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    @app.post("/domains", status_code=201)
    async def add_domain(body: AddDomainRequest):
        return (await manager.add_domain(body.owner_id, body.domain)).to_dict()

    @app.get("/domains")
    async def list_domains(
        owner_id: str | None = None,
        status: MappingStatus | None = None,
        page: int = 1,
        per_page: int = 20,
    ):
        mappings = await manager.list_mappings(owner_id, status, page, per_page)
        return {
            "items": [m.to_dict() for m in mappings],
            "page": page,
            "per_page": per_page,
        }

    @app.get("/domains/{mapping_id}")
    async def get_domain(mapping_id: str):
        return (await manager.get_mapping(mapping_id)).to_dict()

    @app.delete("/domains/{mapping_id}", status_code=204)
    async def delete_domain(mapping_id: str):
        await manager.delete_domain(mapping_id)
        return Response(status_code=204)

    @app.get("/domains/{mapping_id}/instructions")
    async def get_instructions(mapping_id: str):
        return (await manager.instructions_for(mapping_id)).to_dict()

    @app.post("/domains/{mapping_id}/verify")
    async def verify_domain(mapping_id: str):
        return (await manager.verify_domain(mapping_id)).to_dict()

    @app.post("/domains/{mapping_id}/approve")
    async def approve_domain(mapping_id: str, body: ApproveRequest | None = None):
        upstream = body.upstream_url if body else None
        return (await manager.approve_domain(mapping_id, upstream)).to_dict()

    @app.post("/domains/{mapping_id}/reject")
    async def reject_domain(mapping_id: str, body: RejectRequest):
        return (await manager.reject_domain(mapping_id, body.reason)).to_dict()

    @app.post("/domains/{mapping_id}/live")
    async def mark_live(mapping_id: str):
        return (await manager.mark_live(mapping_id)).to_dict()

    @app.post("/domains/{mapping_id}/transfer")
    async def transfer_domain(mapping_id: str, body: TransferBody):
        mapping = await manager.transfer_domain(
            mapping_id, body.new_owner_id, body.reason, body.actor_id
        )
        return mapping.to_dict()

    @app.get("/domains/{mapping_id}/transfers")
    async def transfer_log(mapping_id: str):
        await manager.get_mapping(mapping_id)
        return {"items": [e.to_dict() for e in await manager.list_transfer_logs(mapping_id)]}

    @app.get("/domains/{mapping_id}/propagation")
    async def propagation(mapping_id: str):
        return (await manager.propagation(mapping_id)).to_dict()

    @app.get("/domains/{mapping_id}/certificate")
    async def certificate_status(mapping_id: str):
        return (await manager.certificate_status(mapping_id)).to_dict()

    @app.post("/domains/{mapping_id}/certificate")
    async def setup_certificate(mapping_id: str, body: CertificateSetupRequest | None = None):
        if body is None or body.provider is None:
            result = await manager.auto_provision(mapping_id)
        else:
            result = await manager.setup_certificate(mapping_id, body.provider)
        return result.to_dict()

    @app.get("/domains/{mapping_id}/proxy-config")
    async def proxy_config(mapping_id: str, upstream_url: str | None = None):
        return (await manager.generate_proxy_config(mapping_id, upstream_url)).to_dict()

    @app.post("/transfer-requests", status_code=201)
    async def request_transfer(body: TransferRequestBody):
        request = await manager.request_transfer(body.mapping_id, body.requester_id, body.reason)
        return request.to_dict()

    @app.get("/transfer-requests")
    async def list_transfer_requests(
        status: TransferStatus | None = None,
        owner_id: str | None = None,
    ):
        requests = await manager.list_transfer_requests(status=status, owner_id=owner_id)
        return {"items": [r.to_dict() for r in requests]}

    @app.post("/transfer-requests/{request_id}/approve")
    async def approve_transfer_request(request_id: str, body: ActorBody | None = None):
        mapping = await manager.approve_transfer_request(
            request_id, body.actor_id if body else None
        )
        return mapping.to_dict()

    @app.post("/transfer-requests/{request_id}/reject")
    async def reject_transfer_request(request_id: str, body: RejectTransferBody | None = None):
        body = body or RejectTransferBody()
        request = await manager.reject_transfer_request(
            request_id, body.rejection_reason, body.actor_id
        )
        return request.to_dict()

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_metrics(), media_type=get_content_type())

    return app


def app_from_env() -> FastAPI:
    """App factory reading settings from the environment and DOMAINMAPPER_CONFIG."""
    settings = load_settings(os.environ.get("DOMAINMAPPER_CONFIG") or None)
    return create_app(build_components(settings))
