"""Operator HTTP surface for the fleet.

Thin wrapper over DeploymentService and FleetManager: fleet inspection,
tenant lifecycle operations, log tails and connection state.
"""
from __future__ import annotations

import base64
import binascii
import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from botfleet import db
from botfleet.config import settings
from botfleet.deployer import DeploymentService
from botfleet.errors import (
    CapacityExceeded,
    ConnectivityError,
    FleetError,
    HealthCheckTimeout,
    PipelinePhaseError,
    ProvisioningError,
    TenantNotFound,
)
from botfleet.fleet import FleetManager
from botfleet.logging_config import setup_logging
from botfleet.metrics import get_metrics
from botfleet.providers import HetznerProvisioner
from botfleet.schemas import (
    DeployRequest,
    DeploySecrets,
    EnvValueUpdate,
    HostOut,
    LogTailOut,
    OperationOut,
    TenantStateOut,
)
from botfleet.store import HostStore, TenantStore
from botfleet.utils.async_tasks import TaskRegistry
from botfleet.version import __version__

logger = logging.getLogger(__name__)

router = APIRouter()


def build_service() -> DeploymentService:
    """Wire the production service graph from settings."""
    db.init_db()
    fleet = FleetManager(HostStore(), HetznerProvisioner())
    return DeploymentService(fleet, TenantStore())


def _service(request: Request) -> DeploymentService:
    return request.app.state.service


def _operations(request: Request) -> TaskRegistry:
    return request.app.state.operations


@router.get("/healthz")
async def healthz() -> dict:
    return {"status": "ok", "version": __version__}


@router.get("/hosts", response_model=list[HostOut])
async def list_hosts(request: Request, purpose: str | None = None):
    return _service(request).fleet.list_hosts(purpose)


@router.get("/hosts/{host_id}", response_model=HostOut)
async def get_host(host_id: str, request: Request):
    host = _service(request).fleet.get_host(host_id)
    if host is None:
        raise HTTPException(status_code=404, detail=f"host {host_id} not found")
    return host


@router.get("/hosts/{host_id}/metrics")
async def host_metrics(host_id: str, request: Request) -> dict:
    fleet = _service(request).fleet
    host = fleet.get_host(host_id)
    if host is None:
        raise HTTPException(status_code=404, detail=f"host {host_id} not found")
    return fleet.host_metrics(host)


@router.post("/tenants/{tenant_id}/deploy", response_model=OperationOut, status_code=202)
async def deploy_tenant(tenant_id: str, body: DeployRequest, request: Request):
    service = _service(request)
    service.get_tenant(tenant_id)  # 404 before accepting the job

    credentials = None
    if body.integration_credentials:
        try:
            credentials = base64.b64decode(body.integration_credentials, validate=True)
        except binascii.Error:
            raise HTTPException(status_code=422, detail="integration_credentials must be base64")

    secrets = DeploySecrets(ai_api_key=body.ai_api_key, integration_credentials=credentials)
    task = _operations(request).spawn(service.deploy(tenant_id, secrets), name=f"deploy:{tenant_id}")
    return OperationOut(tenant_id=tenant_id, status="accepted", message=task.get_name())


@router.post("/tenants/{tenant_id}/stop", response_model=OperationOut)
async def stop_tenant(tenant_id: str, request: Request):
    tenant = await _service(request).stop(tenant_id)
    return OperationOut(tenant_id=tenant_id, status=tenant.deploy_status)


@router.post("/tenants/{tenant_id}/restart", response_model=OperationOut)
async def restart_tenant(tenant_id: str, request: Request):
    tenant = await _service(request).restart(tenant_id)
    return OperationOut(tenant_id=tenant_id, status=tenant.deploy_status)


@router.post("/tenants/{tenant_id}/reconfigure", response_model=OperationOut)
async def reconfigure_tenant(tenant_id: str, body: DeployRequest, request: Request):
    secrets = DeploySecrets(ai_api_key=body.ai_api_key)
    tenant = await _service(request).reconfigure(tenant_id, secrets)
    return OperationOut(tenant_id=tenant_id, status=tenant.deploy_status)


@router.put("/tenants/{tenant_id}/env", response_model=OperationOut)
async def update_env(tenant_id: str, body: EnvValueUpdate, request: Request):
    tenant = await _service(request).update_env_value(tenant_id, body.key, body.value)
    return OperationOut(tenant_id=tenant_id, status=tenant.deploy_status, message=f"{body.key} updated")


@router.delete("/tenants/{tenant_id}", status_code=204)
async def remove_tenant(tenant_id: str, request: Request) -> Response:
    await _service(request).remove(tenant_id)
    return Response(status_code=204)


@router.get("/tenants/{tenant_id}/logs", response_model=LogTailOut)
async def tenant_logs(
    tenant_id: str,
    request: Request,
    lines: int | None = Query(default=None, ge=1),
):
    lines = min(lines or settings.log_tail_default, settings.log_tail_max)
    text = await _service(request).tail(tenant_id, lines)
    return LogTailOut(tenant_id=tenant_id, lines=lines, text=text)


@router.get("/tenants/{tenant_id}/state", response_model=TenantStateOut)
async def tenant_state(tenant_id: str, request: Request):
    reading = await _service(request).classify_state(tenant_id)
    return TenantStateOut(
        tenant_id=tenant_id,
        state=reading.state.value,
        pairing_code=reading.pairing_code,
        detail=reading.detail,
    )


@router.get("/metrics")
async def metrics() -> Response:
    body, content_type = get_metrics()
    return Response(content=body, media_type=content_type)


_ERROR_STATUS: list[tuple[type[FleetError], int]] = [
    (TenantNotFound, 404),
    (CapacityExceeded, 409),
    (PipelinePhaseError, 500),
    (HealthCheckTimeout, 504),
    (ConnectivityError, 502),
    (ProvisioningError, 502),
]


async def fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
    status = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 500)
    content = {"error": type(exc).__name__, "detail": str(exc).split("\n", 1)[0]}
    if isinstance(exc, PipelinePhaseError):
        content["phase"] = exc.phase
        content["diagnostics"] = exc.bundle
    return JSONResponse(status_code=status, content=content)


def create_app(service: DeploymentService | None = None) -> FastAPI:
    """Build the app. Without ``service`` the production graph is wired on startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        app.state.service = service or build_service()
        app.state.operations = TaskRegistry()
        resumed = app.state.service.fleet.resume_pending_verifications()
        logger.info(f"botfleet {__version__} started, resumed {resumed} host verifications")
        yield
        await app.state.operations.cancel_all()
        await app.state.service.fleet.shutdown()
        await app.state.service.fleet.provisioner.close()

    app = FastAPI(title="botfleet", version=__version__, lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(FleetError, fleet_error_handler)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("botfleet.main:app", host=settings.api_host, port=settings.api_port, reload=False)
