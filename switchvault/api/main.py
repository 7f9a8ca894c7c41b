"""
SwitchVault API - Kill-Switch Coordination Service

FastAPI transport over KillSwitchService: switch reads, authorized toggles,
live watch streams and audit runs.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from switchvault.config import build_service, configure_logging, load_config
from switchvault.control_plane.audit_pipeline import AuditReport
from switchvault.control_plane.kill_switch import KillSwitchService
from switchvault.control_plane.stores import SwitchRecord
from switchvault.core.failures import SwitchVaultError, UnauthorizedError
from switchvault.core.retry_strategy import summarize_config
from switchvault.version import __version__

logger = logging.getLogger(__name__)


# ============================================================================
# Request/Response Schemas
# ============================================================================

class SwitchRecordModel(BaseModel):
    """Switch state on the wire."""
    key: str
    active: bool
    version: int = Field(..., ge=0)
    lastActor: str
    updatedAt: str

    @classmethod
    def from_record(cls, record: SwitchRecord) -> "SwitchRecordModel":
        return cls(**record.to_dict())


class CheckEntryModel(BaseModel):
    name: str
    outcome: str  # "PASS" | "FAIL" | "PENDING"
    detail: str
    durationMs: float


class AuditReportModel(BaseModel):
    """Sealed audit report."""
    runId: str
    startedAt: str
    checks: List[CheckEntryModel] = []
    completedAt: Optional[str] = None
    passed: bool

    @classmethod
    def from_report(cls, report: AuditReport) -> "AuditReportModel":
        return cls(**report.to_dict())


class AuditRunRequest(BaseModel):
    """Names of registered checks to run, in order."""
    checks: List[str] = Field(default_factory=list)


class ErrorBody(BaseModel):
    error: str  # "Unauthorized" | "Contention" | "NotFound" | ...
    code: Optional[str] = None
    detail: Optional[str] = None


ERROR_STATUS = {
    "NotFound": 404,
    "Unauthorized": 403,
    "Contention": 409,
    "VersionConflict": 409,
}


# ============================================================================
# Dependencies
# ============================================================================

def get_service(request: Request) -> KillSwitchService:
    return request.app.state.service


def get_principal(x_principal_id: Optional[str] = Header(None)) -> Optional[str]:
    """
    Verified principal supplied by the upstream identity provider.

    The gateway in front of this service authenticates the caller and
    forwards the opaque principal ID in X-Principal-Id.
    """
    return x_principal_id or None


# ============================================================================
# FastAPI App
# ============================================================================

def create_app(service: Optional[KillSwitchService] = None) -> FastAPI:
    """Build the API around a service (or one wired from the environment)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup/shutdown lifecycle."""
        if getattr(app.state, "service", None) is None:
            config = load_config()
            configure_logging(config.log_level)
            app.state.service = build_service(config)
        logger.info("SwitchVault API %s starting", __version__)
        yield
        logger.info("SwitchVault API shutting down")
        app.state.service.close()

    app = FastAPI(
        title="SwitchVault API",
        description="Distributed kill-switch coordination service",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SwitchVaultError)
    async def switchvault_error_handler(request: Request, exc: SwitchVaultError):
        status = ERROR_STATUS.get(exc.error_name, 500)
        if status == 500:
            logger.error("Unhandled service error on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status,
            content=ErrorBody(error=exc.error_name, code=exc.code, detail=exc.details).model_dump(),
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.get("/health")
    def health_check(svc: KillSwitchService = Depends(get_service)):
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": __version__,
            "policy": svc.gate.policy.name,
            "watch": svc.broker.get_stats(),
            "retry": summarize_config(svc.retry_config),
        }

    # ------------------------------------------------------------------
    # Switch Endpoints
    # ------------------------------------------------------------------

    @app.get("/switches", response_model=List[SwitchRecordModel])
    def list_switches(svc: KillSwitchService = Depends(get_service)):
        """All known switches."""
        return [SwitchRecordModel.from_record(r) for r in svc.list_switches()]

    @app.get("/switches/{key}", response_model=SwitchRecordModel)
    def get_switch(key: str, svc: KillSwitchService = Depends(get_service)):
        """Current switch state; unknown keys are created inactive."""
        return SwitchRecordModel.from_record(svc.get(key))

    @app.post(
        "/switches/{key}/toggle",
        response_model=SwitchRecordModel,
        responses={401: {"model": ErrorBody}, 403: {"model": ErrorBody}, 409: {"model": ErrorBody}},
    )
    def toggle_switch(
        key: str,
        principal: Optional[str] = Depends(get_principal),
        svc: KillSwitchService = Depends(get_service),
    ):
        """Flip the switch on behalf of the caller's principal."""
        if principal is None:
            return JSONResponse(
                status_code=401,
                content=ErrorBody(
                    error=UnauthorizedError.failure_code.name,
                    code=UnauthorizedError.failure_code.code,
                    detail="missing X-Principal-Id",
                ).model_dump(),
            )
        return SwitchRecordModel.from_record(svc.toggle(key, principal))

    @app.websocket("/switches/{key}/watch")
    async def watch_switch(websocket: WebSocket, key: str):
        """Stream SwitchRecord frames, current state first, versions increasing."""
        svc: KillSwitchService = websocket.app.state.service
        await websocket.accept()

        sub = await run_in_threadpool(svc.subscribe, key)

        async def wait_for_disconnect():
            try:
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        break
            finally:
                sub.cancel()

        receiver = asyncio.create_task(wait_for_disconnect())
        try:
            async for record in sub:
                await websocket.send_json(record.to_dict())
        except WebSocketDisconnect:
            pass
        finally:
            sub.cancel()
            receiver.cancel()

    # ------------------------------------------------------------------
    # Audit Endpoints
    # ------------------------------------------------------------------

    @app.get("/audit/checks", response_model=List[str])
    def audit_checks(svc: KillSwitchService = Depends(get_service)):
        """Names of registered checks."""
        return svc.checks.names()

    @app.post("/audit/run", response_model=AuditReportModel)
    def audit_run(request: AuditRunRequest, svc: KillSwitchService = Depends(get_service)):
        """Run the named checks in order and return the sealed report."""
        return AuditReportModel.from_report(svc.run_audit(request.checks))

    @app.get("/audit/{run_id}", response_model=AuditReportModel, responses={404: {"model": ErrorBody}})
    def audit_get(run_id: str, svc: KillSwitchService = Depends(get_service)):
        """A previously sealed audit report."""
        report = svc.get_audit(run_id)
        if report is None:
            return JSONResponse(
                status_code=404,
                content=ErrorBody(error="NotFound", detail=f"audit {run_id}").model_dump(),
            )
        return AuditReportModel.from_report(report)

    return app


app = create_app()
