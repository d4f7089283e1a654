"""
SiteProof - Offline ITP Capture & Sync API
Captures inspection test plan forms without connectivity and syncs them to the hosted backend.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import forms, itp, sync
from .core.config import Settings, settings as default_settings
from .core.exceptions import NotFoundError, UnsupportedFormTypeError, ValidationError
from .services.local_queue import LocalFormQueue
from .services.offline_sync import OfflineSyncService
from .services.remote_gateway import RemoteFormGateway

logger = logging.getLogger(__name__)


def build_sync_service(cfg: Settings) -> OfflineSyncService:
    """Construct the queue, gateway and sync engine once per application."""
    queue = LocalFormQueue(database_url=cfg.LOCAL_DB_URL)
    gateway = RemoteFormGateway(
        base_url=cfg.REMOTE_API_URL,
        api_key=cfg.REMOTE_API_KEY,
        timeout=cfg.REMOTE_TIMEOUT,
        mock_mode=cfg.REMOTE_MOCK_MODE,
        bucket=cfg.EVIDENCE_BUCKET,
    )
    return OfflineSyncService(
        queue,
        gateway,
        call_timeout=cfg.SYNC_CALL_TIMEOUT,
        concurrency=cfg.SYNC_CONCURRENCY,
        online=cfg.START_ONLINE,
    )


def create_app(cfg: Optional[Settings] = None) -> FastAPI:
    cfg = cfg or default_settings
    logging.basicConfig(
        level=cfg.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = build_sync_service(cfg)
        await service.queue.init()
        app.state.sync_service = service
        if cfg.AUTO_SYNC_ENABLED:
            service.start_auto_sync(cfg.AUTO_SYNC_INTERVAL_SECONDS)
        try:
            yield
        finally:
            service.stop_auto_sync()
            await service.wait_for_sweeps()
            await service.queue.close()

    app = FastAPI(
        title="SiteProof Offline ITP Sync API",
        description=(
            "Offline-first capture of construction inspection test plan (ITP) forms "
            "with a durable local queue and background synchronisation."
        ),
        version=cfg.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc), "violations": exc.to_list()})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(UnsupportedFormTypeError)
    async def unsupported_type_handler(request: Request, exc: UnsupportedFormTypeError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    app.include_router(forms.router, prefix="/api/v1")
    app.include_router(sync.router, prefix="/api/v1")
    app.include_router(itp.router, prefix="/api/v1")

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "service": cfg.APP_NAME, "version": cfg.VERSION}

    return app


app = create_app()
