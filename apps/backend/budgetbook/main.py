from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import Settings, settings
from .core.database import SessionLocal, init_db
from .core.logger_setup import configure_logging
from .routers import router
from .sync.connectivity import ConnectivityMonitor
from .sync.coordinator import SyncCoordinator
from .sync.engine import SyncEngine
from .sync.realtime import RealtimeListener
from .sync.supabase_backend import SupabaseBackend, SupabaseIdentity, create_supabase

logger = logging.getLogger(__name__)


async def build_coordinator(cfg: Settings) -> SyncCoordinator:
    """Wire the Supabase adapters into a ready-to-start coordinator."""
    client = await create_supabase(cfg)
    remote = SupabaseBackend(client)
    identity = SupabaseIdentity(client)
    connectivity = ConnectivityMonitor(
        f"{cfg.SUPABASE_URL.rstrip('/')}/auth/v1/health",
        interval=cfg.CONNECTIVITY_PROBE_SECONDS,
        timeout=cfg.REMOTE_TIMEOUT_SECONDS,
        headers={"apikey": cfg.SUPABASE_ANON_KEY},
    )
    return SyncCoordinator(
        SyncEngine(SessionLocal, remote, identity),
        RealtimeListener(SessionLocal, remote),
        identity,
        SessionLocal,
        connectivity=connectivity,
        interval=cfg.SYNC_INTERVAL_SECONDS,
        debounce_seconds=cfg.SYNC_DEBOUNCE_MS / 1000,
        initial_timeout=cfg.INITIAL_SYNC_TIMEOUT_SECONDS,
        session_retry_seconds=cfg.SESSION_RETRY_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)
    init_db()
    app.state.coordinator = None
    if settings.sync_enabled:
        coordinator = await build_coordinator(settings)
        await coordinator.start()
        app.state.coordinator = coordinator
    else:
        logger.info("Supabase not configured; running offline")
    try:
        yield
    finally:
        if app.state.coordinator is not None:
            await app.state.coordinator.stop()


app = FastAPI(title="Budgetbook Backend", version="0.1.0", lifespan=lifespan)

# CORS (프론트엔드 연결 준비)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(router, prefix="/api")
