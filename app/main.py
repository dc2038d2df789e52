import logging
from concurrent.futures import ThreadPoolExecutor

import torch
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import db
from app.api.v1.pipeline import router as pipeline_router
from app.config import get_settings
from app.db import Base, check_db
from app.jobs.base import PipelineContext
from app.jobs.queue import JobDispatcher
from app.services.color_analysis import ColorAnalysisService
from app.services.compliance import BrandComplianceService
from app.services.embedding_service import build_embedding_service
from app.services.recovery import AutoRecoveryScanner, RecoveryScheduler
from app.utils.paths import ensure_dirs

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

origins = [o.strip() for o in settings.CORS_ALLOW_ORIGINS.split(",")] if settings.CORS_ALLOW_ORIGINS else ["*"]
app.add_middleware(CORSMiddleware, allow_origins=origins, allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
app.include_router(pipeline_router)

EXECUTOR = ThreadPoolExecutor(max_workers=max(1, settings.INFER_MAX_CONCURRENCY))


@app.on_event("startup")
async def startup():
    ensure_dirs()
    torch.set_num_threads(max(1, settings.TORCH_NUM_THREADS))
    try:
        torch.set_num_interop_threads(1)
    except RuntimeError:
        # only settable once per process
        pass

    if db.engine is None:
        logger.warning("[startup] DATABASE_URL_ASYNC not set; pipeline disabled")
        return
    if settings.CREATE_TABLES_ON_STARTUP:
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)  # dev only; prefer Alembic in prod

    ctx = PipelineContext(
        session_factory=db.get_session_factory(),
        embedding_service=build_embedding_service(settings),
        color_service=ColorAnalysisService.from_settings(settings),
        compliance=BrandComplianceService(palette_delta_e=settings.COLOR_PALETTE_DELTA_E),
        thumbnail_style=settings.THUMBNAIL_STYLE,
        max_concurrency=settings.INFER_MAX_CONCURRENCY,
        executor=EXECUTOR,
    )
    dispatcher = JobDispatcher(
        ctx,
        workers=settings.JOB_WORKERS,
        max_tries=settings.JOB_MAX_TRIES,
        backoff=settings.job_backoff,
    )
    dispatcher.start()
    scheduler = RecoveryScheduler(
        AutoRecoveryScanner(
            ctx,
            timeout_minutes=settings.STUCK_ASSET_TIMEOUT_MINUTES,
            severity=settings.RECOVERY_INCIDENT_SEVERITY,
            limit=settings.RECOVERY_SCAN_LIMIT,
        ),
        interval=settings.RECOVERY_SCAN_INTERVAL_SECONDS,
    )
    await scheduler.start()
    app.state.pipeline = ctx
    app.state.dispatcher = dispatcher
    app.state.recovery_scheduler = scheduler
    logger.info("[startup] pipeline ready (embedding backend=%s)", settings.EMBEDDING_BACKEND)


@app.on_event("shutdown")
async def shutdown():
    scheduler = getattr(app.state, "recovery_scheduler", None)
    if scheduler is not None:
        await scheduler.stop()
    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.stop()


@app.get("/health")
async def health():
    db_ok = await check_db()
    return {"status": "ok", "db": db_ok}
