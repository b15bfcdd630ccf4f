"""FastAPI application for ci-signal-sync."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import settings
from src.database import init_db, close_db
from src.routes.job_artifacts import router as job_artifacts_router
from src.routes.refresh import router as refresh_router

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("ci-signal-sync starting up")
    await init_db()
    yield
    logger.info("ci-signal-sync shutting down")
    await close_db()


app = FastAPI(
    title="CI Signal Sync",
    description="Reconciles Jira tickets, materialized views and CI job artifacts for test reliability reports",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(refresh_router, prefix=settings.api_prefix)
app.include_router(job_artifacts_router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "ci-signal-sync"}
