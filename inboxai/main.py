from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from inboxai.dependencies import get_event_bus, get_orchestrator
from inboxai.routes.emails import router as emails_router
from inboxai.routes.processing import router as processing_router
from inboxai.routes.usage import router as usage_router
from inboxai.services.config import get_settings, llm_enabled
from inboxai.services.database import init_db

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    await init_db()
    yield


app = FastAPI(title="Inbox AI Processing API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url, "http://127.0.0.1:4200", "http://localhost:4200"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(processing_router)
app.include_router(emails_router)
app.include_router(usage_router)


@app.get("/api/health")
async def health() -> dict[str, object]:
    return {
        "status": "ok",
        "real_llm_enabled": "true" if llm_enabled() else "false",
        "processing": get_orchestrator().get_status().is_running,
        "subscribers": get_event_bus().subscriber_count,
    }
