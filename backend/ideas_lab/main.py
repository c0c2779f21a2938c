from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .routes_ideas_lab import router as ideas_lab_router
from .routes_post_drafts import router as post_drafts_router
from .settings import get_settings

logger = logging.getLogger("ideas_lab")

app = FastAPI(title="Ideas Lab Console")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(ideas_lab_router)
app.include_router(post_drafts_router)


@app.on_event("startup")
async def startup_event():
    """Wire the backend client, preference store and orchestrator."""
    from ideas_lab.db import Base, SessionLocal, engine
    from ideas_lab.deps import build_console
    from ideas_lab.services.preferences import SqlPreferenceStore, set_preference_store

    Base.metadata.create_all(bind=engine)
    store = SqlPreferenceStore(SessionLocal)
    set_preference_store(store)
    app.state.console = build_console(preferences=store)
    logger.info(f"Console started, backend={settings.api_base}")


@app.on_event("shutdown")
async def shutdown_event():
    console = getattr(app.state, "console", None)
    if console is not None:
        await console.aclose()
        logger.info("Console stopped")
