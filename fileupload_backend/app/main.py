# fileupload_backend/app/main.py
from __future__ import annotations

import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import settings
from .database import Base, SessionLocal, engine
from .listeners import install_upload_listeners
from .routers import documents as documents_router
from .routers import health as health_router

logger = logging.getLogger("fileupload.main")
logger.setLevel(logging.INFO)

app = FastAPI(title="File Upload API", version="0.1.0")

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # you can lock this down later
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- basic alive probe that does NOT touch the database ---
@app.get("/health/bootcheck")
def bootcheck():
    return {"status": "starting-ok"}

# include routers
app.include_router(documents_router.router)
app.include_router(health_router.router)

# lifecycle hooks
@app.on_event("startup")
async def on_startup():
    logger.info(">>>> FASTAPI STARTUP BEGIN")
    Base.metadata.create_all(bind=engine)
    app.state.upload_listener = install_upload_listeners(SessionLocal, settings.FILE_UPLOAD_PATH)
    logger.info(">>>> FASTAPI STARTUP COMPLETE")

@app.on_event("shutdown")
async def on_shutdown():
    listener = getattr(app.state, "upload_listener", None)
    if listener is not None:
        listener.detach(SessionLocal)
    logger.info(">>>> FASTAPI SHUTDOWN")
