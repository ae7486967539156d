# src/chorus_upload/main.py
"""Main entry point for the Chorus Upload application."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chorus_upload.api import upload_router
from chorus_upload.api.dependencies import close_upload_pipeline
from chorus_upload.core.settings import settings
from chorus_upload.services.ledger import get_ledger_client
from chorus_upload.services.upload import UploadRejected

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Initialize FastAPI app
app = FastAPI(
    title="Chorus Upload API",
    description="Signed, content-addressed file uploads for ledger accounts",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)


@app.exception_handler(UploadRejected)
async def upload_rejected_handler(request: Request, exc: UploadRejected) -> JSONResponse:
    """Render pipeline rejections as ``{"error": message}``."""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await close_upload_pipeline()
    await get_ledger_client().close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Signed, content-addressed file uploads for ledger accounts",
        "docs": "/docs",
    }


# Include API routers
app.include_router(upload_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("chorus_upload.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
