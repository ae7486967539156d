"""HTTP API for the upload service."""

from .routes_upload import router as upload_router

__all__ = ["upload_router"]
