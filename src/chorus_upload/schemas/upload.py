"""Schemas for the upload endpoint."""
from __future__ import annotations

from pydantic import BaseModel, Field


class UploadResponse(BaseModel):
    """Successful upload payload."""

    url: str = Field(..., description="Public URL of the stored file.")


class ErrorResponse(BaseModel):
    """Body returned for rejected uploads."""

    error: str = Field(..., description="Reason the upload was rejected.")
