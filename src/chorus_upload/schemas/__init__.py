"""Pydantic schemas for the upload API."""

from .upload import ErrorResponse, UploadResponse

__all__ = ["ErrorResponse", "UploadResponse"]
