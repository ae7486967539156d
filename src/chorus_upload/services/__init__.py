# src/chorus_upload/services/__init__.py
"""Business logic services for the upload application."""

from .ledger import LedgerClient, LedgerIdentityResolver
from .rate_limit import RateLimiter
from .signature import SignatureVerifier
from .storage import ContentStore
from .upload import UploadPipeline

__all__ = [
    "ContentStore",
    "LedgerClient",
    "LedgerIdentityResolver",
    "RateLimiter",
    "SignatureVerifier",
    "UploadPipeline",
]
