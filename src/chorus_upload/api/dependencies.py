"""Shared API dependencies wiring services from settings."""

from typing import Annotated

from fastapi import Depends

from chorus_upload.core.settings import settings
from chorus_upload.services.ledger import LedgerIdentityResolver, get_ledger_client
from chorus_upload.services.rate_limit import (
    RateLimiter,
    build_counter_store,
    build_data_limits,
    build_request_limits,
)
from chorus_upload.services.signature import SignatureVerifier
from chorus_upload.services.storage import ContentStore
from chorus_upload.services.upload import UploadPipeline


class _UploadPipelineSingleton:
    """Singleton wrapper for UploadPipeline.

    Rate limit counters live inside the pipeline's limiter, so every request
    must share one instance.
    """

    _instance: UploadPipeline | None = None

    @classmethod
    def get_instance(cls) -> UploadPipeline:
        """Get or create the singleton UploadPipeline instance."""
        if cls._instance is None:
            cls._instance = UploadPipeline(
                rate_limiter=RateLimiter(build_counter_store(settings)),
                request_limits=build_request_limits(settings),
                data_limits=build_data_limits(settings),
                resolver=LedgerIdentityResolver(get_ledger_client()),
                verifier=SignatureVerifier.from_settings(settings),
                store=ContentStore.from_settings(settings),
                min_reputation=settings.upload_min_reputation,
                address_prefix=settings.ledger_address_prefix,
            )
        return cls._instance

    @classmethod
    async def close(cls) -> None:
        """Release the counter store if a pipeline was ever built."""
        if cls._instance is not None:
            await cls._instance.close()
            cls._instance = None


def get_upload_pipeline() -> UploadPipeline:
    """Return the shared upload pipeline."""
    return _UploadPipelineSingleton.get_instance()


async def close_upload_pipeline() -> None:
    await _UploadPipelineSingleton.close()


# Type alias for upload pipeline dependency
UploadPipelineDep = Annotated[UploadPipeline, Depends(get_upload_pipeline)]
