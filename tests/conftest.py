# tests/conftest.py
from __future__ import annotations

import base64
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi import FastAPI
from fastapi.testclient import TestClient

from chorus_upload.api.dependencies import get_upload_pipeline
from chorus_upload.main import app as fastapi_app
from chorus_upload.services.ledger import Account
from chorus_upload.services.payload import StagedFile, UploadForm
from chorus_upload.services.rate_limit import (
    MemoryCounterStore,
    RateLimiter,
    RateLimitSet,
    RateLimitWindow,
)
from chorus_upload.services.signature import SignatureVerifier, public_key_hex
from chorus_upload.services.storage import ContentStore
from chorus_upload.services.upload import UploadPipeline
from chorus_upload.utils.upload_client import generate_private_key

PUBLIC_BASE_URL = "https://uploads.test:443"
TEST_BUCKET = "test-bucket"
MIN_REPUTATION = 25  # rep_log10 of a fresh account (raw reputation 0)


class FakeClock:
    """Manually advanced clock for rate limit tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticResolver:
    """Identity resolver backed by a dict that records every lookup."""

    def __init__(self, accounts: dict[str, Account] | None = None) -> None:
        self.accounts = dict(accounts or {})
        self.calls: list[str] = []

    async def resolve(self, account_name: str) -> Account | None:
        self.calls.append(account_name)
        return self.accounts.get(account_name)


def make_account(
    name: str,
    public_key: ec.EllipticCurvePublicKey,
    *,
    weight: int = 1,
    threshold: int = 1,
    reputation: int | str = "0",
) -> Account:
    return Account(
        name=name,
        posting_key_auths=((public_key_hex(public_key), weight),),
        weight_threshold=threshold,
        reputation_raw=reputation,
    )


def inline_form(data: bytes, filename: str = "photo.jpg") -> UploadForm:
    return UploadForm(filename=filename, filebase64=base64.b64encode(data).decode())


def make_staged_file(directory: Path, data: bytes, filename: str = "cat.jpg") -> StagedFile:
    """Stage ``data`` in a temp file under ``directory`` that is removed on close."""
    spool = tempfile.NamedTemporaryFile(dir=directory, prefix="upload-")
    spool.write(data)
    spool.flush()
    return StagedFile(spool, filename)


def form_loader(form: UploadForm) -> Callable[[], Any]:
    async def _load() -> UploadForm:
        return form

    return _load


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def signing_key() -> ec.EllipticCurvePrivateKey:
    """Posting key of the primary test account."""
    return generate_private_key()


@pytest.fixture()
def other_key() -> ec.EllipticCurvePrivateKey:
    """A key unrelated to any test account."""
    return generate_private_key()


@pytest.fixture()
def alice(signing_key: ec.EllipticCurvePrivateKey) -> Account:
    return make_account("alice", signing_key.public_key())


@pytest.fixture()
def resolver(alice: Account) -> StaticResolver:
    return StaticResolver({"alice": alice})


@pytest.fixture()
def s3_client() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def content_store(s3_client: MagicMock) -> ContentStore:
    return ContentStore(s3_client, TEST_BUCKET, PUBLIC_BASE_URL)


@pytest.fixture()
def request_limits() -> RateLimitSet:
    return RateLimitSet(
        name="ip-requests",
        description="Uploads",
        unit="requests",
        windows=(RateLimitWindow(duration_seconds=60, max_count=5),),
    )


@pytest.fixture()
def data_limits() -> RateLimitSet:
    return RateLimitSet(
        name="account-megabytes",
        description="Upload size",
        unit="megabytes",
        windows=(RateLimitWindow(duration_seconds=60, max_count=1),),
    )


@pytest.fixture()
def make_pipeline(
    clock: FakeClock,
    request_limits: RateLimitSet,
    data_limits: RateLimitSet,
    resolver: StaticResolver,
    content_store: ContentStore,
) -> Callable[..., UploadPipeline]:
    """Build pipelines sharing the test collaborators, with overrides."""

    def _make(**overrides: Any) -> UploadPipeline:
        options: dict[str, Any] = {
            "rate_limiter": RateLimiter(MemoryCounterStore(), clock=clock),
            "request_limits": request_limits,
            "data_limits": data_limits,
            "resolver": resolver,
            "verifier": SignatureVerifier(),
            "store": content_store,
            "min_reputation": MIN_REPUTATION,
        }
        options.update(overrides)
        return UploadPipeline(**options)

    return _make


@pytest.fixture()
def pipeline(make_pipeline: Callable[..., UploadPipeline]) -> UploadPipeline:
    return make_pipeline()


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture()
def client(app: FastAPI, pipeline: UploadPipeline) -> Iterator[TestClient]:
    app.dependency_overrides[get_upload_pipeline] = lambda: pipeline
    try:
        with TestClient(app, base_url="http://test") as test_client:
            yield test_client
    finally:
        app.dependency_overrides.pop(get_upload_pipeline, None)
