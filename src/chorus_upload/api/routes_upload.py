"""Signed upload endpoint."""

from __future__ import annotations

import logging
import re
from typing import Final

from fastapi import APIRouter, Request
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException

from chorus_upload.api.dependencies import UploadPipelineDep
from chorus_upload.core.settings import settings
from chorus_upload.schemas.upload import ErrorResponse, UploadResponse
from chorus_upload.services.payload import StagedFile, UploadForm
from chorus_upload.services.upload import UploadRejected

logger = logging.getLogger(__name__)

router = APIRouter(tags=["upload"])

_IPV4_PATTERN: Final = re.compile(r"(\d+\.\d+\.\d+\.\d+)")
UNKNOWN_IP: Final[str] = "unknown"


def get_remote_ip(request: Request, trust_forwarded_for: bool = False) -> str:
    """Return the caller's address, preferring X-Forwarded-For behind a proxy."""
    remote: str | None = None
    if trust_forwarded_for:
        remote = request.headers.get("x-forwarded-for")
    if not remote and request.client is not None:
        remote = request.client.host
    if not remote:
        return UNKNOWN_IP

    match = _IPV4_PATTERN.search(remote)
    if match:
        return match.group(1)
    return remote.split(",")[0].strip()


async def load_upload_form(request: Request) -> UploadForm:
    """Parse the multipart body.

    The first file part is handed over still spooled; the caller owns it from
    then on and discards it through ``UploadForm.discard``. Every other file
    part is closed here.
    """
    try:
        form = await request.form(max_part_size=settings.upload_form_limit_bytes)
    except (MultiPartException, StarletteHTTPException) as exc:
        logger.debug("Unparsable upload form: %s", exc)
        raise UploadRejected("Unable to parse upload form.") from exc

    uploads = [value for _, value in form.multi_items() if isinstance(value, UploadFile)]
    filename = form.get("filename")
    filebase64 = form.get("filebase64")
    result = UploadForm(
        filename=filename if isinstance(filename, str) else None,
        filebase64=filebase64 if isinstance(filebase64, str) else None,
    )
    if uploads:
        first = uploads.pop(0)
        result.staged_file = StagedFile(first.file, first.filename or "")
    for extra in uploads:
        extra.file.close()
    return result


@router.post(
    "/{account_name}/{signature}",
    response_model=UploadResponse,
    responses={400: {"model": ErrorResponse}},
)
async def upload_file(
    account_name: str,
    signature: str,
    request: Request,
    pipeline: UploadPipelineDep,
) -> UploadResponse:
    """Accept a file signed by a ledger account's posting key.

    The body is multipart with either a file part, or ``filename`` and
    ``filebase64`` fields. The response URL embeds the file's SHA-256.

    Args:
        account_name: Ledger account that signed the upload
        signature: Hex signature over the SHA-256 of the file bytes
        request: Incoming request (caller address and multipart body)
        pipeline: Upload admission pipeline

    Returns:
        The public URL of the stored file

    Raises:
        UploadRejected: If any admission gate fails (rendered as HTTP 400)
    """
    result = await pipeline.handle(
        ip=get_remote_ip(request, settings.trust_forwarded_for),
        account_name=account_name,
        signature_hex=signature,
        load_form=lambda: load_upload_form(request),
    )
    return UploadResponse(url=result.url)
