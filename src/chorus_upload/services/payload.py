# src/chorus_upload/services/payload.py
"""Upload payload extraction."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import BinaryIO, Final

logger = logging.getLogger(__name__)

BYTES_PER_MEGABYTE: Final[int] = 1024 * 1024


class PayloadDecodeError(ValueError):
    """Raised when the inline base64 payload cannot be decoded."""


@dataclass(frozen=True)
class UploadArtifact:
    """Payload bytes and the filename declared by the uploader."""

    data: bytes
    filename: str

    @property
    def size_megabytes(self) -> float:
        return len(self.data) / BYTES_PER_MEGABYTE


class StagedFile:
    """A multipart file part held open for the duration of one request.

    ``file`` is the spooled temporary file the multipart parser wrote the part
    to. Closing it removes the spool, so ``discard`` is the only cleanup step.
    """

    def __init__(self, file: BinaryIO, filename: str) -> None:
        self.file = file
        self.filename = filename

    async def read(self) -> bytes:
        def _read() -> bytes:
            self.file.seek(0)
            return self.file.read()

        return await asyncio.to_thread(_read)

    def discard(self) -> None:
        """Close and remove the spooled file; safe to call more than once."""
        try:
            self.file.close()
        except OSError as exc:
            logger.error("Failed to discard staged upload %r: %s", self.filename, exc)

    async def read_and_discard(self) -> bytes:
        """Read the staged bytes, discarding the file whether or not the read succeeds."""
        try:
            return await self.read()
        finally:
            self.discard()


@dataclass
class UploadForm:
    """Fields extracted from the multipart body."""

    staged_file: StagedFile | None = None
    filename: str | None = None
    filebase64: str | None = None

    @property
    def has_file(self) -> bool:
        return self.staged_file is not None

    @property
    def has_inline(self) -> bool:
        return bool(self.filename and self.filebase64)

    def discard(self) -> None:
        if self.staged_file is not None:
            self.staged_file.discard()


def decode_base64_payload(encoded: str) -> bytes:
    """Decode the ``filebase64`` form field.

    Raises:
        PayloadDecodeError: If the field is not valid base64.
    """
    try:
        return base64.b64decode(encoded, validate=False)
    except (binascii.Error, ValueError) as err:
        raise PayloadDecodeError(f"Invalid base64 payload: {err}") from err
