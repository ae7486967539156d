# src/chorus_upload/services/upload.py
"""Upload admission pipeline.

Every upload passes the same gates in the same order, and the first gate that
fails ends the request with a distinct client-visible message:

1. per-IP request quota
2. required parameters
3. signature parsing
4. ledger account lookup
5. minimum reputation
6. posting key weight (first key authority only)
7. payload extraction
8. per-account data volume quota
9. signature over the payload's SHA-256
10. content-addressed store write

Nothing is retried. A staged multipart file is removed on every exit path.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from cryptography.hazmat.primitives.asymmetric import ec

from chorus_upload.services.ledger import Account, IdentityResolver, LedgerError
from chorus_upload.services.payload import (
    PayloadDecodeError,
    UploadArtifact,
    UploadForm,
    decode_base64_payload,
)
from chorus_upload.services.rate_limit import (
    RateLimiter,
    RateLimitSet,
    RateLimitStoreError,
)
from chorus_upload.services.reputation import rep_log10
from chorus_upload.services.signature import (
    PublicKeyError,
    Signature,
    SignatureParseError,
    SignatureVerifier,
    parse_public_key,
)
from chorus_upload.services.storage import ContentStore, StoreError
from chorus_upload.utils.hash import sha256_digest

logger = logging.getLogger(__name__)

FormLoader = Callable[[], Awaitable[UploadForm]]


class RejectionKind(Enum):
    """Why a request was turned away."""

    CLIENT_INPUT = "client_input"
    POLICY = "policy"
    UPSTREAM = "upstream"


class UploadRejected(Exception):
    """Terminal rejection of an upload request.

    Upstream failures are reported with the same 400 status as client errors.
    """

    def __init__(
        self,
        message: str,
        kind: RejectionKind = RejectionKind.CLIENT_INPUT,
        status_code: int = 400,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code


@dataclass(frozen=True)
class UploadResult:
    """Successful upload outcome."""

    url: str
    address: str
    filename: str


def missing_field(name: str) -> UploadRejected:
    return UploadRejected(f"Missing required field: {name}.")


class UploadPipeline:
    """Sequence the admission gates for one upload request."""

    def __init__(
        self,
        *,
        rate_limiter: RateLimiter,
        request_limits: RateLimitSet,
        data_limits: RateLimitSet,
        resolver: IdentityResolver,
        verifier: SignatureVerifier,
        store: ContentStore,
        min_reputation: int,
        address_prefix: str = "STM",
    ) -> None:
        self.rate_limiter = rate_limiter
        self.request_limits = request_limits
        self.data_limits = data_limits
        self.resolver = resolver
        self.verifier = verifier
        self.store = store
        self.min_reputation = min_reputation
        self.address_prefix = address_prefix

    async def close(self) -> None:
        await self.rate_limiter.close()

    async def handle(
        self,
        *,
        ip: str,
        account_name: str | None,
        signature_hex: str | None,
        load_form: FormLoader,
    ) -> UploadResult:
        """Run every gate and return the stored object's URL.

        Args:
            ip: Caller address used for the request quota.
            account_name: Ledger account claimed by the uploader.
            signature_hex: Hex signature over the payload's SHA-256.
            load_form: Parses the request body; only awaited once the caller's
                IP quota admits the request.

        Raises:
            UploadRejected: When any gate fails.
        """
        await self._check_limit(self.request_limits, ip)

        form = await load_form()
        try:
            return await self._admit(form, account_name, signature_hex)
        finally:
            form.discard()

    async def _admit(
        self,
        form: UploadForm,
        account_name: str | None,
        signature_hex: str | None,
    ) -> UploadResult:
        account_name = (account_name or "").strip()
        signature_hex = (signature_hex or "").strip()
        if not account_name:
            raise missing_field("username")
        if not signature_hex:
            raise missing_field("signature")
        if not form.has_file and not form.has_inline:
            raise missing_field("file")

        signature = self._parse_signature(signature_hex)
        account = await self._resolve(account_name)
        self._check_reputation(account)
        posting_key = self._posting_key(account)

        artifact = await self._extract(form)
        await self._check_limit(self.data_limits, account.name, weight=artifact.size_megabytes)

        digest = sha256_digest(artifact.data)
        self._verify(signature, digest, posting_key, account)

        address = digest.hex()
        try:
            stored = await self.store.put(artifact.data, artifact.filename, address=address)
        except StoreError as exc:
            logger.error("Upload of %s by '%s' failed: %s", address, account.name, exc)
            raise UploadRejected(f"Error uploading {address}.", RejectionKind.UPSTREAM) from exc

        return UploadResult(url=stored.url, address=stored.address, filename=artifact.filename)

    async def _check_limit(self, limits: RateLimitSet, key: str, weight: float = 1) -> None:
        try:
            decision = await self.rate_limiter.check(limits, key, weight)
        except RateLimitStoreError as exc:
            logger.error("Rate limit check %s for %s failed: %s", limits.name, key, exc)
            raise UploadRejected(
                "Rate limiting is temporarily unavailable.", RejectionKind.UPSTREAM
            ) from exc
        if not decision.admitted:
            message = decision.describe(limits)
            logger.info("Upload rate limited (%s) for %s: %s", limits.name, key, message)
            raise UploadRejected(message, RejectionKind.POLICY)

    @staticmethod
    def _parse_signature(signature_hex: str) -> Signature:
        try:
            return SignatureVerifier.parse(signature_hex)
        except SignatureParseError as exc:
            logger.debug("Unparsable signature %r: %s", signature_hex, exc)
            raise UploadRejected("Unable to parse signature (expecting HEX data).") from exc

    async def _resolve(self, account_name: str) -> Account:
        try:
            account = await self.resolver.resolve(account_name)
        except LedgerError as exc:
            logger.error("Ledger lookup for '%s' failed: %s", account_name, exc)
            raise UploadRejected(
                f"Unable to look up account '{account_name}'.", RejectionKind.UPSTREAM
            ) from exc
        if account is None:
            raise UploadRejected(f"Account '{account_name}' is not found on the blockchain.")
        return account

    def _check_reputation(self, account: Account) -> None:
        reputation = rep_log10(account.reputation_raw)
        if reputation < self.min_reputation:
            logger.warning(
                "Upload by '%s' blocked: reputation %s < %s",
                account.name,
                reputation,
                self.min_reputation,
            )
            raise UploadRejected(
                f"Your reputation must be at least {self.min_reputation} to upload.",
                RejectionKind.POLICY,
            )

    def _posting_key(self, account: Account) -> ec.EllipticCurvePublicKey:
        """Return the first posting key authority if it alone meets the threshold.

        Only single-key posting authorities are supported; any other entries
        are ignored.
        """
        unsupported = UploadRejected(
            f"User {account.name} has an unsupported posting key configuration.",
            RejectionKind.POLICY,
        )
        if not account.posting_key_auths:
            logger.info("Upload by '%s' blocked: no posting key authorities", account.name)
            raise unsupported

        key_text, weight = account.posting_key_auths[0]
        if weight < account.weight_threshold:
            logger.info(
                "Upload by '%s' blocked: posting key weight %s < threshold %s",
                account.name,
                weight,
                account.weight_threshold,
            )
            raise unsupported

        try:
            return parse_public_key(key_text, self.address_prefix)
        except PublicKeyError as exc:
            logger.error("Posting key of '%s' could not be decoded: %s", account.name, exc)
            raise unsupported from exc

    @staticmethod
    async def _extract(form: UploadForm) -> UploadArtifact:
        if form.staged_file is not None:
            staged = form.staged_file
            try:
                data = await staged.read_and_discard()
            except OSError as exc:
                logger.error("Reading staged upload %r failed: %s", staged.filename, exc)
                raise UploadRejected("Upload failed.", RejectionKind.UPSTREAM) from exc
            return UploadArtifact(data=data, filename=staged.filename)

        try:
            data = decode_base64_payload(form.filebase64 or "")
        except PayloadDecodeError as exc:
            raise UploadRejected("Unable to decode filebase64 field.") from exc
        return UploadArtifact(data=data, filename=form.filename or "")

    def _verify(
        self,
        signature: Signature,
        digest: bytes,
        posting_key: ec.EllipticCurvePublicKey,
        account: Account,
    ) -> None:
        if not self.verifier.verify_any(signature, digest, posting_key):
            logger.info("Upload by '%s' rejected: signature did not verify", account.name)
            raise UploadRejected("Signature did not verify.", RejectionKind.POLICY)
