# src/chorus_upload/services/ledger.py
"""Ledger client used to resolve uploader identities.

The upload service trusts the ledger as its public key registry: every upload
triggers a fresh account lookup so that rotated keys and changed reputation
take effect immediately.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from chorus_upload.core.settings import Settings, settings

logger = logging.getLogger(__name__)

GET_ACCOUNTS_METHOD = "condenser_api.get_accounts"


class LedgerError(RuntimeError):
    """Raised when the ledger cannot be queried or answers with garbage."""


@dataclass(frozen=True)
class LedgerConfig:
    """Immutable configuration for ledger RPC calls."""

    rpc_url: str
    timeout_seconds: float


def load_ledger_config(config: Settings | None = None) -> LedgerConfig:
    """Build configuration object from global settings."""
    config = config or settings
    return LedgerConfig(
        rpc_url=config.ledger_rpc_url,
        timeout_seconds=float(config.ledger_rpc_timeout_seconds),
    )


@dataclass(frozen=True)
class Account:
    """Snapshot of a ledger account as needed for upload admission."""

    name: str
    posting_key_auths: tuple[tuple[str, int], ...]
    weight_threshold: int
    reputation_raw: int | str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Account:
        """Decode an account object returned by ``get_accounts``.

        Raises:
            LedgerError: If the payload does not have the expected shape.
        """
        if not isinstance(payload, Mapping):
            raise LedgerError(f"Malformed account payload: {payload!r}")
        try:
            posting = payload.get("posting") or {}
            if not isinstance(posting, Mapping):
                raise TypeError(f"posting authority is {type(posting).__name__}")
            key_auths = tuple(
                (str(key), int(weight)) for key, weight in posting.get("key_auths", [])
            )
            return cls(
                name=str(payload["name"]),
                posting_key_auths=key_auths,
                weight_threshold=int(posting.get("weight_threshold", 1)),
                reputation_raw=payload.get("reputation", 0),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as err:
            raise LedgerError(f"Malformed account payload: {err}") from err


class IdentityResolver(Protocol):
    """Resolve an account name into its current ledger snapshot."""

    async def resolve(self, account_name: str) -> Account | None:
        """Return the account, or None when the ledger does not know it."""
        ...


class LedgerClient:
    """JSON-RPC client for a ledger node."""

    def __init__(
        self,
        config: LedgerConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or load_ledger_config()
        self._client = client
        self._client_lock = asyncio.Lock()
        self._ids = itertools.count(1)

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                )
        return self._client

    async def call(self, method: str, params: Sequence[Any]) -> Any:
        """Invoke a JSON-RPC method and return its ``result``."""
        client = await self._ensure_client()
        request = {
            "jsonrpc": "2.0",
            "method": method,
            "params": list(params),
            "id": next(self._ids),
        }
        try:
            response = await client.post(self.config.rpc_url, json=request)
        except httpx.HTTPError as exc:
            raise LedgerError(f"Ledger request failed: {exc}") from exc

        if response.status_code >= 400:
            raise LedgerError(f"Ledger responded with {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise LedgerError("Ledger returned a non-JSON response") from exc

        if not isinstance(body, dict):
            raise LedgerError("Ledger returned an unexpected response")
        if body.get("error"):
            raise LedgerError(f"Ledger RPC error: {body['error']}")
        return body.get("result")

    async def get_accounts(self, names: Sequence[str]) -> list[Account]:
        """Fetch account snapshots by name."""
        result = await self.call(GET_ACCOUNTS_METHOD, [list(names)])
        if result is None:
            return []
        if not isinstance(result, list):
            raise LedgerError("get_accounts returned an unexpected result")
        return [Account.from_payload(item) for item in result if item]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class LedgerIdentityResolver:
    """Identity resolver performing one uncached ledger lookup per call."""

    def __init__(self, client: LedgerClient) -> None:
        self._client = client

    async def resolve(self, account_name: str) -> Account | None:
        accounts = await self._client.get_accounts([account_name])
        return accounts[0] if accounts else None


class _LedgerClientSingleton:
    """Singleton wrapper for LedgerClient."""

    _instance: LedgerClient | None = None

    @classmethod
    def get_instance(cls) -> LedgerClient:
        """Get or create the singleton LedgerClient instance."""
        if cls._instance is None:
            cls._instance = LedgerClient()
        return cls._instance


def get_ledger_client() -> LedgerClient:
    """Return a singleton ledger client instance."""
    return _LedgerClientSingleton.get_instance()
