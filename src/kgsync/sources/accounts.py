"""
Chain-proximate account reads and owner resolution.

Manifesto:
    Smart accounts hide their controlling key behind contract code.  Owner
    resolution tries a short list of read strategies in order; a read that
    fails *non-retryably* (a revert, an unknown selector, HTTP 400) just
    means "not this kind of account" and falls through to the next
    strategy.  A read that keeps failing transiently exhausts the shared
    retry policy and propagates, because guessing would be wrong.

Architecture:
    ::

        resolve_account_owner(reader, address)
          ├─ zero address               → itself
          ├─ eth_getCode == ""          → itself (EOA)
          ├─ code starts with 0xef0100  → itself (EIP-7702 delegation)
          ├─ owner()                    → address   (non-zero)
          ├─ getOwners()[0]             → address   (non-zero)
          └─ otherwise                  → None

Tags:
    json-rpc, eth_call, owner, smart-account, retry, kgsync
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from kgsync.core.errors import SyncError, TransportError, UpstreamError
from kgsync.core.identifiers import normalize_address
from kgsync.core.logging import get_logger
from kgsync.execution.transport import ResilientTransport

logger = get_logger(__name__)

ZERO_ADDRESS = "0x" + "00" * 20
EIP7702_PREFIX = bytes.fromhex("ef0100")


# =============================================================================
# ABI DECODING
# =============================================================================


def _words(data: bytes) -> list[bytes]:
    return [data[i : i + 32] for i in range(0, len(data) - len(data) % 32, 32)]


def decode_address(data: bytes) -> str:
    """Decode a single ABI-encoded ``address`` return value."""
    words = _words(data)
    if not words:
        raise UpstreamError("Empty return data for address")
    return "0x" + words[0][12:].hex()


def decode_address_array(data: bytes) -> list[str]:
    """Decode an ABI-encoded ``address[]`` return value."""
    words = _words(data)
    if len(words) < 2:
        raise UpstreamError("Return data too short for address[]")
    offset = int.from_bytes(words[0], "big") // 32
    if offset >= len(words):
        raise UpstreamError("Invalid offset in address[] return data")
    length = int.from_bytes(words[offset], "big")
    items = words[offset + 1 : offset + 1 + length]
    if len(items) != length:
        raise UpstreamError("Truncated address[] return data")
    return ["0x" + w[12:].hex() for w in items]


@dataclass(frozen=True)
class ContractMethod:
    """A zero-argument view function: 4-byte selector plus return decoder."""

    name: str
    selector: str
    decode: Callable[[bytes], Any]


CONTRACT_METHODS: dict[str, ContractMethod] = {
    "owner": ContractMethod("owner", "0x8da5cb5b", decode_address),
    "getOwners": ContractMethod("getOwners", "0xa0e67e2b", decode_address_array),
}


# =============================================================================
# READER
# =============================================================================


class AccountReader:
    """JSON-RPC reads against one chain (``eth_getCode``, ``eth_call``)."""

    def __init__(self, transport: ResilientTransport, rpc_url: str) -> None:
        self._transport = transport
        self.rpc_url = rpc_url
        self._ids = itertools.count(1)

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        response = await self._transport.request(
            "POST",
            self.rpc_url,
            json={"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params},
            label=f"rpc {method}",
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(f"{method}: non-JSON response", cause=exc) from exc
        if not isinstance(payload, dict):
            raise UpstreamError(f"{method}: unexpected response {payload!r}")
        if payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamError(f"{method}: {message}").with_context(
                url=self.rpc_url, source_name="rpc"
            )
        return payload.get("result")

    async def get_code(self, address: str) -> bytes:
        result = await self._rpc("eth_getCode", [address, "latest"])
        return _hex_to_bytes(result)

    async def read_contract(self, address: str, method: str) -> Any:
        """Call a known zero-argument view *method* and decode its result."""
        abi = CONTRACT_METHODS.get(method)
        if abi is None:
            raise ValueError(f"Unknown contract method: {method!r}")
        result = await self._rpc("eth_call", [{"to": address, "data": abi.selector}, "latest"])
        return abi.decode(_hex_to_bytes(result))


def _hex_to_bytes(value: Any) -> bytes:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise UpstreamError(f"Expected hex string, got {value!r}")
    try:
        return bytes.fromhex(value[2:])
    except ValueError as exc:
        raise UpstreamError(f"Malformed hex string {value[:20]!r}", cause=exc) from exc


# =============================================================================
# OWNER RESOLUTION
# =============================================================================


def _falls_through(exc: SyncError) -> bool:
    """Non-retryable read failures move on to the next strategy."""
    if isinstance(exc, TransportError):
        return not exc.retryable and exc.attempts is None
    return not exc.retryable


def _first_owner(value: Any) -> str | None:
    if isinstance(value, list):
        value = value[0] if value else None
    owner = normalize_address(value) if isinstance(value, str) else None
    return owner if owner and owner != ZERO_ADDRESS else None


async def resolve_account_owner(reader: AccountReader, address: str) -> str | None:
    """Return the lower-cased controlling address of *address*, or ``None``.

    Raises:
        TransportError: A read kept failing transiently past the retry budget.
    """
    account = normalize_address(address)
    if account is None:
        return None
    if account == ZERO_ADDRESS:
        return account

    code = await reader.get_code(account)
    if not code or code.startswith(EIP7702_PREFIX):
        return account

    for method in ("owner", "getOwners"):
        try:
            value = await reader.read_contract(account, method)
        except SyncError as exc:
            if not _falls_through(exc):
                raise
            logger.debug("owner_strategy_failed", account=account, method=method, error=exc.message)
            continue
        owner = _first_owner(value)
        if owner is not None:
            return owner

    logger.info("owner_unresolved", account=account)
    return None


class AccountOwnerIndex:
    """Cached owner lookups for the accounts an emitter batch touches.

    Results are kept for the life of the index, misses (``None``) included;
    ownership of a deployed account is not expected to change mid-run.
    """

    def __init__(self, reader: AccountReader) -> None:
        self.reader = reader
        self._owners: dict[str, str | None] = {}

    async def owners_of(self, addresses: Iterable[str]) -> dict[str, str | None]:
        found: dict[str, str | None] = {}
        for address in addresses:
            account = normalize_address(address)
            if account is None:
                continue
            if account not in self._owners:
                self._owners[account] = await resolve_account_owner(self.reader, account)
            found[account] = self._owners[account]
        return found


__all__ = [
    "AccountOwnerIndex",
    "AccountReader",
    "CONTRACT_METHODS",
    "ContractMethod",
    "EIP7702_PREFIX",
    "ZERO_ADDRESS",
    "decode_address",
    "decode_address_array",
    "resolve_account_owner",
]
