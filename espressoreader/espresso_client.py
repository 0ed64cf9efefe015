"""HTTP client for the Espresso query service and helpers for its header format."""

from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import dataclass
from types import TracebackType
from typing import Any

import aiohttp


@dataclass(frozen=True)
class L1Finalized:
    """The L1 block an Espresso header declares finalized."""

    number: int
    timestamp: int


def _as_uint(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return max(int(value), 0)
    if isinstance(value, str):
        try:
            return max(int(float(value)), 0)
        except ValueError:
            return 0
    return 0


def parse_l1_finalized(header: Any) -> L1Finalized | None:
    """Read ``fields.l1_finalized`` from a header; None when the header is not ready yet.

    Raises ValueError when the timestamp is present but is not a hex number.
    """
    fields = header.get("fields") if isinstance(header, dict) else None
    finalized = fields.get("l1_finalized") if isinstance(fields, dict) else None
    if not isinstance(finalized, dict):
        finalized = {}
    number = _as_uint(finalized.get("number"))
    timestamp_text = finalized.get("timestamp")
    if not isinstance(timestamp_text, str) or len(timestamp_text) < 2:
        return None
    digits = timestamp_text[2:]
    if not digits or not all(c in "0123456789abcdefABCDEF" for c in digits):
        raise ValueError(f"invalid hex timestamp: {timestamp_text!r}")
    timestamp = int(digits, 16)
    if timestamp >= 2**63:
        raise ValueError(f"timestamp out of range: {timestamp_text!r}")
    return L1Finalized(number=number, timestamp=timestamp)


def ns_tables_from_headers(headers: Any) -> list[bytes]:
    """Decoded ``fields.ns_table.bytes`` of every header that carries one."""
    if not isinstance(headers, list):
        raise ValueError("headers response is not a list")
    tables: list[bytes] = []
    for header in headers:
        fields = header.get("fields") if isinstance(header, dict) else None
        ns_table = fields.get("ns_table") if isinstance(fields, dict) else None
        encoded = ns_table.get("bytes") if isinstance(ns_table, dict) else None
        if not isinstance(encoded, str):
            continue
        try:
            tables.append(base64.b64decode(encoded, validate=True))
        except binascii.Error as exc:
            raise ValueError(f"invalid ns table encoding: {exc}") from exc
    return tables


def extract_namespaces(ns_table: bytes) -> list[int]:
    """Namespace ids listed in a namespace table (little-endian u32 count, then 8-byte entries)."""
    table = bytes(ns_table)
    if len(table) < 4:
        raise ValueError("namespace table too short")
    (count,) = struct.unpack_from("<I", table, 0)
    offsets = [4 + 8 * entry for entry in range(count)]
    if offsets and offsets[-1] + 4 > len(table):
        raise ValueError("namespace table truncated")
    return [struct.unpack_from("<I", table, offset)[0] for offset in offsets]


class EspressoClient:
    """Talks to an Espresso query service rooted at ``base_url``."""

    def __init__(
        self,
        base_url: str,
        session: aiohttp.ClientSession | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _get_json(self, path: str) -> Any:
        async with self._get_session().get(self._url(path)) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    async def fetch_latest_block_height(self) -> int:
        """Height of the latest Espresso block."""
        return int(await self._get_json("status/block-height"))

    async def fetch_transactions_in_block(self, height: int, namespace: int) -> list[bytes]:
        """Payloads of the block's transactions in ``namespace``."""
        body = await self._get_json(f"availability/block/{height}/namespace/{namespace}")
        if not isinstance(body, dict):
            raise ValueError("malformed namespace response")
        payloads: list[bytes] = []
        for transaction in body.get("transactions") or []:
            if transaction.get("namespace") != namespace:
                raise ValueError(
                    f"transaction namespace {transaction.get('namespace')} "
                    f"does not match requested namespace {namespace}"
                )
            try:
                payloads.append(base64.b64decode(transaction.get("payload", ""), validate=True))
            except (binascii.Error, TypeError) as exc:
                raise ValueError(f"invalid transaction payload: {exc}") from exc
        return payloads

    async def fetch_header(self, height: int) -> dict[str, Any]:
        """The header of one Espresso block."""
        header = await self._get_json(f"availability/header/{height}")
        if not isinstance(header, dict):
            raise ValueError(f"empty or malformed header at height {height}")
        return header

    async def fetch_headers_by_range(self, start: int, end: int) -> list[Any]:
        """Headers of the blocks in [start, end)."""
        headers = await self._get_json(f"availability/header/{start}/{end}")
        if not isinstance(headers, list):
            raise ValueError(f"malformed header range {start}..{end}")
        return headers

    async def submit_transaction(self, namespace: int, payload: bytes) -> Any:
        """Submit a transaction; returns what the service answers (its hash)."""
        body = {"namespace": namespace, "payload": base64.b64encode(bytes(payload)).decode()}
        async with self._get_session().post(self._url("submit/submit"), json=body) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> EspressoClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()