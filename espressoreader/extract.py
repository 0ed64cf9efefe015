"""Decoding and signer recovery for signed Espresso transactions."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

from espressoreader.crypto import ecrecover, keccak256, pubkey_to_address, typed_data_hash


class ExtractError(ValueError):
    """The transaction is not a correctly signed typed-data message."""


@dataclass(frozen=True)
class SignedTransaction:
    msg_sender: str
    typed_data: dict[str, Any]
    sig_hash: str


def _decode_hex(value: str) -> bytes:
    if not value:
        raise ValueError("empty hex string")
    if value[:2] not in ("0x", "0X"):
        raise ValueError("hex string without 0x prefix")
    if len(value) % 2:
        raise ValueError("hex string of odd length")
    return bytes.fromhex(value[2:])


def extract_sig_and_data(raw: str | bytes) -> SignedTransaction:
    """Decode a base64 JSON envelope and recover the signer of its typed data."""
    try:
        decoded = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ExtractError(f"decode base64: {exc}") from exc

    try:
        envelope = json.loads(decoded)
        if not isinstance(envelope, dict):
            raise ValueError("expected a JSON object")
    except ValueError as exc:
        raise ExtractError(f"unmarshal sigAndData: {exc}") from exc

    try:
        signature = bytearray(_decode_hex(str(envelope.get("signature", ""))))
    except ValueError as exc:
        raise ExtractError(f"decode signature: {exc}") from exc
    sig_hash = "0x" + keccak256(bytes(signature)).hex()

    typed_data = envelope.get("typedData") or {}
    try:
        data_hash = typed_data_hash(typed_data)
    except (ValueError, KeyError, TypeError) as exc:
        raise ExtractError(f"typed data hash: {exc}") from exc

    if len(signature) != 65:
        raise ExtractError("ecrecover: invalid signature length")
    signature[64] = (signature[64] - 27) % 256

    try:
        pubkey = ecrecover(data_hash, bytes(signature))
    except ValueError as exc:
        raise ExtractError(f"ecrecover: {exc}") from exc
    try:
        address = pubkey_to_address(pubkey)
    except ValueError as exc:
        raise ExtractError(f"unmarshal: {exc}") from exc

    return SignedTransaction(address, typed_data, sig_hash)