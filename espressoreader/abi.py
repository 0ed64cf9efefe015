"""Encoding of the EvmAdvance input payload."""

from __future__ import annotations

from dataclasses import dataclass, replace

from espressoreader.crypto import keccak256
from espressoreader.models import hex_to_address

EVM_ADVANCE_SIGNATURE = "EvmAdvance(uint256,address,address,uint256,uint256,uint256,uint256,bytes)"
EVM_ADVANCE_SELECTOR = keccak256(EVM_ADVANCE_SIGNATURE.encode())[:4]
_WORD = 32
_HEAD_WORDS = 8
_MAX_UINT = 2**256


@dataclass(frozen=True)
class EvmAdvance:
    chain_id: int
    app_contract: str
    msg_sender: str
    block_number: int
    block_timestamp: int
    prev_randao: int
    index: int
    payload: bytes


def _uint(value: int) -> bytes:
    if not 0 <= value < _MAX_UINT:
        raise ValueError(f"value out of uint256 range: {value}")
    return value.to_bytes(_WORD, "big")


def _address(value: str) -> bytes:
    return bytes.fromhex(hex_to_address(value)[2:]).rjust(_WORD, b"\x00")


def encode_evm_advance(advance: EvmAdvance) -> bytes:
    """Encode the call data, selector included."""
    payload = bytes(advance.payload)
    padded = payload + b"\x00" * (-len(payload) % _WORD)
    return b"".join(
        [
            EVM_ADVANCE_SELECTOR,
            _uint(advance.chain_id),
            _address(advance.app_contract),
            _address(advance.msg_sender),
            _uint(advance.block_number),
            _uint(advance.block_timestamp),
            _uint(advance.prev_randao),
            _uint(advance.index),
            _uint(_HEAD_WORDS * _WORD),
            _uint(len(payload)),
            padded,
        ]
    )


def decode_evm_advance(data: bytes) -> EvmAdvance:
    """Decode call data; the 4-byte selector is skipped without being checked."""
    body = bytes(data)[4:]
    if len(data) < 4 or len(body) < _HEAD_WORDS * _WORD:
        raise ValueError("EvmAdvance data too short")
    words = [int.from_bytes(body[i * _WORD:(i + 1) * _WORD], "big") for i in range(_HEAD_WORDS)]
    offset = words[7]
    if offset + _WORD > len(body):
        raise ValueError("EvmAdvance payload offset out of bounds")
    length = int.from_bytes(body[offset:offset + _WORD], "big")
    start = offset + _WORD
    if start + length > len(body):
        raise ValueError("EvmAdvance payload length out of bounds")

    def addr(word: int) -> str:
        return "0x" + body[word * _WORD + 12:(word + 1) * _WORD].hex()

    return EvmAdvance(
        chain_id=words[0],
        app_contract=addr(1),
        msg_sender=addr(2),
        block_number=words[3],
        block_timestamp=words[4],
        prev_randao=words[5],
        index=words[6],
        payload=body[start:start + length],
    )


def modify_index_in_raw(raw_data: bytes, index: int) -> bytes:
    """Return the encoded input with its index replaced."""
    return encode_evm_advance(replace(decode_evm_advance(raw_data), index=index))