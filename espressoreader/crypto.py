"""Keccak hashing, EIP-712 typed-data hashing and secp256k1 key recovery."""

from __future__ import annotations

import re
from typing import Any

from Crypto.Hash import keccak

_P = 2**256 - 2**32 - 977
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_G = (
    0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798,
    0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8,
)

Point = tuple[int, int] | None


def keccak256(data: bytes) -> bytes:
    h = keccak.new(digest_bits=256)
    h.update(bytes(data))
    return h.digest()


# --- EIP-712 -----------------------------------------------------------------

_ARRAY = re.compile(r"^(.*)\[(\d*)\]$")


def _base_type(type_name: str) -> str:
    return type_name.split("[", 1)[0]


def _dependencies(primary: str, types: dict[str, Any], found: set[str]) -> set[str]:
    if primary in found or primary not in types:
        return found
    found.add(primary)
    for fld in types[primary]:
        _dependencies(_base_type(fld["type"]), types, found)
    return found


def _encode_type(primary: str, types: dict[str, Any]) -> str:
    deps = sorted(_dependencies(primary, types, set()) - {primary})
    parts = []
    for name in [primary, *deps]:
        fields = ",".join(f"{f['type']} {f['name']}" for f in types[name])
        parts.append(f"{name}({fields})")
    return "".join(parts)


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text[:2] in ("0x", "0X"):
            return int(text[2:] or "0", 16)
        return int(text)
    raise ValueError(f"cannot interpret {value!r} as an integer")


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, list):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value[:2] in ("0x", "0X") else value
        return bytes.fromhex(text)
    raise ValueError(f"cannot interpret {value!r} as bytes")


def _encode_value(type_name: str, value: Any, types: dict[str, Any]) -> bytes:
    match = _ARRAY.match(type_name)
    if match:
        if not isinstance(value, list):
            raise ValueError(f"expected a list for {type_name}")
        inner = match.group(1)
        return keccak256(b"".join(_encode_value(inner, v, types) for v in value))
    if type_name in types:
        return _hash_struct(type_name, value, types)
    if type_name == "string":
        return keccak256(str(value).encode())
    if type_name == "bytes":
        return keccak256(_to_bytes(value))
    if type_name.startswith("bytes"):
        raw = _to_bytes(value)
        if len(raw) > 32:
            raise ValueError(f"value too long for {type_name}")
        return raw.ljust(32, b"\x00")
    if type_name == "bool":
        return (1 if value in (True, "true", 1) else 0).to_bytes(32, "big")
    if type_name == "address" or type_name.startswith(("uint", "int")):
        number = _to_int(value) % 2**256
        return number.to_bytes(32, "big")
    raise ValueError(f"unknown type {type_name!r}")


def _hash_struct(primary: str, data: dict[str, Any], types: dict[str, Any]) -> bytes:
    if not isinstance(data, dict):
        raise ValueError(f"expected an object for {primary}")
    encoded = [keccak256(_encode_type(primary, types).encode())]
    for fld in types[primary]:
        if fld["name"] not in data:
            raise ValueError(f"missing field {fld['name']!r} in {primary}")
        encoded.append(_encode_value(fld["type"], data[fld["name"]], types))
    return keccak256(b"".join(encoded))


def typed_data_hash(typed_data: dict[str, Any]) -> bytes:
    """EIP-712 digest: keccak256(0x1901 || domainSeparator || hashStruct(message))."""
    types = typed_data.get("types") or {}
    if "EIP712Domain" not in types:
        raise ValueError("typed data has no EIP712Domain type")
    primary = typed_data.get("primaryType", "")
    if primary not in types:
        raise ValueError(f"primary type {primary!r} is not defined")
    domain = _hash_struct("EIP712Domain", typed_data.get("domain") or {}, types)
    message = _hash_struct(primary, typed_data.get("message") or {}, types)
    return keccak256(b"\x19\x01" + domain + message)


# --- secp256k1 ---------------------------------------------------------------

def _add(a: Point, b: Point) -> Point:
    if a is None:
        return b
    if b is None:
        return a
    if a[0] == b[0] and (a[1] + b[1]) % _P == 0:
        return None
    if a == b:
        slope = 3 * a[0] * a[0] * pow(2 * a[1], -1, _P) % _P
    else:
        slope = (b[1] - a[1]) * pow(b[0] - a[0], -1, _P) % _P
    x = (slope * slope - a[0] - b[0]) % _P
    return x, (slope * (a[0] - x) - a[1]) % _P


def _mul(k: int, point: Point) -> Point:
    result: Point = None
    while k:
        if k & 1:
            result = _add(result, point)
        point = _add(point, point)
        k >>= 1
    return result


def ecrecover(message_hash: bytes, signature: bytes) -> bytes:
    """Recover the 65-byte uncompressed public key from a [R || S || V] signature, V in {0, 1}."""
    if len(message_hash) != 32:
        raise ValueError("hash is required to be exactly 32 bytes")
    if len(signature) != 65:
        raise ValueError("invalid signature length")
    v = signature[64]
    if v not in (0, 1):
        raise ValueError("invalid signature recovery id")
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    if not (0 < r < _N and 0 < s < _N):
        raise ValueError("invalid signature values")
    alpha = (pow(r, 3, _P) + 7) % _P
    beta = pow(alpha, (_P + 1) // 4, _P)
    if beta * beta % _P != alpha:
        raise ValueError("invalid signature: no curve point")
    y = beta if beta % 2 == v else _P - beta
    e = int.from_bytes(message_hash, "big")
    r_inv = pow(r, -1, _N)
    q = _add(_mul((-e * r_inv) % _N, _G), _mul(s * r_inv % _N, (r, y)))
    if q is None:
        raise ValueError("invalid signature: point at infinity")
    return b"\x04" + q[0].to_bytes(32, "big") + q[1].to_bytes(32, "big")


def pubkey_to_address(pubkey: bytes) -> str:
    """Address of an uncompressed public key."""
    if len(pubkey) != 65 or pubkey[0] != 4:
        raise ValueError("invalid uncompressed public key")
    x = int.from_bytes(pubkey[1:33], "big")
    y = int.from_bytes(pubkey[33:], "big")
    if (y * y - x * x * x - 7) % _P != 0:
        raise ValueError("public key is not on the curve")
    return "0x" + keccak256(pubkey[1:])[-20:].hex()