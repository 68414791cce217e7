"""Normalization helpers shared by every signing backend.

- BIP44 derivation path parsing
- Hex / digest helpers
- Signature serialization (rs / rsv)
"""

import hashlib
from typing import Optional, Union

from Crypto.Hash import keccak

from signerkit.signing.base import (
    InvalidSpecError,
    RawSignature,
    SignatureFormat,
    UnsupportedFormatError,
)

HARDENED_MARKER = "'"


def is_derivation_path(path: str) -> bool:
    """Check if a string is a valid BIP44-style derivation path.

    A path is valid when it starts with ``m/``, has at least two segments after
    ``m`` and every segment (hardened marker stripped) is a non-negative integer.

    Example:
        "m/44'/60'/0'/0/0" -> True
        "m/abc/1" -> False
    """
    if not path.startswith("m/"):
        return False

    segments = path.split("/")[1:]
    if len(segments) < 2:
        return False

    for segment in segments:
        if segment.endswith(HARDENED_MARKER):
            segment = segment[: -len(HARDENED_MARKER)]
        if not (segment.isascii() and segment.isdigit()):
            return False
    return True


def get_coin_type_from_derivation_path(path: str) -> Optional[int]:
    """Extract the coin type from a derivation path.

    Example:
        "m/44'/60'/0'/0/0" -> 60

    Returns:
        The coin type, or None if the path is invalid
    """
    if not is_derivation_path(path):
        return None
    return int(path.split("/")[2].rstrip(HARDENED_MARKER))


def bip44_path(coin_type: Union[int, str], hardened_tail: bool = False) -> str:
    """Build ``m/44'/{coin}'/0'/0/0`` (or the fully hardened SLIP-0010 variant)."""
    if hardened_tail:
        return f"m/44'/{coin_type}'/0'/0'/0'"
    return f"m/44'/{coin_type}'/0'/0/0"


def strip_hex_prefix(value: str) -> str:
    if value[:2] in ("0x", "0X"):
        return value[2:]
    return value


def hex_to_bytes(value: str) -> bytes:
    """Decode a hex payload, with or without 0x prefix.

    Raises:
        InvalidSpecError: If the payload is not valid hex
    """
    cleaned = strip_hex_prefix(value.strip())
    if len(cleaned) % 2:
        raise InvalidSpecError(f"Payload has an odd number of hex digits: {len(cleaned)}")
    try:
        return bytes.fromhex(cleaned)
    except ValueError as e:
        raise InvalidSpecError(f"Payload is not valid hex: {e}") from e


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def keccak256(data: bytes) -> bytes:
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def format_recovery_id(v: int) -> str:
    """Render a recovery value as a single hex byte (27 -> "1b", 1 -> "01")."""
    return f"{v:02x}"


def _sanitize(signature: Union[RawSignature, dict]) -> RawSignature:
    if isinstance(signature, dict):
        v = signature.get("v")
        signature = RawSignature(r=signature["r"], s=signature["s"], v=v)
    return RawSignature(
        r=strip_hex_prefix(signature.r),
        s=strip_hex_prefix(signature.s),
        v=strip_hex_prefix(signature.v) if signature.v is not None else None,
    )


def extract_signature(
    signature_format: Union[SignatureFormat, str],
    signature: Union[RawSignature, dict],
) -> str:
    """Serialize a signature as ``r||s`` or ``r||s||v``.

    Args:
        signature_format: "rs" or "rsv"
        signature: RawSignature (or dict with r, s, optional v); 0x prefixes are stripped

    Returns:
        Concatenated hex string

    Raises:
        UnsupportedFormatError: Unknown format, or rsv without a recovery value
    """
    try:
        fmt = SignatureFormat(signature_format)
    except ValueError:
        raise UnsupportedFormatError(f"Unsupported signature format: {signature_format}")

    sanitized = _sanitize(signature)

    if fmt == SignatureFormat.RS:
        return sanitized.r + sanitized.s

    if sanitized.v is None:
        raise UnsupportedFormatError("Signature format rsv requires a recovery value")
    return sanitized.r + sanitized.s + sanitized.v
