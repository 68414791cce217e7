"""Base interfaces for transaction signing.

Signing flow:
1. Caller connects one backend for the lifetime of the process
2. Caller describes the key with a SigningSpec (curve, hash, format, coin type)
3. Backend resolves (or creates) the key for that spec and signs the payload
4. Backend returns a RawSignature (r, s, optional v)
5. The shared extraction utility serializes it in the requested format
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from signerkit.config import Settings

logger = logging.getLogger(__name__)


class SignerType(str, Enum):
    """Type of signing backend."""
    LOCAL = "LOCAL"       # Seed phrase in memory
    TURNKEY = "TURNKEY"   # Turnkey custody API
    DFNS = "DFNS"         # Dfns custody API
    SODOT = "SODOT"       # Sodot threshold MPC vertices


class Curve(str, Enum):
    """Elliptic curve family."""
    SECP256K1 = "secp256k1"
    ED25519 = "ed25519"
    STARK = "stark"


class HashFunction(str, Enum):
    """Digest applied to a payload before signing."""
    SHA256 = "sha256"
    KECCAK256 = "keccak256"
    SHA512_256 = "sha512_256"
    PEDERSEN = "pedersen"
    NONE = "none"


class SignatureFormat(str, Enum):
    """Serialization of a signature."""
    RS = "rs"
    RSV = "rsv"


class SigningSpec(BaseModel):
    """Provider-agnostic description of the key and algorithm to sign with.

    Accepts both the wire field names (``hashFunction``, ``signatureFormat``,
    ``coinType``) and the Python attribute names.

    Attributes:
        curve: Elliptic curve family
        hash_function: Digest applied before signing
        signature_format: Requested output serialization
        coin_type: BIP44 coin type as a decimal string
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    curve: Curve
    hash_function: HashFunction = Field(..., alias="hashFunction")
    signature_format: SignatureFormat = Field(..., alias="signatureFormat")
    coin_type: str = Field(..., alias="coinType")

    @field_validator("coin_type", mode="before")
    @classmethod
    def _coin_type_is_integer(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str) or not (value.strip().isascii() and value.strip().isdigit()):
            raise ValueError(f"coinType must be a non-negative integer string, got {value!r}")
        return value.strip()

    @property
    def coin_type_index(self) -> int:
        return int(self.coin_type)

    @property
    def cache_key(self) -> tuple[Curve, str]:
        """Key under which derived keys / remote accounts are memoized."""
        return (self.curve, self.coin_type)


@dataclass(frozen=True)
class RawSignature:
    """Signature components as hex strings without a 0x prefix.

    Attributes:
        r: R component (hex)
        s: S component (hex)
        v: Recovery value (hex), when the scheme has one
    """
    r: str
    s: str
    v: Optional[str] = None


class SignerBackend(ABC):
    """Abstract base class for signing backends.

    Every backend exposes the same two operations. Keys are resolved per
    (curve, coin type) and cached for the lifetime of the instance.
    """

    def __init__(self, signer_type: SignerType):
        self.signer_type = signer_type

    @classmethod
    @abstractmethod
    def is_config_valid(cls, settings: Optional[Settings] = None) -> bool:
        """Return True when the configuration this backend needs is present.

        Must never raise.
        """
        pass

    @abstractmethod
    async def get_public_key(self, spec: SigningSpec) -> str:
        """Get the public key for a signing spec.

        Args:
            spec: Signing specification

        Returns:
            Public key as hex string
        """
        pass

    @abstractmethod
    async def sign(self, payload: bytes, spec: SigningSpec) -> RawSignature:
        """Sign a payload.

        Args:
            payload: Raw payload bytes (hashed according to spec.hash_function)
            spec: Signing specification

        Returns:
            RawSignature with hex components
        """
        pass

    async def sign_transaction(self, payload_hex: str, spec: SigningSpec) -> str:
        """Sign a hex-encoded payload and serialize the signature per spec."""
        from signerkit.signing.utils import extract_signature, hex_to_bytes

        signature = await self.sign(hex_to_bytes(payload_hex), spec)
        return extract_signature(spec.signature_format, signature)

    async def close(self) -> None:
        """Release network resources held by the backend."""
        return None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(type={self.signer_type.value})"


class SigningError(Exception):
    """Base exception for all signing failures."""
    pass


class ConfigurationError(SigningError):
    """Backend configuration is missing or malformed."""
    pass


class SignerConflictError(SigningError):
    """A different backend is already connected in this process."""

    def __init__(self, connected: SignerType):
        self.connected = connected
        super().__init__(f"Signer was already instantiated as {connected.value}")


class InvalidSpecError(SigningError):
    """Request input could not be parsed into a signing spec or payload."""
    pass


class UnsupportedCurveError(SigningError):
    """The backend does not support the requested curve."""

    def __init__(self, curve):
        self.curve = curve
        super().__init__(f"Unsupported curve: {getattr(curve, 'value', curve)}")


class UnsupportedHashError(SigningError):
    """The hash function is not supported for the requested curve."""

    def __init__(self, hash_function, curve=None, detail: Optional[str] = None):
        self.hash_function = hash_function
        self.curve = curve
        message = f"Unsupported hash function: {getattr(hash_function, 'value', hash_function)}"
        if curve is not None:
            message += f" for curve {getattr(curve, 'value', curve)}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class UnsupportedFormatError(SigningError):
    """The signature format is unknown or cannot be produced."""
    pass


class RemoteServiceError(SigningError):
    """A custody API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class RemoteSigningFailed(SigningError):
    """The custody service refused or failed to produce a signature."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to sign: {reason}")


class MpcError(SigningError):
    """Base exception for threshold-signing ceremonies."""
    pass


class MpcTransportError(MpcError):
    """A vertex was unreachable or rejected room creation / initialization."""
    pass


class MpcKeygenFailed(MpcError):
    """Distributed key generation did not complete on every vertex."""
    pass


class MpcSigningFailed(MpcError):
    """No usable signature was produced."""
    pass
