"""Transaction signing services.

Provides interchangeable signing backends:
- LocalSigner: Seed phrase derivation (secp256k1, ed25519, stark)
- TurnkeySigner: Turnkey custody API
- DfnsSigner: Dfns custody API
- SodotSigner: Sodot 2-of-3 threshold MPC
"""

from signerkit.signing.base import (
    Curve,
    HashFunction,
    RawSignature,
    SignatureFormat,
    SignerBackend,
    SignerType,
    SigningError,
    SigningSpec,
)
from signerkit.signing.factory import SignerSession, get_session, reset_session
from signerkit.signing.utils import extract_signature

__all__ = [
    "Curve",
    "HashFunction",
    "RawSignature",
    "SignatureFormat",
    "SignerBackend",
    "SignerType",
    "SigningError",
    "SigningSpec",
    "SignerSession",
    "extract_signature",
    "get_session",
    "reset_session",
]
