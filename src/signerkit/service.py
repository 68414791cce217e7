"""Wallet service for the request-handling layer.

Translates raw caller input (signer type strings, spec dicts, hex payloads)
into calls on the process-wide signer session, and results back into plain
strings.

SECURITY PRINCIPLES:
1. Only one wallet connection per session
2. Payloads are signed as given; validating the transaction intent is the
   caller's job
"""

import logging
from typing import Any, Optional

from pydantic import ValidationError

from signerkit.signing.base import InvalidSpecError, SignerType, SigningError, SigningSpec
from signerkit.signing.factory import SignerSession, get_session

logger = logging.getLogger(__name__)


def parse_signer_type(value: str) -> SignerType:
    try:
        return SignerType(value.strip().upper())
    except ValueError:
        raise InvalidSpecError(f"{value} is not a supported signer")


def parse_spec(data: Any) -> SigningSpec:
    """Validate a SigningSpec-shaped mapping."""
    if isinstance(data, SigningSpec):
        return data
    try:
        return SigningSpec.model_validate(data)
    except ValidationError as e:
        raise InvalidSpecError(f"Invalid signer spec: {e}") from e


class WalletService:
    """Service exposing list / connect / get key / sign to callers."""

    def __init__(self, session: Optional[SignerSession] = None):
        self.session = session or get_session()

    def get_wallet_status(self) -> str:
        if not self.session.is_connected():
            return "No wallet connected"
        return f"Wallet is connected using {self.session.signer_type.value}"

    def list_available_signers(self) -> list[str]:
        return [signer_type.value for signer_type in self.session.available_backends()]

    def connect_wallet(self, signer_type: str) -> str:
        """Connect a wallet; only one signer type can ever be connected."""
        kind = parse_signer_type(signer_type)
        self.session.connect(kind)
        logger.info(f"Wallet connected using {kind.value}")
        return f"Wallet connected using {kind.value}"

    async def get_pubkey(self, spec: Any) -> str:
        signer = self._require_signer()
        return await signer.get_public_key(parse_spec(spec))

    async def sign_transaction(self, payload: str, spec: Any) -> str:
        """Sign a hex-encoded payload with the connected wallet."""
        signer = self._require_signer()
        signing_spec = parse_spec(spec)
        signature = await signer.sign_transaction(payload, signing_spec)
        logger.info(
            f"Signed payload using the connected {self.session.signer_type.value} signer "
            f"({signing_spec.curve.value}, coin type {signing_spec.coin_type})"
        )
        return signature

    def _require_signer(self):
        signer = self.session.current_backend()
        if signer is None:
            raise SigningError("No wallet is connected")
        return signer
