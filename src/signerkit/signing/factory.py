"""Signer session.

Holds the one signing backend connected in this process.

SECURITY NOTE:
- Only one backend may be connected per process, and it can never be swapped
- connect() with the already-connected type is a no-op; any other type raises
  SignerConflictError
- This prevents a conversational caller from signing with an unintended
  wallet mid-session
"""

import logging
from typing import Optional

from signerkit.config import Settings
from signerkit.signing.base import SignerBackend, SignerConflictError, SignerType
from signerkit.signing.dfns import DfnsSigner
from signerkit.signing.local import LocalSigner
from signerkit.signing.sodot import SodotSigner
from signerkit.signing.turnkey import TurnkeySigner

logger = logging.getLogger(__name__)

# Signer type to backend class mapping
SIGNER_CLASSES: dict[SignerType, type[SignerBackend]] = {
    SignerType.SODOT: SodotSigner,
    SignerType.TURNKEY: TurnkeySigner,
    SignerType.DFNS: DfnsSigner,
    SignerType.LOCAL: LocalSigner,
}


class SignerSession:
    """Process-scoped signer connection.

    Created empty; the first connect() instantiates the backend, which then
    lives until the process exits.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings
        self._signer: Optional[SignerBackend] = None
        self._signer_type: Optional[SignerType] = None

    @property
    def signer(self) -> Optional[SignerBackend]:
        """The connected backend, or None."""
        return self._signer

    @property
    def signer_type(self) -> Optional[SignerType]:
        return self._signer_type

    def connect(self, signer_type: SignerType) -> SignerBackend:
        """Connect a backend.

        Args:
            signer_type: Backend to connect

        Returns:
            The connected backend

        Raises:
            SignerConflictError: If a different backend is already connected
            ConfigurationError: If the backend's configuration is incomplete
        """
        signer_type = SignerType(signer_type)

        if self._signer is not None:
            if self._signer_type != signer_type:
                raise SignerConflictError(self._signer_type)
            return self._signer

        logger.info(f"Initializing {signer_type.value} signer")
        signer_class = SIGNER_CLASSES[signer_type]
        self._signer = signer_class(self._settings)
        self._signer_type = signer_type
        return self._signer

    def current_backend(self) -> Optional[SignerBackend]:
        return self._signer

    def is_connected(self, signer_type: Optional[SignerType] = None) -> bool:
        """Check whether a backend (optionally of a given type) is connected."""
        if self._signer is None:
            return False
        return signer_type is None or self._signer_type == SignerType(signer_type)

    def available_backends(self) -> list[SignerType]:
        """Signer types whose configuration is complete."""
        return [
            signer_type
            for signer_type, signer_class in SIGNER_CLASSES.items()
            if signer_class.is_config_valid(self._settings)
        ]


_session: Optional[SignerSession] = None


def get_session() -> SignerSession:
    """Get the process-wide signer session."""
    global _session

    if _session is None:
        _session = SignerSession()
    return _session


def reset_session():
    """Reset the signer session (for testing)."""
    global _session
    _session = None
