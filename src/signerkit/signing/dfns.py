"""Dfns signing backend.

Keys live in Dfns wallets created on the curve-level networks (KeyECDSA,
KeyEdDSA, KeyECDSAStark). Signing happens remotely via the wallet
signatures endpoint.

Setup:
1. Create a service account and register its credential key
2. Set DFNS_CRED_ID, DFNS_PRIVATE_KEY (PEM), DFNS_APP_ID, DFNS_AUTH_TOKEN
   and DFNS_API_URL

Mutating requests (wallet creation, signature generation) require a user
action token obtained by signing a server challenge with the credential key.

Reference:
- https://docs.dfns.co/d/api-docs/authentication/user-action-signing
"""

import base64
import json
import logging
from typing import Optional

import httpx
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from pydantic import ValidationError

from signerkit.config import Settings, get_settings
from signerkit.signing.base import (
    ConfigurationError,
    Curve,
    HashFunction,
    RawSignature,
    RemoteServiceError,
    RemoteSigningFailed,
    SignerBackend,
    SignerType,
    SigningSpec,
    UnsupportedCurveError,
    UnsupportedHashError,
)
from signerkit.signing.utils import format_recovery_id, keccak256, sha256, strip_hex_prefix

logger = logging.getLogger(__name__)

# Stark hashes must fit in 251 bits
STARK_HASH_MAX_VALUE = 1 << 251

NETWORKS = {
    Curve.SECP256K1: "KeyECDSA",
    Curve.ED25519: "KeyEdDSA",
    Curve.STARK: "KeyECDSAStark",
}


def load_credential_key(pem: str):
    """Load the credential private key from PEM (literal "\\n" escapes allowed).

    Raises:
        ValueError: If the key cannot be parsed
    """
    data = pem.replace("\\n", "\n").strip().encode()
    return serialization.load_pem_private_key(data, password=None)


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def format_stark_public_key(public_key: str) -> str:
    """Canonical Stark key: drop 0x and zero padding, then re-prefix."""
    stripped = strip_hex_prefix(public_key).lstrip("0")
    return f"0x{stripped}"


class DfnsCredentialSigner:
    """Signs user action challenges with the service account credential."""

    def __init__(self, cred_id: str, private_key_pem: str, app_origin: str):
        self.cred_id = cred_id
        self.app_origin = app_origin
        self._key = load_credential_key(private_key_pem)

    def sign_challenge(self, challenge: str) -> dict:
        """Build the credential assertion for a challenge."""
        client_data = json.dumps(
            {
                "type": "key.get",
                "challenge": challenge,
                "origin": self.app_origin,
                "crossOrigin": False,
            }
        ).encode()

        if isinstance(self._key, ec.EllipticCurvePrivateKey):
            signature = self._key.sign(client_data, ec.ECDSA(hashes.SHA256()))
        elif isinstance(self._key, ed25519.Ed25519PrivateKey):
            signature = self._key.sign(client_data)
        elif isinstance(self._key, rsa.RSAPrivateKey):
            signature = self._key.sign(client_data, padding.PKCS1v15(), hashes.SHA256())
        else:
            raise ConfigurationError(f"Unsupported Dfns credential key type: {type(self._key).__name__}")

        return {
            "credId": self.cred_id,
            "clientData": b64url(client_data),
            "signature": b64url(signature),
        }


class DfnsSigner(SignerBackend):
    """Dfns custody signing backend.

    Supports secp256k1, ed25519 and stark. One wallet per curve network is
    reused (or created); wallet IDs and public keys are cached per
    (curve, coin type).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(SignerType.DFNS)
        if not self.is_config_valid(settings):
            raise ConfigurationError("Missing required DFNS_* environment variables")
        settings = settings or get_settings()

        self._credential = DfnsCredentialSigner(
            settings.dfns_cred_id, settings.dfns_private_key, settings.dfns_app_origin
        )
        self._headers = {
            "X-DFNS-APPID": settings.dfns_app_id,
            "Authorization": f"Bearer {settings.dfns_auth_token}",
        }
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=settings.dfns_api_url.rstrip("/"),
            timeout=settings.http_timeout,
        )
        self._wallet_ids: dict[tuple[Curve, str], str] = {}
        self._pubkeys: dict[tuple[Curve, str], str] = {}

    @classmethod
    def is_config_valid(cls, settings: Optional[Settings] = None) -> bool:
        try:
            settings = settings or get_settings()
            if not settings.has_dfns:
                return False
            load_credential_key(settings.dfns_private_key)
        except (ValidationError, ValueError, TypeError, UnsupportedAlgorithm):
            return False
        return True

    async def get_public_key(self, spec: SigningSpec) -> str:
        cache_key = spec.cache_key
        if cache_key in self._pubkeys:
            return self._pubkeys[cache_key]

        wallet_id = await self._get_or_create_wallet(spec)
        wallet = await self._request("GET", f"/wallets/{wallet_id}")
        public_key = (wallet.get("signingKey") or {}).get("publicKey")
        if not public_key:
            raise RemoteServiceError(f"Dfns wallet {wallet_id} has no signing key")

        if spec.curve == Curve.STARK:
            public_key = format_stark_public_key(public_key)
        self._pubkeys[cache_key] = public_key
        return public_key

    async def sign(self, payload: bytes, spec: SigningSpec) -> RawSignature:
        body = self._build_signature_request(payload, spec)
        wallet_id = await self._get_or_create_wallet(spec)

        response = await self._request("POST", f"/wallets/{wallet_id}/signatures", body, user_action=True)
        if response.get("status") != "Signed":
            reason = response.get("reason") or response.get("status") or "unknown"
            logger.error(f"Dfns signature not produced for wallet {wallet_id}: {reason}")
            raise RemoteSigningFailed(reason)

        signature = response.get("signature") or {}
        if not signature.get("r") or not signature.get("s"):
            raise RemoteSigningFailed("Dfns returned no signature")

        recid = signature.get("recid")
        return RawSignature(
            r=signature["r"],
            s=signature["s"],
            v=format_recovery_id(recid) if recid is not None else None,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # === Internals ===

    def _convert_curve(self, curve: Curve) -> str:
        try:
            return NETWORKS[curve]
        except KeyError:
            raise UnsupportedCurveError(curve)

    def _build_signature_request(self, payload: bytes, spec: SigningSpec) -> dict:
        """Hash the payload per spec and build the signature request body.

        stark payloads are submitted as-is (range checked), ed25519 payloads
        as a message, secp256k1 payloads as a sha256 / keccak256 hash.
        """
        self._convert_curve(spec.curve)
        hash_function = spec.hash_function

        if hash_function == HashFunction.SHA512_256:
            raise UnsupportedHashError(hash_function, spec.curve)

        if spec.curve == Curve.STARK:
            if int.from_bytes(payload, "big") >= STARK_HASH_MAX_VALUE:
                raise UnsupportedHashError(
                    hash_function, spec.curve, detail=f"msgHash must be < 0x{STARK_HASH_MAX_VALUE:x}"
                )
            return {"kind": "Hash", "hash": f"0x{payload.hex()}"}

        if spec.curve == Curve.ED25519:
            return {"kind": "Message", "message": f"0x{payload.hex()}"}

        if hash_function == HashFunction.SHA256:
            digest = sha256(payload)
        elif hash_function == HashFunction.KECCAK256:
            digest = keccak256(payload)
        else:
            raise UnsupportedHashError(hash_function, spec.curve)
        return {"kind": "Hash", "hash": f"0x{digest.hex()}"}

    async def _get_or_create_wallet(self, spec: SigningSpec) -> str:
        cache_key = spec.cache_key
        if cache_key in self._wallet_ids:
            return self._wallet_ids[cache_key]

        network = self._convert_curve(spec.curve)
        wallet_id = await self._find_wallet(network)
        if wallet_id is None:
            created = await self._request("POST", "/wallets", {"network": network}, user_action=True)
            wallet_id = created["id"]
            logger.info(f"Created Dfns wallet on {network}")

        self._wallet_ids[cache_key] = wallet_id
        return wallet_id

    async def _find_wallet(self, network: str) -> Optional[str]:
        """Scan wallets page by page for one on the given network."""
        page_token: Optional[str] = None
        while True:
            params = {"paginationToken": page_token} if page_token else None
            data = await self._request("GET", "/wallets", params=params)
            for wallet in data.get("items") or []:
                if wallet.get("network") == network:
                    return wallet["id"]
            page_token = data.get("nextPageToken")
            if not page_token:
                return None

    async def _get_user_action(self, method: str, path: str, content: str) -> str:
        """Run the challenge / assertion flow for a mutating request."""
        challenge = await self._request(
            "POST",
            "/auth/action/init",
            {
                "userActionPayload": content,
                "userActionHttpMethod": method,
                "userActionHttpPath": path,
                "userActionServerKind": "Api",
            },
        )
        assertion = self._credential.sign_challenge(challenge["challenge"])
        action = await self._request(
            "POST",
            "/auth/action",
            {
                "challengeIdentifier": challenge["challengeIdentifier"],
                "firstFactor": {"kind": "Key", "credentialAssertion": assertion},
            },
        )
        return action["userAction"]

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
        params: Optional[dict] = None,
        user_action: bool = False,
    ) -> dict:
        headers = dict(self._headers)
        content = None
        if body is not None:
            content = json.dumps(body)
            headers["Content-Type"] = "application/json"
        if user_action:
            headers["X-DFNS-USERACTION"] = await self._get_user_action(method, path, content or "")

        try:
            response = await self._client.request(method, path, content=content, params=params, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Dfns request {method} {path} failed: {e}")
            raise RemoteServiceError(f"Dfns request failed: {e}") from e

        if response.status_code >= 300:
            logger.error(f"Dfns API error {response.status_code} on {method} {path}")
            raise RemoteServiceError(
                f"Dfns API error: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json()
