"""Turnkey signing backend.

Keys live in a Turnkey wallet; signing happens remotely via the
``sign_raw_payload`` activity. Accounts are resolved per (curve, coin type):
an existing wallet account whose path carries the coin type is reused,
otherwise one is created at m/44'/{coin}'/0'/0/0.

Setup:
1. Create an API key pair for a Turnkey user with signing permissions
2. Set TURNKEY_BASE_URL, TURNKEY_API_PUBLIC_KEY, TURNKEY_API_PRIVATE_KEY,
   TURNKEY_ORGANIZATION_ID and TURNKEY_WALLET_ID

Every request is stamped (X-Stamp) with a P-256 ECDSA signature of the JSON
body made with the API private key.

Reference:
- https://docs.turnkey.com/developer-reference/api-overview/stamps
"""

import asyncio
import base64
import json
import logging
import time
from typing import Optional

import httpx
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
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
from signerkit.signing.utils import bip44_path, get_coin_type_from_derivation_path

logger = logging.getLogger(__name__)

STAMP_SCHEME = "SIGNATURE_SCHEME_TK_API_P256"
ADDRESS_FORMAT_COMPRESSED = "ADDRESS_FORMAT_COMPRESSED"
ACTIVITY_STATUS_COMPLETED = "ACTIVITY_STATUS_COMPLETED"
ACTIVITY_STATUSES_PENDING = ("ACTIVITY_STATUS_CREATED", "ACTIVITY_STATUS_PENDING")
ACTIVITY_POLL_ATTEMPTS = 10
ACTIVITY_POLL_INTERVAL = 1.0
PAGE_SIZE = 100

CURVES = {
    Curve.SECP256K1: "CURVE_SECP256K1",
    Curve.ED25519: "CURVE_ED25519",
}

HASH_FUNCTIONS = {
    HashFunction.SHA256: "HASH_FUNCTION_SHA256",
    HashFunction.KECCAK256: "HASH_FUNCTION_KECCAK256",
    HashFunction.NONE: "HASH_FUNCTION_NO_OP",
}
HASH_FUNCTION_NOT_APPLICABLE = "HASH_FUNCTION_NOT_APPLICABLE"


def load_api_key(private_key_hex: str) -> ec.EllipticCurvePrivateKey:
    """Load a hex-encoded P-256 API private key.

    Raises:
        ValueError: If the key is not a valid P-256 scalar
    """
    value = int(private_key_hex.strip().removeprefix("0x"), 16)
    return ec.derive_private_key(value, ec.SECP256R1())


class TurnkeyStamper:
    """Signs request bodies with a Turnkey API key."""

    def __init__(self, api_public_key: str, api_private_key: str):
        self.api_public_key = api_public_key
        self._private_key = load_api_key(api_private_key)

    def stamp(self, body: str) -> str:
        """Return the X-Stamp header value for a serialized body."""
        signature = self._private_key.sign(body.encode(), ec.ECDSA(hashes.SHA256()))
        stamp = {
            "publicKey": self.api_public_key,
            "scheme": STAMP_SCHEME,
            "signature": signature.hex(),
        }
        encoded = base64.urlsafe_b64encode(json.dumps(stamp).encode()).decode()
        return encoded.rstrip("=")


class TurnkeySigner(SignerBackend):
    """Turnkey custody signing backend.

    Supports secp256k1 and ed25519. The compressed account address (the
    public key) is cached per (curve, coin type) and used as ``signWith``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(SignerType.TURNKEY)
        if not self.is_config_valid(settings):
            raise ConfigurationError("Missing required TURNKEY_* environment variables")
        settings = settings or get_settings()

        self.organization_id = settings.turnkey_organization_id
        self.wallet_id = settings.turnkey_wallet_id
        self._stamper = TurnkeyStamper(settings.turnkey_api_public_key, settings.turnkey_api_private_key)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=settings.turnkey_base_url.rstrip("/"),
            timeout=settings.http_timeout,
        )
        self._pubkey_cache: dict[tuple[Curve, str], str] = {}

    @classmethod
    def is_config_valid(cls, settings: Optional[Settings] = None) -> bool:
        try:
            settings = settings or get_settings()
            if not settings.has_turnkey:
                return False
            load_api_key(settings.turnkey_api_private_key)
        except (ValidationError, ValueError):
            return False
        return True

    async def get_public_key(self, spec: SigningSpec) -> str:
        """Find or create the wallet account for spec and return its address."""
        cache_key = spec.cache_key
        if cache_key in self._pubkey_cache:
            return self._pubkey_cache[cache_key]

        curve = self._convert_curve(spec.curve)
        account = await self._find_account(curve, spec.coin_type_index)
        if account:
            address = account["address"]
        else:
            address = await self._create_account(curve, spec.coin_type)

        self._pubkey_cache[cache_key] = address
        return address

    async def sign(self, payload: bytes, spec: SigningSpec) -> RawSignature:
        """Sign a raw payload with the account for spec."""
        hash_function = self._convert_hash_function(spec.hash_function, spec.curve)
        sign_with = await self.get_public_key(spec)

        activity = await self._submit(
            "sign_raw_payload",
            "ACTIVITY_TYPE_SIGN_RAW_PAYLOAD_V2",
            {
                "signWith": sign_with,
                "payload": payload.hex(),
                "encoding": "PAYLOAD_ENCODING_HEXADECIMAL",
                "hashFunction": hash_function,
            },
        )
        result = (activity.get("result") or {}).get("signRawPayloadResult") or {}
        if not result.get("r") or not result.get("s"):
            raise RemoteSigningFailed("Turnkey returned no signature")

        return RawSignature(r=result["r"], s=result["s"], v=result.get("v"))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # === Internals ===

    def _convert_curve(self, curve: Curve) -> str:
        try:
            return CURVES[curve]
        except KeyError:
            raise UnsupportedCurveError(curve)

    def _convert_hash_function(self, hash_function: HashFunction, curve: Curve) -> str:
        """Map a hash function; ed25519 is always hashed by the signature scheme itself."""
        self._convert_curve(curve)
        if curve == Curve.ED25519:
            return HASH_FUNCTION_NOT_APPLICABLE
        try:
            return HASH_FUNCTIONS[hash_function]
        except KeyError:
            raise UnsupportedHashError(hash_function, curve)

    async def _find_account(self, curve: str, coin_type: int) -> Optional[dict]:
        """Scan the wallet's accounts (paginated) for a matching account."""
        after: Optional[str] = None
        while True:
            pagination = {"limit": str(PAGE_SIZE)}
            if after:
                pagination["after"] = after

            data = await self._post(
                "/public/v1/query/list_wallet_accounts",
                {
                    "organizationId": self.organization_id,
                    "walletId": self.wallet_id,
                    "paginationOptions": pagination,
                },
            )
            accounts = data.get("accounts") or []

            for account in accounts:
                if (
                    account.get("curve") == curve
                    and get_coin_type_from_derivation_path(account.get("path", "")) == coin_type
                    and account.get("addressFormat") == ADDRESS_FORMAT_COMPRESSED
                ):
                    return account

            if len(accounts) < PAGE_SIZE:
                return None
            after = accounts[-1].get("walletAccountId")
            if not after:
                return None

    async def _create_account(self, curve: str, coin_type: str) -> str:
        path = bip44_path(coin_type)
        activity = await self._submit(
            "create_wallet_accounts",
            "ACTIVITY_TYPE_CREATE_WALLET_ACCOUNTS",
            {
                "walletId": self.wallet_id,
                "accounts": [
                    {
                        "curve": curve,
                        "path": path,
                        "pathFormat": "PATH_FORMAT_BIP32",
                        "addressFormat": ADDRESS_FORMAT_COMPRESSED,
                    }
                ],
            },
        )
        result = (activity.get("result") or {}).get("createWalletAccountsResult") or {}
        addresses = result.get("addresses") or []
        if not addresses:
            raise RemoteServiceError("Turnkey did not return the created account address")

        logger.info(f"Created Turnkey wallet account {curve} at {path}")
        return addresses[0]

    async def _submit(self, endpoint: str, activity_type: str, parameters: dict) -> dict:
        """Submit an activity and return it once completed.

        Created or pending activities are polled through get_activity, up to
        ACTIVITY_POLL_ATTEMPTS times. Any other non-completed status is a
        failure: RemoteSigningFailed for signing activities, RemoteServiceError
        otherwise.
        """
        data = await self._post(
            f"/public/v1/submit/{endpoint}",
            {
                "type": activity_type,
                "timestampMs": str(int(time.time() * 1000)),
                "organizationId": self.organization_id,
                "parameters": parameters,
            },
        )
        activity = data.get("activity") or {}

        for _ in range(ACTIVITY_POLL_ATTEMPTS):
            if activity.get("status") not in ACTIVITY_STATUSES_PENDING:
                break
            await asyncio.sleep(ACTIVITY_POLL_INTERVAL)
            activity = await self._get_activity(activity.get("id"))

        status = activity.get("status", "UNKNOWN")
        if status != ACTIVITY_STATUS_COMPLETED:
            failure = activity.get("failure") or {}
            reason = failure.get("message") or status
            logger.error(f"Turnkey activity {activity_type} not completed: {reason}")
            if activity_type.startswith("ACTIVITY_TYPE_SIGN_"):
                raise RemoteSigningFailed(reason)
            raise RemoteServiceError(f"Turnkey activity {activity_type} not completed: {reason}")
        return activity

    async def _get_activity(self, activity_id: Optional[str]) -> dict:
        if not activity_id:
            raise RemoteServiceError("Turnkey returned a pending activity without an id")
        data = await self._post(
            "/public/v1/query/get_activity",
            {"organizationId": self.organization_id, "activityId": activity_id},
        )
        return data.get("activity") or {}

    async def _post(self, path: str, body: dict) -> dict:
        content = json.dumps(body)
        headers = {
            "Content-Type": "application/json",
            "X-Stamp": self._stamper.stamp(content),
        }
        try:
            response = await self._client.post(path, content=content, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Turnkey request {path} failed: {e}")
            raise RemoteServiceError(f"Turnkey request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"Turnkey API error {response.status_code} on {path}")
            raise RemoteServiceError(
                f"Turnkey API error: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json()
