"""Sodot threshold signing backend.

Coordinates a 2-of-3 MPC ceremony across three Sodot vertices. The private
key never exists in one place: each vertex holds a share and the vertices
exchange protocol messages among themselves inside a room.

Ceremonies:
- Keygen (once per curve family): vertex 0 creates a room, every vertex
  prepares a keygen handle, then every vertex runs keygen against the
  handles of the other two. All three must succeed.
- Sign (every call): vertex 0 creates a fresh room and every vertex signs
  with its key share. The first vertex's result is the signature.
- Public key: derived by vertex 0 alone.

Setup:
- SODOT_VERTEX_URL_{0,1,2} and SODOT_VERTEX_API_KEY_{0,1,2}
- Optionally SODOT_EXISTING_ECDSA_KEY_IDS / SODOT_EXISTING_ED25519_KEY_IDS
  (comma-separated, one key ID per vertex) to skip keygen
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx
from pydantic import ValidationError

from signerkit.config import Settings, get_settings
from signerkit.signing.base import (
    ConfigurationError,
    Curve,
    HashFunction,
    MpcKeygenFailed,
    MpcSigningFailed,
    MpcTransportError,
    RawSignature,
    SignerBackend,
    SignerType,
    SigningSpec,
    UnsupportedCurveError,
    UnsupportedHashError,
)
from signerkit.signing.utils import format_recovery_id, strip_hex_prefix

logger = logging.getLogger(__name__)

NUM_PARTIES = 3
THRESHOLD = 2


class SodotCurve(str, Enum):
    """Vertex API curve families."""
    ECDSA = "ecdsa"
    ED25519 = "ed25519"


CURVES = {
    Curve.SECP256K1: SodotCurve.ECDSA,
    Curve.ED25519: SodotCurve.ED25519,
}

HASH_METHODS = {
    HashFunction.SHA256: "sha256",
    HashFunction.KECCAK256: "keccak256",
    HashFunction.NONE: "none",
}


@dataclass(frozen=True)
class Vertex:
    """A cosigning MPC party."""
    index: int
    url: str
    api_key: str


def parse_key_ids(value: Optional[str]) -> Optional[list[str]]:
    """Split a comma-separated key ID list; None when unset."""
    if not value:
        return None
    return [key_id.strip() for key_id in value.split(",") if key_id.strip()]


def bip44_derivation(coin_type: int) -> list[int]:
    return [44, coin_type, 0, 0, 0]


class SodotSigner(SignerBackend):
    """Sodot MPC signing backend (n=3, t=2).

    Key IDs are cached per curve family for the lifetime of the instance.
    Nothing is retried: every vertex call is attempted once.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(SignerType.SODOT)
        if not self.is_config_valid(settings):
            raise ConfigurationError("Missing required SODOT_* environment variables")
        settings = settings or get_settings()

        self.n = NUM_PARTIES
        self.t = THRESHOLD
        self.vertices = [
            Vertex(index=i, url=url.rstrip("/"), api_key=api_key)
            for i, (url, api_key) in enumerate(settings.sodot_vertices())
        ]
        self._existing_key_ids = {
            SodotCurve.ECDSA: parse_key_ids(settings.sodot_existing_ecdsa_key_ids),
            SodotCurve.ED25519: parse_key_ids(settings.sodot_existing_ed25519_key_ids),
        }
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.http_timeout)

        self._key_cache: dict[SodotCurve, list[str]] = {}
        self._pubkey_cache: dict[tuple[Curve, str], str] = {}

    @classmethod
    def is_config_valid(cls, settings: Optional[Settings] = None) -> bool:
        try:
            settings = settings or get_settings()
        except ValidationError:
            return False
        if not settings.has_sodot:
            return False
        for value in (settings.sodot_existing_ecdsa_key_ids, settings.sodot_existing_ed25519_key_ids):
            key_ids = parse_key_ids(value)
            if key_ids is not None and len(key_ids) != NUM_PARTIES:
                return False
        return True

    async def get_public_key(self, spec: SigningSpec) -> str:
        """Derive the public key for spec from vertex 0."""
        cache_key = spec.cache_key
        if cache_key in self._pubkey_cache:
            return self._pubkey_cache[cache_key]

        curve = self._convert_curve(spec.curve)
        key_ids = await self._get_or_generate_key_ids(curve)
        data = await self._call(
            self.vertices[0],
            "POST",
            f"/{curve.value}/derive-pubkey",
            {"key_id": key_ids[0], "derivation_path": bip44_derivation(spec.coin_type_index)},
        )
        pubkey = data.get("pubkey") or data.get("compressed")
        if not pubkey:
            raise MpcTransportError("Vertex 0 returned no public key")

        self._pubkey_cache[cache_key] = pubkey
        return pubkey

    async def sign(self, payload: bytes, spec: SigningSpec) -> RawSignature:
        """Run a signing ceremony and return vertex 0's signature."""
        curve = self._convert_curve(spec.curve)
        hash_method = self._convert_hash_function(spec.hash_function, spec.curve)
        key_ids = await self._get_or_generate_key_ids(curve)

        room_uuid = await self._create_room()
        derivation_path = bip44_derivation(spec.coin_type_index)
        signatures = await asyncio.gather(
            *(
                self._sign_with_vertex(vertex, room_uuid, key_id, payload, derivation_path, curve, hash_method)
                for vertex, key_id in zip(self.vertices, key_ids)
            )
        )

        signature = signatures[0]
        if not signature:
            raise MpcSigningFailed("Failed to sign message with vertex 0")
        return self._parse_signature(signature)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # === Conversions ===

    def _convert_curve(self, curve: Curve) -> SodotCurve:
        try:
            return CURVES[curve]
        except KeyError:
            raise UnsupportedCurveError(curve)

    def _convert_hash_function(self, hash_function: HashFunction, curve: Curve) -> Optional[str]:
        """Hash hint for ECDSA signing; EdDSA takes none."""
        if curve == Curve.ED25519:
            return None
        try:
            return HASH_METHODS[hash_function]
        except KeyError:
            raise UnsupportedHashError(hash_function, curve)

    def _parse_signature(self, data: dict) -> RawSignature:
        """ECDSA vertices return r/s/v; EdDSA vertices one 64-byte signature."""
        if "signature" in data:
            signature = strip_hex_prefix(data["signature"])
            return RawSignature(r=signature[:64], s=signature[64:])
        v = data.get("v")
        return RawSignature(
            r=data["r"],
            s=data["s"],
            v=format_recovery_id(v) if isinstance(v, int) else v,
        )

    # === Keygen ===

    async def _get_or_generate_key_ids(self, curve: SodotCurve) -> list[str]:
        if curve in self._key_cache:
            return self._key_cache[curve]

        key_ids = self._existing_key_ids.get(curve)
        if key_ids:
            logger.info(f"Using pre-provisioned {curve.value} key IDs")
        else:
            key_ids = await self._keygen(curve)

        self._key_cache[curve] = key_ids
        return key_ids

    async def _keygen(self, curve: SodotCurve) -> list[str]:
        """Run distributed keygen across all vertices.

        Returns:
            Key IDs indexed by vertex

        Raises:
            MpcTransportError: Room creation or keygen init failed
            MpcKeygenFailed: Any vertex failed the keygen round
        """
        logger.info(f"Starting {curve.value} keygen across {self.n} vertices (t={self.t})")
        room_uuid = await self._create_room()

        init_results = await asyncio.gather(
            *(self._call(vertex, "GET", f"/{curve.value}/create") for vertex in self.vertices),
            return_exceptions=True,
        )
        for vertex, result in zip(self.vertices, init_results):
            if isinstance(result, BaseException):
                raise MpcTransportError(f"Vertex {vertex.index} keygen init failed: {result}") from result

        try:
            keygen_ids = [result["keygen_id"] for result in init_results]
            key_ids = [result["key_id"] for result in init_results]
        except (KeyError, TypeError) as e:
            raise MpcTransportError(f"Keygen init response is missing {e}") from e

        keygen_results = await asyncio.gather(
            *(
                self._keygen_with_vertex(
                    vertex,
                    room_uuid,
                    key_ids[i],
                    [keygen_id for j, keygen_id in enumerate(keygen_ids) if j != i],
                    curve,
                )
                for i, vertex in enumerate(self.vertices)
            ),
            return_exceptions=True,
        )
        failures = [
            f"vertex {vertex.index}: {result}"
            for vertex, result in zip(self.vertices, keygen_results)
            if isinstance(result, BaseException)
        ]
        if failures:
            logger.error(f"{curve.value} keygen failed on {len(failures)} vertices")
            raise MpcKeygenFailed(f"Keygen failed ({'; '.join(failures)})")

        logger.info(f"Completed {curve.value} keygen")
        return key_ids

    async def _keygen_with_vertex(
        self,
        vertex: Vertex,
        room_uuid: str,
        key_id: str,
        others_keygen_ids: list[str],
        curve: SodotCurve,
    ) -> None:
        try:
            response = await self._send(
                vertex,
                "POST",
                f"/{curve.value}/keygen",
                {
                    "room_uuid": room_uuid,
                    "key_id": key_id,
                    "num_parties": self.n,
                    "threshold": self.t,
                    "others_keygen_ids": others_keygen_ids,
                },
            )
        except httpx.HTTPError as e:
            raise MpcKeygenFailed(f"Vertex {vertex.index} keygen request failed: {e}") from e

        if response.status_code != 200:
            raise MpcKeygenFailed(f"Vertex {vertex.index} keygen failed: {response.text}")

    # === Signing ===

    async def _sign_with_vertex(
        self,
        vertex: Vertex,
        room_uuid: str,
        key_id: str,
        payload: bytes,
        derivation_path: list[int],
        curve: SodotCurve,
        hash_method: Optional[str],
    ) -> Optional[dict]:
        """Sign with one vertex; failures are logged and yield None."""
        body = {
            "room_uuid": room_uuid,
            "key_id": key_id,
            "msg": payload.hex(),
            "derivation_path": derivation_path,
        }
        if curve == SodotCurve.ECDSA and hash_method:
            body["hash_algo"] = hash_method

        try:
            response = await self._send(vertex, "POST", f"/{curve.value}/sign", body)
        except httpx.HTTPError as e:
            logger.warning(f"Sign with vertex {vertex.index} failed: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"Sign with vertex {vertex.index} failed: {response.text}")
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning(f"Sign with vertex {vertex.index} returned a malformed response")
            return None

    # === Transport ===

    async def _create_room(self) -> str:
        data = await self._call(self.vertices[0], "POST", "/create-room", {"room_size": self.n})
        room_uuid = data.get("room_uuid")
        if not room_uuid:
            raise MpcTransportError("Vertex 0 returned no room_uuid")
        return room_uuid

    async def _send(self, vertex: Vertex, method: str, path: str, body: Optional[dict] = None) -> httpx.Response:
        return await self._client.request(
            method,
            f"{vertex.url}{path}",
            json=body,
            headers={"Authorization": vertex.api_key},
        )

    async def _call(self, vertex: Vertex, method: str, path: str, body: Optional[dict] = None) -> dict:
        """Call a vertex and require a 200 JSON response."""
        try:
            response = await self._send(vertex, method, path, body)
        except httpx.HTTPError as e:
            raise MpcTransportError(f"Vertex {vertex.index} {path} failed: {e}") from e

        if response.status_code != 200:
            raise MpcTransportError(f"Vertex {vertex.index} {path} failed: {response.status_code} {response.text}")
        try:
            return response.json()
        except ValueError as e:
            raise MpcTransportError(f"Vertex {vertex.index} {path} returned a malformed response") from e
