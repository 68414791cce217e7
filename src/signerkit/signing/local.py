"""Local signing backend.

Derives every key from a seed phrase held in memory. Never calls a remote
service. Suitable for:
- Development/testing
- Hot wallets with small amounts

Curves:
- secp256k1: BIP32 over m/44'/{coin}'/0'/0/0, ECDSA with recovery id
- ed25519: TON key schedule for coin type 607, SLIP-0010 over
  m/44'/{coin}'/0'/0'/0' for every other coin type
- stark: secp256k1 key at m/44'/{coin}'/0'/0/0, hashed and reduced into the
  Stark private key range

WARNING: The seed phrase and derived keys are stored in memory. Use a custody
backend for significant funds.
"""

import hashlib
import hmac
import logging
from typing import Optional

from bip_utils import Bip32Secp256k1, Bip32Slip10Ed25519, Bip39SeedGenerator
from eth_keys import keys
from nacl.signing import SigningKey
from pydantic import ValidationError
from starknet_py.hash.utils import message_signature, pedersen_hash, private_to_stark_key

from signerkit.config import Settings, get_settings
from signerkit.signing.base import (
    ConfigurationError,
    Curve,
    HashFunction,
    RawSignature,
    SignerBackend,
    SignerType,
    SigningError,
    SigningSpec,
    UnsupportedCurveError,
    UnsupportedHashError,
)
from signerkit.signing.utils import bip44_path, format_recovery_id, keccak256, sha256

logger = logging.getLogger(__name__)

# Order of the Stark curve generator
STARK_CURVE_ORDER = 3618502788666131213697322783095070105526743751716087489154079457884512865583

# Pedersen inputs are field elements
STARK_FIELD_PRIME = 2**251 + 17 * 2**192 + 1

# Stark message hashes must fit in 251 bits
STARK_MAX_MESSAGE = 1 << 251

TON_COIN_TYPE = "607"
TON_SEED_SALT = b"TON default seed"
TON_PBKDF_ITERATIONS = 100_000


def ton_seed_from_mnemonic(phrase: str, password: str = "") -> bytes:
    """Derive the 32-byte ed25519 seed used by TON wallets.

    entropy = HMAC-SHA512(key=mnemonic, msg=password)
    seed = PBKDF2-HMAC-SHA512(entropy, "TON default seed", 100000)[:32]
    """
    normalized = " ".join(phrase.split())
    entropy = hmac.new(normalized.encode(), password.encode(), hashlib.sha512).digest()
    seed = hashlib.pbkdf2_hmac("sha512", entropy, TON_SEED_SALT, TON_PBKDF_ITERATIONS)
    return seed[:32]


def stark_private_key_from_secp256k1(private_key: bytes) -> int:
    """Map a secp256k1 private key into [1, STARK_CURVE_ORDER - 1].

    key = (int(sha256(private_key)) mod (order - 1)) + 1
    """
    digest = int.from_bytes(hashlib.sha256(private_key).digest(), "big")
    return (digest % (STARK_CURVE_ORDER - 1)) + 1


class LocalSigner(SignerBackend):
    """Local signing backend using a seed phrase.

    The seed phrase is read from SEED_PHRASE. Derived keys are cached per
    (curve, coin type) for the lifetime of the instance.
    """

    def __init__(self, settings: Optional[Settings] = None):
        super().__init__(SignerType.LOCAL)
        if not self.is_config_valid(settings):
            raise ConfigurationError("SEED_PHRASE is not set")
        self._settings = settings or get_settings()
        self._seed_phrase = " ".join(self._settings.seed_phrase.split())
        self._bip39_seed: Optional[bytes] = None
        self._ton_seed: Optional[bytes] = None

        self._secp256k1_keys: dict[tuple[Curve, str], Bip32Secp256k1] = {}
        self._ed25519_keys: dict[tuple[Curve, str], SigningKey] = {}
        self._stark_keys: dict[tuple[Curve, str], int] = {}

    @classmethod
    def is_config_valid(cls, settings: Optional[Settings] = None) -> bool:
        try:
            settings = settings or get_settings()
        except ValidationError:
            return False
        return settings.has_seed_phrase

    async def get_public_key(self, spec: SigningSpec) -> str:
        """Get public key for a spec.

        Returns:
            secp256k1: 33-byte compressed key hex
            ed25519: 32-byte key hex
            stark: 0x-prefixed Stark key (x coordinate)
        """
        if spec.curve == Curve.SECP256K1:
            return self._get_secp256k1_node(spec).PublicKey().RawCompressed().ToHex()
        if spec.curve == Curve.ED25519:
            return self._get_ed25519_key(spec).verify_key.encode().hex()
        if spec.curve == Curve.STARK:
            stark_key = private_to_stark_key(self._get_stark_private_key(spec))
            return f"0x{stark_key:064x}"
        raise UnsupportedCurveError(spec.curve)

    async def sign(self, payload: bytes, spec: SigningSpec) -> RawSignature:
        """Sign a payload with the key derived for spec."""
        message = self._hash_payload(payload, spec)

        if spec.curve == Curve.SECP256K1:
            return self._sign_secp256k1(message, spec)
        if spec.curve == Curve.ED25519:
            return self._sign_ed25519(message, spec)
        if spec.curve == Curve.STARK:
            return self._sign_stark(message, spec)
        raise UnsupportedCurveError(spec.curve)

    def _sign_secp256k1(self, message_hash: bytes, spec: SigningSpec) -> RawSignature:
        """ECDSA with RFC6979 nonces; v is 27 + recovery id."""
        if len(message_hash) != 32:
            raise SigningError(
                f"secp256k1 signing requires a 32-byte digest, got {len(message_hash)} bytes"
            )
        node = self._get_secp256k1_node(spec)
        pk = keys.PrivateKey(node.PrivateKey().Raw().ToBytes())
        signature = pk.sign_msg_hash(message_hash)

        return RawSignature(
            r=f"{signature.r:064x}",
            s=f"{signature.s:064x}",
            v=format_recovery_id(27 + signature.v),
        )

    def _sign_ed25519(self, message: bytes, spec: SigningSpec) -> RawSignature:
        signature = self._get_ed25519_key(spec).sign(message).signature
        return RawSignature(r=signature[:32].hex(), s=signature[32:64].hex())

    def _sign_stark(self, message_hash: bytes, spec: SigningSpec) -> RawSignature:
        msg = int.from_bytes(message_hash, "big")
        if msg >= STARK_MAX_MESSAGE:
            raise SigningError("Stark message hash must be < 2**251")
        r, s = message_signature(msg_hash=msg, priv_key=self._get_stark_private_key(spec))
        return RawSignature(r=f"{r:064x}", s=f"{s:064x}")

    def _hash_payload(self, payload: bytes, spec: SigningSpec) -> bytes:
        """Apply the spec's hash function.

        ed25519 signs the payload itself; stark accepts pedersen (or a
        pre-hashed payload with "none"); secp256k1 accepts sha256, keccak256 or
        a pre-hashed payload with "none".
        """
        hash_function = spec.hash_function

        if hash_function == HashFunction.SHA512_256:
            raise UnsupportedHashError(hash_function, detail="not implemented")

        if spec.curve == Curve.ED25519:
            return payload

        if hash_function == HashFunction.NONE:
            return payload

        if hash_function == HashFunction.PEDERSEN:
            if spec.curve != Curve.STARK:
                raise UnsupportedHashError(hash_function, spec.curve)
            value = int.from_bytes(payload, "big")
            if value >= STARK_FIELD_PRIME:
                raise UnsupportedHashError(
                    hash_function, spec.curve, detail="payload must be smaller than the Stark field prime"
                )
            digest = pedersen_hash(value, 0)
            return digest.to_bytes(32, "big")

        if spec.curve == Curve.STARK:
            raise UnsupportedHashError(hash_function, spec.curve)

        if hash_function == HashFunction.SHA256:
            return sha256(payload)
        if hash_function == HashFunction.KECCAK256:
            return keccak256(payload)

        raise UnsupportedHashError(hash_function, spec.curve)

    # === Key derivation ===

    def _get_bip39_seed(self) -> bytes:
        if self._bip39_seed is None:
            self._bip39_seed = Bip39SeedGenerator(self._seed_phrase).Generate()
        return self._bip39_seed

    def _get_ton_seed(self) -> bytes:
        if self._ton_seed is None:
            self._ton_seed = ton_seed_from_mnemonic(self._seed_phrase)
        return self._ton_seed

    def _derive_secp256k1(self, coin_type: str) -> Bip32Secp256k1:
        path = bip44_path(coin_type)
        return Bip32Secp256k1.FromSeed(self._get_bip39_seed()).DerivePath(path)

    def _get_secp256k1_node(self, spec: SigningSpec) -> Bip32Secp256k1:
        key = spec.cache_key
        if key not in self._secp256k1_keys:
            self._secp256k1_keys[key] = self._derive_secp256k1(spec.coin_type)
            logger.info(f"Derived secp256k1 key for coin type {spec.coin_type}")
        return self._secp256k1_keys[key]

    def _get_ed25519_key(self, spec: SigningSpec) -> SigningKey:
        key = spec.cache_key
        if key in self._ed25519_keys:
            return self._ed25519_keys[key]

        seed = self._get_ton_seed()
        if spec.coin_type == TON_COIN_TYPE:
            signing_key = SigningKey(seed)
        else:
            path = bip44_path(spec.coin_type, hardened_tail=True)
            node = Bip32Slip10Ed25519.FromSeed(seed).DerivePath(path)
            signing_key = SigningKey(node.PrivateKey().Raw().ToBytes())

        self._ed25519_keys[key] = signing_key
        logger.info(f"Derived ed25519 key for coin type {spec.coin_type}")
        return signing_key

    def _get_stark_private_key(self, spec: SigningSpec) -> int:
        key = spec.cache_key
        if key not in self._stark_keys:
            node = self._derive_secp256k1(spec.coin_type)
            self._stark_keys[key] = stark_private_key_from_secp256k1(node.PrivateKey().Raw().ToBytes())
            logger.info(f"Derived stark key for coin type {spec.coin_type}")
        return self._stark_keys[key]
