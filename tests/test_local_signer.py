"""Tests for the seed-phrase signing backend."""

import hashlib
import os

import pytest
from bip_utils import Bip32Secp256k1, Bip32Slip10Ed25519, Bip39SeedGenerator
from eth_keys import keys
from eth_keys.datatypes import Signature
from nacl.signing import SigningKey, VerifyKey
from starknet_py.hash.utils import pedersen_hash, private_to_stark_key, verify_message_signature

from signerkit.signing.base import (
    ConfigurationError,
    SignerType,
    SigningError,
    UnsupportedHashError,
)
from signerkit.signing.local import (
    STARK_CURVE_ORDER,
    LocalSigner,
    stark_private_key_from_secp256k1,
    ton_seed_from_mnemonic,
)
from signerkit.signing.utils import keccak256

# Account #0 of the "test ... junk" mnemonic at m/44'/60'/0'/0/0
HARDHAT_PRIVATE_KEY = "ac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
HARDHAT_COMPRESSED_PUBKEY = "038318535b54105d4a7aae60c08fc45f9687181b4fdfc625bd1a753fa7397fed75"

PAYLOAD = bytes.fromhex("f86c808504a817c800825208943535353535353535353535353535353535353535880de0b6b3a764000080")


@pytest.fixture
def signer(local_settings) -> LocalSigner:
    return LocalSigner(local_settings)


class TestConfiguration:
    """Tests for construction and the configuration predicate."""

    def test_missing_seed_phrase_raises(self, make_settings):
        settings = make_settings()
        assert LocalSigner.is_config_valid(settings) is False
        with pytest.raises(ConfigurationError):
            LocalSigner(settings)

    def test_short_seed_phrase_is_invalid(self, make_settings):
        assert LocalSigner.is_config_valid(make_settings(seed_phrase="too short")) is False

    def test_valid_configuration(self, local_settings):
        assert LocalSigner.is_config_valid(local_settings) is True
        assert LocalSigner(local_settings).signer_type == SignerType.LOCAL


class TestSecp256k1:
    """Tests for BIP32 secp256k1 keys."""

    @pytest.mark.asyncio
    async def test_known_public_key(self, signer, make_spec):
        pubkey = await signer.get_public_key(make_spec(coin_type="60"))

        assert pubkey == HARDHAT_COMPRESSED_PUBKEY
        expected = keys.PrivateKey(bytes.fromhex(HARDHAT_PRIVATE_KEY)).public_key.to_compressed_bytes().hex()
        assert pubkey == expected

    @pytest.mark.asyncio
    async def test_public_key_matches_independent_derivation(self, signer, make_spec, test_mnemonic):
        seed = Bip39SeedGenerator(test_mnemonic).Generate()
        node = Bip32Secp256k1.FromSeed(seed).DerivePath("m/44'/0'/0'/0/0")

        pubkey = await signer.get_public_key(make_spec(coin_type="0"))

        assert pubkey == node.PublicKey().RawCompressed().ToHex()

    @pytest.mark.asyncio
    async def test_derived_keys_are_cached(self, signer, make_spec):
        spec = make_spec()
        await signer.get_public_key(spec)
        node = signer._secp256k1_keys[spec.cache_key]

        await signer.get_public_key(make_spec(hash_function="sha256", signature_format="rs"))

        assert signer._secp256k1_keys[spec.cache_key] is node
        assert len(signer._secp256k1_keys) == 1

    @pytest.mark.asyncio
    async def test_sign_rsv_is_recoverable(self, signer, make_spec):
        signature_hex = await signer.sign_transaction(PAYLOAD.hex(), make_spec())

        assert len(signature_hex) == 130
        r = int(signature_hex[:64], 16)
        s = int(signature_hex[64:128], 16)
        v = int(signature_hex[128:], 16)
        assert v in (27, 28)

        signature = Signature(vrs=(v - 27, r, s))
        recovered = signature.recover_public_key_from_msg_hash(keccak256(PAYLOAD))
        assert recovered.to_compressed_bytes().hex() == HARDHAT_COMPRESSED_PUBKEY

    @pytest.mark.asyncio
    async def test_sign_is_deterministic(self, signer, make_spec):
        spec = make_spec(hash_function="sha256")
        first = await signer.sign_transaction(PAYLOAD.hex(), spec)
        second = await signer.sign_transaction("0x" + PAYLOAD.hex(), spec)
        assert first == second

    @pytest.mark.asyncio
    async def test_sign_rs_format(self, signer, make_spec):
        signature_hex = await signer.sign_transaction(PAYLOAD.hex(), make_spec(signature_format="rs"))
        assert len(signature_hex) == 128

    @pytest.mark.asyncio
    async def test_sign_prehashed_payload(self, signer, make_spec):
        digest = keccak256(PAYLOAD)
        prehashed = await signer.sign(digest, make_spec(hash_function="none"))
        hashed = await signer.sign(PAYLOAD, make_spec(hash_function="keccak256"))
        assert prehashed == hashed

    @pytest.mark.asyncio
    async def test_unhashed_payload_must_be_a_digest(self, signer, make_spec):
        with pytest.raises(SigningError):
            await signer.sign(b"short", make_spec(hash_function="none"))

    @pytest.mark.asyncio
    async def test_sha512_256_is_unsupported(self, signer, make_spec):
        with pytest.raises(UnsupportedHashError):
            await signer.sign(PAYLOAD, make_spec(hash_function="sha512_256"))

    @pytest.mark.asyncio
    async def test_pedersen_requires_stark(self, signer, make_spec):
        with pytest.raises(UnsupportedHashError):
            await signer.sign(PAYLOAD, make_spec(hash_function="pedersen"))


class TestEd25519:
    """Tests for TON and SLIP-0010 ed25519 keys."""

    @pytest.mark.asyncio
    async def test_ton_key_uses_seed_directly(self, signer, make_spec, test_mnemonic):
        expected = SigningKey(ton_seed_from_mnemonic(test_mnemonic)).verify_key.encode().hex()

        pubkey = await signer.get_public_key(make_spec(curve="ed25519", coin_type="607"))

        assert pubkey == expected
        assert len(pubkey) == 64

    @pytest.mark.asyncio
    async def test_slip10_key_for_other_coin_types(self, signer, make_spec, test_mnemonic):
        node = Bip32Slip10Ed25519.FromSeed(ton_seed_from_mnemonic(test_mnemonic)).DerivePath(
            "m/44'/501'/0'/0'/0'"
        )
        expected = SigningKey(node.PrivateKey().Raw().ToBytes()).verify_key.encode().hex()

        pubkey = await signer.get_public_key(make_spec(curve="ed25519", coin_type="501"))

        assert pubkey == expected
        assert pubkey != await signer.get_public_key(make_spec(curve="ed25519", coin_type="607"))

    @pytest.mark.asyncio
    async def test_sign_verifies_against_raw_payload(self, signer, make_spec):
        spec = make_spec(curve="ed25519", hash_function="sha256", signature_format="rs", coin_type="501")
        pubkey = await signer.get_public_key(spec)

        signature_hex = await signer.sign_transaction(PAYLOAD.hex(), spec)

        assert len(signature_hex) == 128
        VerifyKey(bytes.fromhex(pubkey)).verify(PAYLOAD, bytes.fromhex(signature_hex))

    def test_ton_seed_normalizes_whitespace(self, test_mnemonic):
        assert ton_seed_from_mnemonic(f"  {test_mnemonic}  ") == ton_seed_from_mnemonic(test_mnemonic)
        assert len(ton_seed_from_mnemonic(test_mnemonic)) == 32


class TestStark:
    """Tests for Stark key derivation and signing."""

    def test_reduction_matches_formula(self):
        private_key = bytes.fromhex(HARDHAT_PRIVATE_KEY)
        digest = int.from_bytes(hashlib.sha256(private_key).digest(), "big")

        assert stark_private_key_from_secp256k1(private_key) == digest % (STARK_CURVE_ORDER - 1) + 1

    def test_reduction_stays_in_range(self):
        samples = [b"", b"\x00" * 32, b"\xff" * 32] + [os.urandom(32) for _ in range(200)]
        for sample in samples:
            key = stark_private_key_from_secp256k1(sample)
            assert 0 < key < STARK_CURVE_ORDER

    @pytest.mark.asyncio
    async def test_public_key(self, signer, make_spec, test_mnemonic):
        seed = Bip39SeedGenerator(test_mnemonic).Generate()
        node = Bip32Secp256k1.FromSeed(seed).DerivePath("m/44'/9004'/0'/0/0")
        private_key = stark_private_key_from_secp256k1(node.PrivateKey().Raw().ToBytes())

        pubkey = await signer.get_public_key(make_spec(curve="stark", hash_function="pedersen", coin_type="9004"))

        assert pubkey == f"0x{private_to_stark_key(private_key):064x}"

    @pytest.mark.asyncio
    async def test_pedersen_signature_verifies(self, signer, make_spec):
        spec = make_spec(curve="stark", hash_function="pedersen", signature_format="rs", coin_type="9004")
        payload = bytes.fromhex("0123456789abcdef")
        pubkey = int(await signer.get_public_key(spec), 16)

        signature = await signer.sign(payload, spec)

        msg_hash = pedersen_hash(int.from_bytes(payload, "big"), 0)
        assert verify_message_signature(msg_hash, [int(signature.r, 16), int(signature.s, 16)], pubkey)

    @pytest.mark.asyncio
    async def test_stark_rejects_sha256(self, signer, make_spec):
        with pytest.raises(UnsupportedHashError):
            await signer.sign(PAYLOAD, make_spec(curve="stark", hash_function="sha256"))

    @pytest.mark.asyncio
    async def test_pedersen_rejects_payload_outside_field(self, signer, make_spec):
        spec = make_spec(curve="stark", hash_function="pedersen", signature_format="rs", coin_type="9004")

        with pytest.raises(UnsupportedHashError, match="field prime"):
            await signer.sign(b"\xff" * 32, spec)
