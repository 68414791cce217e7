"""Pytest configuration and fixtures."""

import os

import pytest

# Keep the developer's environment out of the tests
for _name in list(os.environ):
    if _name.startswith(("SEED_PHRASE", "TURNKEY_", "DFNS_", "SODOT_")):
        del os.environ[_name]

from signerkit.config import Settings, get_settings
from signerkit.signing.base import SigningSpec
from signerkit.signing.factory import reset_session

TEST_MNEMONIC = "test test test test test test test test test test test junk"


@pytest.fixture(autouse=True)
def clean_state():
    """Reset the session singleton and settings cache around each test."""
    reset_session()
    get_settings.cache_clear()
    yield
    reset_session()
    get_settings.cache_clear()


@pytest.fixture
def make_settings():
    """Build Settings only from the given values (no .env file)."""

    def _make(**overrides) -> Settings:
        return Settings(_env_file=None, **overrides)

    return _make


@pytest.fixture
def make_spec():
    def _make(curve="secp256k1", hash_function="keccak256", signature_format="rsv", coin_type="60") -> SigningSpec:
        return SigningSpec(
            curve=curve,
            hash_function=hash_function,
            signature_format=signature_format,
            coin_type=coin_type,
        )

    return _make


@pytest.fixture
def test_mnemonic() -> str:
    return TEST_MNEMONIC


@pytest.fixture
def local_settings(make_settings) -> Settings:
    return make_settings(seed_phrase=TEST_MNEMONIC)
