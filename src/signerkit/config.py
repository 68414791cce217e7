"""Application configuration using pydantic-settings.

Credentials for every signing backend are read from the environment (or a
local ``.env`` file). Values are only consulted when a backend is constructed
or when its configuration predicate is evaluated.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Local signer
    # ======================
    seed_phrase: Optional[str] = Field(
        default=None, description="BIP39 (or TON) seed phrase for local derivation"
    )

    # ======================
    # Turnkey
    # ======================
    turnkey_base_url: Optional[str] = Field(default=None, description="Turnkey API base URL")
    turnkey_api_public_key: Optional[str] = Field(default=None, description="Turnkey API public key (hex)")
    turnkey_api_private_key: Optional[str] = Field(default=None, description="Turnkey API private key (hex)")
    turnkey_organization_id: Optional[str] = Field(default=None, description="Turnkey organization ID")
    turnkey_wallet_id: Optional[str] = Field(default=None, description="Turnkey wallet ID")

    # ======================
    # Dfns
    # ======================
    dfns_cred_id: Optional[str] = Field(default=None, description="Dfns service account credential ID")
    dfns_private_key: Optional[str] = Field(default=None, description="Dfns credential private key (PEM)")
    dfns_app_id: Optional[str] = Field(default=None, description="Dfns application ID")
    dfns_auth_token: Optional[str] = Field(default=None, description="Dfns service account token")
    dfns_api_url: Optional[str] = Field(default=None, description="Dfns API base URL")
    dfns_app_origin: str = Field(
        default="https://app.dfns.io", description="Origin embedded in user action client data"
    )

    # ======================
    # Sodot vertices
    # ======================
    sodot_vertex_url_0: Optional[str] = Field(default=None, description="Sodot vertex 0 URL")
    sodot_vertex_api_key_0: Optional[str] = Field(default=None, description="Sodot vertex 0 API key")
    sodot_vertex_url_1: Optional[str] = Field(default=None, description="Sodot vertex 1 URL")
    sodot_vertex_api_key_1: Optional[str] = Field(default=None, description="Sodot vertex 1 API key")
    sodot_vertex_url_2: Optional[str] = Field(default=None, description="Sodot vertex 2 URL")
    sodot_vertex_api_key_2: Optional[str] = Field(default=None, description="Sodot vertex 2 API key")
    sodot_existing_ecdsa_key_ids: Optional[str] = Field(
        default=None, description="Comma-separated pre-provisioned ECDSA key IDs (one per vertex)"
    )
    sodot_existing_ed25519_key_ids: Optional[str] = Field(
        default=None, description="Comma-separated pre-provisioned Ed25519 key IDs (one per vertex)"
    )

    # ======================
    # Runtime
    # ======================
    http_timeout: float = Field(default=30.0, description="Timeout for outbound HTTP calls (seconds)")
    log_level: str = Field(default="INFO", description="Logging level for the CLI")

    @property
    def has_seed_phrase(self) -> bool:
        """Check if a seed phrase is configured."""
        return bool(self.seed_phrase and len(self.seed_phrase.split()) >= 12)

    @property
    def has_turnkey(self) -> bool:
        return all(
            (
                self.turnkey_base_url,
                self.turnkey_api_public_key,
                self.turnkey_api_private_key,
                self.turnkey_organization_id,
                self.turnkey_wallet_id,
            )
        )

    @property
    def has_dfns(self) -> bool:
        return all(
            (
                self.dfns_cred_id,
                self.dfns_private_key,
                self.dfns_app_id,
                self.dfns_auth_token,
                self.dfns_api_url,
            )
        )

    @property
    def has_sodot(self) -> bool:
        return all(url and key for url, key in self.sodot_vertices())

    def sodot_vertices(self) -> list[tuple[Optional[str], Optional[str]]]:
        """Return (url, api_key) pairs for the three Sodot vertices, in index order."""
        return [
            (self.sodot_vertex_url_0, self.sodot_vertex_api_key_0),
            (self.sodot_vertex_url_1, self.sodot_vertex_api_key_1),
            (self.sodot_vertex_url_2, self.sodot_vertex_api_key_2),
        ]

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "local": {"seed_phrase": "***" if self.seed_phrase else "(not set)"},
            "turnkey": {
                "base_url": self.turnkey_base_url or "(not set)",
                "organization_id": self.turnkey_organization_id or "(not set)",
                "wallet_id": self.turnkey_wallet_id or "(not set)",
                "api_private_key": "***" if self.turnkey_api_private_key else "(not set)",
            },
            "dfns": {
                "api_url": self.dfns_api_url or "(not set)",
                "app_id": self.dfns_app_id or "(not set)",
                "auth_token": "***" if self.dfns_auth_token else "(not set)",
                "private_key": "***" if self.dfns_private_key else "(not set)",
            },
            "sodot": {
                "vertices": [url or "(not set)" for url, _ in self.sodot_vertices()],
                "api_keys": ["***" if key else "(not set)" for _, key in self.sodot_vertices()],
            },
            "http_timeout": self.http_timeout,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
