"""Canonical configuration surface for the payment engine."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CardPaySettings(BaseSettings):
    """Main engine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CARDPAY_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Chains
    default_chain: str = "u2u_testnet"
    # Per-chain RPC overrides, e.g. CARDPAY_RPC_URLS__POLYGON=https://...
    rpc_urls: Dict[str, str] = Field(default_factory=dict)
    rpc_timeout_seconds: float = 30.0
    confirmation_timeout_seconds: float = 120.0
    poll_interval_seconds: float = 2.0
    confirmations_required: int = 1
    # Multiplier applied to eth_estimateGas results
    gas_limit_buffer: float = 1.2

    # Persistence - PostgreSQL when set, in-memory otherwise
    database_url: str = ""

    # Redis for stats/transaction caching (optional)
    redis_url: str = ""
    stats_cache_ttl_seconds: int = 300
    transaction_cache_ttl_seconds: int = 60

    # Key custody
    key_encryption_key: str = ""

    # Merchant webhooks
    webhook_secret: str = ""
    webhook_timeout_seconds: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("rpc_urls", mode="before")
    @classmethod
    def normalize_rpc_keys(cls, v):
        """Lower-case chain keys coming from the environment."""
        if isinstance(v, dict):
            return {str(k).lower(): val for k, val in v.items()}
        return v

    @field_validator("key_encryption_key")
    @classmethod
    def validate_key_encryption_key(cls, v: str, info) -> str:
        env = info.data.get("environment", "dev")
        if env != "dev" and not v:
            raise ValueError(
                "KEY_ENCRYPTION_KEY is required outside dev. "
                "Generate with: python -c \"from cryptography.fernet import Fernet; "
                "print(Fernet.generate_key().decode())\""
            )
        return v

    @field_validator("confirmations_required")
    @classmethod
    def validate_confirmations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("confirmations_required must be at least 1")
        return v

    @property
    def uses_postgres(self) -> bool:
        return self.database_url.startswith(("postgresql://", "postgres://"))


@lru_cache
def load_settings(env_file: str | None = None) -> CardPaySettings:
    """Load CardPaySettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return CardPaySettings(_env_file=env_path)
