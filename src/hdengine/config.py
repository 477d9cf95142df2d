"""
Configuration management for the wallet engine.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hdengine.constants import (
    BITCOIN_TESTNET_INDEX,
    COIN_TYPE_NAMES,
    DEFAULT_GAP_LIMIT,
    DEFAULT_MAX_INPUTS,
    STANDARD_DUST_LIMIT,
)


class KdfParams(BaseModel):
    """Argon2id cost parameters."""

    time_cost: int = Field(default=3, ge=1, le=64)
    memory_cost: int = Field(
        default=65536, ge=8, le=4 * 1024 * 1024, description="Memory cost in KiB"
    )
    parallelism: int = Field(default=4, ge=1, le=255)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_memory_per_lane(self) -> KdfParams:
        # Argon2 needs at least 8 KiB per lane
        if self.memory_cost < 8 * self.parallelism:
            raise ValueError(
                f"memory_cost {self.memory_cost} KiB is below 8 KiB per lane "
                f"for parallelism {self.parallelism}"
            )
        return self


class WalletConfig(BaseModel):
    """Engine configuration."""

    wallet_path: Path = Field(default_factory=lambda: Path.home() / ".hdengine" / "wallet.dat")

    mainnet_api_url: str = "https://mempool.space/api"
    testnet_api_url: str = "https://mempool.space/testnet/api"
    request_timeout: float = Field(default=30.0, gt=0)

    # Retry policy for idempotent reads (UTXOs, history, fees)
    read_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay: float = Field(default=0.5, ge=0)

    gap_limit: int = Field(default=DEFAULT_GAP_LIMIT, ge=1, le=1000)
    max_inputs: int = Field(default=DEFAULT_MAX_INPUTS, ge=1)
    dust_threshold: int = Field(default=STANDARD_DUST_LIMIT, ge=0)

    kdf: KdfParams = Field(default_factory=KdfParams)

    @field_validator("mainnet_api_url", "testnet_api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def api_url(self, coin_type_index: int) -> str:
        """Provider base URL for a coin type."""
        if coin_type_index not in COIN_TYPE_NAMES:
            raise ValueError(f"Unknown coin type: {coin_type_index}")
        if coin_type_index == BITCOIN_TESTNET_INDEX:
            return self.testnet_api_url
        return self.mainnet_api_url


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HDENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    wallet_path: Path = Path.home() / ".hdengine" / "wallet.dat"

    mainnet_api_url: str = "https://mempool.space/api"
    testnet_api_url: str = "https://mempool.space/testnet/api"
    request_timeout: float = 30.0

    read_retries: int = 3
    retry_base_delay: float = 0.5

    gap_limit: int = DEFAULT_GAP_LIMIT
    max_inputs: int = DEFAULT_MAX_INPUTS
    dust_threshold: int = STANDARD_DUST_LIMIT

    argon2_time_cost: int = 3
    argon2_memory_cost: int = 65536
    argon2_parallelism: int = 4

    log_level: str = "INFO"

    def to_wallet_config(self) -> WalletConfig:
        return WalletConfig(
            wallet_path=self.wallet_path,
            mainnet_api_url=self.mainnet_api_url,
            testnet_api_url=self.testnet_api_url,
            request_timeout=self.request_timeout,
            read_retries=self.read_retries,
            retry_base_delay=self.retry_base_delay,
            gap_limit=self.gap_limit,
            max_inputs=self.max_inputs,
            dust_threshold=self.dust_threshold,
            kdf=KdfParams(
                time_cost=self.argon2_time_cost,
                memory_cost=self.argon2_memory_cost,
                parallelism=self.argon2_parallelism,
            ),
        )


def get_settings() -> Settings:
    return Settings()
