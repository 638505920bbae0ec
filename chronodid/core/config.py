"""chronodid.core.config

Three config surfaces only:
1) `config/default.yaml` + `config/networks/*.yaml`
2) Environment variables (`CHRONODID_<SECTION>__<KEY>`)
3) Explicit overrides passed by the caller

Everything else is derived.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

from chronodid.core.events import normalize_address
from chronodid.core.exceptions import ConfigError


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


class LedgerConfig(BaseModel):
    rpc_url: str = "http://127.0.0.1:8545"
    registry_address: str = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
    chain_id: int = 31337
    timeout_s: float = 10.0
    max_retries: int = 3
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown_s: float = 30.0

    @field_validator("registry_address")
    @classmethod
    def registry_must_be_address(cls, v: str) -> str:
        return normalize_address(v)


class IndexerConfig(BaseModel):
    start_block: int = 0
    log_chunk_blocks: int = 2000
    confirmations: int = 0
    poll_interval_s: float = 4.0

    @field_validator("log_chunk_blocks")
    @classmethod
    def chunk_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("log_chunk_blocks must be >= 1")
        return v


class CacheConfig(BaseModel):
    state_entries: int = 4096
    block_entries: int = 65536
    head_ttl_s: float = 2.0


class CredentialsConfig(BaseModel):
    api_base_url: str = "http://localhost:3001"


class WebhooksConfig(BaseModel):
    enabled: bool = True
    timeout_s: float = 3.0
    max_pending: int = 1000


class LoggingConfig(BaseModel):
    level: str = "INFO"


class Config(BaseSettings):
    """Root configuration. Single source of truth."""

    data_dir: Path = Path("data")
    config_dir: Path = Path("config")

    network: Literal["local", "sepolia", "mainnet", "custom"] = "local"

    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    webhooks: WebhooksConfig = Field(default_factory=WebhooksConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"env_prefix": "CHRONODID_", "env_nested_delimiter": "__"}

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment beats the YAML files (which arrive as init kwargs).
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @property
    def db_path(self) -> Path:
        return self.data_dir / "chronodid.db"

    @classmethod
    def from_yaml(cls, path: Path, **overrides: Any) -> Config:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file is not valid YAML: {path}") from e

        network = overrides.get("network") or os.environ.get("CHRONODID_NETWORK") or raw.get("network", "local")
        network_path = path.parent / "networks" / f"{network}.yaml"
        if network_path.exists():
            network_data = yaml.safe_load(network_path.read_text()) or {}
            raw = _deep_merge(network_data, raw)
        elif network != "custom":
            raise ConfigError(f"Unknown network preset: {network}")

        raw = _deep_merge(raw, overrides)
        try:
            return cls(**raw)
        except ValueError as e:
            raise ConfigError(str(e)) from e

    @classmethod
    def from_repo_defaults(cls, repo_root: Path | None = None, **overrides: Any) -> Config:
        root = repo_root or Path.cwd()
        return cls.from_yaml(root / "config" / "default.yaml", **overrides)
