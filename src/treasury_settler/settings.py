"""Settings module with unified configuration precedence: CLI > ENV > CONFIG FILE."""

from __future__ import annotations

import os
import tomllib
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from .clients.quorum import Endpoint, EndpointPool
from .constants import (
    DEFAULT_GAS_LIMIT,
    DEFAULT_MIN_BALANCE_ETH,
    DEFAULT_REFERENCE_PRICE_USD,
    DEFAULT_SIGNALS_PER_TICK,
    DEFAULT_TRANSFER_AMOUNT_ETH,
    DEFAULT_TREASURY_ADDRESS,
    DEFAULT_WITHDRAW_RECIPIENT,
    DEFAULT_WITHDRAW_RESERVE_ETH,
    NETWORK_DEFAULTS,
)

load_dotenv()

CONFIG_ENV_VAR = "TREASURY_SETTLER_CONFIG"
SECRET_FIELDS = {"private_key"}


class Network(str, Enum):
    MAINNET = "mainnet"
    SEPOLIA = "sepolia"
    HOLESKY = "holesky"


class SettlerSettings(BaseSettings):
    """Single source of truth for configuration. Values may come from:
    - CLI (init kwargs)
    - ENV / .env (prefixed with TREASURY_SETTLER_)
    - Config file (TOML), lowest precedence

    Do not read os.environ or files elsewhere in the codebase.
    """

    # --- network / endpoints ---
    network: Network = Network.MAINNET
    chain_id: int | None = None
    rpc_urls: list[str] | None = None
    trusted_rpc: str | None = None
    quorum: int = Field(default=1, ge=1)

    # --- RPC settings ---
    rpc_timeout: float = Field(default=10.0, gt=0)
    connect_timeout: float = Field(default=15.0, gt=0)
    rpc_retries: int = Field(default=2, ge=0)
    rpc_max_concurrent_calls: int = Field(default=8, ge=1)

    # --- scheduling ---
    tick_interval: float = Field(default=1.0, gt=0)
    signals_per_tick: int = Field(default=DEFAULT_SIGNALS_PER_TICK, ge=1)
    signal_oracle: str = "random"
    signal_probability: float = Field(default=0.95, ge=0.0, le=1.0)
    signal_seed: int | None = None

    # --- treasury policy ---
    min_balance_eth: Decimal = Field(default=DEFAULT_MIN_BALANCE_ETH, ge=0)
    transfer_amount_eth: Decimal = Field(default=DEFAULT_TRANSFER_AMOUNT_ETH, gt=0)
    withdraw_reserve_eth: Decimal = Field(default=DEFAULT_WITHDRAW_RESERVE_ETH, ge=0)
    withdraw_recipient: str = DEFAULT_WITHDRAW_RECIPIENT
    placeholder_address: str = DEFAULT_TREASURY_ADDRESS
    reference_price_usd: Decimal = Field(default=DEFAULT_REFERENCE_PRICE_USD, ge=0)

    # --- transactions ---
    gas_limit: int = Field(default=DEFAULT_GAS_LIMIT, ge=21_000)
    priority_fee_gwei: Decimal = Field(default=Decimal("1"), ge=0)
    confirmation_timeout: float = Field(default=120.0, gt=0)
    confirmation_poll_interval: float = Field(default=2.0, gt=0)

    # --- signing ---
    private_key: SecretStr | None = None

    # --- logging ---
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="TREASURY_SETTLER_",
        env_file=".env",
        extra="ignore",  # ignore unknown keys in env/config file
    )

    @field_validator("private_key", mode="before")
    @classmethod
    def wrap_secrets(cls, v: Any) -> SecretStr | None:
        """Wrap string secrets in SecretStr; treat empty strings as unset."""
        if v is None or isinstance(v, SecretStr):
            return v
        if isinstance(v, str) and not v.strip():
            return None
        return SecretStr(v)

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def set_derived_values(self) -> "SettlerSettings":
        """Fill network-specific defaults for chain id and endpoint list.

        This centralizes all environment selection logic in one place,
        removing the need for if/else checks throughout the codebase.
        """
        defaults = NETWORK_DEFAULTS[self.network.value]
        if self.chain_id is None:
            self.chain_id = defaults["chain_id"]
        if not self.rpc_urls:
            self.rpc_urls = list(defaults["rpc_urls"])
        return self

    @model_validator(mode="after")
    def validate_quorum_fits_pool(self) -> "SettlerSettings":
        """Quorum cannot require more endpoints than the pool holds."""
        pool_size = len(self.endpoints)
        if self.quorum > pool_size:
            raise ValueError(
                f"quorum ({self.quorum}) must not exceed the number of "
                f"configured endpoints ({pool_size})"
            )
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Custom config-file source with explicit precedence: CLI > ENV > FILE."""
        env_cfg = os.environ.get(CONFIG_ENV_VAR)
        cfg_path = Path(env_cfg) if env_cfg else None

        return (
            init_settings,  # CLI (highest)
            env_settings,  # ENV
            dotenv_settings,  # .env
            TomlConfigSource(settings_cls, cfg_path),  # CONFIG (lowest)
            file_secret_settings,  # optional secrets dir
        )

    def as_safe_dict(self) -> dict[str, Any]:
        """Return the config as a JSON-friendly dict with secrets redacted."""
        data = self.model_dump(mode="json")
        if self.private_key:
            data["private_key"] = "***redacted***"
        return data

    @property
    def chain_id_required(self) -> int:
        """Get chain_id, raising ValueError if not set."""
        if self.chain_id is None:
            raise ValueError("chain_id must be configured")
        return self.chain_id

    @property
    def endpoints(self) -> EndpointPool:
        """Endpoint pool in priority order, with the trusted endpoint first."""
        pool = EndpointPool.from_urls(self.rpc_urls or [], self.chain_id_required)
        if self.trusted_rpc:
            pool = pool.prepend(
                Endpoint(url=self.trusted_rpc, network_id=self.chain_id_required)
            )
        return pool

    @property
    def explorer_tx_url(self) -> str:
        return NETWORK_DEFAULTS[self.network.value]["explorer_tx_url"]


class TomlConfigSource(PydanticBaseSettingsSource):
    """Lowest-precedence source reading a TOML file.

    Looks at the explicit path first, then ``./treasury-settler.toml`` and
    ``~/.config/treasury-settler/config.toml``. Both a top-level body and a
    ``[treasury_settler]`` table are accepted.
    """

    def __init__(self, settings_cls: type[BaseSettings], path: Path | None):
        super().__init__(settings_cls)
        self._path = path

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        return None, "", False

    def _resolve_path(self) -> Path | None:
        if self._path:
            return self._path
        local_config = Path("treasury-settler.toml")
        user_config = Path.home() / ".config" / "treasury-settler" / "config.toml"
        if local_config.exists():
            return local_config
        if user_config.exists():
            return user_config
        return None

    def __call__(self) -> dict[str, Any]:
        path = self._resolve_path()
        if path is None or not path.exists():
            return {}

        with path.open("rb") as f:
            data = tomllib.load(f)
        body = data.get("treasury_settler", data)
        if not isinstance(body, dict):
            return {}

        for key in SECRET_FIELDS:
            if key in body:
                raise ValueError(
                    f"Security violation: '{key}' found in TOML config file. "
                    f"Secrets must only be provided via environment variables or CLI flags."
                )

        return body
