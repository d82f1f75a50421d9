"""Configuration management for the payment stream service."""

from __future__ import annotations

import os
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
PROFILE_ENV_VAR = "PAYSTREAM_PROFILE"


class Cluster(str, Enum):
    """Solana clusters the service can point at."""

    DEVNET = "devnet"
    TESTNET = "testnet"
    MAINNET = "mainnet-beta"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = cast(Dict[str, Any], data.get("default", {}))
    requested = os.getenv(PROFILE_ENV_VAR)
    if not requested:
        profile_section = base_section.get("profile")
        if isinstance(profile_section, dict):
            requested = cast(Optional[str], profile_section.get("active"))
    requested = (requested or "default").lower()
    if requested != "default" and requested in data:
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested]))
    if base_section:
        return base_section
    return data


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    merged = dict(_select_profile(payload))
    profile_section = merged.get("profile")
    if isinstance(profile_section, dict):
        profile_section = dict(profile_section)
        profile_section.setdefault("config_file", str(path))
        merged["profile"] = profile_section
    else:
        merged["profile"] = {"config_file": str(path)}
    return merged, path


class ProfileConfig(BaseModel):
    """Active profile and cluster selection."""

    active: str = Field(default="default")
    cluster: Cluster = Field(default=Cluster.DEVNET)
    config_file: Optional[Path] = None


class RPCConfig(BaseModel):
    """RPC configuration for Solana endpoints."""

    http_url: AnyHttpUrl = Field(default="https://api.devnet.solana.com")
    ws_url: str = Field(default="wss://api.devnet.solana.com")
    commitment: str = Field(default="confirmed")
    request_timeout: float = Field(default=10.0, ge=0.1, le=120.0)

    @field_validator("ws_url")
    @classmethod
    def _websocket_scheme(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            raise ValueError("ws_url must use the ws:// or wss:// scheme")
        return value


class ReconciliationConfig(BaseModel):
    """Controls for merging ledger history with stored payments."""

    overfetch_multiplier: int = Field(default=5, ge=1, le=50)
    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=100, ge=1)
    max_payment_sol: float = Field(default=1_000_000.0, gt=0.0)
    store_page_size: int = Field(default=200, ge=1)
    fetch_concurrency: int = Field(default=8, ge=1, le=64)

    @model_validator(mode="after")
    def _page_bounds(self) -> "ReconciliationConfig":
        if self.default_page_size > self.max_page_size:
            self.default_page_size = self.max_page_size
        return self


class WatcherConfig(BaseModel):
    """Change-detection loop cadence."""

    poll_interval_seconds: float = Field(default=10.0, gt=0.0)
    poll_page_size: int = Field(default=5, ge=1, le=100)
    leaderboard_limit: int = Field(default=10, ge=1)
    earnings_window_days: int = Field(default=7, ge=1)
    enable_account_subscription: bool = False


class PricingConfig(BaseModel):
    """Exchange-rate oracle settings."""

    oracle_url: AnyHttpUrl = Field(default="https://api.coingecko.com/api/v3")
    api_key: Optional[str] = None
    base_currency: str = Field(default="solana")
    quote_currency: str = Field(default="usd")
    cache_ttl_seconds: int = Field(default=300, ge=0)
    fallback_rate: float = Field(default=100.0, ge=0.0)
    http_timeout: float = Field(default=10.0, ge=0.1, le=60.0)


class StorageConfig(BaseModel):
    """State persistence configuration."""

    database_path: Path = Field(default=Path("./paystream.sqlite3"))
    timeout_seconds: float = Field(default=5.0, gt=0.0)
    default_creator_name: str = Field(default="Unnamed creator")


class RetryConfig(BaseModel):
    """Backoff used for subscription reconnects."""

    max_attempts: int = Field(default=5, ge=1)
    base_delay_seconds: float = Field(default=5.0, ge=0.0)
    max_delay_seconds: float = Field(default=300.0, ge=0.0)
    jitter_seconds: float = Field(default=1.0, ge=0.0)


class WebhookConfig(BaseModel):
    """Outbound webhook delivery."""

    urls: List[AnyHttpUrl] = Field(default_factory=list)
    secret: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0.0)
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=2.0, ge=0.0)
    user_agent: str = Field(default="sol-paystream-webhooks/1.0")

    @field_validator("urls", mode="before")
    @classmethod
    def _unique_urls(cls, value: Iterable[str] | str) -> List[str]:
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",") if item.strip()]
        seen: set[str] = set()
        unique: List[str] = []
        for url in value:
            if str(url) not in seen:
                unique.append(url)
                seen.add(str(url))
        return unique

    @property
    def enabled(self) -> bool:
        return bool(self.urls)


class MonitoringConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(default="INFO")


class DashboardConfig(BaseModel):
    """Dashboard runtime configuration."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    subscriber_queue_size: int = Field(default=256, ge=1)
    export_limit: int = Field(default=1000, ge=1)


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    profile: ProfileConfig = Field(default_factory=ProfileConfig)
    rpc: RPCConfig = Field(default_factory=RPCConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    webhooks: WebhookConfig = Field(default_factory=WebhookConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, _ = _load_toml_config()
            return payload

        # Runtime environment variables win over the static config file.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _apply_legacy_env(self) -> "AppConfig":
        rpc_url = os.getenv("SOLANA_RPC_URL")
        if rpc_url:
            self.rpc.http_url = rpc_url
        ws_url = os.getenv("SOLANA_WS_URL")
        if ws_url:
            self.rpc.ws_url = ws_url
        webhook_url = os.getenv("WEBHOOK_URL")
        if webhook_url and webhook_url not in {str(url) for url in self.webhooks.urls}:
            self.webhooks.urls = [*self.webhooks.urls, webhook_url]
        secret = os.getenv("WEBHOOK_SECRET")
        if secret and not self.webhooks.secret:
            self.webhooks.secret = secret
        return self


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "Cluster",
    "DashboardConfig",
    "MonitoringConfig",
    "PricingConfig",
    "ProfileConfig",
    "RPCConfig",
    "ReconciliationConfig",
    "RetryConfig",
    "StorageConfig",
    "WatcherConfig",
    "WebhookConfig",
    "get_app_config",
]
