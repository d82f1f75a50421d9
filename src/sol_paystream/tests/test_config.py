from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from sol_paystream.config import settings

_PROFILES = """
[default.profile]
active = "default"
cluster = "devnet"

[default.rpc]
http_url = "https://api.devnet.solana.com"
ws_url = "wss://api.devnet.solana.com"
request_timeout = 9.5

[default.watcher]
poll_interval_seconds = 10.0
poll_page_size = 5

[default.pricing]
cache_ttl_seconds = 300

[mainnet.profile]
cluster = "mainnet-beta"

[mainnet.rpc]
http_url = "https://api.mainnet-beta.solana.com"
ws_url = "wss://api.mainnet-beta.solana.com"

[mainnet.watcher]
poll_interval_seconds = 15.0
"""


@pytest.fixture
def config_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    config_path = tmp_path / "app.toml"
    config_path.write_text(_PROFILES)
    monkeypatch.setenv("APP_CONFIG_FILE", str(config_path))
    for name in (
        "PAYSTREAM_PROFILE",
        "SOLANA_RPC_URL",
        "SOLANA_WS_URL",
        "WEBHOOK_URL",
        "WEBHOOK_SECRET",
        "RPC__REQUEST_TIMEOUT",
        "WATCHER__POLL_INTERVAL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    settings.get_app_config.cache_clear()
    yield config_path
    settings.get_app_config.cache_clear()


def test_default_profile_loads_from_file(config_file: Path) -> None:
    cfg = settings.get_app_config()

    assert cfg.profile.cluster is settings.Cluster.DEVNET
    assert cfg.profile.config_file == config_file
    assert cfg.rpc.request_timeout == 9.5
    assert cfg.watcher.poll_interval_seconds == 10.0
    assert cfg.webhooks.enabled is False


def test_profile_and_env_overrides(config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PAYSTREAM_PROFILE", "mainnet")
    monkeypatch.setenv("RPC__REQUEST_TIMEOUT", "18")

    cfg = settings.get_app_config()

    assert cfg.profile.cluster is settings.Cluster.MAINNET
    assert "mainnet-beta" in str(cfg.rpc.http_url)
    assert cfg.rpc.request_timeout == 18.0
    assert cfg.watcher.poll_interval_seconds == 15.0
    assert cfg.watcher.poll_page_size == 5


def test_plain_environment_variables(config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOLANA_RPC_URL", "https://rpc.example.com")
    monkeypatch.setenv("SOLANA_WS_URL", "wss://rpc.example.com")
    monkeypatch.setenv("WEBHOOK_URL", "https://hooks.example.com/a")
    monkeypatch.setenv("WEBHOOK_SECRET", "s3cret")

    cfg = settings.get_app_config()

    assert str(cfg.rpc.http_url).startswith("https://rpc.example.com")
    assert cfg.rpc.ws_url == "wss://rpc.example.com"
    assert [str(url) for url in cfg.webhooks.urls] == ["https://hooks.example.com/a"]
    assert cfg.webhooks.secret == "s3cret"
    assert cfg.webhooks.enabled is True


def test_missing_config_file_uses_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("APP_CONFIG_FILE", str(tmp_path / "absent.toml"))
    monkeypatch.delenv("PAYSTREAM_PROFILE", raising=False)
    monkeypatch.chdir(tmp_path)

    cfg = settings.AppConfig()

    assert cfg.reconciliation.overfetch_multiplier == 5
    assert cfg.pricing.fallback_rate == 100.0
    assert cfg.retry.max_attempts == 5


def test_webhook_urls_are_deduplicated() -> None:
    config = settings.WebhookConfig(urls="https://a.example.com/x, https://a.example.com/x,https://b.example.com/y")

    assert [str(url) for url in config.urls] == ["https://a.example.com/x", "https://b.example.com/y"]


def test_websocket_url_requires_ws_scheme() -> None:
    with pytest.raises(ValidationError):
        settings.RPCConfig(ws_url="https://not-a-socket.example.com")


def test_default_page_size_is_clamped() -> None:
    config = settings.ReconciliationConfig(default_page_size=500, max_page_size=100)

    assert config.default_page_size == 100
