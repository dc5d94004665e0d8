"""Tests for core/config.py — load_config and env parsing."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from core.config import (
    DEFAULT_PARTNER_ID,
    DEFAULT_STATE_PATH,
    AppConfig,
    load_config,
    now_ms,
)
from core.config import _getenv  # noqa: PLC2701
from core.config import _require  # noqa: PLC2701
from core.network_config import ALL_CHAINS


class TestGetenv:
    def test_returns_default_when_unset(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            assert _getenv("MISSING_VAR_XYZ", "default") == "default"

    def test_strips_inline_comment(self) -> None:
        with patch.dict(os.environ, {"TEST_KEY": "30  # seconds"}, clear=False):
            assert _getenv("TEST_KEY", "fallback") == "30"


class TestRequire:
    def test_raises_when_missing(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(EnvironmentError, match="is not set"):
                _require("MISSING_REQUIRED_XYZ")


class TestLoadConfig:
    def test_defaults_without_any_env(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            config = load_config()
        assert isinstance(config, AppConfig)
        assert config.policy.partner_id == DEFAULT_PARTNER_ID
        assert config.policy.default_chains == ALL_CHAINS
        assert config.wallet.api_key is None
        assert config.wallet.timeout_s == 20.0
        assert config.payment.stripe_secret_key is None
        assert config.price.coingecko_demo_api_key is None
        assert config.store.path == DEFAULT_STATE_PATH

    def test_reads_environment(self) -> None:
        env = {
            "ALLOWANCE_PARTNER_ID": "acme",
            "WALLET_SERVICE_API_KEY": "wk",
            "WALLET_SERVICE_URL": "https://wallets.test",
            "WALLET_SERVICE_ENV": "production",
            "WALLET_SERVICE_TIMEOUT": "5  # seconds",
            "STRIPE_SECRET_KEY": "sk_test",
            "COINGECKO_DEMO_API_KEY": "cg",
            "ALLOWANCE_STATE_PATH": "/tmp/state.json",
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config()
        assert config.policy.partner_id == "acme"
        assert config.wallet.api_key == "wk"
        assert config.wallet.base_url == "https://wallets.test"
        assert config.wallet.environment == "production"
        assert config.wallet.timeout_s == 5.0
        assert config.payment.stripe_secret_key == "sk_test"
        assert config.price.coingecko_demo_api_key == "cg"
        assert config.store.path == Path("/tmp/state.json")

    def test_empty_key_means_validation_only(self) -> None:
        with patch.dict(os.environ, {"WALLET_SERVICE_API_KEY": ""}, clear=True):
            assert load_config().wallet.api_key is None

    def test_require_wallet(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(EnvironmentError, match="WALLET_SERVICE_API_KEY"):
                load_config(require_wallet=True)


class TestNowMs:
    def test_epoch_milliseconds_as_int(self) -> None:
        with patch("core.config.time.time", return_value=1_700_000_000.1234):
            assert now_ms() == 1_700_000_000_123
        assert isinstance(now_ms(), int)
