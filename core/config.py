"""Load and validate application configuration from environment variables."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from core.network_config import ALL_CHAINS, BASE_CHAIN_ID

load_dotenv()


DEFAULT_PARTNER_ID = "allowance-wallet"

# Default location for the on-disk JSON state (policies, links, wallet policies).
# In containerized deployments a volume is mounted at /app/memory.
DEFAULT_STATE_PATH = Path("memory/allowance_state.json")


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds, the unit of validFrom/validTo."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PolicyConfig:
    partner_id: str = DEFAULT_PARTNER_ID
    base_chain_id: str = BASE_CHAIN_ID
    # Chains a policy covers when the parent neither restricts to Base nor picks chains.
    default_chains: tuple[str, ...] = ALL_CHAINS


@dataclass(frozen=True)
class WalletServiceConfig:
    """External wallet-management / signing service."""

    api_key: str | None = None  # unset → validation-only mode, nothing is signed
    base_url: str = "https://api.beta.wallet-service.example/v1"
    environment: str = "development"
    timeout_s: float = 20.0


@dataclass(frozen=True)
class PaymentConfig:
    stripe_secret_key: str | None = None
    api_base: str = "https://api.stripe.com/v1"
    timeout_s: float = 20.0


@dataclass(frozen=True)
class PriceConfig:
    coingecko_demo_api_key: str | None = None
    asset_id: str = "ethereum"


@dataclass(frozen=True)
class StoreConfig:
    path: Path = DEFAULT_STATE_PATH


@dataclass(frozen=True)
class AppConfig:
    policy: PolicyConfig
    wallet: WalletServiceConfig
    payment: PaymentConfig
    price: PriceConfig
    store: StoreConfig


def _getenv(name: str, default: str | None = None) -> str | None:
    """os.getenv wrapper that strips inline comments (e.g. '20  # note' → '20')."""
    raw = os.getenv(name, default)
    if raw is None:
        return None
    # Split on first ' #' (space-hash) to drop inline comments, then strip
    return raw.split(" #")[0].strip()


def _require(name: str) -> str:
    value = _getenv(name)
    if not value:
        raise EnvironmentError(f"Required environment variable {name} is not set")
    return value


def load_config(require_wallet: bool = False) -> AppConfig:
    """Build AppConfig from environment.

    With *require_wallet* set, a missing WALLET_SERVICE_API_KEY raises
    EnvironmentError instead of falling back to validation-only mode.
    """
    wallet_key = _require("WALLET_SERVICE_API_KEY") if require_wallet else _getenv("WALLET_SERVICE_API_KEY")
    return AppConfig(
        policy=PolicyConfig(
            partner_id=_getenv("ALLOWANCE_PARTNER_ID", DEFAULT_PARTNER_ID),  # type: ignore[arg-type]
        ),
        wallet=WalletServiceConfig(
            api_key=wallet_key or None,
            base_url=_getenv("WALLET_SERVICE_URL", WalletServiceConfig.base_url),  # type: ignore[arg-type]
            environment=_getenv("WALLET_SERVICE_ENV", "development"),  # type: ignore[arg-type]
            timeout_s=float(_getenv("WALLET_SERVICE_TIMEOUT", "20")),  # type: ignore[arg-type]
        ),
        payment=PaymentConfig(
            stripe_secret_key=_getenv("STRIPE_SECRET_KEY") or None,
        ),
        price=PriceConfig(
            coingecko_demo_api_key=_getenv("COINGECKO_DEMO_API_KEY") or None,
        ),
        store=StoreConfig(
            path=Path(_getenv("ALLOWANCE_STATE_PATH", str(DEFAULT_STATE_PATH))),  # type: ignore[arg-type]
        ),
    )
