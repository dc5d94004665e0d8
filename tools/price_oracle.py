"""ETH/USD price lookup via CoinGecko, plus exact wei ↔ USD conversions.

Uses the public API by default and a demo API key when
``COINGECKO_DEMO_API_KEY`` is configured.
"""

from __future__ import annotations

import logging
from decimal import ROUND_DOWN, Decimal, InvalidOperation

from pycoingecko import CoinGeckoAPI
from tenacity import retry, stop_after_attempt, wait_exponential

from core.config import PriceConfig

logger = logging.getLogger(__name__)

WEI_PER_ETH = Decimal(10) ** 18


class PriceOracleError(RuntimeError):
    """No usable price could be obtained."""


def wei_to_usd(wei: int, eth_usd: float | Decimal) -> float:
    """USD value of *wei*, rounded to cents."""
    usd = Decimal(int(wei)) / WEI_PER_ETH * Decimal(str(eth_usd))
    return float(usd.quantize(Decimal("0.01")))


def usd_to_wei(usd: float | Decimal, eth_usd: float | Decimal) -> int:
    price = Decimal(str(eth_usd))
    if price <= 0:
        raise ValueError("price must be positive")
    return int((Decimal(str(usd)) / price * WEI_PER_ETH).to_integral_value(rounding=ROUND_DOWN))


def format_wei_to_eth(wei: int, places: int = 6) -> str:
    eth = Decimal(int(wei)) / WEI_PER_ETH
    return f"{eth.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN).normalize():f}"


def parse_eth_to_wei(eth: str | float | Decimal) -> int:
    try:
        amount = Decimal(str(eth))
    except InvalidOperation:
        raise ValueError(f"not an ETH amount: {eth!r}") from None
    if amount < 0:
        raise ValueError("ETH amount must not be negative")
    return int((amount * WEI_PER_ETH).to_integral_value(rounding=ROUND_DOWN))


class PriceOracle:
    """Thin wrapper around CoinGeckoAPI for the spot price of one asset."""

    def __init__(self, config: PriceConfig) -> None:
        self._asset_id = config.asset_id
        if config.coingecko_demo_api_key:
            logger.info("PriceOracle: using demo API key for CoinGecko")
            self._client = CoinGeckoAPI(demo_api_key=config.coingecko_demo_api_key)
        else:
            logger.info("PriceOracle: using public CoinGecko API (no key)")
            self._client = CoinGeckoAPI()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def _fetch(self) -> dict:
        return self._client.get_price(ids=self._asset_id, vs_currencies="usd")

    def eth_usd(self) -> float:
        try:
            data = self._fetch()
        except Exception as exc:
            logger.warning("PriceOracle: get_price failed: %s", exc)
            raise PriceOracleError(f"price lookup for {self._asset_id} failed: {exc}") from exc

        price = (data or {}).get(self._asset_id, {}).get("usd")
        if not isinstance(price, (int, float)) or price <= 0:
            raise PriceOracleError(f"no usable USD price for {self._asset_id}: {data}")
        return float(price)

    def wei_to_usd(self, wei: int) -> float:
        return wei_to_usd(wei, self.eth_usd())
