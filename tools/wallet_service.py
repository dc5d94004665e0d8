"""HTTP client for the external wallet-management / signing service.

Two calls: create a pre-generated EVM wallet under a custom id, and ask the
service to sign a transaction for a wallet it manages.  Neither call is
retried; a signing request that timed out may still have been executed.
Failures raise; they are never turned into a success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from core.config import WalletServiceConfig
from core.network_config import is_address, short_address

logger = logging.getLogger(__name__)


class WalletServiceError(RuntimeError):
    """Transport failure or unexpected response from the wallet service."""


class WalletServiceRejected(WalletServiceError):
    """The service refused the request (its own policy check said no)."""


@dataclass(frozen=True)
class CreatedWallet:
    id: str
    address: str
    type: str = "EVM"


class WalletServiceClient:
    def __init__(self, config: WalletServiceConfig) -> None:
        if not config.api_key:
            raise WalletServiceError("WALLET_SERVICE_API_KEY is not configured")
        self._config = config
        self._headers = {"X-API-Key": config.api_key, "Content-Type": "application/json"}

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._config.base_url.rstrip('/')}{path}"
        try:
            resp = httpx.post(url, json=body, headers=self._headers, timeout=self._config.timeout_s)
        except httpx.HTTPError as exc:
            raise WalletServiceError(f"wallet service request to {path} failed: {exc}") from exc

        if resp.status_code == 403:
            raise WalletServiceRejected(f"wallet service rejected {path}: {resp.text}")
        if resp.status_code not in (200, 201):
            raise WalletServiceError(f"wallet service error {resp.status_code} on {path}: {resp.text}")
        try:
            return resp.json()
        except ValueError as exc:
            raise WalletServiceError(f"wallet service returned non-JSON body on {path}") from exc

    def create_pregen_wallet(self, custom_id: str) -> CreatedWallet:
        logger.info("WalletService: creating pregenerated wallet %s (env=%s)", custom_id[:30], self._config.environment)
        data = self._post("/wallets", {"type": "EVM", "pregenId": {"customId": custom_id}})
        address = data.get("address")
        wallet_id = data.get("id")
        if not address or not is_address(address):
            raise WalletServiceError(f"wallet service returned no usable wallet address: {data}")
        if not wallet_id:
            raise WalletServiceError(f"wallet service returned no wallet id: {data}")
        logger.info("WalletService: created wallet %s", short_address(address))
        return CreatedWallet(id=str(wallet_id), address=address, type=data.get("type") or "EVM")

    def sign_transaction(self, wallet_address: str, chain_id: str, transaction: dict[str, Any]) -> str:
        """Return the signature for *transaction*.  WalletServiceRejected on a refusal."""
        data = self._post(
            "/transactions/sign",
            {"walletAddress": wallet_address, "chainId": chain_id, "transaction": transaction},
        )
        signature = data.get("signature")
        if not signature:
            raise WalletServiceError(f"wallet service sign response missing signature: {data}")
        logger.info("WalletService: signed transaction for %s on chain %s", short_address(wallet_address), chain_id)
        return str(signature)
