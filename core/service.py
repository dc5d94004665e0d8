"""Service boundary: child wallet creation and transaction signing.

``AllowanceService`` is the application state.  It owns the registry, the
policy store, the engine and the external collaborators, and is passed
explicitly to whoever serves requests.  Both operations take and return plain
dicts shaped like the JSON wire format.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from core.config import AppConfig, now_ms
from core.introspection import allowed_chains
from core.memory import MemoryStore
from core.network_config import chain_name, is_address, normalize_address, short_address
from core.policy_compiler import InvalidPolicyOptions
from core.policy_engine import (
    Decision,
    MalformedTransactionRequest,
    PolicyEngine,
    TransactionRequest,
    classify_transaction,
)
from core.policy_registry import DEFAULT_POLICY_NAME, PolicyRegistry
from core.policy_store import FilePolicyStore, PolicyStore, WalletPolicyRecord
from tools.payment_tool import PaymentVerifier
from tools.price_oracle import PriceOracle
from tools.wallet_service import WalletServiceClient, WalletServiceError, WalletServiceRejected

logger = logging.getLogger(__name__)


class AllowanceService:
    def __init__(
        self,
        config: AppConfig,
        registry: PolicyRegistry,
        store: PolicyStore,
        payments: PaymentVerifier,
        prices: PriceOracle | None = None,
        wallet: WalletServiceClient | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config
        self.registry = registry
        self.store = store
        self.engine = PolicyEngine(store, clock=clock)
        self.payments = payments
        self.prices = prices
        self.wallet = wallet
        self._clock = clock

    @classmethod
    def from_config(cls, config: AppConfig) -> AllowanceService:
        """Wire the file-backed state and the real HTTP collaborators."""
        memory = MemoryStore(path=config.store.path)
        store = FilePolicyStore(memory)
        registry = PolicyRegistry(memory, store, config=config.policy)
        wallet = WalletServiceClient(config.wallet) if config.wallet.api_key else None
        if wallet is None:
            logger.info("no wallet service key configured; running in validation-only mode")
        return cls(
            config=config,
            registry=registry,
            store=store,
            payments=PaymentVerifier(config.payment),
            prices=PriceOracle(config.price),
            wallet=wallet,
        )

    # ── create ────────────────────────────────────────────────────

    def create_child_wallet(
        self,
        parent_wallet_address: str,
        restrict_to_base: bool,
        max_usd: float | None = None,
        allowed_addresses: list[str] | None = None,
        policy_name: str | None = None,
        payment_token: str | None = None,
        dev_mode: bool = False,
    ) -> dict[str, Any]:
        """Pay, compile, create the wallet, link it.  Any failure raises; nothing half-linked remains."""
        if not parent_wallet_address or not is_address(parent_wallet_address):
            raise InvalidPolicyOptions("Invalid parent wallet address")

        self.payments.verify(payment_token, dev_mode=dev_mode)

        if self.wallet is None:
            raise WalletServiceError("Wallet service API key not configured")

        policy = self.registry.create_policy(
            parent_wallet_address,
            name=policy_name or DEFAULT_POLICY_NAME,
            usd_limit=max_usd,
            restrict_to_base=restrict_to_base,
            allowed_addresses=allowed_addresses,
        )

        custom_id = f"child_{normalize_address(parent_wallet_address)}_{self._clock()}"
        try:
            created = self.wallet.create_pregen_wallet(custom_id)
            policy = self.registry.link_child(policy.id, created.address)
        except Exception:
            logger.error("child wallet creation failed for %s, removing policy %s",
                         short_address(parent_wallet_address), policy.id)
            self.registry.delete_policy(policy.id)
            raise

        return {
            "success": True,
            "walletAddress": created.address,
            "walletId": created.id,
            "policyId": policy.id,
            "allowedChains": list(allowed_chains(policy.compiled_document)),  # type: ignore[arg-type]
            "usdLimit": policy.usd_limit,
        }

    # ── sign ──────────────────────────────────────────────────────

    def _build_request(self, payload: dict[str, Any]) -> TransactionRequest:
        to = payload.get("to") or None
        if to == "0x":
            to = None
        action = payload.get("transactionType") or payload.get("type")
        if not action:
            action = classify_transaction(to, payload.get("data")).value

        value_usd = payload.get("valueUsd")
        value_wei = payload.get("valueWei")
        if value_usd is None and value_wei is not None:
            if self.prices is None:
                raise MalformedTransactionRequest("valueWei given but no price oracle is configured")
            try:
                wei = int(value_wei)
            except (TypeError, ValueError):
                raise MalformedTransactionRequest(f"valueWei must be an integer, got {value_wei!r}") from None
            value_usd = self.prices.wei_to_usd(wei)

        return TransactionRequest.from_dict(
            {
                "chainId": payload.get("chainId"),
                "type": action,
                "to": to,
                "valueUsd": value_usd,
                "from": payload.get("from"),
                "arguments": payload.get("arguments"),
            }
        )

    @staticmethod
    def _policy_info(record: WalletPolicyRecord | None) -> dict[str, Any] | None:
        if record is None:
            return None
        return {
            "partnerId": record.policy.partner_id,
            "allowedChains": [chain_name(c) for c in allowed_chains(record.policy)],
        }

    def sign_transaction(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Authoritative check against the stored policy, then sign if allowed.

        Raises MalformedTransactionRequest for unusable input and the
        collaborator exceptions for oracle or wallet-service failures.
        """
        wallet_address = payload.get("walletAddress")
        if not wallet_address:
            raise MalformedTransactionRequest("walletAddress is required")
        if not is_address(wallet_address):
            raise MalformedTransactionRequest(f"walletAddress is not a valid address: {wallet_address!r}")

        tx = self._build_request(payload)
        decision, record = self.engine.authorize_with_record(wallet_address, tx)

        signature = None
        if decision.allowed and self.wallet is not None:
            transaction = payload.get("transaction") or {
                k: payload[k] for k in ("to", "data", "valueWei") if payload.get(k) is not None
            }
            try:
                signature = self.wallet.sign_transaction(wallet_address, tx.chain_id, transaction)
            except WalletServiceRejected as exc:
                decision = Decision.deny(f"Wallet service rejected: {exc}", "wallet_service_rejected")

        response: dict[str, Any] = {"success": decision.allowed, **decision.to_dict()}
        if signature is not None:
            response["signature"] = signature
        policy = self._policy_info(record)
        if policy is not None:
            response["policy"] = policy
        return response

    def preflight(self, child_address: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Advisory check from the parent-side registry; never signs."""
        return self.registry.preflight(child_address, self._build_request(payload)).to_dict()
