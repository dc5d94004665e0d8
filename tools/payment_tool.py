"""Wallet-creation fee verification against the Stripe API.

A payment token is a PaymentIntent id.  It is accepted only when Stripe
reports the intent as ``succeeded``.  Without a Stripe key, verification is
skipped in dev mode and refused otherwise.
"""

from __future__ import annotations

import logging

import httpx

from core.config import PaymentConfig

logger = logging.getLogger(__name__)


class PaymentError(RuntimeError):
    """Stripe could not be reached or answered unexpectedly."""


class PaymentRequired(PaymentError):
    """No valid payment for this request."""


class PaymentVerifier:
    def __init__(self, config: PaymentConfig) -> None:
        self._config = config

    def verify(self, payment_token: str | None, dev_mode: bool = False) -> None:
        """Return normally when the fee is paid (or legitimately skipped); raise otherwise."""
        secret = self._config.stripe_secret_key
        if not secret:
            if dev_mode:
                logger.info("PaymentVerifier: dev mode, skipping payment verification")
                return
            raise PaymentRequired("Payment processing not configured. Contact administrator.")
        if not payment_token:
            raise PaymentRequired("Payment token required")

        try:
            resp = httpx.get(
                f"{self._config.api_base.rstrip('/')}/payment_intents/{payment_token}",
                auth=(secret, ""),
                timeout=self._config.timeout_s,
            )
        except httpx.HTTPError as exc:
            raise PaymentError(f"payment verification failed: {exc}") from exc

        if resp.status_code == 404:
            raise PaymentRequired("Unknown payment token")
        if resp.status_code != 200:
            raise PaymentError(f"Stripe error {resp.status_code}: {resp.text}")

        status = resp.json().get("status")
        if status != "succeeded":
            raise PaymentRequired(f"Payment not completed (status={status})")
        logger.info("PaymentVerifier: payment verified %s…", payment_token[:10])
