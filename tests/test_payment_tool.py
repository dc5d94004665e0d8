"""Tests for tools/payment_tool.py — Stripe calls are mocked."""

from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from core.config import PaymentConfig
from tools.payment_tool import PaymentError, PaymentRequired, PaymentVerifier


@pytest.fixture
def verifier() -> PaymentVerifier:
    return PaymentVerifier(PaymentConfig(stripe_secret_key="sk_test_123"))


class TestWithoutStripeKey:
    def test_dev_mode_skips(self) -> None:
        with patch("tools.payment_tool.httpx.get") as mock_get:
            PaymentVerifier(PaymentConfig()).verify(None, dev_mode=True)
        mock_get.assert_not_called()

    def test_production_refuses(self) -> None:
        with pytest.raises(PaymentRequired, match="not configured"):
            PaymentVerifier(PaymentConfig()).verify("pi_123")


class TestWithStripeKey:
    def test_token_required(self, verifier: PaymentVerifier) -> None:
        with pytest.raises(PaymentRequired, match="token required"):
            verifier.verify(None, dev_mode=True)

    @patch("tools.payment_tool.httpx.get")
    def test_succeeded_intent(self, mock_get, verifier: PaymentVerifier) -> None:
        mock_get.return_value.status_code = 200
        mock_get.return_value.json.return_value = {"id": "pi_123", "status": "succeeded"}
        verifier.verify("pi_123")
        args, kwargs = mock_get.call_args
        assert args[0] == "https://api.stripe.com/v1/payment_intents/pi_123"
        assert kwargs["auth"] == ("sk_test_123", "")

    @patch("tools.payment_tool.httpx.get")
    def test_unfinished_intent(self, mock_get, verifier: PaymentVerifier) -> None:
        mock_get.return_value.status_code = 200
        mock_get.return_value.json.return_value = {"status": "requires_payment_method"}
        with pytest.raises(PaymentRequired, match="requires_payment_method"):
            verifier.verify("pi_123")

    @patch("tools.payment_tool.httpx.get")
    def test_unknown_intent(self, mock_get, verifier: PaymentVerifier) -> None:
        mock_get.return_value.status_code = 404
        with pytest.raises(PaymentRequired, match="Unknown payment token"):
            verifier.verify("pi_nope")

    @patch("tools.payment_tool.httpx.get")
    def test_stripe_outage(self, mock_get, verifier: PaymentVerifier) -> None:
        mock_get.side_effect = httpx.ConnectError("down")
        with pytest.raises(PaymentError):
            verifier.verify("pi_123")
