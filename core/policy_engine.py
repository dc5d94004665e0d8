"""Transaction evaluation.  Every signing request passes through here.

``evaluate`` is the single decision function.  The advisory pre-flight check
(``PolicyRegistry.preflight``) and the authoritative check
(``PolicyEngine.authorize``) both call it; there is no second copy of the
rules anywhere.

Order of evaluation, first match wins:

1. validity window (only when ``now`` is given)
2. any DENY permission on (chainId, type) → denied, whatever ALLOW says
3. first ALLOW permission on (chainId, type) → all its conditions must hold
4. nothing matched → denied, as "chain not allowed" when no ALLOW permission
   mentions the chain at all, else "no permission for this action type"

A condition whose input is missing from the request (no ``valueUsd``, no
``to``) is skipped rather than failed.  Callers must always send the fields
they have.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from core.config import now_ms
from core.network_config import chain_name, is_address, is_chain_id, normalize_address, short_address
from core.permissions import (
    FROM_ADDRESS,
    TO_ADDRESS,
    VALUE,
    ActionType,
    Comparator,
    Condition,
    Effect,
    Permission,
    PolicyDocument,
    argument_index,
    format_usd,
    is_number,
)
from core.policy_store import PolicyNotFound, PolicyStore, WalletPolicyRecord

logger = logging.getLogger(__name__)


class MalformedTransactionRequest(ValueError):
    """Raised when a request is missing or has unusable required fields."""


# ── request / result ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class TransactionRequest:
    chain_id: str
    type: ActionType
    to: str | None = None
    value_usd: float | None = None
    from_address: str | None = None
    arguments: tuple[str, ...] | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TransactionRequest:
        """Parse the wire request ``{chainId, type, to?, valueUsd?, from?, arguments?}``."""
        if not isinstance(payload, dict):
            raise MalformedTransactionRequest("transaction request must be an object")

        chain_id = payload.get("chainId")
        if isinstance(chain_id, int) and not isinstance(chain_id, bool):
            chain_id = str(chain_id)
        if not chain_id:
            raise MalformedTransactionRequest("chainId is required")
        if not is_chain_id(chain_id):
            raise MalformedTransactionRequest(f"chainId must be a decimal string, got {chain_id!r}")

        raw_type = payload.get("type")
        if not raw_type:
            raise MalformedTransactionRequest("type is required")
        try:
            action = ActionType(str(raw_type).upper())
        except ValueError:
            raise MalformedTransactionRequest(f"unknown transaction type {raw_type!r}") from None

        to = payload.get("to") or None
        if to is not None and not is_address(to):
            raise MalformedTransactionRequest(f"to is not a valid address: {to!r}")
        sender = payload.get("from") or None
        if sender is not None and not is_address(sender):
            raise MalformedTransactionRequest(f"from is not a valid address: {sender!r}")

        value_usd = payload.get("valueUsd")
        if value_usd is not None and (not is_number(value_usd) or value_usd < 0):
            raise MalformedTransactionRequest(f"valueUsd must be a non-negative number, got {value_usd!r}")

        arguments = payload.get("arguments")
        if arguments is not None:
            if isinstance(arguments, str) or not all(isinstance(a, str) for a in arguments):
                raise MalformedTransactionRequest("arguments must be a list of strings")
            arguments = tuple(arguments)

        return cls(
            chain_id=chain_id,
            type=action,
            to=to,
            value_usd=value_usd,
            from_address=sender,
            arguments=arguments,
        )


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None
    matched_condition: str | None = None

    @classmethod
    def allow(cls) -> Decision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, matched_condition: str) -> Decision:
        return cls(allowed=False, reason=reason, matched_condition=matched_condition)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"allowed": self.allowed}
        if self.reason is not None:
            out["reason"] = self.reason
        if self.matched_condition is not None:
            out["matchedCondition"] = self.matched_condition
        return out


def classify_transaction(to: str | None, data: str | None) -> ActionType:
    """Infer the action type of a raw EVM transaction.

    No recipient → contract deployment; non-empty calldata → contract call;
    otherwise a plain transfer.
    """
    if not to or to == "0x":
        return ActionType.DEPLOY_CONTRACT
    if data and data != "0x" and len(data) > 2:
        return ActionType.SMART_CONTRACT
    return ActionType.TRANSFER


# ── condition checks ──────────────────────────────────────────────────────


def _unsupported(cond: Condition) -> Decision:
    return Decision.deny(f"Unsupported policy condition: {cond.describe()}", "unsupported_condition")


def _check_value(cond: Condition, value: float) -> Decision | None:
    ref = cond.reference
    if not is_number(ref):
        try:
            ref = float(ref)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return _unsupported(cond)
    limit = format_usd(ref)  # type: ignore[arg-type]

    if cond.comparator == Comparator.LESS_THAN:
        if value >= ref:  # type: ignore[operator]
            return Decision.deny(
                f"Transaction value ${value:.2f} exceeds the ${limit} USD limit", "value_limit"
            )
        return None
    if cond.comparator == Comparator.GREATER_THAN:
        if value <= ref:  # type: ignore[operator]
            return Decision.deny(
                f"Transaction value ${value:.2f} must be greater than ${limit} USD", "value_minimum"
            )
        return None
    if cond.comparator == Comparator.EQUALS:
        if value != ref:
            return Decision.deny(f"Transaction value must equal ${limit} USD", "value_exact")
        return None
    return _unsupported(cond)


def _check_address(cond: Condition, address: str, label: str) -> Decision | None:
    addr = normalize_address(address)
    ref = cond.reference
    if cond.comparator in (Comparator.INCLUDED_IN, Comparator.NOT_INCLUDED_IN):
        listed = {normalize_address(r) for r in ref}  # type: ignore[union-attr]
        if cond.comparator == Comparator.INCLUDED_IN and addr not in listed:
            return Decision.deny(f"{label} address is not in the allowed list", "address_allowlist")
        if cond.comparator == Comparator.NOT_INCLUDED_IN and addr in listed:
            return Decision.deny(f"{label} address is blocked", "address_blocklist")
        return None
    if cond.comparator == Comparator.EQUALS and isinstance(ref, str):
        if addr != normalize_address(ref):
            return Decision.deny(f"{label} address does not match the required address", "address_exact")
        return None
    return _unsupported(cond)


def _check_argument(cond: Condition, index: int, arg: str) -> Decision | None:
    ref = cond.reference
    mismatch = Decision.deny(f"Argument {index} ({arg!r}) fails {cond.describe()}", "argument_mismatch")

    if cond.comparator in (Comparator.INCLUDED_IN, Comparator.NOT_INCLUDED_IN):
        listed = arg in ref  # type: ignore[operator]
        ok = listed if cond.comparator == Comparator.INCLUDED_IN else not listed
        return None if ok else mismatch

    if cond.comparator == Comparator.EQUALS and isinstance(ref, str):
        return None if arg == ref else mismatch

    try:
        num = float(arg)
    except ValueError:
        return mismatch
    if cond.comparator == Comparator.EQUALS:
        return None if num == ref else mismatch
    if cond.comparator == Comparator.LESS_THAN:
        return None if num < ref else mismatch  # type: ignore[operator]
    if cond.comparator == Comparator.GREATER_THAN:
        return None if num > ref else mismatch  # type: ignore[operator]
    return _unsupported(cond)


def check_condition(cond: Condition, tx: TransactionRequest) -> Decision | None:
    """Denial for a failed condition; None when it holds or cannot be evaluated."""
    if cond.resource == VALUE:
        return None if tx.value_usd is None else _check_value(cond, tx.value_usd)
    if cond.resource == TO_ADDRESS:
        return None if tx.to is None else _check_address(cond, tx.to, "Recipient")
    if cond.resource == FROM_ADDRESS:
        return None if tx.from_address is None else _check_address(cond, tx.from_address, "Sender")
    index = argument_index(cond.resource)
    if index is not None:
        if tx.arguments is None or index >= len(tx.arguments):
            return None
        return _check_argument(cond, index, tx.arguments[index])
    return _unsupported(cond)


# ── evaluate ──────────────────────────────────────────────────────────────


def _check_window(doc: PolicyDocument, now: float) -> Decision | None:
    if doc.valid_from is not None and now < doc.valid_from:
        return Decision.deny("Policy is not valid yet", "policy_not_yet_valid")
    if doc.valid_to is not None and now > doc.valid_to:
        return Decision.deny("Policy has expired", "policy_expired")
    return None


def evaluate(doc: PolicyDocument, tx: TransactionRequest, now: float | None = None) -> Decision:
    """Decide whether *tx* is allowed by *doc*.  Denials are returned, not raised."""
    if now is not None:
        window = _check_window(doc, now)
        if window is not None:
            return window

    permissions = doc.permissions()
    matching = [p for p in permissions if p.matches(tx.chain_id, tx.type)]

    # DENY beats ALLOW for the same (chainId, type); keep this first.
    if any(p.effect == Effect.DENY for p in matching):
        return Decision.deny(
            f'Action "{tx.type.value}" is denied by policy on {chain_name(tx.chain_id)}',
            "action_denied",
        )

    allow: Permission | None = next((p for p in matching if p.effect == Effect.ALLOW), None)
    if allow is not None:
        for cond in allow.conditions:
            failed = check_condition(cond, tx)
            if failed is not None:
                logger.debug("condition %s failed: %s", cond.describe(), failed.reason)
                return failed
        return Decision.allow()

    allowed = list(dict.fromkeys(p.chain_id for p in permissions if p.effect == Effect.ALLOW))
    if tx.chain_id not in allowed:
        names = ", ".join(chain_name(c) for c in allowed) or "none"
        return Decision.deny(
            f"Chain {chain_name(tx.chain_id)} is not allowed by this policy. Allowed chains: {names}",
            "chain_restriction",
        )
    return Decision.deny(
        f'No permission for action type "{tx.type.value}" on {chain_name(tx.chain_id)}',
        "no_permission",
    )


# ── authoritative check ───────────────────────────────────────────────────


class PolicyEngine:
    """Authoritative check: the document always comes from the policy store."""

    def __init__(self, store: PolicyStore, clock: Callable[[], int] = now_ms):
        self.store = store
        self._clock = clock

    def authorize_with_record(
        self, child_address: str, tx: TransactionRequest
    ) -> tuple[Decision, WalletPolicyRecord | None]:
        """Decision plus the record it was made against (None on a store miss)."""
        try:
            record = self.store.require(child_address)
        except PolicyNotFound:
            logger.info("no policy on file for %s, denying", short_address(child_address))
            return Decision.deny("No policy on file for this wallet", "policy_not_found"), None

        decision = evaluate(record.policy, tx, now=self._clock())
        if decision.allowed:
            logger.info(
                "%s on chain %s allowed for %s", tx.type.value, tx.chain_id, short_address(child_address)
            )
        else:
            logger.info(
                "%s on chain %s denied for %s: %s",
                tx.type.value,
                tx.chain_id,
                short_address(child_address),
                decision.reason,
            )
        return decision, record

    def authorize(self, child_address: str, tx: TransactionRequest) -> Decision:
        return self.authorize_with_record(child_address, tx)[0]
