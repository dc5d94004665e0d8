"""Compile a parent's allowance settings into a policy document.

``compile_policy`` is pure: the same options always produce the same document
(no clock reads, canonical ordering for set-typed inputs), so recompiling an
unchanged configuration is a no-op.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from core.config import DEFAULT_PARTNER_ID
from core.network_config import (
    ALL_CHAINS,
    BASE_CHAIN_ID,
    chain_name,
    chain_sort_key,
    is_address,
    is_chain_id,
    normalize_address,
)
from core.permissions import (
    TO_ADDRESS,
    VALUE,
    ActionType,
    Comparator,
    Condition,
    Effect,
    Permission,
    PolicyDocument,
    Scope,
    format_usd,
    is_number,
)
from policies.default_policies import (
    BLOCKED_ACTIONS_SCOPE,
    DENY_DEPLOY_SCOPE,
    DENY_SMART_CONTRACT_SCOPE,
    POLICIES,
    SECURITY_DENIED_ACTIONS,
    SIGN_MESSAGES_SCOPE,
    TRANSFER_SCOPE,
)

logger = logging.getLogger(__name__)


class InvalidPolicyOptions(ValueError):
    """Raised when allowance settings cannot be compiled."""


@dataclass(frozen=True)
class PolicyBuildOptions:
    name: str
    usd_limit: float | None = None
    allowed_addresses: Iterable[str] | None = None
    restrict_to_base: bool = False
    allowed_chains: Iterable[str] | None = None
    # Extra action types to deny on top of the mandatory security rules.
    blocked_actions: Iterable[ActionType] = field(default_factory=frozenset)
    allow_sign_messages: bool = False
    valid_from: int | None = None
    valid_to: int | None = None


# ── option checks ─────────────────────────────────────────────────────────


def resolve_chains(
    options: PolicyBuildOptions,
    default_chains: Iterable[str] = ALL_CHAINS,
) -> list[str]:
    """Base only when restricted, else the requested chains, else the default set."""
    if options.restrict_to_base:
        return [BASE_CHAIN_ID]
    requested = set(options.allowed_chains or ())
    chains = requested or set(default_chains)
    bad = sorted(c for c in chains if not is_chain_id(c))
    if bad:
        raise InvalidPolicyOptions(f"chain ids must be decimal strings, got {bad}")
    return sorted(chains, key=chain_sort_key)


def _check_usd_limit(usd_limit: float | None) -> float | None:
    if usd_limit is None:
        return None
    if not is_number(usd_limit) or usd_limit <= 0:
        raise InvalidPolicyOptions(f"usd_limit must be a positive number, got {usd_limit!r}")
    return usd_limit


def _check_addresses(addresses: Iterable[str] | None) -> tuple[str, ...]:
    if addresses is None:
        return ()
    if isinstance(addresses, str):
        raise InvalidPolicyOptions("allowed_addresses must be a collection of addresses, not a string")
    out: set[str] = set()
    for addr in addresses:
        if not is_address(addr):
            raise InvalidPolicyOptions(f"allowed address {addr!r} is not a 0x-prefixed 40-hex-digit address")
        out.add(normalize_address(addr))
    return tuple(sorted(out))


def _check_window(valid_from: int | None, valid_to: int | None) -> None:
    for label, ts in (("valid_from", valid_from), ("valid_to", valid_to)):
        if ts is not None and not is_number(ts):
            raise InvalidPolicyOptions(f"{label} must be an epoch-millisecond number, got {ts!r}")
    if valid_from is not None and valid_to is not None and valid_to < valid_from:
        raise InvalidPolicyOptions("valid_to precedes valid_from")


# ── scope builders ────────────────────────────────────────────────────────


def _transfer_description(usd_limit: float | None, addresses: tuple[str, ...], chains: list[str]) -> str:
    parts = [POLICIES[TRANSFER_SCOPE]["description"]]
    if usd_limit is not None:
        parts.append(f"up to ${format_usd(usd_limit)} USD")
    if addresses:
        noun = "address" if len(addresses) == 1 else "addresses"
        parts.append(f"to {len(addresses)} approved {noun}")
    if chains == [BASE_CHAIN_ID]:
        parts.append("on Base")
    else:
        parts.append("on " + ", ".join(chain_name(c) for c in chains))
    return " ".join(parts)


def _transfer_scope(chains: list[str], usd_limit: float | None, addresses: tuple[str, ...]) -> Scope:
    conditions: list[Condition] = []
    if usd_limit is not None:
        conditions.append(Condition(resource=VALUE, comparator=Comparator.LESS_THAN, reference=usd_limit))
    if addresses:
        conditions.append(
            Condition(resource=TO_ADDRESS, comparator=Comparator.INCLUDED_IN, reference=addresses)
        )
    return Scope(
        name=TRANSFER_SCOPE,
        description=_transfer_description(usd_limit, addresses, chains),
        required=POLICIES[TRANSFER_SCOPE]["required"],
        permissions=tuple(
            Permission(Effect.ALLOW, chain, ActionType.TRANSFER, tuple(conditions)) for chain in chains
        ),
    )


def _deny_scope(scope_name: str, chains: list[str], actions: list[ActionType]) -> Scope:
    spec = POLICIES[scope_name]
    return Scope(
        name=scope_name,
        description=spec["description"],
        required=spec["required"],
        permissions=tuple(Permission(Effect.DENY, chain, action) for action in actions for chain in chains),
    )


def _sign_scope(chains: list[str]) -> Scope:
    spec = POLICIES[SIGN_MESSAGES_SCOPE]
    return Scope(
        name=SIGN_MESSAGES_SCOPE,
        description=spec["description"],
        required=spec["required"],
        permissions=tuple(Permission(Effect.ALLOW, chain, ActionType.SIGN_MESSAGE) for chain in chains),
    )


# ── compile ───────────────────────────────────────────────────────────────


def compile_policy(
    options: PolicyBuildOptions,
    partner_id: str = DEFAULT_PARTNER_ID,
    default_chains: Iterable[str] = ALL_CHAINS,
) -> PolicyDocument:
    """Build the policy document for *options*.

    Raises InvalidPolicyOptions for a non-positive limit, a malformed
    allowlist address, a malformed chain id or an inverted validity window.
    """
    usd_limit = _check_usd_limit(options.usd_limit)
    addresses = _check_addresses(options.allowed_addresses)
    _check_window(options.valid_from, options.valid_to)
    chains = resolve_chains(options, default_chains)

    deploy, smart_contract = SECURITY_DENIED_ACTIONS
    scopes = [
        _transfer_scope(chains, usd_limit, addresses),
        _deny_scope(DENY_DEPLOY_SCOPE, chains, [deploy]),
        _deny_scope(DENY_SMART_CONTRACT_SCOPE, chains, [smart_contract]),
    ]

    requested_blocks = set(options.blocked_actions or ())
    extra_blocks = [a for a in ActionType if a in requested_blocks and a not in SECURITY_DENIED_ACTIONS]
    if extra_blocks:
        scopes.append(_deny_scope(BLOCKED_ACTIONS_SCOPE, chains, extra_blocks))
    if options.allow_sign_messages:
        scopes.append(_sign_scope(chains))

    doc = PolicyDocument(
        partner_id=partner_id,
        scopes=tuple(scopes),
        valid_from=options.valid_from,
        valid_to=options.valid_to,
    )
    logger.debug(
        "compiled policy %r: chains=%s usd_limit=%s allowlist=%d scopes=%d",
        options.name,
        chains,
        usd_limit,
        len(addresses),
        len(doc.scopes),
    )
    return doc
