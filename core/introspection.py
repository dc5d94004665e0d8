"""Read a compiled policy document back into display summaries.

These are display helpers only.  They summarise, and summaries are lossy: a
document with a $10 limit on Base and a $50 limit on Ethereum reports a
``usd_limit`` of 10, while the evaluator applies each chain's own limit.
Never make an allow/deny decision from anything in this module; use
``core.policy_engine.evaluate``.
"""

from __future__ import annotations

import json
from typing import Any

from core.network_config import BASE_CHAIN_ID
from core.permissions import (
    TO_ADDRESS,
    VALUE,
    ActionType,
    Comparator,
    Effect,
    PolicyDocument,
    is_number,
)


def allowed_chains(doc: PolicyDocument) -> tuple[str, ...]:
    """Distinct chain ids on any ALLOW permission, in document order."""
    chains = (p.chain_id for p in doc.permissions() if p.effect == Effect.ALLOW)
    return tuple(dict.fromkeys(chains))


def usd_limit(doc: PolicyDocument) -> float | None:
    """Tightest VALUE limit across ALLOW/TRANSFER permissions, or None."""
    limits = [
        cond.reference
        for perm in doc.permissions()
        if perm.effect == Effect.ALLOW and perm.type == ActionType.TRANSFER
        for cond in perm.conditions
        if cond.resource == VALUE
        and cond.comparator in (Comparator.LESS_THAN, Comparator.EQUALS)
        and is_number(cond.reference)
    ]
    return min(limits) if limits else None  # type: ignore[type-var]


def allowed_addresses(doc: PolicyDocument) -> tuple[str, ...] | None:
    """Recipient allowlist of the first ALLOW/TRANSFER permission that has one."""
    for perm in doc.permissions():
        if perm.effect != Effect.ALLOW or perm.type != ActionType.TRANSFER:
            continue
        for cond in perm.conditions:
            if cond.resource == TO_ADDRESS and cond.comparator == Comparator.INCLUDED_IN:
                return cond.reference  # type: ignore[return-value]
    return None


def denied_action_types(doc: PolicyDocument) -> frozenset[ActionType]:
    return frozenset(p.type for p in doc.permissions() if p.effect == Effect.DENY)


def policy_summary(doc: PolicyDocument) -> dict[str, Any]:
    """Compact view for the parent dashboard and the CLI ``summary`` command."""
    chains = allowed_chains(doc)
    if chains == (BASE_CHAIN_ID,):
        chain = "Base only"
    else:
        chain = f"{len(chains)} chains"
    addresses = allowed_addresses(doc)
    return {
        "chain": chain,
        "allowed_chains": list(chains),
        "usd_limit": usd_limit(doc),
        "blocked_actions": sorted(a.value for a in denied_action_types(doc)),
        "allowed_addresses": list(addresses) if addresses is not None else None,
    }


def format_policy_for_display(doc: PolicyDocument) -> str:
    return json.dumps(doc.to_dict(), indent=2)
