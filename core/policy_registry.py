"""Parent-facing permission policies and the child → policy link table.

A ``PermissionPolicy`` is a frozen record.  Every change builds a new record
and, when a compile-relevant field changed, a brand-new compiled document; the
stored record is then replaced in one write.  If recompilation fails the
stored record (and its document) is left exactly as it was.

Linking a child publishes the compiled document to the policy store, which is
what the signing path reads.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

from core.config import PolicyConfig, now_ms
from core.memory import LINKS, POLICIES, MemoryStore
from core.network_config import is_address, normalize_address, short_address
from core.permissions import ActionType, PolicyDocument
from core.policy_compiler import InvalidPolicyOptions, PolicyBuildOptions, compile_policy
from core.policy_engine import Decision, TransactionRequest, evaluate
from core.policy_store import PolicyStore, WalletPolicyRecord
from policies.default_policies import DEFAULT_BLOCKED_ACTIONS, SECURITY_DENIED_ACTIONS

logger = logging.getLogger(__name__)

DEFAULT_POLICY_NAME = "Child Allowance Policy"

# Fields whose change requires a recompile.
_COMPILED_FIELDS = frozenset(
    {
        "usd_limit",
        "restrict_to_base",
        "allowed_chains",
        "allowed_addresses",
        "blocked_actions",
        "allow_sign_messages",
    }
)
_MUTABLE_FIELDS = _COMPILED_FIELDS | {"name", "is_active"}


class PolicyRecordNotFound(LookupError):
    """Unknown PermissionPolicy id."""


@dataclass(frozen=True)
class PermissionPolicy:
    id: str
    name: str
    parent_wallet_address: str
    created_at: int
    updated_at: int
    restrict_to_base: bool = False
    allowed_chains: frozenset[str] = frozenset()
    blocked_actions: frozenset[ActionType] = DEFAULT_BLOCKED_ACTIONS
    usd_limit: float | None = None
    allowed_addresses: frozenset[str] | None = None
    allow_sign_messages: bool = False
    child_wallet_address: str | None = None
    is_active: bool = True
    compiled_document: PolicyDocument | None = None

    def build_options(self) -> PolicyBuildOptions:
        return PolicyBuildOptions(
            name=self.name,
            usd_limit=self.usd_limit,
            allowed_addresses=self.allowed_addresses,
            restrict_to_base=self.restrict_to_base,
            allowed_chains=self.allowed_chains,
            blocked_actions=self.blocked_actions,
            allow_sign_messages=self.allow_sign_messages,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "parentWalletAddress": self.parent_wallet_address,
            "childWalletAddress": self.child_wallet_address,
            "usdLimit": self.usd_limit,
            "restrictToBase": self.restrict_to_base,
            "allowedChains": sorted(self.allowed_chains),
            "allowedAddresses": sorted(self.allowed_addresses) if self.allowed_addresses is not None else None,
            "blockedActions": sorted(a.value for a in self.blocked_actions),
            "allowSignMessages": self.allow_sign_messages,
            "isActive": self.is_active,
            "compiledDocument": self.compiled_document.to_dict() if self.compiled_document else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionPolicy:
        addresses = data.get("allowedAddresses")
        doc = data.get("compiledDocument")
        return cls(
            id=data["id"],
            name=data["name"],
            parent_wallet_address=data["parentWalletAddress"],
            child_wallet_address=data.get("childWalletAddress"),
            usd_limit=data.get("usdLimit"),
            restrict_to_base=bool(data.get("restrictToBase", False)),
            allowed_chains=frozenset(data.get("allowedChains") or ()),
            allowed_addresses=frozenset(addresses) if addresses is not None else None,
            blocked_actions=frozenset(ActionType(a) for a in data.get("blockedActions") or ()),
            allow_sign_messages=bool(data.get("allowSignMessages", False)),
            is_active=bool(data.get("isActive", True)),
            compiled_document=PolicyDocument.from_dict(doc) if doc else None,
            created_at=data["createdAt"],
            updated_at=data["updatedAt"],
        )


@dataclass(frozen=True)
class LinkRecord:
    child_address: str  # always lowercased
    policy_id: str
    parent_wallet_address: str

    def to_dict(self) -> dict[str, str]:
        return {
            "childAddress": self.child_address,
            "policyId": self.policy_id,
            "parentWalletAddress": self.parent_wallet_address,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> LinkRecord:
        return cls(data["childAddress"], data["policyId"], data["parentWalletAddress"])


def _normalize_changes(changes: dict[str, Any]) -> dict[str, Any]:
    out = dict(changes)
    if "allowed_chains" in out:
        out["allowed_chains"] = frozenset(out["allowed_chains"] or ())
    if "allowed_addresses" in out and out["allowed_addresses"] is not None:
        out["allowed_addresses"] = frozenset(normalize_address(a) for a in out["allowed_addresses"])
    if "blocked_actions" in out:
        out["blocked_actions"] = frozenset(out["blocked_actions"] or ()) | frozenset(SECURITY_DENIED_ACTIONS)
    return out


class PolicyRegistry:
    """Application state for permission policies.

    Passed explicitly to whatever needs it; there is no module-level instance.
    """

    def __init__(
        self,
        memory: MemoryStore,
        policy_store: PolicyStore,
        config: PolicyConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.memory = memory
        self.policy_store = policy_store
        self.config = config or PolicyConfig()
        self._clock = clock

    # ── helpers ───────────────────────────────────────────────────

    def _compile(self, policy: PermissionPolicy) -> PolicyDocument:
        return compile_policy(
            policy.build_options(),
            partner_id=self.config.partner_id,
            default_chains=self.config.default_chains,
        )

    def _save(self, policy: PermissionPolicy) -> None:
        self.memory.put(POLICIES, policy.id, policy.to_dict())

    def _publish(self, policy: PermissionPolicy) -> None:
        """Push the compiled document of a linked, active policy to the policy store."""
        child = policy.child_wallet_address
        if child is None:
            return
        if not policy.is_active or policy.compiled_document is None:
            self.policy_store.remove(child)
            return
        self.policy_store.put(
            child,
            WalletPolicyRecord(
                parent_wallet_address=policy.parent_wallet_address,
                policy=policy.compiled_document,
            ),
        )

    # ── queries ───────────────────────────────────────────────────

    def get_policy(self, policy_id: str) -> PermissionPolicy:
        raw = self.memory.get(POLICIES, policy_id)
        if raw is None:
            raise PolicyRecordNotFound(f"no permission policy with id {policy_id!r}")
        return PermissionPolicy.from_dict(raw)

    def list_policies(self, parent_wallet_address: str | None = None) -> list[PermissionPolicy]:
        """All policies, oldest first, optionally only those owned by one parent."""
        policies = [PermissionPolicy.from_dict(raw) for raw in self.memory.values(POLICIES)]
        if parent_wallet_address is not None:
            parent = normalize_address(parent_wallet_address)
            policies = [p for p in policies if normalize_address(p.parent_wallet_address) == parent]
        return sorted(policies, key=lambda p: (p.created_at, p.id))

    def get_link(self, child_address: str) -> LinkRecord | None:
        raw = self.memory.get(LINKS, normalize_address(child_address))
        return LinkRecord.from_dict(raw) if raw is not None else None

    def load_child_policy(self, child_address: str) -> PermissionPolicy | None:
        link = self.get_link(child_address)
        if link is None:
            return None
        try:
            return self.get_policy(link.policy_id)
        except PolicyRecordNotFound:
            logger.warning("link for %s points at missing policy %s", short_address(child_address), link.policy_id)
            return None

    # ── mutations ─────────────────────────────────────────────────

    def create_policy(
        self,
        parent_wallet_address: str,
        name: str = DEFAULT_POLICY_NAME,
        usd_limit: float | None = None,
        restrict_to_base: bool = False,
        allowed_chains: Iterable[str] = (),
        allowed_addresses: Iterable[str] | None = None,
        blocked_actions: Iterable[ActionType] = DEFAULT_BLOCKED_ACTIONS,
        allow_sign_messages: bool = False,
        is_active: bool = True,
    ) -> PermissionPolicy:
        """Compile and store a new policy.  Raises InvalidPolicyOptions; nothing is stored then."""
        if not is_address(parent_wallet_address):
            raise InvalidPolicyOptions(f"parent wallet address {parent_wallet_address!r} is not a valid address")
        now = self._clock()
        fields = _normalize_changes(
            {
                "allowed_chains": allowed_chains,
                "allowed_addresses": allowed_addresses,
                "blocked_actions": blocked_actions,
            }
        )
        draft = PermissionPolicy(
            id=uuid.uuid4().hex,
            name=name,
            parent_wallet_address=parent_wallet_address,
            usd_limit=usd_limit,
            restrict_to_base=restrict_to_base,
            allow_sign_messages=allow_sign_messages,
            is_active=is_active,
            created_at=now,
            updated_at=now,
            **fields,
        )
        policy = replace(draft, compiled_document=self._compile(draft))
        self._save(policy)
        logger.info("created policy %s for parent %s", policy.id, short_address(parent_wallet_address))
        return policy

    def update_policy(self, policy_id: str, **changes: Any) -> PermissionPolicy:
        """Apply *changes* and, if needed, recompile; the stored record is replaced whole.

        On InvalidPolicyOptions nothing is written and the previous compiled
        document stays in force.
        """
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update field(s): {', '.join(sorted(unknown))}")

        with self.memory.transaction():
            current = self.get_policy(policy_id)
            candidate = replace(current, **_normalize_changes(changes), updated_at=self._clock())
            if _COMPILED_FIELDS & set(changes):
                try:
                    candidate = replace(candidate, compiled_document=self._compile(candidate))
                except InvalidPolicyOptions as exc:
                    logger.warning("recompile of policy %s failed, keeping previous document: %s", policy_id, exc)
                    raise
            self._save(candidate)
            self._publish(candidate)
        logger.info("updated policy %s (%s)", policy_id, ", ".join(sorted(changes)))
        return candidate

    def toggle_blocked_action(self, policy_id: str, action: ActionType) -> PermissionPolicy:
        if action in SECURITY_DENIED_ACTIONS:
            raise InvalidPolicyOptions(f"{action.value} is a required security rule and cannot be unblocked")
        with self.memory.transaction():
            current = self.get_policy(policy_id)
            blocked = set(current.blocked_actions)
            blocked.symmetric_difference_update({action})
            return self.update_policy(policy_id, blocked_actions=blocked)

    def set_active(self, policy_id: str, active: bool) -> PermissionPolicy:
        """Deactivating withdraws the document from the policy store; signing then fails closed."""
        return self.update_policy(policy_id, is_active=active)

    def delete_policy(self, policy_id: str) -> None:
        with self.memory.transaction():
            policy = self.get_policy(policy_id)
            if policy.child_wallet_address is not None:
                self.memory.delete(LINKS, normalize_address(policy.child_wallet_address))
                self.policy_store.remove(policy.child_wallet_address)
            self.memory.delete(POLICIES, policy_id)
        logger.info("deleted policy %s", policy_id)

    def link_child(self, policy_id: str, child_wallet_address: str) -> PermissionPolicy:
        """Attach a child wallet to a policy and publish the policy for that wallet."""
        if not is_address(child_wallet_address):
            raise InvalidPolicyOptions(f"child wallet address {child_wallet_address!r} is not a valid address")
        child_key = normalize_address(child_wallet_address)

        with self.memory.transaction():
            policy = self.get_policy(policy_id)

            # A policy governs at most one child.
            old_child = policy.child_wallet_address
            if old_child is not None and normalize_address(old_child) != child_key:
                self.memory.delete(LINKS, normalize_address(old_child))
                self.policy_store.remove(old_child)

            # A child resolves to exactly one policy.
            previous = self.get_link(child_key)
            if previous is not None and previous.policy_id != policy_id:
                try:
                    other = self.get_policy(previous.policy_id)
                    self._save(replace(other, child_wallet_address=None, updated_at=self._clock()))
                except PolicyRecordNotFound:
                    pass

            linked = replace(policy, child_wallet_address=child_wallet_address, updated_at=self._clock())
            self._save(linked)
            self.memory.put(
                LINKS,
                child_key,
                LinkRecord(child_key, policy_id, policy.parent_wallet_address).to_dict(),
            )
            self._publish(linked)
        logger.info("linked child %s to policy %s", short_address(child_wallet_address), policy_id)
        return linked

    # ── advisory check ────────────────────────────────────────────

    def preflight(self, child_address: str, tx: TransactionRequest, now: float | None = None) -> Decision:
        """Client-side check for UX; the signing path repeats it against the policy store."""
        policy = self.load_child_policy(child_address)
        if policy is None or policy.compiled_document is None:
            return Decision.deny("No policy on file for this wallet", "policy_not_found")
        if not policy.is_active:
            return Decision.deny("Permission policy is not active", "policy_inactive")
        return evaluate(policy.compiled_document, tx, now=self._clock() if now is None else now)
