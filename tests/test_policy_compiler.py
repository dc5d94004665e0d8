"""Tests for core/policy_compiler.py — scope layout, determinism, option validation."""

from __future__ import annotations

import pytest

from core.network_config import ALL_CHAINS, BASE_CHAIN_ID
from core.permissions import TO_ADDRESS, VALUE, ActionType, Comparator, Effect, format_policy
from core.policy_compiler import InvalidPolicyOptions, PolicyBuildOptions, compile_policy, resolve_chains
from policies.default_policies import (
    BLOCKED_ACTIONS_SCOPE,
    DENY_DEPLOY_SCOPE,
    DENY_SMART_CONTRACT_SCOPE,
    SIGN_MESSAGES_SCOPE,
    TRANSFER_SCOPE,
)

UPPER = "0x" + "A" * 40
OTHER = "0x" + "1" * 40


class TestBaseOnlyWithLimit:
    def test_layout(self) -> None:
        doc = compile_policy(PolicyBuildOptions(name="kid", usd_limit=15, restrict_to_base=True))
        assert [s.name for s in doc.scopes] == [TRANSFER_SCOPE, DENY_DEPLOY_SCOPE, DENY_SMART_CONTRACT_SCOPE]

        (allow,) = doc.scope(TRANSFER_SCOPE).permissions  # type: ignore[union-attr]
        assert (allow.effect, allow.chain_id, allow.type) == (Effect.ALLOW, BASE_CHAIN_ID, ActionType.TRANSFER)
        (cond,) = allow.conditions
        assert (cond.resource, cond.comparator, cond.reference) == (VALUE, Comparator.LESS_THAN, 15)

        denies = {(p.chain_id, p.type) for p in doc.permissions() if p.effect == Effect.DENY}
        assert denies == {
            (BASE_CHAIN_ID, ActionType.DEPLOY_CONTRACT),
            (BASE_CHAIN_ID, ActionType.SMART_CONTRACT),
        }

    def test_security_scopes_are_required(self) -> None:
        doc = compile_policy(PolicyBuildOptions(name="kid", restrict_to_base=True))
        assert doc.scope(DENY_DEPLOY_SCOPE).required  # type: ignore[union-attr]
        assert doc.scope(DENY_SMART_CONTRACT_SCOPE).required  # type: ignore[union-attr]

    def test_description_mentions_limit_and_chain(self) -> None:
        doc = compile_policy(PolicyBuildOptions(name="kid", usd_limit=15, restrict_to_base=True))
        assert doc.scope(TRANSFER_SCOPE).description == "Allow sending funds up to $15 USD on Base"  # type: ignore[union-attr]


class TestChains:
    def test_defaults_to_all_chains(self) -> None:
        doc = compile_policy(PolicyBuildOptions(name="kid"))
        chains = [p.chain_id for p in doc.scope(TRANSFER_SCOPE).permissions]  # type: ignore[union-attr]
        assert chains == list(ALL_CHAINS)

    def test_restrict_to_base_wins_over_chain_list(self) -> None:
        opts = PolicyBuildOptions(name="kid", restrict_to_base=True, allowed_chains=["1", "137"])
        assert resolve_chains(opts) == [BASE_CHAIN_ID]

    def test_requested_chains_canonical_order(self) -> None:
        opts = PolicyBuildOptions(name="kid", allowed_chains=["999", "137", "8453"])
        assert resolve_chains(opts) == ["8453", "137", "999"]

    def test_bad_chain_id(self) -> None:
        with pytest.raises(InvalidPolicyOptions, match="decimal"):
            compile_policy(PolicyBuildOptions(name="kid", allowed_chains=["0x2105"]))

    def test_every_chain_gets_both_denies(self) -> None:
        doc = compile_policy(PolicyBuildOptions(name="kid", allowed_chains=["1", "8453"]))
        denies = [(p.chain_id, p.type) for p in doc.permissions() if p.effect == Effect.DENY]
        assert len(denies) == 4


class TestAllowlist:
    def test_addresses_lowercased_sorted_deduplicated(self) -> None:
        doc = compile_policy(
            PolicyBuildOptions(name="kid", restrict_to_base=True, allowed_addresses=[UPPER, OTHER, UPPER.lower()])
        )
        (allow,) = doc.scope(TRANSFER_SCOPE).permissions  # type: ignore[union-attr]
        (cond,) = allow.conditions
        assert cond.resource == TO_ADDRESS
        assert cond.comparator == Comparator.INCLUDED_IN
        assert cond.reference == (OTHER, UPPER.lower())

    def test_empty_allowlist_means_no_condition(self) -> None:
        doc = compile_policy(PolicyBuildOptions(name="kid", restrict_to_base=True, allowed_addresses=[]))
        (allow,) = doc.scope(TRANSFER_SCOPE).permissions  # type: ignore[union-attr]
        assert allow.conditions == ()

    def test_malformed_address(self) -> None:
        with pytest.raises(InvalidPolicyOptions, match="not a 0x-prefixed"):
            compile_policy(PolicyBuildOptions(name="kid", allowed_addresses=["0x1234"]))

    def test_trailing_newline_address_rejected(self) -> None:
        with pytest.raises(InvalidPolicyOptions, match="not a 0x-prefixed"):
            compile_policy(PolicyBuildOptions(name="kid", allowed_addresses=[UPPER + "\n"]))

    def test_string_instead_of_list(self) -> None:
        with pytest.raises(InvalidPolicyOptions, match="collection"):
            compile_policy(PolicyBuildOptions(name="kid", allowed_addresses=UPPER))


class TestLimitValidation:
    @pytest.mark.parametrize("limit", [0, -5, float("nan"), True])
    def test_rejects_non_positive_or_non_numeric(self, limit) -> None:
        with pytest.raises(InvalidPolicyOptions, match="positive number"):
            compile_policy(PolicyBuildOptions(name="kid", usd_limit=limit))

    def test_no_limit_means_no_value_condition(self) -> None:
        doc = compile_policy(PolicyBuildOptions(name="kid", restrict_to_base=True))
        assert all(c.resource != VALUE for p in doc.permissions() for c in p.conditions)


class TestOptionalScopes:
    def test_blocked_actions_scope(self) -> None:
        doc = compile_policy(
            PolicyBuildOptions(
                name="kid",
                restrict_to_base=True,
                blocked_actions={ActionType.SIGN_MESSAGE, ActionType.DEPLOY_CONTRACT},
            )
        )
        scope = doc.scope(BLOCKED_ACTIONS_SCOPE)
        assert scope is not None and not scope.required
        assert [(p.effect, p.type) for p in scope.permissions] == [(Effect.DENY, ActionType.SIGN_MESSAGE)]

    def test_only_security_blocks_adds_no_scope(self) -> None:
        doc = compile_policy(
            PolicyBuildOptions(name="kid", blocked_actions={ActionType.DEPLOY_CONTRACT, ActionType.SMART_CONTRACT})
        )
        assert doc.scope(BLOCKED_ACTIONS_SCOPE) is None

    def test_sign_messages_scope(self) -> None:
        doc = compile_policy(PolicyBuildOptions(name="kid", restrict_to_base=True, allow_sign_messages=True))
        scope = doc.scope(SIGN_MESSAGES_SCOPE)
        assert scope is not None
        assert [(p.effect, p.type) for p in scope.permissions] == [(Effect.ALLOW, ActionType.SIGN_MESSAGE)]


class TestDeterminism:
    def test_same_options_same_document(self) -> None:
        a = compile_policy(PolicyBuildOptions(name="kid", usd_limit=20, allowed_addresses=[OTHER, UPPER]))
        b = compile_policy(PolicyBuildOptions(name="kid", usd_limit=20, allowed_addresses=[UPPER, OTHER]))
        assert a == b
        assert format_policy(a, indent=2) == format_policy(b, indent=2)

    def test_partner_id_passed_through(self) -> None:
        doc = compile_policy(PolicyBuildOptions(name="kid"), partner_id="acme")
        assert doc.partner_id == "acme"


class TestWindow:
    def test_window_carried(self) -> None:
        doc = compile_policy(PolicyBuildOptions(name="kid", valid_from=10, valid_to=20))
        assert (doc.valid_from, doc.valid_to) == (10, 20)

    def test_inverted_window(self) -> None:
        with pytest.raises(InvalidPolicyOptions, match="precedes"):
            compile_policy(PolicyBuildOptions(name="kid", valid_from=20, valid_to=10))
