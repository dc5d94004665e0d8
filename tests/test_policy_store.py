"""Tests for core/policy_store.py — both store implementations honour the same contract."""

from __future__ import annotations

from pathlib import Path

import pytest

from core.memory import MemoryStore
from core.policy_compiler import PolicyBuildOptions, compile_policy
from core.policy_store import (
    FilePolicyStore,
    InMemoryPolicyStore,
    PolicyNotFound,
    PolicyStore,
    WalletPolicyRecord,
)

CHILD = "0x" + "D" * 40
PARENT = "0x" + "e" * 40


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path: Path) -> PolicyStore:
    if request.param == "memory":
        return InMemoryPolicyStore()
    return FilePolicyStore(MemoryStore(path=tmp_path / "state.json"))


@pytest.fixture
def record() -> WalletPolicyRecord:
    doc = compile_policy(PolicyBuildOptions(name="kid", usd_limit=15, restrict_to_base=True))
    return WalletPolicyRecord(parent_wallet_address=PARENT, policy=doc)


class TestContract:
    def test_get_missing_returns_none(self, store: PolicyStore) -> None:
        assert store.get(CHILD) is None

    def test_require_missing_raises(self, store: PolicyStore) -> None:
        with pytest.raises(PolicyNotFound) as exc_info:
            store.require(CHILD)
        assert exc_info.value.child_address == CHILD

    def test_put_then_get_any_case(self, store: PolicyStore, record: WalletPolicyRecord) -> None:
        store.put(CHILD, record)
        assert store.get(CHILD.lower()) == record
        assert store.get("0x" + "d" * 40) == record

    def test_put_overwrites(self, store: PolicyStore, record: WalletPolicyRecord) -> None:
        store.put(CHILD, record)
        other = WalletPolicyRecord(parent_wallet_address=CHILD, policy=record.policy)
        store.put(CHILD.lower(), other)
        assert store.require(CHILD).parent_wallet_address == CHILD

    def test_remove(self, store: PolicyStore, record: WalletPolicyRecord) -> None:
        store.put(CHILD, record)
        store.remove(CHILD.lower())
        assert store.get(CHILD) is None
        store.remove(CHILD)  # removing twice is fine


class TestFileStore:
    def test_key_lowercased_on_disk(self, tmp_path: Path, record: WalletPolicyRecord) -> None:
        memory = MemoryStore(path=tmp_path / "state.json")
        FilePolicyStore(memory).put(CHILD, record)
        assert list(memory.load()["wallet_policies"]) == [CHILD.lower()]

    def test_record_wire_shape(self, record: WalletPolicyRecord) -> None:
        data = record.to_dict()
        assert data["parentWalletAddress"] == PARENT
        assert data["policy"]["partnerId"] == "allowance-wallet"
        assert WalletPolicyRecord.from_dict(data) == record
