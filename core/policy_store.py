"""Child wallet address → authoritative policy document.

The signing path reads from here and only from here; it never trusts a policy
document supplied by a client.  Keys are lowercased on every read and write.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

from core.memory import WALLET_POLICIES, MemoryStore
from core.network_config import normalize_address, short_address
from core.permissions import PolicyDocument

logger = logging.getLogger(__name__)


class PolicyNotFound(LookupError):
    """No policy on file for a child wallet address."""

    def __init__(self, child_address: str):
        super().__init__(f"no policy on file for wallet {child_address}")
        self.child_address = child_address


@dataclass(frozen=True)
class WalletPolicyRecord:
    parent_wallet_address: str
    policy: PolicyDocument

    def to_dict(self) -> dict:
        return {"parentWalletAddress": self.parent_wallet_address, "policy": self.policy.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> WalletPolicyRecord:
        return cls(
            parent_wallet_address=data["parentWalletAddress"],
            policy=PolicyDocument.from_dict(data["policy"]),
        )


class PolicyStore(ABC):
    """Keyed storage of wallet policies."""

    @abstractmethod
    def put(self, child_address: str, record: WalletPolicyRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, child_address: str) -> WalletPolicyRecord | None:
        raise NotImplementedError

    @abstractmethod
    def remove(self, child_address: str) -> None:
        raise NotImplementedError

    def require(self, child_address: str) -> WalletPolicyRecord:
        """Like get(), but a miss raises PolicyNotFound."""
        record = self.get(child_address)
        if record is None:
            raise PolicyNotFound(child_address)
        return record


class InMemoryPolicyStore(PolicyStore):
    """Process-local store; the record object is swapped whole under a lock."""

    def __init__(self) -> None:
        self._records: dict[str, WalletPolicyRecord] = {}
        self._lock = threading.Lock()

    def put(self, child_address: str, record: WalletPolicyRecord) -> None:
        key = normalize_address(child_address)
        with self._lock:
            self._records[key] = record
        logger.info("stored policy for %s", short_address(key))

    def get(self, child_address: str) -> WalletPolicyRecord | None:
        with self._lock:
            return self._records.get(normalize_address(child_address))

    def remove(self, child_address: str) -> None:
        with self._lock:
            self._records.pop(normalize_address(child_address), None)


class FilePolicyStore(PolicyStore):
    """Store backed by the ``wallet_policies`` section of a MemoryStore file."""

    def __init__(self, memory: MemoryStore):
        self.memory = memory

    def put(self, child_address: str, record: WalletPolicyRecord) -> None:
        key = normalize_address(child_address)
        self.memory.put(WALLET_POLICIES, key, record.to_dict())
        logger.info("stored policy for %s in %s", short_address(key), self.memory.path)

    def get(self, child_address: str) -> WalletPolicyRecord | None:
        raw = self.memory.get(WALLET_POLICIES, normalize_address(child_address))
        return WalletPolicyRecord.from_dict(raw) if raw is not None else None

    def remove(self, child_address: str) -> None:
        self.memory.delete(WALLET_POLICIES, normalize_address(child_address))
