"""File-based JSON state store with atomic writes."""

from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from core.config import DEFAULT_STATE_PATH

# Top-level sections; each maps a string key to a JSON object.
POLICIES = "policies"                # PermissionPolicy records by id
LINKS = "links"                      # child address (lowercased) → link record
WALLET_POLICIES = "wallet_policies"  # child address (lowercased) → {parentWalletAddress, policy}

_DEFAULT_STATE: dict[str, Any] = {
    POLICIES: {},
    LINKS: {},
    WALLET_POLICIES: {},
}


class MemoryStore:
    """Thin wrapper around a JSON file.  All reads go to disk; there is no in-process cache.

    Each ``put``/``delete`` is a read-modify-write under a lock followed by an
    atomic ``os.replace``, so a reader never sees a half-written file.
    """

    def __init__(self, path: Path = DEFAULT_STATE_PATH):
        self.path = path
        self._lock = threading.RLock()

    # ── whole-state API ───────────────────────────────────────────

    def load(self) -> dict[str, Any]:
        """Read state from disk.  Returns fresh default if file is missing."""
        if not self.path.exists():
            return copy.deepcopy(_DEFAULT_STATE)
        with open(self.path) as fh:
            state = json.load(fh)
        for section in _DEFAULT_STATE:
            state.setdefault(section, {})
        return state

    def save(self, state: dict[str, Any]) -> None:
        """Atomically write *state* to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as fh:
                json.dump(state, fh, indent=2)
            os.replace(tmp, self.path)
        except Exception:
            os.unlink(tmp)
            raise

    # ── keyed sections ────────────────────────────────────────────

    def get(self, section: str, key: str) -> dict[str, Any] | None:
        return self.load().get(section, {}).get(key)

    def put(self, section: str, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            state = self.load()
            state.setdefault(section, {})[key] = value
            self.save(state)

    def delete(self, section: str, key: str) -> bool:
        """Remove *key*; returns False when it was not there."""
        with self._lock:
            state = self.load()
            if key not in state.get(section, {}):
                return False
            del state[section][key]
            self.save(state)
            return True

    def values(self, section: str) -> list[dict[str, Any]]:
        return list(self.load().get(section, {}).values())

    def transaction(self) -> threading.RLock:
        """Lock for callers that must read and write several keys as one step."""
        return self._lock
