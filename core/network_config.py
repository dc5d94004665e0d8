from __future__ import annotations

import re
from dataclasses import dataclass

_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")
_CHAIN_ID_RE = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class Chain:
    """An EVM chain the allowance wallet knows how to name."""

    chain_id: str
    name: str


BASE = Chain("8453", "Base")
ETHEREUM = Chain("1", "Ethereum")
POLYGON = Chain("137", "Polygon")
ARBITRUM = Chain("42161", "Arbitrum")
OPTIMISM = Chain("10", "Optimism")

# Base is the one chain this wallet currently targets.
BASE_CHAIN_ID = BASE.chain_id

# Catalogue order doubles as the canonical ordering for compiled documents.
KNOWN_CHAINS: tuple[Chain, ...] = (BASE, ETHEREUM, POLYGON, ARBITRUM, OPTIMISM)
ALL_CHAINS: tuple[str, ...] = tuple(c.chain_id for c in KNOWN_CHAINS)

CHAIN_NAMES: dict[str, str] = {c.chain_id: c.name for c in KNOWN_CHAINS}


def chain_name(chain_id: str) -> str:
    """Human-readable chain name, falling back to ``chain <id>``."""
    return CHAIN_NAMES.get(chain_id, f"chain {chain_id}")


def is_chain_id(value: object) -> bool:
    return isinstance(value, str) and bool(_CHAIN_ID_RE.fullmatch(value))


def is_address(value: object) -> bool:
    """True for ``0x``-prefixed 40-hex-digit strings (any case)."""
    return isinstance(value, str) and bool(_ADDRESS_RE.fullmatch(value))


def normalize_address(address: str) -> str:
    """Addresses are case-insensitive; every comparison goes through this."""
    return address.lower()


def short_address(address: str) -> str:
    """Truncated form used in log lines."""
    return address[:10] + "…" if len(address) > 10 else address


def chain_sort_key(chain_id: str) -> tuple[int, int]:
    """Known chains in catalogue order, then unknown ids numerically."""
    if chain_id in ALL_CHAINS:
        return (0, ALL_CHAINS.index(chain_id))
    return (1, int(chain_id))
