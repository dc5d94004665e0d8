"""Replay a JSON-lines file of candidate transactions against a policy document.

Each input line is one transaction request (``{chainId, type, to?, valueUsd?}``).
One result line is printed per input, followed by an allowed/denied tally, so a
parent's settings can be checked against a realistic spending history before
they go live.

Usage:
    python -m scripts.replay_transactions policy.json history.jsonl [--now MS]
"""

from __future__ import annotations

import argparse
import json
import logging
from collections import Counter
from pathlib import Path

from core.permissions import parse_policy
from core.policy_engine import MalformedTransactionRequest, TransactionRequest, evaluate

logger = logging.getLogger(__name__)


def replay(policy_path: Path, tx_path: Path, now: int | None = None) -> Counter:
    doc = parse_policy(policy_path.read_text())
    tally: Counter = Counter()
    with tx_path.open() as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                tx = TransactionRequest.from_dict(json.loads(line))
            except (json.JSONDecodeError, MalformedTransactionRequest) as exc:
                logger.warning("line %d skipped: %s", lineno, exc)
                tally["malformed"] += 1
                continue
            decision = evaluate(doc, tx, now=now)
            tally["allowed" if decision.allowed else decision.matched_condition or "denied"] += 1
            print(json.dumps({"line": lineno, **decision.to_dict()}))
    return tally


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("policy", type=Path)
    parser.add_argument("transactions", type=Path)
    parser.add_argument("--now", type=int, help="epoch milliseconds; enables the validity window check")
    args = parser.parse_args()

    tally = replay(args.policy, args.transactions, now=args.now)
    logger.info("replay done: %s", ", ".join(f"{k}={v}" for k, v in sorted(tally.items())))


if __name__ == "__main__":
    main()
