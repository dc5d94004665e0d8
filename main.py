"""Command-line entry point: compile, inspect and check allowance policies."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from core.config import load_config
from core.introspection import format_policy_for_display, policy_summary
from core.memory import MemoryStore
from core.permissions import ActionType, PolicyDocumentError, parse_policy
from core.policy_compiler import InvalidPolicyOptions, PolicyBuildOptions, compile_policy
from core.policy_engine import Decision, MalformedTransactionRequest, PolicyEngine, TransactionRequest, evaluate
from core.policy_registry import DEFAULT_POLICY_NAME, PolicyRecordNotFound, PolicyRegistry
from core.policy_store import FilePolicyStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stderr,
)

logger = logging.getLogger(__name__)

EXIT_ALLOWED = 0
EXIT_ERROR = 1
EXIT_DENIED = 2


def _read_text(source: str) -> str:
    """File path, ``-`` for stdin, or an inline JSON literal."""
    if source == "-":
        return sys.stdin.read()
    if source.lstrip().startswith("{"):
        return source
    return Path(source).read_text()


def _read_json(source: str) -> Any:
    return json.loads(_read_text(source))


def _emit(obj: Any) -> None:
    print(json.dumps(obj, indent=2))


def _add_policy_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--name", default=DEFAULT_POLICY_NAME)
    p.add_argument("--usd-limit", type=float, help="exclusive per-transaction USD limit")
    p.add_argument("--allowed-address", action="append", dest="allowed_addresses", metavar="ADDR",
                   help="recipient allowlist entry (repeatable)")
    p.add_argument("--base-only", action="store_true", help="restrict the policy to Base (8453)")
    p.add_argument("--chain", action="append", dest="chains", metavar="CHAIN_ID",
                   help="allowed chain id (repeatable); ignored with --base-only")
    p.add_argument("--block", action="append", dest="blocked", default=[], metavar="ACTION",
                   type=lambda s: ActionType(s.upper()), help="extra action type to deny (repeatable)")
    p.add_argument("--allow-sign-messages", action="store_true")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Child wallet allowance policy tool")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("compile", help="compile allowance settings into a policy document")
    _add_policy_options(p)
    p.add_argument("--partner-id")
    p.add_argument("--valid-from", type=int, help="epoch milliseconds")
    p.add_argument("--valid-to", type=int, help="epoch milliseconds")
    p.add_argument("-o", "--output", type=Path, help="write the document here instead of stdout")

    p = sub.add_parser("evaluate", help="evaluate a transaction against a policy document")
    p.add_argument("policy", help="policy JSON file, '-' or inline JSON")
    p.add_argument("tx", help="transaction JSON file, '-' or inline JSON")
    p.add_argument("--now", type=int, help="epoch milliseconds; enables the validity window check")

    p = sub.add_parser("summary", help="display summary of a policy document")
    p.add_argument("policy")
    p.add_argument("--full", action="store_true", help="print the whole document")

    p = sub.add_parser("create-policy", help="create a stored permission policy")
    p.add_argument("--parent", required=True, help="parent wallet address")
    _add_policy_options(p)

    p = sub.add_parser("link", help="link a child wallet to a stored policy")
    p.add_argument("policy_id")
    p.add_argument("child_address")

    p = sub.add_parser("check", help="authoritative check of a transaction for a child wallet")
    p.add_argument("child_address")
    p.add_argument("tx")

    return parser.parse_args(argv)


def _print_decision(decision: Decision) -> int:
    _emit(decision.to_dict())
    return EXIT_ALLOWED if decision.allowed else EXIT_DENIED


def run(args: argparse.Namespace) -> int:
    config = load_config()

    if args.command == "compile":
        options = PolicyBuildOptions(
            name=args.name,
            usd_limit=args.usd_limit,
            allowed_addresses=args.allowed_addresses,
            restrict_to_base=args.base_only,
            allowed_chains=args.chains,
            blocked_actions=frozenset(args.blocked),
            allow_sign_messages=args.allow_sign_messages,
            valid_from=args.valid_from,
            valid_to=args.valid_to,
        )
        doc = compile_policy(
            options,
            partner_id=args.partner_id or config.policy.partner_id,
            default_chains=config.policy.default_chains,
        )
        if args.output:
            args.output.write_text(format_policy_for_display(doc) + "\n")
            logger.info("wrote policy to %s", args.output)
        else:
            print(format_policy_for_display(doc))
        return EXIT_ALLOWED

    if args.command == "evaluate":
        doc = parse_policy(_read_text(args.policy))
        tx = TransactionRequest.from_dict(_read_json(args.tx))
        return _print_decision(evaluate(doc, tx, now=args.now))

    if args.command == "summary":
        doc = parse_policy(_read_text(args.policy))
        if args.full:
            print(format_policy_for_display(doc))
        else:
            _emit(policy_summary(doc))
        return EXIT_ALLOWED

    memory = MemoryStore(path=config.store.path)
    store = FilePolicyStore(memory)

    if args.command == "check":
        tx = TransactionRequest.from_dict(_read_json(args.tx))
        return _print_decision(PolicyEngine(store).authorize(args.child_address, tx))

    registry = PolicyRegistry(memory, store, config=config.policy)
    if args.command == "create-policy":
        policy = registry.create_policy(
            args.parent,
            name=args.name,
            usd_limit=args.usd_limit,
            restrict_to_base=args.base_only,
            allowed_chains=args.chains or (),
            allowed_addresses=args.allowed_addresses,
            blocked_actions=set(args.blocked),
            allow_sign_messages=args.allow_sign_messages,
        )
        _emit(policy.to_dict())
        return EXIT_ALLOWED

    if args.command == "link":
        policy = registry.link_child(args.policy_id, args.child_address)
        _emit(policy.to_dict())
        return EXIT_ALLOWED

    raise AssertionError(f"unhandled command {args.command}")


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        code = run(args)
    except (InvalidPolicyOptions, PolicyDocumentError, MalformedTransactionRequest) as exc:
        logger.error("%s", exc)
        sys.exit(EXIT_ERROR)
    except PolicyRecordNotFound as exc:
        logger.error("%s", exc)
        sys.exit(EXIT_ERROR)
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("could not read input: %s", exc)
        sys.exit(EXIT_ERROR)
    sys.exit(code)


if __name__ == "__main__":
    main()
