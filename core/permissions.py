"""Policy document model: Policy → Scope → Permission → Condition.

Documents are immutable.  Every collection is a tuple and every class is a
frozen dataclass, so a compiled document can be shared between request
handlers and replaced wholesale, never edited in place.  Structural checks run
in ``__post_init__``; a document that constructs is a document the evaluator
can walk.

The JSON wire shape (``to_dict`` / ``from_dict`` / ``format_policy`` /
``parse_policy``) uses the camelCase keys of the external enforcement service.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


class PolicyDocumentError(ValueError):
    """Raised when a policy document is structurally invalid."""


class Effect(Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


class ActionType(Enum):
    TRANSFER = "TRANSFER"
    SIGN_MESSAGE = "SIGN_MESSAGE"
    SMART_CONTRACT = "SMART_CONTRACT"
    DEPLOY_CONTRACT = "DEPLOY_CONTRACT"


class Comparator(Enum):
    EQUALS = "EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    INCLUDED_IN = "INCLUDED_IN"
    NOT_INCLUDED_IN = "NOT_INCLUDED_IN"


class ConditionType(Enum):
    STATIC = "STATIC"


# Condition resources.  ARGUMENTS is indexed: "ARGUMENTS[0]", "ARGUMENTS[1]", …
VALUE = "VALUE"
TO_ADDRESS = "TO_ADDRESS"
FROM_ADDRESS = "FROM_ADDRESS"
_ARGUMENTS_RE = re.compile(r"^ARGUMENTS\[(\d+)\]$")

Reference = Union[int, float, str, tuple[str, ...]]

_SET_COMPARATORS = (Comparator.INCLUDED_IN, Comparator.NOT_INCLUDED_IN)
_ORDER_COMPARATORS = (Comparator.LESS_THAN, Comparator.GREATER_THAN)


def arguments_resource(index: int) -> str:
    return f"ARGUMENTS[{index}]"


def argument_index(resource: str) -> int | None:
    """Return n for ``ARGUMENTS[n]``, else None."""
    m = _ARGUMENTS_RE.match(resource)
    return int(m.group(1)) if m else None


def is_number(value: object) -> bool:
    # bool is an int subclass; True is not a dollar amount.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def format_usd(amount: float) -> str:
    """``15`` → ``"15"``, ``14.99`` → ``"14.99"`` (no dollar sign)."""
    return str(int(amount)) if float(amount).is_integer() else str(amount)


def _parse_enum(enum_cls: type[Enum], raw: Any, what: str) -> Any:
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)  # type: ignore[attr-defined]
        raise PolicyDocumentError(f"unknown {what} {raw!r} (expected one of: {allowed})") from None


# ── condition ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Condition:
    resource: str
    comparator: Comparator
    reference: Reference
    type: ConditionType = ConditionType.STATIC

    def __post_init__(self) -> None:
        if not isinstance(self.resource, str) or (
            self.resource not in (VALUE, TO_ADDRESS, FROM_ADDRESS) and argument_index(self.resource) is None
        ):
            raise PolicyDocumentError(f"unknown condition resource {self.resource!r}")

        ref = self.reference
        if isinstance(ref, list):
            ref = tuple(ref)
            object.__setattr__(self, "reference", ref)

        if self.comparator in _SET_COMPARATORS:
            if not isinstance(ref, tuple) or not all(isinstance(r, str) for r in ref):
                raise PolicyDocumentError(
                    f"{self.comparator.value} requires a sequence of strings, got {ref!r}"
                )
        elif self.comparator in _ORDER_COMPARATORS:
            if not is_number(ref):
                raise PolicyDocumentError(
                    f"{self.comparator.value} requires a numeric reference, got {ref!r}"
                )
        elif not (is_number(ref) or isinstance(ref, str)):
            raise PolicyDocumentError(f"EQUALS requires a number or string reference, got {ref!r}")

    def describe(self) -> str:
        ref = list(self.reference) if isinstance(self.reference, tuple) else self.reference
        return f"{self.resource} {self.comparator.value} {ref}"

    def to_dict(self) -> dict[str, Any]:
        ref = list(self.reference) if isinstance(self.reference, tuple) else self.reference
        return {
            "type": self.type.value,
            "resource": self.resource,
            "comparator": self.comparator.value,
            "reference": ref,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        for key in ("resource", "comparator", "reference"):
            if key not in data:
                raise PolicyDocumentError(f"condition is missing {key!r}")
        return cls(
            type=_parse_enum(ConditionType, data.get("type", "STATIC"), "condition type"),
            resource=data["resource"],
            comparator=_parse_enum(Comparator, data["comparator"], "comparator"),
            reference=data["reference"],
        )


# ── permission ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Permission:
    effect: Effect
    chain_id: str
    type: ActionType
    conditions: tuple[Condition, ...] = ()

    def __post_init__(self) -> None:
        if isinstance(self.conditions, list):
            object.__setattr__(self, "conditions", tuple(self.conditions))
        if not isinstance(self.chain_id, str) or not self.chain_id:
            raise PolicyDocumentError(f"permission chainId must be a non-empty string, got {self.chain_id!r}")

    @property
    def key(self) -> tuple[str, ActionType, Effect]:
        return (self.chain_id, self.type, self.effect)

    def matches(self, chain_id: str, action: ActionType) -> bool:
        return self.chain_id == chain_id and self.type == action

    def to_dict(self) -> dict[str, Any]:
        return {
            "effect": self.effect.value,
            "chainId": self.chain_id,
            "type": self.type.value,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Permission:
        for key in ("effect", "chainId", "type"):
            if key not in data:
                raise PolicyDocumentError(f"permission is missing {key!r}")
        return cls(
            effect=_parse_enum(Effect, data["effect"], "effect"),
            chain_id=data["chainId"],
            type=_parse_enum(ActionType, data["type"], "permission type"),
            conditions=tuple(Condition.from_dict(c) for c in data.get("conditions") or []),
        )


# ── scope ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Scope:
    """A consent grouping.  ``required`` scopes cannot be switched off by the parent."""

    name: str
    description: str
    required: bool
    permissions: tuple[Permission, ...] = ()

    def __post_init__(self) -> None:
        if isinstance(self.permissions, list):
            object.__setattr__(self, "permissions", tuple(self.permissions))
        seen: set[tuple[str, ActionType, Effect]] = set()
        for perm in self.permissions:
            if perm.key in seen:
                raise PolicyDocumentError(
                    f"scope {self.name!r} lists {perm.effect.value}/{perm.type.value} "
                    f"on chain {perm.chain_id} more than once; merge the conditions instead"
                )
            seen.add(perm.key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "required": self.required,
            "permissions": [p.to_dict() for p in self.permissions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Scope:
        if "name" not in data:
            raise PolicyDocumentError("scope is missing 'name'")
        required = data.get("required", False)
        if not isinstance(required, bool):
            raise PolicyDocumentError(f"scope {data['name']!r}: 'required' must be a boolean, got {required!r}")
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            required=required,
            permissions=tuple(Permission.from_dict(p) for p in data.get("permissions") or []),
        )


# ── policy document ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PolicyDocument:
    partner_id: str
    scopes: tuple[Scope, ...] = ()
    valid_from: int | None = None
    valid_to: int | None = None

    def __post_init__(self) -> None:
        if isinstance(self.scopes, list):
            object.__setattr__(self, "scopes", tuple(self.scopes))
        names = [s.name for s in self.scopes]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise PolicyDocumentError(f"duplicate scope names: {', '.join(dupes)}")
        for ts_name in ("valid_from", "valid_to"):
            ts = getattr(self, ts_name)
            if ts is not None and not is_number(ts):
                raise PolicyDocumentError(f"{ts_name} must be a number, got {ts!r}")
        if self.valid_from is not None and self.valid_to is not None and self.valid_to < self.valid_from:
            raise PolicyDocumentError("validTo precedes validFrom")

    def permissions(self) -> list[Permission]:
        """All permissions in document order."""
        return [p for scope in self.scopes for p in scope.permissions]

    def scope(self, name: str) -> Scope | None:
        for s in self.scopes:
            if s.name == name:
                return s
        return None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"partnerId": self.partner_id}
        if self.valid_from is not None:
            out["validFrom"] = self.valid_from
        if self.valid_to is not None:
            out["validTo"] = self.valid_to
        out["scopes"] = [s.to_dict() for s in self.scopes]
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PolicyDocument:
        if not isinstance(data, dict):
            raise PolicyDocumentError(f"policy document must be an object, got {type(data).__name__}")
        if "partnerId" not in data:
            raise PolicyDocumentError("policy document is missing 'partnerId'")
        return cls(
            partner_id=data["partnerId"],
            valid_from=data.get("validFrom"),
            valid_to=data.get("validTo"),
            scopes=tuple(Scope.from_dict(s) for s in data.get("scopes") or []),
        )


def format_policy(doc: PolicyDocument, indent: int | None = None) -> str:
    """Serialise a document to its wire JSON."""
    return json.dumps(doc.to_dict(), indent=indent)


def parse_policy(text: str) -> PolicyDocument:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PolicyDocumentError(f"policy document is not valid JSON: {exc}") from exc
    return PolicyDocument.from_dict(data)

