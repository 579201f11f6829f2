from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from ..core.errors import ValidationError

COMMAND_KINDS = (
    "mint",
    "burn",
    "freeze",
    "thaw",
    "blacklist_add",
    "blacklist_remove",
    "seize",
)
# Kinds that move tokens and therefore need a positive amount
AMOUNT_KINDS = frozenset({"mint", "burn", "seize"})

BURN_DEFAULT_TARGET = "self"
MAX_MEMO_LENGTH = 200

_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
_DIGITS_RE = re.compile(r"^[0-9]+(_[0-9]+)*$")


@dataclass(frozen=True)
class ValidatedCommand:
    kind: str
    target: str
    amount: int
    memo: str | None

    def params(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "amount": str(self.amount),
            "memo": self.memo,
        }


def parse_amount(value: Any) -> int:
    """Unsigned base-unit amount from a JSON integer or a digit string."""
    if isinstance(value, bool):
        raise ValidationError("amount must be an integer")
    if isinstance(value, int):
        if value < 0:
            raise ValidationError("amount must not be negative")
        return value
    if isinstance(value, str):
        text = value.strip()
        if not _DIGITS_RE.match(text):
            raise ValidationError("amount must be a whole number of base units")
        return int(text.replace("_", ""))
    raise ValidationError("amount must be an integer or a digit string")


def is_valid_address(value: str) -> bool:
    return bool(_ADDRESS_RE.match(value))


def validate_command(
    kind: Any, target: Any = None, amount: Any = None, memo: Any = None
) -> ValidatedCommand:
    if kind not in COMMAND_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(COMMAND_KINDS)}")

    if kind in AMOUNT_KINDS:
        if amount is None:
            raise ValidationError("amount is required")
        parsed_amount = parse_amount(amount)
        if parsed_amount <= 0:
            raise ValidationError("amount must be positive")
    else:
        parsed_amount = 0

    if target is None or (isinstance(target, str) and not target.strip()):
        if kind != "burn":
            raise ValidationError("target is required")
        resolved_target = BURN_DEFAULT_TARGET
    elif isinstance(target, str) and is_valid_address(target.strip()):
        resolved_target = target.strip()
    else:
        raise ValidationError("target must be a base58 address")

    if memo is not None:
        if not isinstance(memo, str):
            raise ValidationError("memo must be a string")
        if len(memo) > MAX_MEMO_LENGTH:
            raise ValidationError(f"memo must be at most {MAX_MEMO_LENGTH} characters")

    return ValidatedCommand(kind=kind, target=resolved_target, amount=parsed_amount, memo=memo)
