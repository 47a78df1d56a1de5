import logging
import math
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

BALANCE_EPSILON = 0.01
FULL_SHARE = 100
ZERO = Decimal("0")


def parse_price(price: Any) -> Decimal:
    """Read a ``"$12.50"`` style price. Anything unreadable is worth 0."""
    if isinstance(price, bool) or price is None:
        value = None
    else:
        text = str(price).strip().replace("$", "").replace(",", "").strip()
        try:
            value = Decimal(text)
        except (InvalidOperation, ValueError):
            value = None
    if value is None or not value.is_finite():
        logger.warning("Unreadable price %r, using 0", price)
        return ZERO
    return value


@dataclass(frozen=True)
class User:
    id: str
    name: str
    color: str = ""


@dataclass(frozen=True)
class Item:
    id: str
    name: str
    price: str = "$0.00"


@dataclass(frozen=True)
class Share:
    user_id: str
    percentage: float = 0

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Share":
        # Missing or unreadable percentages count as 0.
        value = raw.get("percentage", raw.get("percent"))
        try:
            percentage = float(value) if value is not None else 0.0
        except (TypeError, ValueError):
            logger.warning("Unreadable share percentage %r for user %s", value, raw.get("userId"))
            percentage = 0.0
        if not math.isfinite(percentage):
            logger.warning("Non-finite share percentage %r for user %s, using 0", value, raw.get("userId"))
            percentage = 0.0
        return cls(user_id=str(raw.get("userId", raw.get("user_id", ""))), percentage=percentage)


@dataclass(frozen=True)
class ItemAllocation:
    item: Item
    shares: Tuple[Share, ...] = field(default_factory=tuple)

    @property
    def id(self) -> str:
        return self.item.id

    def share_for(self, user_id: str) -> Optional[Share]:
        return next((s for s in self.shares if s.user_id == user_id), None)


@dataclass(frozen=True)
class TaxInfo:
    rate: float
    amount: str


class AllocationState(str, Enum):
    UNASSIGNED = "unassigned"
    IMBALANCED = "imbalanced"
    BALANCED = "balanced"


Allocations = Tuple[ItemAllocation, ...]


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves towards +infinity (browser Math.round)."""
    return int(math.floor(value + 0.5))


def new_allocations(items: Sequence[Item]) -> Allocations:
    return tuple(ItemAllocation(item=item) for item in items)


def total_percentage(allocation: ItemAllocation) -> float:
    return sum((share.percentage or 0) for share in allocation.shares)


def _replace_item(allocations: Allocations, item_id: str, new_allocation: ItemAllocation) -> Allocations:
    return tuple(new_allocation if a.id == item_id else a for a in allocations)


def _find(allocations: Allocations, item_id: str) -> Optional[ItemAllocation]:
    return next((a for a in allocations if a.id == item_id), None)


def _integer_split(user_ids: Sequence[str]) -> Tuple[Share, ...]:
    count = len(user_ids)
    equal_share = FULL_SHARE // count
    remainder = FULL_SHARE - equal_share * count
    return tuple(
        Share(user_id=uid, percentage=equal_share + (1 if index < remainder else 0))
        for index, uid in enumerate(user_ids)
    )


# ---------------------------------------------------------------------------
# Share store operators. Each takes the current allocation tuple and returns a
# new one; unknown item or user ids leave the input untouched.
# ---------------------------------------------------------------------------


def toggle_assignment(allocations: Allocations, item_id: str, user_id: str) -> Allocations:
    """Add or remove ``user_id`` on an item, then split it equally.

    Percentages written here are left fractional (100 / 3 stays 33.33...), the
    balanced check absorbs the floating point error.
    """
    target = _find(allocations, item_id)
    if target is None or not user_id:
        return allocations

    if target.share_for(user_id) is not None:
        remaining = [s for s in target.shares if s.user_id != user_id]
    else:
        remaining = list(target.shares) + [Share(user_id=user_id, percentage=0)]

    if remaining:
        equal_percentage = FULL_SHARE / len(remaining)
        remaining = [replace(s, percentage=equal_percentage) for s in remaining]
    return _replace_item(allocations, item_id, replace(target, shares=tuple(remaining)))


def assign_all_to_one(allocations: Allocations, user_id: str, item_id: Optional[str] = None) -> Allocations:
    if not user_id:
        return allocations
    if item_id is not None and _find(allocations, item_id) is None:
        return allocations
    return tuple(
        replace(a, shares=(Share(user_id=user_id, percentage=FULL_SHARE),))
        if item_id is None or a.id == item_id
        else a
        for a in allocations
    )


def split_all_equally(allocations: Allocations, user_ids: Sequence[str]) -> Allocations:
    if not user_ids:
        return allocations
    shares = _integer_split(list(user_ids))
    return tuple(replace(a, shares=shares) for a in allocations)


def update_share_percentage(
    allocations: Allocations, item_id: str, user_id: str, raw_percentage: float
) -> Allocations:
    """Set one user's percentage, capped so the item can never exceed 100.

    Other users keep their values; nothing is rebalanced.
    """
    target = _find(allocations, item_id)
    if target is None:
        return allocations
    index = next((i for i, s in enumerate(target.shares) if s.user_id == user_id), -1)
    if index == -1:
        return allocations
    try:
        rounded = round_half_up(float(raw_percentage))
    except (TypeError, ValueError, OverflowError):
        logger.warning("Ignoring percentage %r for item %s", raw_percentage, item_id)
        return allocations

    max_allowed = FULL_SHARE - sum((s.percentage or 0) for i, s in enumerate(target.shares) if i != index)
    new_value = max(0, min(rounded, round_half_up(max_allowed)))

    shares: List[Share] = list(target.shares)
    shares[index] = replace(shares[index], percentage=new_value)
    return _replace_item(allocations, item_id, replace(target, shares=tuple(shares)))


def update_share_amount(allocations: Allocations, item_id: str, user_id: str, amount: Any) -> Allocations:
    """Set one user's share from a dollar amount instead of a percentage."""
    target = _find(allocations, item_id)
    if target is None or target.share_for(user_id) is None:
        return allocations
    text = str(amount).strip().replace("$", "") if amount is not None else ""
    try:
        dollars = Decimal(text)
    except (InvalidOperation, ValueError):
        return allocations
    if not dollars.is_finite():
        return allocations
    price = parse_price(target.item.price)
    if price <= 0:
        return allocations
    dollars = max(ZERO, min(price, dollars))
    percentage = float(dollars / price * 100)
    return update_share_percentage(allocations, item_id, user_id, percentage)


def distribute_equally(allocations: Allocations, item_id: str) -> Allocations:
    target = _find(allocations, item_id)
    if target is None or not target.shares:
        return allocations
    shares = _integer_split([s.user_id for s in target.shares])
    return _replace_item(allocations, item_id, replace(target, shares=shares))


def balance_remaining_percentage(allocations: Allocations, item_id: str) -> Allocations:
    """Spread whatever is missing from (or above) 100 over the existing shares.

    Each share is rounded first, then gets ``floor(remaining / count)`` and the
    first ``remainder`` shares one more unit. The current distribution is kept,
    only the drift is adjusted. With fractional inputs the rounding can leave
    the item a few units off 100; a second call settles it.
    """
    target = _find(allocations, item_id)
    if target is None or not target.shares:
        return allocations
    current = total_percentage(target)
    if current == FULL_SHARE:
        return allocations

    remaining = FULL_SHARE - current
    count = len(target.shares)
    base_add = math.floor(remaining / count)
    remainder = remaining - base_add * count
    shares = tuple(
        replace(
            share,
            percentage=round_half_up(share.percentage or 0) + base_add + (1 if index < remainder else 0),
        )
        for index, share in enumerate(target.shares)
    )
    return _replace_item(allocations, item_id, replace(target, shares=shares))


# ---------------------------------------------------------------------------
# Completion checks
# ---------------------------------------------------------------------------


def is_item_balanced(allocation: ItemAllocation) -> bool:
    return abs(total_percentage(allocation) - FULL_SHARE) < BALANCE_EPSILON


def allocation_state(allocation: ItemAllocation) -> AllocationState:
    if not allocation.shares:
        return AllocationState.UNASSIGNED
    if is_item_balanced(allocation):
        return AllocationState.BALANCED
    return AllocationState.IMBALANCED


def is_fully_assigned(allocations: Sequence[ItemAllocation]) -> bool:
    if not allocations:
        return False
    return all(allocation_state(a) is AllocationState.BALANCED for a in allocations)


def assignment_progress(allocations: Sequence[ItemAllocation]) -> float:
    if not allocations:
        return 0
    balanced = sum(1 for a in allocations if allocation_state(a) is AllocationState.BALANCED)
    return (balanced / len(allocations)) * 100
