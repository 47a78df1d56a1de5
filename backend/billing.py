import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence

from allocation import (
    ZERO,
    ItemAllocation,
    TaxInfo,
    User,
    allocation_state,
    assignment_progress,
    is_fully_assigned,
    parse_price,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: Decimal) -> str:
    return str(to_money(value))


def items_subtotal(allocations: Sequence[ItemAllocation]) -> Decimal:
    """Sum of every item price, assigned or not."""
    return to_money(sum((parse_price(a.item.price) for a in allocations), ZERO))


def user_subtotal(allocations: Sequence[ItemAllocation], user_id: str) -> Decimal:
    # Rounded once at the end, not per item.
    total = ZERO
    for allocation in allocations:
        share = allocation.share_for(user_id)
        if share is None:
            continue
        price = parse_price(allocation.item.price)
        percentage = Decimal(str(share.percentage or 0))
        total += price * (percentage / 100)
    return to_money(total)


def user_tax_share(allocations: Sequence[ItemAllocation], user_id: str, tax: Optional[TaxInfo]) -> Decimal:
    if tax is None:
        return to_money(ZERO)
    grand_subtotal = items_subtotal(allocations)
    if grand_subtotal == 0:
        return to_money(ZERO)
    proportion = user_subtotal(allocations, user_id) / grand_subtotal
    return to_money(proportion * parse_price(tax.amount))


def user_total(allocations: Sequence[ItemAllocation], user_id: str, tax: Optional[TaxInfo]) -> Decimal:
    return to_money(user_subtotal(allocations, user_id) + user_tax_share(allocations, user_id, tax))


def item_count(allocations: Sequence[ItemAllocation], user_id: str) -> int:
    return sum(1 for a in allocations if a.share_for(user_id) is not None)


def unassigned_items(allocations: Sequence[ItemAllocation]) -> List[ItemAllocation]:
    return [a for a in allocations if not a.shares]


def unassigned_total(allocations: Sequence[ItemAllocation]) -> Decimal:
    return to_money(sum((parse_price(a.item.price) for a in unassigned_items(allocations)), ZERO))


def _user_breakdown(allocations: Sequence[ItemAllocation], user: User, tax: Optional[TaxInfo]) -> Dict[str, Any]:
    try:
        subtotal = user_subtotal(allocations, user.id)
        tax_share = user_tax_share(allocations, user.id, tax)
        total = to_money(subtotal + tax_share)
        count = item_count(allocations, user.id)
    except Exception:
        logger.exception("Could not compute split for user %s", user.id)
        subtotal = tax_share = total = ZERO
        count = 0
    return {
        "user_id": user.id,
        "user_name": user.name,
        "color": user.color,
        "subtotal": format_money(subtotal),
        "tax": format_money(tax_share),
        "total": format_money(total),
        "item_count": count,
    }


def bill_summary(
    users: Sequence[User],
    allocations: Sequence[ItemAllocation],
    tax: Optional[TaxInfo] = None,
    subtotal: Optional[str] = None,
    total: Optional[str] = None,
) -> Dict[str, Any]:
    """Derived per-user breakdown, recomputed from the current shares on every call."""
    unassigned = unassigned_items(allocations)
    return {
        "subtotal": format_money(parse_price(subtotal)) if subtotal is not None else None,
        "tax": format_money(parse_price(tax.amount)) if tax is not None else None,
        "tax_rate": tax.rate if tax is not None else None,
        "total": format_money(parse_price(total)) if total is not None else None,
        "items_subtotal": format_money(items_subtotal(allocations)),
        "users": [_user_breakdown(allocations, user, tax) for user in users],
        "items": [
            {
                "item_id": a.id,
                "name": a.item.name,
                "price": a.item.price,
                "state": allocation_state(a).value,
                "shares": [{"user_id": s.user_id, "percentage": s.percentage} for s in a.shares],
            }
            for a in allocations
        ],
        "unassigned_items": [{"item_id": a.id, "name": a.item.name, "price": a.item.price} for a in unassigned],
        "unassigned_total": format_money(unassigned_total(allocations)),
        "assignment_progress": round(assignment_progress(allocations), 2),
        "fully_assigned": is_fully_assigned(allocations),
    }
