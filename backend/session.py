"""Session state for one receipt-splitting form.

The whole form lives in one frozen ``SessionState``. Every operation here is a
reducer: it takes a state and returns a new one, so readers always see a
settled snapshot and tests need no rendering harness.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import allocation
import billing
from allocation import Allocations, Item, ItemAllocation, Share, TaxInfo, User

logger = logging.getLogger(__name__)


class SubmissionError(ValueError):
    """A precondition for sending the expense to the ledger is not met."""


@dataclass(frozen=True)
class SessionState:
    users: Tuple[User, ...] = field(default_factory=tuple)
    allocations: Allocations = field(default_factory=tuple)
    tax: Optional[TaxInfo] = None
    subtotal: Optional[str] = None
    total: Optional[str] = None
    payer: Optional[str] = None
    description: str = ""
    group_id: str = ""
    primary_receipt_path: Optional[str] = None
    all_receipt_paths: Tuple[str, ...] = field(default_factory=tuple)

    def has_user(self, user_id: Optional[str]) -> bool:
        return any(u.id == user_id for u in self.users)

    def user_ids(self) -> List[str]:
        return [u.id for u in self.users]


def _allocation_from_product(product: Dict[str, Any]) -> ItemAllocation:
    item = Item(id=str(product["id"]), name=str(product.get("name", "")), price=str(product.get("price", "$0.00")))
    shares: List[Share] = []
    seen = set()
    for raw in product.get("shares") or []:
        share = Share.from_dict(raw)
        if not share.user_id or share.user_id in seen:
            continue
        seen.add(share.user_id)
        shares.append(share)
    return ItemAllocation(item=item, shares=tuple(shares))


def load_extraction(state: SessionState, extraction: Dict[str, Any]) -> SessionState:
    """Start a new allocation round from a normalised extraction result.

    The previous item set is replaced wholesale. The payer survives only if
    they are still on the roster, otherwise the first user pays.
    """
    users: List[User] = []
    for u in extraction.get("users") or []:
        user = User(id=str(u["id"]), name=str(u.get("name", "")), color=str(u.get("color", "")))
        if any(existing.id == user.id for existing in users):
            logger.warning("Dropping duplicate user id %s (%s)", user.id, user.name)
            continue
        users.append(user)

    allocations: List[ItemAllocation] = []
    for product in extraction.get("products") or []:
        item_allocation = _allocation_from_product(product)
        if any(existing.id == item_allocation.id for existing in allocations):
            logger.warning("Dropping duplicate item id %s (%s)", item_allocation.id, item_allocation.item.name)
            continue
        allocations.append(item_allocation)
    raw_tax = extraction.get("tax")
    tax = None
    if isinstance(raw_tax, dict):
        try:
            rate = float(raw_tax.get("rate") or 0)
        except (TypeError, ValueError):
            logger.warning("Unreadable tax rate %r, using 0", raw_tax.get("rate"))
            rate = 0.0
        tax = TaxInfo(rate=rate, amount=str(raw_tax.get("amount", "0")))

    payer = state.payer
    if users and not any(u.id == payer for u in users):
        payer = users[0].id

    subtotal = extraction.get("subtotal")
    total = extraction.get("total")
    return replace(
        state,
        users=tuple(users),
        allocations=tuple(allocations),
        tax=tax,
        subtotal=str(subtotal) if subtotal is not None else None,
        total=str(total) if total is not None else None,
        payer=payer,
        group_id=str(extraction.get("group_id") or state.group_id),
        primary_receipt_path=str(extraction.get("primary_receipt_path") or ""),
        all_receipt_paths=tuple(str(p) for p in extraction.get("all_receipt_paths") or []),
    )


def reset(state: SessionState) -> SessionState:
    # Users, payer and group stay for the next receipt.
    return replace(
        state,
        allocations=(),
        tax=None,
        subtotal=None,
        total=None,
        description="",
        primary_receipt_path=None,
        all_receipt_paths=(),
    )


def set_payer(state: SessionState, user_id: str) -> SessionState:
    if not state.has_user(user_id):
        return state
    return replace(state, payer=user_id)


def set_description(state: SessionState, description: str) -> SessionState:
    return replace(state, description=description or "")


def select_group(state: SessionState, group_id: str) -> SessionState:
    return replace(state, group_id=str(group_id or ""))


# Share operators scoped to the roster: a user id that is not loaded is a no-op.


def toggle_assignment(state: SessionState, item_id: str, user_id: str) -> SessionState:
    if not state.has_user(user_id):
        return state
    return replace(state, allocations=allocation.toggle_assignment(state.allocations, item_id, user_id))


def assign_all_to_one(state: SessionState, user_id: str, item_id: Optional[str] = None) -> SessionState:
    if not state.has_user(user_id):
        return state
    return replace(state, allocations=allocation.assign_all_to_one(state.allocations, user_id, item_id))


def split_all_equally(state: SessionState) -> SessionState:
    return replace(state, allocations=allocation.split_all_equally(state.allocations, state.user_ids()))


def update_share_percentage(state: SessionState, item_id: str, user_id: str, percentage: float) -> SessionState:
    return replace(
        state, allocations=allocation.update_share_percentage(state.allocations, item_id, user_id, percentage)
    )


def update_share_amount(state: SessionState, item_id: str, user_id: str, amount: Any) -> SessionState:
    return replace(state, allocations=allocation.update_share_amount(state.allocations, item_id, user_id, amount))


def distribute_equally(state: SessionState, item_id: str) -> SessionState:
    return replace(state, allocations=allocation.distribute_equally(state.allocations, item_id))


def balance_remaining_percentage(state: SessionState, item_id: str) -> SessionState:
    return replace(state, allocations=allocation.balance_remaining_percentage(state.allocations, item_id))


def summarize(state: SessionState) -> Dict[str, Any]:
    summary = billing.bill_summary(state.users, state.allocations, state.tax, state.subtotal, state.total)
    summary["payer"] = state.payer
    return summary


def validate_submission(state: SessionState) -> None:
    if not state.payer:
        raise SubmissionError("Missing required information: No payer selected")
    if state.tax is None:
        raise SubmissionError("Missing required information: Tax information not available")
    if not state.subtotal or not state.total:
        raise SubmissionError("Missing required information: Subtotal or total amount not available")
    if not state.description.strip():
        raise SubmissionError("Please enter an expense description")
    if not allocation.is_fully_assigned(state.allocations):
        raise SubmissionError("All items must be fully assigned with shares totaling 100%")


def build_expense_request(state: SessionState) -> Dict[str, Any]:
    """Ledger payload; call ``validate_submission`` first."""
    total_amount = float(billing.to_money(allocation.parse_price(state.total)))
    tax_amount = float(billing.to_money(allocation.parse_price(state.tax.amount if state.tax else None)))
    user_splits = []
    for user in state.users:
        try:
            owed = float(billing.user_total(state.allocations, user.id, state.tax))
        except Exception:
            logger.exception("Error calculating split for user %s", user.id)
            continue
        user_splits.append(
            {
                "id": user.id,
                "name": user.name,
                "paid": total_amount if user.id == state.payer else 0,
                "owed": owed,
            }
        )
    return {
        "description": state.description,
        "payer": state.payer,
        "totalAmount": total_amount,
        "tax": tax_amount,
        "userSplits": user_splits,
        "groupId": state.group_id,
        "receiptPath": state.primary_receipt_path or "",
    }


def to_dict(state: SessionState) -> Dict[str, Any]:
    return {
        "users": [{"id": u.id, "name": u.name, "color": u.color} for u in state.users],
        "products": [
            {
                "id": a.id,
                "name": a.item.name,
                "price": a.item.price,
                "shares": [{"userId": s.user_id, "percentage": s.percentage} for s in a.shares],
            }
            for a in state.allocations
        ],
        "tax": {"rate": state.tax.rate, "amount": state.tax.amount} if state.tax else None,
        "subtotal": state.subtotal,
        "total": state.total,
        "payer": state.payer,
        "description": state.description,
        "group_id": state.group_id,
        "primary_receipt_path": state.primary_receipt_path,
        "all_receipt_paths": list(state.all_receipt_paths),
    }
