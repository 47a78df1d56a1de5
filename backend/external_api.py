import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

import settings
from billing import format_money

logger = logging.getLogger(__name__)

USER_COLORS = [
    "#ef4444",  # red
    "#10b981",  # green
    "#8b5cf6",  # purple
    "#f97316",  # orange
    "#ec4899",  # pink
    "#6366f1",  # indigo
    "#14b8a6",  # teal
    "#f59e0b",  # amber
    "#06b6d4",  # cyan
    "#d946ef",  # fuchsia
]

NON_GROUP_ID = "0"
NON_GROUP_NAME = "non-group expenses"

FALLBACK_GROUPS: Dict[str, Dict[str, str]] = {
    "35": {"id": "35", "name": "Group #35"},
    "47": {"id": "47", "name": "Group #47"},
    "59664013": {"id": "59664013", "name": "9535K UT"},
    "76698661": {"id": "76698661", "name": "9547 M"},
}

UploadFileTuple = Tuple[str, bytes, str]


class ExtractionError(Exception):
    """The receipt extraction service failed or answered with something unusable."""


class LedgerError(Exception):
    """The expense ledger rejected or failed to record an expense."""


def color_for_index(index: int) -> str:
    return USER_COLORS[index % len(USER_COLORS)]


def api_url(path: str, base_url: Optional[str] = None) -> str:
    base = (base_url or settings.SPLIT_API_BASE_URL).rstrip("/")
    return f"{base}/{path.lstrip('/')}"


def _is_json(response: requests.Response) -> bool:
    return "application/json" in (response.headers.get("content-type") or "").lower()


# ---------------------------------------------------------------------------
# Group directory
# ---------------------------------------------------------------------------


def filter_groups(groups: Dict[str, Any]) -> Dict[str, Dict[str, str]]:
    """Normalise the directory payload and drop the "Non-group expenses" sentinel."""
    filtered: Dict[str, Dict[str, str]] = {}
    for group_id, group in groups.items():
        if isinstance(group, dict):
            gid = str(group.get("id", group_id))
            name = str(group.get("name", "")).strip()
        else:
            gid = str(group_id)
            name = str(group).strip()
        if str(group_id) == NON_GROUP_ID or gid == NON_GROUP_ID or name.lower() == NON_GROUP_NAME:
            continue
        filtered[str(group_id)] = {"id": gid, "name": name}
    return filtered


def fallback_groups() -> Dict[str, Dict[str, str]]:
    return {gid: dict(group) for gid, group in FALLBACK_GROUPS.items()}


def fetch_groups(base_url: Optional[str] = None, timeout: Optional[float] = None) -> Dict[str, Dict[str, str]]:
    """Group id -> {id, name}. Never raises: any failure yields the fallback groups."""
    url = api_url("groups", base_url)
    try:
        response = requests.get(
            url,
            headers={"Content-Type": "application/json"},
            timeout=timeout or settings.SPLIT_API_TIMEOUT_SEC,
        )
    except requests.RequestException as e:
        logger.warning("Group directory unreachable (%s), using fallback groups", e)
        return fallback_groups()

    if not response.ok:
        logger.warning("Group directory returned status %s, using fallback groups", response.status_code)
        return fallback_groups()
    if not _is_json(response):
        logger.warning("Group directory did not return JSON, using fallback groups")
        return fallback_groups()
    try:
        data = response.json()
    except ValueError:
        logger.warning("Group directory returned invalid JSON, using fallback groups")
        return fallback_groups()

    groups = data.get("groups") if isinstance(data, dict) else None
    if not isinstance(groups, dict):
        logger.warning("Group directory response has no groups, using fallback groups")
        return fallback_groups()
    return filter_groups(groups)


# ---------------------------------------------------------------------------
# Receipt extraction
# ---------------------------------------------------------------------------


def _money(value: Any) -> Decimal:
    return Decimal(str(value))


def _receipt_products(receipt: Dict[str, Any], id_prefix: Optional[int]) -> List[Dict[str, str]]:
    products = []
    for index, item in enumerate(receipt["items"]):
        item_id = f"{id_prefix}_{index}" if id_prefix is not None else str(index)
        products.append(
            {
                "id": item_id,
                "name": str(item["name"]),
                "price": f"${format_money(_money(item['cost']))}",
            }
        )
    return products


def normalize_extraction(data: Dict[str, Any], group_id: str = "") -> Dict[str, Any]:
    """Flatten one or many extracted receipts into a single roster, item list and tax figure.

    Raises ``ExtractionError`` when the payload is not shaped like an extraction result.
    """
    try:
        members = data["members"]
        users = [
            {"id": str(member_id), "name": str(name), "color": color_for_index(index)}
            for index, (name, member_id) in enumerate(members.items())
        ]

        receipt_data = data["receipt_data"]
        receipts = receipt_data if isinstance(receipt_data, list) else [receipt_data]
        products: List[Dict[str, str]] = []
        subtotal = Decimal("0")
        tax = Decimal("0")
        for receipt_index, receipt in enumerate(receipts):
            prefix = receipt_index if isinstance(receipt_data, list) else None
            products.extend(_receipt_products(receipt, prefix))
            receipt_tax = _money(receipt.get("tax", 0))
            subtotal += _money(receipt["total"]) - receipt_tax
            tax += receipt_tax
    except (KeyError, TypeError, AttributeError, ValueError, InvalidOperation) as e:
        raise ExtractionError(f"Malformed extraction response: {e!r}") from e

    rate = float(tax / subtotal) if subtotal > 0 else 0.0
    raw_paths = data.get("receipt_path")
    all_paths = [str(p) for p in raw_paths] if isinstance(raw_paths, list) else [str(raw_paths or "")]
    return {
        "group_id": str(group_id or ""),
        "users": users,
        "products": products,
        "tax": {"rate": rate, "amount": format_money(tax)},
        "subtotal": format_money(subtotal),
        "total": format_money(subtotal + tax),
        "primary_receipt_path": str(data.get("primary_receipt_path") or ""),
        "all_receipt_paths": all_paths,
    }


def analyze_receipts(
    files: Sequence[UploadFileTuple],
    group_id: str,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    if not files:
        raise ExtractionError("No files provided")
    url = api_url("imageUpload", base_url)
    multipart = [("files", (name, content, content_type)) for name, content, content_type in files]
    try:
        response = requests.post(
            url,
            files=multipart,
            data={"groupId": group_id, "multipleReceipts": "true"},
            timeout=timeout or settings.SPLIT_API_TIMEOUT_SEC,
        )
        response.raise_for_status()
        data = response.json()
    except requests.RequestException as e:
        logger.error("Receipt extraction failed: %s", e)
        raise ExtractionError(str(e)) from e
    except ValueError as e:
        logger.error("Receipt extraction returned invalid JSON: %s", e)
        raise ExtractionError("Invalid JSON from extraction service") from e
    if not isinstance(data, dict):
        raise ExtractionError("Unexpected extraction response")

    normalized = normalize_extraction(data, group_id)
    logger.info(
        "Extracted %d items for %d members from %d receipt(s)",
        len(normalized["products"]),
        len(normalized["users"]),
        len(files),
    )
    return normalized


# ---------------------------------------------------------------------------
# Expense ledger
# ---------------------------------------------------------------------------


def create_expense(
    expense_request: Dict[str, Any],
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
) -> str:
    """Send a finalised expense to the ledger and return its id."""
    payload = dict(expense_request)
    if not payload.get("receiptPath"):
        payload["receiptPath"] = ""
    url = api_url("expenses", base_url)
    try:
        response = requests.post(
            url,
            json=payload,
            headers={"Content-Type": "application/json"},
            timeout=timeout or settings.SPLIT_API_TIMEOUT_SEC,
        )
        response.raise_for_status()
        data = response.json()
    except requests.RequestException as e:
        logger.error("Creating expense failed: %s", e)
        raise LedgerError(str(e)) from e
    except ValueError as e:
        logger.error("Ledger returned invalid JSON: %s", e)
        raise LedgerError("Invalid JSON from ledger") from e

    expense_id = data.get("id") if isinstance(data, dict) else None
    if not expense_id:
        expense_id = f"exp_{int(time.time() * 1000)}"
    logger.info("Created expense %s with receipt path %r", expense_id, payload["receiptPath"])
    return str(expense_id)
