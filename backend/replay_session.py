import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import external_api
import session as sess
import settings
from session import SessionState, SubmissionError

ACTIONS: Dict[str, Callable[[SessionState, Dict[str, Any]], SessionState]] = {
    "toggle": lambda s, a: sess.toggle_assignment(s, a["item_id"], a["user_id"]),
    "assign_all": lambda s, a: sess.assign_all_to_one(s, a["user_id"], a.get("item_id")),
    "split_all": lambda s, a: sess.split_all_equally(s),
    "share": lambda s, a: sess.update_share_percentage(s, a["item_id"], a["user_id"], a["percentage"]),
    "share_amount": lambda s, a: sess.update_share_amount(s, a["item_id"], a["user_id"], a["amount"]),
    "distribute": lambda s, a: sess.distribute_equally(s, a["item_id"]),
    "balance": lambda s, a: sess.balance_remaining_percentage(s, a["item_id"]),
    "payer": lambda s, a: sess.set_payer(s, a["user_id"]),
    "description": lambda s, a: sess.set_description(s, a["text"]),
    "group": lambda s, a: sess.select_group(s, a["group_id"]),
    "reset": lambda s, a: sess.reset(s),
}


def load_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8-sig"))


def load_state(data: Dict[str, Any], group_id: str = "") -> SessionState:
    # Raw extraction responses carry "members"; already normalised ones carry "users".
    if "members" in data:
        data = external_api.normalize_extraction(data, group_id)
    return sess.load_extraction(SessionState(), data)


def replay(state: SessionState, actions: List[Dict[str, Any]]) -> SessionState:
    for index, action in enumerate(actions):
        op = action.get("op")
        handler = ACTIONS.get(op)
        if handler is None:
            raise ValueError(f"Unknown action {op!r} at position {index}")
        state = handler(state, action)
    return state


def render(state: SessionState) -> str:
    summary = sess.summarize(state)
    lines = [f"{'User':<20} {'Items':>5} {'Subtotal':>10} {'Tax':>8} {'Total':>10}"]
    for row in summary["users"]:
        marker = "*" if row["user_id"] == state.payer else " "
        lines.append(
            f"{marker}{row['user_name'][:19]:<19} {row['item_count']:>5} "
            f"{row['subtotal']:>10} {row['tax']:>8} {row['total']:>10}"
        )
    lines.append(f"Unassigned: {len(summary['unassigned_items'])} item(s), {summary['unassigned_total']}")
    lines.append(f"Progress: {summary['assignment_progress']}%")
    try:
        sess.validate_submission(state)
        lines.append("Ready to submit")
    except SubmissionError as e:
        lines.append(f"Not ready: {e}")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Replay share edits against a recorded receipt extraction.")
    parser.add_argument("extraction", type=Path, help="Extraction response JSON (raw or normalised)")
    parser.add_argument("--actions", type=Path, default=None, help="JSON list of actions to apply in order")
    parser.add_argument("--group-id", default="", help="Group id for raw extraction responses")
    parser.add_argument("--json", action="store_true", help="Print the summary and ledger payload as JSON")
    args = parser.parse_args(argv)

    settings.configure_logging()
    state = load_state(load_json(args.extraction), args.group_id)
    if args.actions is not None:
        state = replay(state, load_json(args.actions))

    if args.json:
        print(
            json.dumps(
                {"summary": sess.summarize(state), "expense": sess.build_expense_request(state)},
                indent=2,
            )
        )
    else:
        print(render(state))
    return 0


if __name__ == "__main__":
    sys.exit(main())
