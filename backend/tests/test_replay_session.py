import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

import replay_session

RAW_EXTRACTION = {
    "members": {"Alice": 1, "Bob": 2},
    "receipt_data": {"items": [{"name": "Burger", "cost": 9.99}, {"name": "Fries", "cost": 4}], "total": 15.11, "tax": 1.12},
    "receipt_path": "receipts/x.jpg",
    "primary_receipt_path": "receipts/x.jpg",
}

ACTIONS = [
    {"op": "toggle", "item_id": "0", "user_id": "1"},
    {"op": "toggle", "item_id": "0", "user_id": "2"},
    {"op": "assign_all", "item_id": "1", "user_id": "2"},
    {"op": "description", "text": "Lunch"},
]


class ReplayTests(unittest.TestCase):
    def test_replay_reaches_submit_ready_state(self) -> None:
        state = replay_session.load_state(RAW_EXTRACTION, "35")
        state = replay_session.replay(state, ACTIONS)
        summary = replay_session.sess.summarize(state)
        self.assertTrue(summary["fully_assigned"])
        self.assertEqual([u["subtotal"] for u in summary["users"]], ["5.00", "9.00"])
        replay_session.sess.validate_submission(state)

    def test_unknown_action(self) -> None:
        state = replay_session.load_state(RAW_EXTRACTION)
        with self.assertRaises(ValueError):
            replay_session.replay(state, [{"op": "explode"}])

    def test_cli_prints_breakdown(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            extraction_path = Path(tmp) / "extraction.json"
            actions_path = Path(tmp) / "actions.json"
            extraction_path.write_text(json.dumps(RAW_EXTRACTION), encoding="utf-8")
            actions_path.write_text(json.dumps(ACTIONS), encoding="utf-8")

            out = io.StringIO()
            with redirect_stdout(out):
                code = replay_session.main([str(extraction_path), "--actions", str(actions_path)])
            self.assertEqual(code, 0)
            self.assertIn("Alice", out.getvalue())
            self.assertIn("Ready to submit", out.getvalue())

            out = io.StringIO()
            with redirect_stdout(out):
                replay_session.main([str(extraction_path), "--json"])
            data = json.loads(out.getvalue())
            self.assertFalse(data["summary"]["fully_assigned"])
            self.assertEqual(data["expense"]["receiptPath"], "receipts/x.jpg")


if __name__ == "__main__":
    unittest.main()
