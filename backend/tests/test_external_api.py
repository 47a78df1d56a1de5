import unittest
from unittest import mock

import requests

import external_api
from external_api import ExtractionError, LedgerError

SINGLE_RECEIPT = {
    "members": {"Alice": 101, "Bob": 102},
    "receipt_data": {"items": [{"name": "Pizza", "cost": 12.5}, {"name": "Soda", "cost": 2}], "total": 15.93, "tax": 1.43},
    "receipt_path": "receipts/a.jpg",
    "primary_receipt_path": "receipts/a.jpg",
}

MULTI_RECEIPT = {
    "members": {"Alice": 101, "Bob": 102},
    "receipt_data": [
        {"items": [{"name": "Pizza", "cost": 10}], "total": 11.0, "tax": 1.0},
        {"items": [{"name": "Beer", "cost": 6.0}, {"name": "Wings", "cost": 9.99}], "total": 17.59, "tax": 1.6},
    ],
    "receipt_path": ["receipts/a.jpg", "receipts/b.jpg"],
    "primary_receipt_path": "receipts/a.jpg",
}


def fake_response(status=200, payload=None, content_type="application/json"):
    response = mock.Mock()
    response.status_code = status
    response.ok = status < 400
    response.headers = {"content-type": content_type}
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    else:
        response.raise_for_status.return_value = None
    return response


class NormalizeExtractionTests(unittest.TestCase):
    def test_single_receipt(self) -> None:
        data = external_api.normalize_extraction(SINGLE_RECEIPT, "35")
        self.assertEqual(
            data["users"],
            [
                {"id": "101", "name": "Alice", "color": "#ef4444"},
                {"id": "102", "name": "Bob", "color": "#10b981"},
            ],
        )
        self.assertEqual(
            data["products"],
            [{"id": "0", "name": "Pizza", "price": "$12.50"}, {"id": "1", "name": "Soda", "price": "$2.00"}],
        )
        self.assertEqual(data["subtotal"], "14.50")
        self.assertEqual(data["tax"]["amount"], "1.43")
        self.assertAlmostEqual(data["tax"]["rate"], 1.43 / 14.5)
        self.assertEqual(data["total"], "15.93")
        self.assertEqual(data["group_id"], "35")
        self.assertEqual(data["primary_receipt_path"], "receipts/a.jpg")
        self.assertEqual(data["all_receipt_paths"], ["receipts/a.jpg"])

    def test_multiple_receipts_are_concatenated(self) -> None:
        data = external_api.normalize_extraction(MULTI_RECEIPT)
        self.assertEqual([p["id"] for p in data["products"]], ["0_0", "1_0", "1_1"])
        self.assertEqual(data["subtotal"], "25.99")
        self.assertEqual(data["tax"]["amount"], "2.60")
        self.assertEqual(data["total"], "28.59")
        self.assertEqual(data["all_receipt_paths"], ["receipts/a.jpg", "receipts/b.jpg"])

    def test_colors_cycle_through_palette(self) -> None:
        members = {f"user{i}": i for i in range(12)}
        data = external_api.normalize_extraction({"members": members, "receipt_data": {"items": [], "total": 0}})
        colors = [u["color"] for u in data["users"]]
        self.assertEqual(colors[10], external_api.USER_COLORS[0])
        self.assertEqual(colors[11], external_api.USER_COLORS[1])
        self.assertEqual(data["tax"]["rate"], 0.0)

    def test_malformed_payload(self) -> None:
        with self.assertRaises(ExtractionError):
            external_api.normalize_extraction({"members": {"A": 1}})
        with self.assertRaises(ExtractionError):
            external_api.normalize_extraction({"members": {}, "receipt_data": {"items": [{"name": "x"}], "total": 1}})


class FetchGroupsTests(unittest.TestCase):
    def test_filters_non_group_sentinel(self) -> None:
        payload = {
            "groups": {
                "0": {"id": 0, "name": "Non-group expenses"},
                "12345678": {"id": 12345678, "name": "Test Group Alpha"},
                "99": {"id": 99, "name": "non-group expenses"},
                "87654321": "Beta Team Expenses",
            }
        }
        with mock.patch("external_api.requests.get", return_value=fake_response(payload=payload)):
            groups = external_api.fetch_groups()
        self.assertEqual(
            groups,
            {
                "12345678": {"id": "12345678", "name": "Test Group Alpha"},
                "87654321": {"id": "87654321", "name": "Beta Team Expenses"},
            },
        )

    def test_connection_error_uses_fallback(self) -> None:
        with mock.patch("external_api.requests.get", side_effect=requests.ConnectionError("down")):
            with self.assertLogs("external_api", level="WARNING"):
                groups = external_api.fetch_groups()
        self.assertEqual(groups, external_api.FALLBACK_GROUPS)

    def test_error_status_uses_fallback(self) -> None:
        with mock.patch("external_api.requests.get", return_value=fake_response(status=503)):
            self.assertEqual(external_api.fetch_groups(), external_api.FALLBACK_GROUPS)

    def test_non_json_uses_fallback(self) -> None:
        with mock.patch("external_api.requests.get", return_value=fake_response(content_type="text/html")):
            self.assertEqual(external_api.fetch_groups(), external_api.FALLBACK_GROUPS)

    def test_missing_groups_key_uses_fallback(self) -> None:
        with mock.patch("external_api.requests.get", return_value=fake_response(payload={"status": "ok"})):
            self.assertEqual(external_api.fetch_groups(), external_api.FALLBACK_GROUPS)

    def test_fallback_is_a_copy(self) -> None:
        with mock.patch("external_api.requests.get", side_effect=requests.Timeout("slow")):
            groups = external_api.fetch_groups()
        groups["35"]["name"] = "changed"
        self.assertEqual(external_api.FALLBACK_GROUPS["35"]["name"], "Group #35")


class AnalyzeReceiptsTests(unittest.TestCase):
    def test_posts_files_and_normalizes(self) -> None:
        files = [("a.jpg", b"img-a", "image/jpeg"), ("b.png", b"img-b", "image/png")]
        with mock.patch("external_api.requests.post", return_value=fake_response(payload=MULTI_RECEIPT)) as post:
            data = external_api.analyze_receipts(files, "35", base_url="http://split.test/")
        args, kwargs = post.call_args
        self.assertEqual(args[0], "http://split.test/imageUpload")
        self.assertEqual(
            kwargs["files"],
            [("files", ("a.jpg", b"img-a", "image/jpeg")), ("files", ("b.png", b"img-b", "image/png"))],
        )
        self.assertEqual(kwargs["data"], {"groupId": "35", "multipleReceipts": "true"})
        self.assertEqual(len(data["products"]), 3)
        self.assertEqual(data["group_id"], "35")

    def test_http_error_raises(self) -> None:
        with mock.patch("external_api.requests.post", return_value=fake_response(status=500)):
            with self.assertRaises(ExtractionError):
                external_api.analyze_receipts([("a.jpg", b"x", "image/jpeg")], "35")

    def test_no_files(self) -> None:
        with self.assertRaises(ExtractionError):
            external_api.analyze_receipts([], "35")


class CreateExpenseTests(unittest.TestCase):
    def test_returns_ledger_id(self) -> None:
        with mock.patch("external_api.requests.post", return_value=fake_response(payload={"id": 42})) as post:
            expense_id = external_api.create_expense({"description": "Dinner", "receiptPath": None})
        self.assertEqual(expense_id, "42")
        self.assertEqual(post.call_args.kwargs["json"]["receiptPath"], "")
        self.assertTrue(post.call_args.args[0].endswith("/expenses"))

    def test_generates_id_when_ledger_omits_it(self) -> None:
        with mock.patch("external_api.requests.post", return_value=fake_response(payload={})):
            self.assertTrue(external_api.create_expense({"description": "Dinner"}).startswith("exp_"))

    def test_failure_raises(self) -> None:
        with mock.patch("external_api.requests.post", side_effect=requests.ConnectionError("down")):
            with self.assertRaises(LedgerError):
                external_api.create_expense({"description": "Dinner"})
        with mock.patch("external_api.requests.post", return_value=fake_response(status=422)):
            with self.assertRaises(LedgerError):
                external_api.create_expense({"description": "Dinner"})


if __name__ == "__main__":
    unittest.main()
