import unittest
from unittest.mock import MagicMock, patch

import requests

from far_audit.config import DISettings, LLMSettings, normalize_endpoint
from far_audit.doc_intel import DocIntelClient, items_from_result, pick_model, text_from_result
from far_audit.errors import CollaboratorError, ConfigurationError
from far_audit.llm_client import LLMClient


def _response(status=200, json_body=None, headers=None, text=""):
    r = MagicMock()
    r.status_code = status
    r.json.return_value = json_body or {}
    r.headers = headers or {}
    r.text = text
    return r


RECEIPT_RESULT = {
    "content": "STAPLES\nTotal 42.00",
    "documents": [{
        "docType": "receipt.retailMeal",
        "confidence": 0.93,
        "fields": {
            "MerchantName": {"valueString": "Staples"},
            "TransactionDate": {"valueDate": "2024-03-15"},
            "Total": {"valueCurrency": {"amount": 42.0, "currencyCode": "USD"}},
            "Items": {"valueArray": [{"valueObject": {
                "Description": {"valueString": "Paper"},
                "Quantity": {"valueNumber": 2},
                "TotalPrice": {"valueCurrency": {"amount": 20.0}},
            }}]},
        },
    }],
}


class TestDocIntelClient(unittest.TestCase):
    def setUp(self):
        self.settings = DISettings(endpoint="https://di.example.com", api_key="k", poll_interval=1.0,
                                   max_attempts=3)
        self.client = DocIntelClient(self.settings)

    @patch("far_audit.doc_intel.time.sleep")
    @patch("far_audit.doc_intel.requests.get")
    @patch("far_audit.doc_intel.requests.post")
    def test_analyze_polls_until_succeeded(self, mock_post, mock_get, mock_sleep):
        mock_post.return_value = _response(202, headers={"operation-location": "https://di.example.com/op/1"})
        mock_get.side_effect = [
            _response(json_body={"status": "running"}),
            _response(json_body={"status": "succeeded", "analyzeResult": RECEIPT_RESULT}),
        ]

        result = self.client.analyze(b"img", "image/png", "prebuilt-receipt")

        self.assertEqual(result, RECEIPT_RESULT)
        self.assertEqual(mock_get.call_count, 2)
        self.assertEqual(mock_sleep.call_count, 2)
        url = mock_post.call_args[0][0]
        self.assertIn("/formrecognizer/documentModels/prebuilt-receipt:analyze?api-version=", url)
        self.assertEqual(mock_post.call_args[1]["headers"]["Content-Type"], "image/png")

    @patch("far_audit.doc_intel.time.sleep")
    @patch("far_audit.doc_intel.requests.get")
    @patch("far_audit.doc_intel.requests.post")
    def test_analyze_failed_status(self, mock_post, mock_get, mock_sleep):
        mock_post.return_value = _response(202, headers={"operation-location": "https://di.example.com/op/1"})
        mock_get.return_value = _response(json_body={"status": "failed", "error": {"message": "bad image"}})
        with self.assertRaises(CollaboratorError) as ctx:
            self.client.analyze(b"img", "image/png", "prebuilt-receipt")
        self.assertIn("bad image", str(ctx.exception))

    @patch("far_audit.doc_intel.time.sleep")
    @patch("far_audit.doc_intel.requests.get")
    @patch("far_audit.doc_intel.requests.post")
    def test_analyze_times_out(self, mock_post, mock_get, mock_sleep):
        mock_post.return_value = _response(202, headers={"operation-location": "https://di.example.com/op/1"})
        mock_get.return_value = _response(json_body={"status": "running"})
        with self.assertRaises(CollaboratorError):
            self.client.analyze(b"img", "image/png", "prebuilt-receipt")
        self.assertEqual(mock_get.call_count, 3)

    @patch("far_audit.doc_intel.requests.post")
    def test_missing_operation_location(self, mock_post):
        mock_post.return_value = _response(202)
        with self.assertRaises(CollaboratorError):
            self.client.analyze(b"img", "image/png", "prebuilt-receipt")

    def test_unconfigured(self):
        with self.assertRaises(ConfigurationError):
            DocIntelClient(DISettings()).analyze(b"img", "image/png", "prebuilt-receipt")


class TestDocIntelTranslation(unittest.TestCase):
    def test_items_from_receipt(self):
        items = items_from_result(RECEIPT_RESULT, "prebuilt-receipt")
        self.assertEqual(len(items), 1)
        item = items[0]
        self.assertEqual(item["kind"], "receipt")
        self.assertEqual(item["vendor"], "Staples")
        self.assertEqual(item["date"], "2024-03-15")
        self.assertEqual(item["amount"], 42.0)
        self.assertEqual(item["currency"], "USD")
        self.assertEqual(item["details"]["lines"][0], {"desc": "Paper", "qty": 2.0, "unit": None, "total": 20.0})

    def test_invoice_model_sets_kind(self):
        result = {"documents": [{"fields": {"VendorName": {"content": "Acme"}, "InvoiceTotal": {"valueNumber": 9}}}]}
        item = items_from_result(result, "prebuilt-invoice")[0]
        self.assertEqual(item["kind"], "invoice")
        self.assertEqual(item["vendor"], "Acme")
        self.assertEqual(item["amount"], 9.0)

    def test_text_from_pages(self):
        result = {"pages": [{"lines": [{"content": "line one"}, {"content": "line two"}]}]}
        self.assertEqual(text_from_result(result), "line one\nline two")
        self.assertEqual(text_from_result(RECEIPT_RESULT), "STAPLES\nTotal 42.00")

    def test_pick_model(self):
        self.assertEqual(pick_model("INV-001_invoice.pdf", "application/pdf"), "prebuilt-invoice")
        self.assertEqual(pick_model("scan.jpg", "image/jpeg"), "prebuilt-receipt")
        self.assertEqual(pick_model("memo.pdf", "application/pdf"), "prebuilt-layout")
        self.assertEqual(pick_model("memo.pdf", "application/pdf", "prebuilt-invoice"), "prebuilt-invoice")


class TestLLMClient(unittest.TestCase):
    def setUp(self):
        self.client = LLMClient(LLMSettings(endpoint="https://res.openai.azure.com", api_key="k",
                                            deployment="gpt-4o"))

    @patch("far_audit.llm_client.requests.post")
    def test_chat_returns_content(self, mock_post):
        mock_post.return_value = _response(json_body={"choices": [{"message": {"content": '{"ok": true}'}}]})
        content = self.client.chat([{"role": "user", "content": "hi"}], max_tokens=50, json_mode=True)
        self.assertEqual(content, '{"ok": true}')
        url = mock_post.call_args[0][0]
        self.assertEqual(
            url, "https://res.openai.azure.com/openai/deployments/gpt-4o/chat/completions?api-version=2024-04-01-preview"
        )
        payload = mock_post.call_args[1]["json"]
        self.assertEqual(payload["max_tokens"], 50)
        self.assertEqual(payload["response_format"], {"type": "json_object"})

    @patch("far_audit.llm_client.requests.post")
    def test_chat_http_error(self, mock_post):
        mock_post.return_value = _response(500, text="boom")
        with self.assertRaises(CollaboratorError):
            self.client.chat([{"role": "user", "content": "hi"}])

    @patch("far_audit.llm_client.requests.post")
    def test_chat_network_error(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("down")
        with self.assertRaises(CollaboratorError):
            self.client.chat([{"role": "user", "content": "hi"}])

    @patch("far_audit.llm_client.requests.post")
    def test_chat_json_swallows_failures(self, mock_post):
        mock_post.return_value = _response(json_body={"choices": [{"message": {"content": "sorry, no"}}]})
        self.assertIsNone(self.client.chat_json("sys", "user"))
        mock_post.return_value = _response(json_body={"choices": [{"message": {"content": '{"a": 1}'}}]})
        self.assertEqual(self.client.chat_json("sys", "user"), {"a": 1})

    def test_full_deployment_url_rejected(self):
        client = LLMClient(LLMSettings(endpoint="https://res.openai.azure.com/openai/deployments/x",
                                       api_key="k"))
        with self.assertRaises(ConfigurationError):
            client.chat([{"role": "user", "content": "hi"}])

    def test_unconfigured_chat_json_returns_none(self):
        self.assertIsNone(LLMClient(LLMSettings()).chat_json("sys", "user"))


class TestEndpointNormalization(unittest.TestCase):
    def test_normalize_endpoint(self):
        self.assertEqual(normalize_endpoint("di.example.com/"), "https://di.example.com")
        self.assertEqual(normalize_endpoint("http://local:5000"), "http://local:5000")
        self.assertEqual(normalize_endpoint(""), "")


if __name__ == "__main__":
    unittest.main()
