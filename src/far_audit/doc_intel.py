"""
Document-intelligence collaborator (Azure Form Recognizer REST contract).

POST the raw bytes to ``documentModels/{model}:analyze``, follow the
``operation-location`` header and poll until the operation succeeds, fails
or the attempt budget runs out. Results are translated into DocItem-shaped
dicts plus any layout text.
"""

import time
from typing import Any, Dict, List, Optional

import requests
from loguru import logger

from .config import DISettings
from .errors import CollaboratorError, ConfigurationError
from .normalizers import parse_amount, parse_date


RECEIPT_MODEL = "prebuilt-receipt"
INVOICE_MODEL = "prebuilt-invoice"
LAYOUT_MODEL = "prebuilt-layout"


def pick_model(filename: str, mime_type: str, configured: str = "auto") -> str:
    """Explicit model unless ``auto``; otherwise a filename/MIME hint."""
    if configured and configured != "auto":
        return configured
    name = (filename or "").lower()
    if "invoice" in name:
        return INVOICE_MODEL
    if "receipt" in name:
        return RECEIPT_MODEL
    if (mime_type or "").startswith("image/"):
        return RECEIPT_MODEL
    return LAYOUT_MODEL


class DocIntelClient:
    def __init__(self, settings: DISettings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return self.settings.configured

    def _analyze_url(self, model: str) -> str:
        return (
            f"{self.settings.endpoint}/formrecognizer/documentModels/{model}:analyze"
            f"?api-version={self.settings.api_version}"
        )

    def analyze(self, data: bytes, mime_type: str, model: str) -> Dict:
        """Run one analysis and return the ``analyzeResult`` payload."""
        if not self.configured:
            raise ConfigurationError("Document intelligence endpoint and key must be set")

        headers = {
            "Ocp-Apim-Subscription-Key": self.settings.api_key,
            "Content-Type": mime_type or "application/octet-stream",
        }
        try:
            r = requests.post(self._analyze_url(model), headers=headers, data=data, timeout=self.settings.timeout)
        except requests.exceptions.RequestException as e:
            raise CollaboratorError(f"DI analyze request failed: {e}") from e
        if r.status_code >= 400:
            raise CollaboratorError(f"DI analyze error {r.status_code}: {r.text[:300]}")

        op_url = r.headers.get("operation-location") or r.headers.get("Operation-Location")
        if not op_url:
            raise CollaboratorError("DI analyze response had no operation-location header")
        logger.info(f"DI analyze started: model={model}")

        poll_headers = {"Ocp-Apim-Subscription-Key": self.settings.api_key}
        for attempt in range(1, self.settings.max_attempts + 1):
            time.sleep(self.settings.poll_interval)
            try:
                pr = requests.get(op_url, headers=poll_headers, timeout=self.settings.timeout)
            except requests.exceptions.RequestException as e:
                raise CollaboratorError(f"DI poll request failed: {e}") from e
            if pr.status_code >= 400:
                raise CollaboratorError(f"DI poll error {pr.status_code}: {pr.text[:300]}")
            try:
                body = pr.json()
            except ValueError as e:
                raise CollaboratorError("DI poll returned non-JSON body") from e

            status = str(body.get("status", "")).lower()
            if status == "succeeded":
                logger.info(f"DI analyze succeeded after {attempt} poll(s)")
                return body.get("analyzeResult") or {}
            if status == "failed":
                err = (body.get("error") or {}).get("message", "unknown error")
                raise CollaboratorError(f"DI analyze failed: {err}")

        raise CollaboratorError(f"DI analyze timed out after {self.settings.max_attempts} polls")


def _field_value(field: Optional[Dict]) -> Any:
    if not isinstance(field, dict):
        return None
    currency = field.get("valueCurrency")
    if isinstance(currency, dict) and currency.get("amount") is not None:
        return currency.get("amount")
    for key in ("valueString", "valueNumber", "valueDate", "content"):
        if field.get(key) is not None:
            return field[key]
    return None


def _first(fields: Dict, *names: str) -> Any:
    for name in names:
        value = _field_value(fields.get(name))
        if value is not None and value != "":
            return value
    return None


def _currency(fields: Dict) -> Optional[str]:
    for name in ("Total", "InvoiceTotal", "TotalAmount", "GrandTotal", "Amount"):
        cur = (fields.get(name) or {}).get("valueCurrency")
        if isinstance(cur, dict) and cur.get("currencyCode"):
            return cur["currencyCode"]
    return None


def _line_items(fields: Dict) -> List[Dict]:
    lines = []
    for entry in (fields.get("Items") or {}).get("valueArray") or []:
        obj = (entry or {}).get("valueObject") or {}
        line = {
            "desc": _first(obj, "Description"),
            "qty": parse_amount(_first(obj, "Quantity")),
            "unit": parse_amount(_first(obj, "UnitPrice"), signed=False),
            "total": parse_amount(_first(obj, "TotalPrice", "Amount"), signed=False),
        }
        if any(v is not None for v in line.values()):
            lines.append(line)
    return lines


def items_from_result(result: Dict, model: str) -> List[Dict]:
    """One DocItem dict per analyzed document."""
    items = []
    for doc in (result or {}).get("documents") or []:
        fields = doc.get("fields") or {}
        is_invoice = (
            "invoice" in (model or "").lower()
            or "invoice" in str(doc.get("docType", "")).lower()
            or "InvoiceId" in fields
            or "VendorName" in fields
        )
        vendor = _first(fields, "MerchantName", "VendorName")
        items.append({
            "kind": "invoice" if is_invoice else "receipt",
            "vendor": str(vendor).strip() if vendor is not None else None,
            "date": parse_date(_first(fields, "TransactionDate", "InvoiceDate", "Date")),
            "amount": parse_amount(_first(fields, "Total", "InvoiceTotal", "TotalAmount", "GrandTotal", "Amount"),
                                   signed=False),
            "currency": _currency(fields),
            "details": {
                "lines": _line_items(fields),
                "confidence": doc.get("confidence"),
                "processingMethod": "document_intelligence",
            },
        })
    return items


def text_from_result(result: Dict) -> str:
    """Layout ``content``, else the concatenated page lines."""
    result = result or {}
    content = result.get("content")
    if isinstance(content, str) and content.strip():
        return content.strip()
    lines = []
    for page in result.get("pages") or []:
        for line in page.get("lines") or []:
            if line.get("content"):
                lines.append(line["content"])
    return "\n".join(lines)
