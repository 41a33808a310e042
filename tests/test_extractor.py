from unittest.mock import patch

from far_audit.errors import CollaboratorError
from far_audit.extractor import APPROVALS_SYSTEM, DOCX_MIME, PDF_MIME, Extractor, is_supported_mime


class FakeDI:
    configured = True

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def analyze(self, data, mime_type, model):
        self.calls.append(model)
        if self.error:
            raise self.error
        return self.result


DI_RESULT = {
    "content": "STAPLES\nTotal 42.00",
    "documents": [{"fields": {
        "MerchantName": {"valueString": "Staples"},
        "TransactionDate": {"valueDate": "2024-03-15"},
        "Total": {"valueNumber": 42.0},
    }}],
}


def test_supported_mime_types():
    assert is_supported_mime("image/jpeg")
    assert is_supported_mime(PDF_MIME)
    assert is_supported_mime(DOCX_MIME)
    assert not is_supported_mime("text/plain")


@patch("far_audit.extractor.ocr.pdf_text")
def test_pdf_text_with_approval(mock_pdf_text):
    mock_pdf_text.return_value = "Invoice # 881\nApproved by John Smith on 2024-03-15"
    result = Extractor(tesseract_enabled=False).extract(b"%PDF", PDF_MIME, "scan.pdf")
    assert result.items == []
    assert result.doc_type == "invoice"
    assert result.approvals[0].approver == "John Smith"
    assert result.steps == ["embedded_text: ok"]


def test_document_intelligence_items_win(fake_llm):
    llm = fake_llm()
    di = FakeDI(result=DI_RESULT)
    result = Extractor(llm=llm, di=di, tesseract_enabled=False).extract(b"img", "image/png", "receipt.png")
    assert di.calls == ["prebuilt-receipt"]
    assert len(result.items) == 1
    assert result.items[0]["vendor"] == "Staples"
    assert result.items[0]["details"]["processingMethod"] == "document_intelligence"
    assert result.doc_type == "receipt"
    assert result.text == "STAPLES\nTotal 42.00"
    assert result.ocr["method"] == "document_intelligence"
    # item extraction by LLM is skipped; only the approvals fallback asked
    assert [c["system"] for c in llm.calls] == [APPROVALS_SYSTEM]


@patch("far_audit.extractor.ocr.ocr_image")
def test_all_strategies_failing_leaves_unknown(mock_ocr):
    mock_ocr.side_effect = CollaboratorError("Tesseract failed")
    di = FakeDI(error=CollaboratorError("DI analyze failed"))
    result = Extractor(di=di, tesseract_enabled=True).extract(b"img", "image/png", "photo.png")
    assert result.text is None
    assert result.items == []
    assert result.doc_type == "unknown"
    assert result.steps == ["tesseract: failed", "document_intelligence: failed"]


@patch("far_audit.extractor.ocr.ocr_image")
def test_tesseract_text_feeds_llm_items(mock_ocr, fake_llm):
    mock_ocr.return_value = {"text": "Corner Cafe\nLunch 12.00\nTotal 12.00", "confidence": 0.82}
    llm = fake_llm(json_replies=[
        {"items": [{"kind": "receipt", "vendor": "Corner Cafe", "date": "03/15/2024", "amount": "$12.00",
                    "details": {"lines": [{"desc": "Lunch", "total": "12.00"}]}}]},
    ])
    result = Extractor(llm=llm).extract(b"img", "image/jpeg", "cafe.jpg")
    item = result.items[0]
    assert item["date"] == "2024-03-15"
    assert item["amount"] == 12.0
    assert item["details"]["lines"][0]["total"] == 12.0
    assert item["details"]["processingMethod"] == "llm"
    assert result.ocr == {"method": "tesseract", "text": "Corner Cafe\nLunch 12.00\nTotal 12.00", "confidence": 0.82}
    assert "Corner Cafe" in llm.calls[0]["user"]


@patch("far_audit.extractor.ocr.docx_text")
def test_approval_note_detected(mock_docx_text):
    mock_docx_text.return_value = "Please approve the attached invoice adjustments"
    result = Extractor().extract(b"docx", DOCX_MIME, "note.docx")
    assert result.doc_type == "approvalNote"
    assert result.approvals[-1].summary == "Approval note detected"
    assert result.approvals[-1].target_type == "invoice"


def test_corrupt_docx_leaves_unknown():
    result = Extractor(tesseract_enabled=False).extract(b"not a zip", DOCX_MIME, "note.docx")
    assert result.text is None
    assert result.items == []
    assert result.doc_type == "unknown"
    assert result.steps == ["embedded_text: failed"]


@patch("far_audit.extractor.ocr.pdf_text")
def test_unexpected_step_error_does_not_stop_later_steps(mock_pdf_text):
    mock_pdf_text.side_effect = RuntimeError("broken xref table")
    di = FakeDI(result=DI_RESULT)
    result = Extractor(di=di, tesseract_enabled=False).extract(b"%PDF", PDF_MIME, "receipt.pdf")
    assert result.steps == ["embedded_text: failed", "document_intelligence: ok"]
    assert result.items[0]["vendor"] == "Staples"
