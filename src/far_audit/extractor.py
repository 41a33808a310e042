"""
Document extraction pipeline.

An ordered list of strategies (local text, Tesseract, document intelligence,
LLM) runs over each uploaded document. The first strategy that yields items
wins the items; text is aggregated from every strategy that produced some.
Any single strategy may fail; only when all of them fail is the document
left with no text, no items and an unknown type.
"""

from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from . import ocr
from .approvals import classify_by_text, extract_approvals
from .doc_intel import DocIntelClient, items_from_result, pick_model, text_from_result
from .errors import CollaboratorError, ConfigurationError
from .models import DECISIONS, Approval, ExtractionResult
from .normalizers import parse_amount, parse_date


PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
LLM_TEXT_LIMIT = 25000
EXCERPT_LIMIT = 500

ITEMS_SYSTEM = (
    "You extract receipts and invoices from OCR text. Respond with strict JSON only: "
    '{"items":[{"kind":"receipt|invoice","vendor":string|null,"date":"YYYY-MM-DD"|null,'
    '"amount":number|null,"currency":string|null,'
    '"details":{"lines":[{"desc":string,"qty":number|null,"unit":number|null,"total":number|null}]},'
    '"textExcerpt":string}]}. One item per distinct receipt or invoice. No commentary.'
)
APPROVALS_SYSTEM = (
    "You find approval decisions in business documents. Respond with strict JSON only: "
    '{"approvals":[{"approver":string|null,"title":string|null,"date":"YYYY-MM-DD"|null,'
    '"decision":"approved|rejected|unknown","comments":string|null,'
    '"targetType":"invoice|receipt|timesheet|unknown"}]}. Return an empty list when there is none.'
)


def is_image(mime_type: str) -> bool:
    return (mime_type or "").lower().startswith("image/")


def is_supported_mime(mime_type: str) -> bool:
    mime = (mime_type or "").lower()
    return is_image(mime) or mime in (PDF_MIME, DOCX_MIME)


def _clean_item(raw: Dict, method: str) -> Optional[Dict]:
    if not isinstance(raw, dict):
        return None
    details = raw.get("details") if isinstance(raw.get("details"), dict) else {}
    lines = []
    for line in details.get("lines") or []:
        if not isinstance(line, dict):
            continue
        lines.append({
            "desc": line.get("desc"),
            "qty": parse_amount(line.get("qty")),
            "unit": parse_amount(line.get("unit"), signed=False),
            "total": parse_amount(line.get("total"), signed=False),
        })
    kind = raw.get("kind") if raw.get("kind") in ("receipt", "invoice") else None
    vendor = raw.get("vendor")
    excerpt = raw.get("textExcerpt")
    return {
        "kind": kind,
        "vendor": str(vendor).strip() if vendor else None,
        "date": parse_date(raw.get("date")),
        "amount": parse_amount(raw.get("amount"), signed=False),
        "currency": raw.get("currency") or None,
        "details": {**details, "lines": lines, "processingMethod": details.get("processingMethod") or method},
        "textExcerpt": str(excerpt)[:EXCERPT_LIMIT] if excerpt else None,
    }


class Extractor:
    """Runs the strategy list over one document."""

    def __init__(self, llm=None, di: Optional[DocIntelClient] = None, tesseract_enabled: bool = True,
                 di_model: str = "auto"):
        self.llm = llm
        self.di = di
        self.tesseract_enabled = tesseract_enabled
        self.di_model = di_model

    def strategies(self) -> List[Tuple[str, Callable]]:
        return [
            ("embedded_text", self._embedded_text),
            ("tesseract", self._tesseract),
            ("document_intelligence", self._document_intelligence),
            ("llm", self._llm_items),
        ]

    # Each strategy returns {"text": str, "items": list, "ocr": dict?} or None to skip.

    def _embedded_text(self, data: bytes, mime: str, filename: str, text_so_far: str) -> Optional[Dict]:
        if mime == PDF_MIME:
            return {"text": ocr.pdf_text(data), "items": []}
        if mime == DOCX_MIME:
            return {"text": ocr.docx_text(data), "items": []}
        return None

    def _tesseract(self, data: bytes, mime: str, filename: str, text_so_far: str) -> Optional[Dict]:
        if not self.tesseract_enabled or not is_image(mime):
            return None
        result = ocr.ocr_image(data)
        return {"text": result["text"], "items": [], "ocr": {"method": "tesseract", **result}}

    def _document_intelligence(self, data: bytes, mime: str, filename: str, text_so_far: str) -> Optional[Dict]:
        if self.di is None or not self.di.configured or mime == DOCX_MIME:
            return None
        model = pick_model(filename, mime, self.di_model)
        result = self.di.analyze(data, mime, model)
        return {
            "text": text_from_result(result),
            "items": items_from_result(result, model),
            "ocr": {"method": "document_intelligence", "model": model},
        }

    def _llm_items(self, data: bytes, mime: str, filename: str, text_so_far: str) -> Optional[Dict]:
        if self.llm is None or not self.llm.configured or not text_so_far.strip():
            return None
        parsed = self.llm.chat_json(
            ITEMS_SYSTEM,
            f"Filename: {filename}\nText:\n{text_so_far[:LLM_TEXT_LIMIT]}",
            max_tokens=1500,
        )
        if parsed is None:
            raise CollaboratorError("LLM item extraction returned no usable JSON")
        return {"text": "", "items": [i for i in (parsed.get("items") or []) if isinstance(i, dict)]}

    def extract(self, data: bytes, mime_type: str, filename: str) -> ExtractionResult:
        mime = (mime_type or "").lower()
        texts: List[str] = []
        items: List[Dict] = []
        ocr_info = None
        steps: List[str] = []
        any_success = False

        for name, strategy in self.strategies():
            if items and name == "llm":
                continue
            try:
                out = strategy(data, mime, filename, "\n\n".join(texts))
            except (CollaboratorError, ConfigurationError) as e:
                logger.warning(f"Extraction step {name} failed for {filename}: {e}")
                steps.append(f"{name}: failed")
                continue
            except Exception as e:
                logger.exception(f"Unexpected error in extraction step {name} for {filename}: {e}")
                steps.append(f"{name}: failed")
                continue
            if out is None:
                continue
            any_success = True
            steps.append(f"{name}: ok")
            if out.get("text"):
                texts.append(out["text"].strip())
            if out.get("ocr") and ocr_info is None:
                ocr_info = out["ocr"]
            if out.get("items") and not items:
                items = [c for c in (_clean_item(i, name) for i in out["items"]) if c]
                logger.info(f"{filename}: {len(items)} item(s) from {name}")

        if not any_success:
            logger.warning(f"All extraction steps failed for {filename}")
            return ExtractionResult(text=None, items=[], approvals=[], doc_type="unknown", steps=steps)

        text = "\n\n".join(t for t in texts if t) or None
        approvals = extract_approvals(text)
        if text and not approvals:
            approvals = self._llm_approvals(text)

        doc_type = self._doc_type(items, text, filename, approvals)
        return ExtractionResult(text=text, items=items, approvals=approvals, doc_type=doc_type,
                                ocr=ocr_info, steps=steps)

    def _doc_type(self, items: List[Dict], text: Optional[str], filename: str, approvals: List[Approval]) -> str:
        kinds = {i.get("kind") for i in items}
        if "invoice" in kinds:
            return "invoice"
        if "receipt" in kinds:
            return "receipt"
        doc_type, target = classify_by_text(text, filename)
        if doc_type == "approvalNote":
            approvals.append(Approval(
                decision="approved",
                target_type=target,
                summary="Approval note detected",
                confidence=0.4,
            ))
        return doc_type

    def _llm_approvals(self, text: str) -> List[Approval]:
        if self.llm is None or not self.llm.configured:
            return []
        parsed = self.llm.chat_json(APPROVALS_SYSTEM, text[:LLM_TEXT_LIMIT], max_tokens=800)
        if not parsed or not isinstance(parsed.get("approvals"), list):
            return []
        out = []
        for raw in parsed["approvals"]:
            if not isinstance(raw, dict):
                continue
            decision = raw.get("decision") if raw.get("decision") in DECISIONS else "unknown"
            approver = raw.get("approver") or None
            title = raw.get("title") or None
            date = parse_date(raw.get("date"))
            summary = " ".join(p for p in [
                decision.capitalize(),
                f"by {approver}" if approver else "",
                f"({title})" if title else "",
                f"on {date}" if date else "",
            ] if p)
            out.append(Approval(
                approver=approver,
                title=title,
                date=date,
                decision=decision,
                comments=raw.get("comments") or None,
                target_type=raw.get("targetType") or None,
                summary=summary,
                confidence=0.5,
            ))
        if out:
            logger.info(f"LLM approvals fallback found {len(out)} approval(s)")
        return out
