from dataclasses import dataclass, field
from typing import Dict, List, Optional


DOC_TYPES = ("invoice", "receipt", "timesheet", "orgChart", "approvalNote", "unknown")
DECISIONS = ("approved", "rejected", "unknown")
CLASSIFICATIONS = ("ALLOWED", "UNALLOWABLE", "NEEDS_REVIEW", "RECEIPT_REQUIRED")


@dataclass
class Approval:
    approver: Optional[str] = None
    title: Optional[str] = None
    date: Optional[str] = None
    decision: str = "unknown"
    comments: Optional[str] = None
    target_type: Optional[str] = None
    summary: Optional[str] = None
    confidence: float = 0.5
    id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "approver": self.approver,
            "title": self.title,
            "date": self.date,
            "decision": self.decision,
            "comments": self.comments,
            "targetType": self.target_type,
            "summary": self.summary,
            "confidence": self.confidence,
        }


@dataclass
class DocAttachment:
    """A document attached to a GL line directly, outside the item/link graph."""
    document_id: str
    filename: Optional[str] = None
    file_url: Optional[str] = None

    def to_dict(self) -> Dict:
        return {"documentId": self.document_id, "filename": self.filename, "fileUrl": self.file_url}


@dataclass
class GLEntry:
    id: str
    amount: float
    created_at: str
    account_number: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    category: Optional[str] = None
    vendor: Optional[str] = None
    contract_number: Optional[str] = None
    is_credit: bool = False
    doc_summary: Optional[str] = None
    doc_flag_unallowable: bool = False
    attachments_count: int = 0
    has_receipt: bool = False
    approvals_count: int = 0
    has_approval: bool = False
    document_match_quality: Optional[str] = None
    attached_documents: List[DocAttachment] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "accountNumber": self.account_number,
            "description": self.description,
            "amount": self.amount,
            "date": self.date,
            "category": self.category,
            "vendor": self.vendor,
            "contractNumber": self.contract_number,
            "isCredit": self.is_credit,
            "createdAt": self.created_at,
            "docSummary": self.doc_summary,
            "docFlagUnallowable": self.doc_flag_unallowable,
            "attachmentsCount": self.attachments_count,
            "hasReceipt": self.has_receipt,
            "approvalsCount": self.approvals_count,
            "hasApproval": self.has_approval,
            "documentMatchQuality": self.document_match_quality,
            "attachedDocuments": [a.to_dict() for a in self.attached_documents],
        }


@dataclass
class Document:
    id: str
    filename: str
    mime_type: str
    file_hash: str
    created_at: str
    text_content: Optional[str] = None
    doc_type: str = "unknown"
    approvals: List[Approval] = field(default_factory=list)
    file_url: Optional[str] = None
    size: int = 0

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "mimeType": self.mime_type,
            "fileHash": self.file_hash,
            "createdAt": self.created_at,
            "textContent": self.text_content,
            "docType": self.doc_type,
            "approvals": [a.to_dict() for a in self.approvals],
            "fileUrl": self.file_url,
            "size": self.size,
        }


@dataclass
class DocItem:
    id: str
    document_id: str
    kind: Optional[str] = None
    vendor: Optional[str] = None
    date: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    details: Dict = field(default_factory=dict)
    text_excerpt: Optional[str] = None

    @property
    def lines(self) -> List[Dict]:
        lines = self.details.get("lines") if isinstance(self.details, dict) else None
        return lines if isinstance(lines, list) else []

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "documentId": self.document_id,
            "kind": self.kind,
            "vendor": self.vendor,
            "date": self.date,
            "amount": self.amount,
            "currency": self.currency,
            "details": self.details,
            "textExcerpt": self.text_excerpt,
        }


@dataclass
class GLDocLink:
    document_item_id: str
    gl_entry_id: str
    score: float
    doc_summary: Optional[str] = None
    doc_flag_unallowable: bool = False
    discrepancies: List[Dict] = field(default_factory=list)

    @property
    def key(self):
        return (self.document_item_id, self.gl_entry_id)

    def to_dict(self) -> Dict:
        return {
            "documentItemId": self.document_item_id,
            "glEntryId": self.gl_entry_id,
            "score": self.score,
            "docSummary": self.doc_summary,
            "docFlagUnallowable": self.doc_flag_unallowable,
            "discrepancies": list(self.discrepancies),
        }


@dataclass
class MatchResult:
    gl_entry_id: Optional[str]
    score: float
    flags: Dict
    discrepancies: List[Dict]
    fallback: Optional[str] = None


@dataclass
class Classification:
    index: int
    id: Optional[str]
    classification: str
    rationale: str
    far_section: str = ""

    def to_dict(self) -> Dict:
        return {
            "index": self.index,
            "id": self.id,
            "classification": self.classification,
            "rationale": self.rationale,
            "farSection": self.far_section,
        }


@dataclass
class ExtractionResult:
    text: Optional[str]
    items: List[Dict]
    approvals: List[Approval]
    doc_type: str = "unknown"
    ocr: Optional[Dict] = None
    steps: List[str] = field(default_factory=list)


@dataclass
class Requirement:
    receipt_required: bool
    approval_required: bool
    reasons: List[str]

    def to_dict(self) -> Dict:
        return {
            "receiptRequired": self.receipt_required,
            "approvalRequired": self.approval_required,
            "reasons": list(self.reasons),
        }
