"""
Approval mining and keyword document-type heuristics for free text.
"""

import re
from typing import List, Optional, Tuple

from .models import Approval
from .normalizers import parse_date


TITLE_WORDS = [
    "manager", "supervisor", "director", "vp", "chief", "officer", "cfo", "ceo", "coo", "cto",
    "finance", "hr", "operations", "program", "project", "approver", "reviewer", "auditor",
]

_NAME = r"((?-i:[A-Z])[a-zA-Z.'-]+(?:\s+(?-i:[A-Z])[a-zA-Z.'-]+){0,3})"
_TITLE = r"(?:\s*[,-]\s*([A-Za-z&/-]{2,}(?:\s+(?!on\b|dated\b|date\b)[A-Za-z&/-]+){0,5}))?"
_TAIL = _TITLE + r"(?:.*?\b(?:on|dated|date)[: ]*\s*(.+))?"
SINGLE_LINE_PATTERNS = [
    re.compile(r"\b(approved|approval|authori[sz]ed)\s*(?:by\s*:?|:)?\s*" + _NAME + _TAIL, re.I),
    re.compile(r"\b(reviewed|verified)\s*(?:by\s*:?|:)?\s*" + _NAME + _TAIL, re.I),
]
BLOCK_START = re.compile(r"^(approved|approval|reviewed|authori[sz]ed)(\s+by)?\s*:?$", re.I)

_DATE_TOKEN = re.compile(
    r"\b(\d{4}[-/.]\d{1,2}[-/.]\d{1,2}"
    r"|\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4}"
    r"|(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4})\b",
    re.I,
)
_BLOCK_NAME = re.compile(r"[A-Za-z][a-z]+\s+[A-Za-z.'-]+")
_NAME_ONLY = re.compile(_NAME)

_DECISIONS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\b(approved|approval)\b", re.I), "approved"),
    (re.compile(r"\b(denied|rejected|declined)\b", re.I), "rejected"),
    (re.compile(r"\b(ok\s*to\s*pay|payment\s*approved)\b", re.I), "approved"),
]

_OK_TO_PAY = re.compile(r"\bok\s*to\s*pay\b", re.I)
_PAYMENT_APPROVED = re.compile(r"\bpayment\s*approved\b", re.I)
_REJECTED = re.compile(r"\b(denied|rejected|declined)\b", re.I)

BASE_CONFIDENCE = 0.5
MAX_CONFIDENCE = 0.95


def find_date(text: str) -> Optional[str]:
    """First parseable date token in ``text``."""
    for m in _DATE_TOKEN.finditer(text or ""):
        parsed = parse_date(m.group(1))
        if parsed:
            return parsed
    return None


def detect_decision(line: str) -> str:
    for pattern, decision in _DECISIONS:
        if pattern.search(line):
            return decision
    return "unknown"


def _has_title_word(text: str) -> bool:
    words = set(re.findall(r"[a-z]+", text.lower()))
    return any(w in words for w in TITLE_WORDS)


def _summary(decision: str, approver: str, title: Optional[str], date: Optional[str]) -> str:
    parts = [f"{'Rejected' if decision == 'rejected' else 'Approved'} by {approver}"]
    if title:
        parts.append(f"({title})")
    if date:
        parts.append(f"on {date}")
    return " ".join(parts)


def _confidence(date: Optional[str], title: Optional[str], block: bool) -> float:
    conf = BASE_CONFIDENCE + (0.2 if date else 0) + (0.1 if title else 0) + (0.1 if block else 0)
    return round(min(MAX_CONFIDENCE, conf), 2)


def extract_approvals(text: Optional[str]) -> List[Approval]:
    """Mine approval decisions from free text.

    Three passes over the non-blank lines: single-line "Approved by <Name>"
    forms, "Approved by:" blocks with name/title/date on the following three
    lines, then bare decision hints ("ok to pay", "rejected", ...).
    """
    if not text or not text.strip():
        return []
    lines = [ln.strip() for ln in re.split(r"\r?\n", text) if ln.strip()]

    results: List[Approval] = []
    seen = set()

    def push(approval: Approval):
        key = ((approval.approver or "").lower(), approval.date or "", approval.decision)
        if key not in seen:
            seen.add(key)
            results.append(approval)

    for ln in lines:
        for pattern in SINGLE_LINE_PATTERNS:
            m = pattern.search(ln)
            if not m:
                continue
            approver = m.group(2).strip()
            title_raw = (m.group(3) or "").strip()
            title = title_raw if len(title_raw) > 2 else None
            date = find_date(m.group(4) or "") or find_date(ln)
            decision = detect_decision(ln)
            push(Approval(
                approver=approver,
                title=title,
                date=date,
                decision=decision,
                summary=_summary(decision, approver, title, date),
                confidence=_confidence(date, title, block=False),
            ))
            break

    for i, ln in enumerate(lines):
        if not BLOCK_START.match(ln):
            continue
        block = lines[i + 1:i + 4]
        name_line = next(
            (s for s in block if _BLOCK_NAME.search(s) and not _DATE_TOKEN.search(s) and not _has_title_word(s)), ""
        )
        title_line = next((s for s in block if _has_title_word(s)), None)
        date_line = next((s for s in block if _DATE_TOKEN.search(s)), "")
        m = _NAME_ONLY.search(name_line)
        if not m:
            continue
        approver = m.group(1)
        date = find_date(date_line) or find_date(" ".join(block))
        decision = detect_decision(ln)
        push(Approval(
            approver=approver,
            title=title_line,
            date=date,
            decision=decision,
            summary=_summary(decision, approver, title_line, date),
            confidence=_confidence(date, title_line, block=True),
        ))

    for ln in lines:
        if _OK_TO_PAY.search(ln):
            push(Approval(decision="approved", summary=ln[:120], confidence=0.4))
        if _PAYMENT_APPROVED.search(ln):
            push(Approval(decision="approved", summary=ln[:120], confidence=0.45))
        if _REJECTED.search(ln):
            push(Approval(decision="rejected", summary=ln[:120], confidence=0.45))

    return results


_INVOICE_TERMS = ("invoice #", "invoice no", "invoice number", "bill to", "invoice date")
_RECEIPT_TERMS = ("merchant", "total", "subtotal", "sales tax", "thank you for your purchase")
_TIMESHEET_TERMS = ("timesheet", "time sheet", "hours worked", "week ending", "employee id")
_ORG_CHART_TERMS = ("org chart", "organizational chart", "organization chart", "orgchart", "org structure",
                    "reports to", "hierarchy")
_APPROVAL_TERMS = ("approved", "approval", "approve", "authorized", "sign off", "sign-off")


def classify_by_text(text: Optional[str], filename: Optional[str] = None) -> Tuple[str, Optional[str]]:
    """Return ``(doc_type, approval_target)`` from filename tokens and text keywords.

    ``approval_target`` is only set for approval notes and names what the
    note approves (invoice, receipt, timesheet or unknown).
    """
    name = (filename or "").lower()
    t = (text or "").lower()

    def has_any(terms):
        return any(term in t for term in terms)

    if "invoice" in name or has_any(_INVOICE_TERMS):
        return "invoice", None
    if "receipt" in name or has_any(_RECEIPT_TERMS):
        return "receipt", None
    if "timesheet" in name or has_any(_TIMESHEET_TERMS):
        return "timesheet", None
    if ("org" in name and "chart" in name) or has_any(_ORG_CHART_TERMS):
        return "orgChart", None
    if has_any(_APPROVAL_TERMS):
        if "invoice" in t:
            target = "invoice"
        elif "receipt" in t or "expense report" in t:
            target = "receipt"
        elif "timesheet" in t or "time sheet" in t:
            target = "timesheet"
        else:
            target = "unknown"
        return "approvalNote", target
    return "unknown", None
