import re
from typing import Dict, List, Optional

from .config_loader import DEFAULT_POLICY
from .models import GLEntry, Requirement


_TRAVEL = re.compile(r"(airfare|flight|hotel|lodging|travel|uber|taxi|lyft|mileage)")
_MEALS = re.compile(r"(meal|dining|restaurant|food)")
_TRAVEL_REASON = re.compile(r"travel|airfare|hotel|lodging")


def category_for(entry: GLEntry) -> str:
    text = f"{entry.category or entry.account_number or ''} {entry.description or ''}".lower()
    if _TRAVEL.search(text):
        return "travel"
    if _MEALS.search(text):
        return "meals"
    return "supplies"


def _threshold(sub: Dict, general: Dict, key: str) -> float:
    # 0 in the category falls through to the general threshold
    try:
        return float(sub.get(key) or general.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0


def _fmt(amount: float) -> str:
    return f"{amount:g}"


def evaluate(entry: GLEntry, policy: Optional[Dict] = None) -> Requirement:
    """Receipt/approval requirements of one GL line under ``policy``."""
    p = policy or DEFAULT_POLICY
    category = category_for(entry)
    sub = (p.get("categories") or {}).get(category) or {}
    general = p.get("general") or {}
    receipt_th = _threshold(sub, general, "receipt_threshold")
    approval_th = _threshold(sub, general, "approval_threshold")
    amount = float(entry.amount or 0)

    receipt_required = amount >= receipt_th if receipt_th > 0 else False
    waiver = p.get("low_dollar_waiver") or {}
    if waiver.get("enabled") and 0 < amount <= float(waiver.get("threshold") or 0):
        receipt_required = False
    approval_required = amount >= approval_th if approval_th > 0 else False

    reasons: List[str] = []
    if receipt_required:
        if _TRAVEL_REASON.search((entry.category or entry.description or "").lower()):
            reasons.append("Receipt required (travel policy; see FAR 31.205-46)")
        else:
            reasons.append(f"Receipt required (>= ${_fmt(receipt_th)})")
    else:
        reasons.append("Receipt not required by policy threshold")
    if approval_required:
        reasons.append(f"Approval required (>= ${_fmt(approval_th)})")
    return Requirement(receipt_required=receipt_required, approval_required=approval_required, reasons=reasons)


def requirements_report(entries: List[GLEntry], policy: Optional[Dict] = None) -> Dict:
    p = policy or DEFAULT_POLICY
    rows = []
    for e in entries:
        req = evaluate(e, p)
        rows.append({
            "id": e.id,
            **req.to_dict(),
            "hasReceipt": e.has_receipt,
            "attachmentsCount": e.attachments_count,
            "hasApproval": e.has_approval,
            "approvalsCount": e.approvals_count,
        })
    return {"rows": rows, "policy": p}
