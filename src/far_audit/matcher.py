from typing import Dict, List, Optional, Tuple

from .models import MatchResult
from .normalizers import days_between, parse_amount
from .vendor import vendor_similarity


def _tier_score(delta: float, tiers: List[List[float]]) -> float:
    for limit, score in tiers:
        if delta <= limit:
            return float(score)
    return 0.0


def amount_score(item_amount, gl_amount, cfg: Dict) -> float:
    a = parse_amount(item_amount, signed=False)
    b = parse_amount(gl_amount, signed=False)
    if a is None or b is None:
        return 0.0
    return _tier_score(round(abs(a - b), 2), cfg["amount_tiers"])


def date_score(item_date, gl_date, cfg: Dict) -> float:
    delta = days_between(item_date, gl_date)
    if delta is None:
        return 0.0
    return _tier_score(abs(delta), cfg["date_tiers"])


def score_match(item: Dict, gl: Dict, cfg: Dict) -> Tuple[float, Dict]:
    """Weighted amount/date/vendor score of one item against one GL line.

    Returns the combined score in [0, 1] and the flags the selection step
    needs (sub-scores, exact amount, date closeness, vendor agreement).
    """
    weights = cfg["weights"]
    sim = cfg["similarity"]

    amt = amount_score(item.get("amount"), gl.get("amount"), cfg)
    dt = date_score(item.get("date"), gl.get("date"), cfg)
    ven = vendor_similarity(item.get("vendor"), gl.get("vendor"))

    combined = amt * weights["amount"] + dt * weights["date"] + ven * weights["vendor"]
    combined = max(0.0, min(1.0, combined))

    delta = days_between(item.get("date"), gl.get("date"))
    flags = {
        "amountScore": amt,
        "dateScore": dt,
        "vendorScore": round(ven, 4),
        "amountExact": amt == 1.0,
        "dateClose": delta is not None and abs(delta) <= cfg["date_close_days"],
        "dateDelta": abs(delta) if delta is not None else None,
        "vendorPresentBoth": bool(item.get("vendor")) and bool(gl.get("vendor")),
        "vendorMatch": ven >= sim["vendor_match"],
        "boosted": False,
        "penalized": False,
    }

    if amt == 1.0 and dt >= 0.85 and ven >= sim["vendor_match"]:
        combined = 1.0
        flags["boosted"] = True
    elif ven < sim["vendor_penalty"] and amt < 0.6 and dt < 0.7:
        combined *= cfg["penalty_factor"]
        flags["penalized"] = True

    return round(combined, 4), flags


def threshold_for(flags: Dict, cfg: Dict) -> float:
    th = cfg["thresholds"]
    if not flags["vendorPresentBoth"]:
        return th["base"]
    if not flags["vendorMatch"] and flags["amountExact"] and flags["dateClose"]:
        return th["vendor_mismatch_exact"]
    return th["vendor_present"]


def _fallback_key(candidate: Dict):
    delta = candidate["flags"]["dateDelta"]
    return (
        delta if delta is not None else float("inf"),
        0 if candidate["flags"]["vendorMatch"] else 1,
        -candidate["score"],
    )


def discrepancies(item: Dict, gl: Dict, flags: Dict) -> List[Dict]:
    out = []
    a = parse_amount(item.get("amount"), signed=False)
    b = parse_amount(gl.get("amount"), signed=False)
    if a is not None and b is not None and abs(a - b) > 0.01:
        diff = round(abs(a - b), 2)
        out.append({
            "field": "amount",
            "extracted": a,
            "glValue": b,
            "difference": diff,
            "percentDiff": round(diff / b * 100, 2) if b else None,
        })
    delta = days_between(item.get("date"), gl.get("date"))
    if delta:
        out.append({
            "field": "date",
            "extracted": item.get("date"),
            "glValue": gl.get("date"),
            "daysDifference": delta,
        })
    if flags["vendorPresentBoth"] and not flags["vendorMatch"]:
        out.append({
            "field": "vendor",
            "extracted": item.get("vendor"),
            "glValue": gl.get("vendor"),
            "similarity": flags["vendorScore"],
        })
    return out


def match_item(item: Dict, gl_entries: List[Dict], cfg: Dict) -> MatchResult:
    """Pick at most one GL line for ``item``.

    The best-scoring line wins if it clears the dynamic threshold. Otherwise
    an exact-amount line is taken, then a line that scores at least the near
    fallback and sits within the close-date window; ties on either fallback go
    to the smallest date gap, then vendor agreement, then score.
    """
    candidates = []
    for gl in gl_entries:
        score, flags = score_match(item, gl, cfg)
        candidates.append({"gl": gl, "score": score, "flags": flags})

    if not candidates:
        return MatchResult(gl_entry_id=None, score=0.0, flags={}, discrepancies=[])

    best: Optional[Dict] = None
    for c in candidates:
        if best is None or c["score"] > best["score"]:
            best = c

    threshold = threshold_for(best["flags"], cfg)
    chosen, fallback = None, None
    if best["score"] >= threshold:
        chosen = best
    else:
        exact = [c for c in candidates if c["flags"]["amountExact"]]
        near = [
            c for c in candidates
            if c["score"] >= cfg["thresholds"]["near_fallback"] and c["flags"]["dateClose"]
        ]
        if exact:
            chosen, fallback = min(exact, key=_fallback_key), "exact_amount"
        elif near:
            chosen, fallback = min(near, key=_fallback_key), "near"

    if chosen is None:
        return MatchResult(
            gl_entry_id=None,
            score=round(best["score"] * 100, 1),
            flags={**best["flags"], "threshold": threshold},
            discrepancies=[],
        )

    return MatchResult(
        gl_entry_id=str(chosen["gl"].get("id")),
        score=round(chosen["score"] * 100, 1),
        flags={**chosen["flags"], "threshold": threshold},
        discrepancies=discrepancies(item, chosen["gl"], chosen["flags"]),
        fallback=fallback,
    )
