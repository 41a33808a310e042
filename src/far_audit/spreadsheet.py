"""
GL spreadsheet normalizer.

Accepts CSV/XLSX bytes whose header row may sit anywhere in the first rows,
finds that row, maps its headers onto the canonical GL fields and returns
normalized rows (ISO dates, float amounts). The LLM can optionally be asked
for the header row and the mapping first; anything it gets wrong falls back
to the local heuristics.
"""

import csv
import io
import json
import math
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import pandas as pd
from loguru import logger

from .errors import ValidationError
from .normalizers import parse_amount, parse_date


STANDARD_FIELDS = ["date", "accountNumber", "description", "amount", "category", "vendor", "contractNumber"]

SYNONYMS = {
    "date": ["date", "posting date", "txn date", "transaction date", "post date", "invoice date"],
    "accountNumber": ["account", "account number", "account no", "acct", "acct number", "gl account"],
    "description": ["description", "memo", "details", "detail", "item description", "narration"],
    "amount": ["amount", "amount $", "amount usd", "total", "total amount", "line amount", "extended amount",
               "net amount", "gross amount", "amt", "transaction amount"],
    "category": ["category", "gl category", "account type", "expense type"],
    "vendor": ["vendor", "vendor name", "supplier", "payee", "merchant"],
    "contractNumber": ["contract number", "contract", "contract #", "contract no", "contract id", "job number",
                       "project number", "award number"],
}
# only consulted when no plain amount column exists
DEBIT_CREDIT = ["debit", "credit"]

MAX_HEADER_SCAN = 20
_HEADER_HINT = re.compile(r"(amount|date|vendor|account|description|category|contract)", re.I)
_LETTER = re.compile(r"[a-z]", re.I)
_DEBIT = re.compile(r"(^|\b)(debit|dr)(\b|$)", re.I)
_CREDIT = re.compile(r"(^|\b)(credit|cr)(\b|$)", re.I)


def canonical(text: Any) -> str:
    return re.sub(r"[^a-z0-9]", "", str(text or "").lower())


_SYNONYM_SETS = {f: {canonical(s) for s in syns} for f, syns in SYNONYMS.items()}
_ALL_SYNONYMS = set().union(*_SYNONYM_SETS.values()) | set(DEBIT_CREDIT)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def cell_text(value: Any) -> str:
    if _is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()[:10]
    return str(value).strip()


def detect_file_kind(filename: str) -> str:
    lower = (filename or "").lower()
    if lower.endswith(".csv") or lower.endswith(".txt"):
        return "csv"
    if lower.endswith((".xlsx", ".xlsm", ".xls")):
        return "xlsx"
    return "unknown"


def _decode(data: bytes) -> str:
    for encoding in ("utf-8-sig", "cp1252"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("latin-1")


def read_rows(data: bytes, filename: str) -> List[List[Any]]:
    """Parse spreadsheet bytes into a row-major 2-D list (first sheet for XLSX)."""
    kind = detect_file_kind(filename)
    if kind == "csv":
        reader = csv.reader(io.StringIO(_decode(data)))
        # rows may have differing lengths; blank lines come back as []
        return [row for row in reader if row]
    if kind == "xlsx":
        frame = pd.read_excel(io.BytesIO(data), sheet_name=0, header=None, dtype=object)
        frame = frame.astype(object).where(pd.notna(frame), None)
        rows = []
        for values in frame.itertuples(index=False, name=None):
            row = list(values)
            while row and row[-1] is None:
                row.pop()
            rows.append(row)
        return rows
    raise ValidationError(f"Unsupported spreadsheet type: {filename!r} (expected .csv or .xlsx)")


def score_header_row(row: List[Any]) -> int:
    score = 0
    non_empty = 0
    numeric_only = 0
    for cell in row:
        text = cell_text(cell)
        if not text:
            continue
        non_empty += 1
        if canonical(text) in _ALL_SYNONYMS:
            score += 3
        if _LETTER.search(text):
            score += 1
        else:
            numeric_only += 1
        if _HEADER_HINT.search(text):
            score += 2
    if non_empty and numeric_only > non_empty / 2:
        score -= 3
    return score


def detect_header_row_local(rows: List[List[Any]], max_scan: int = MAX_HEADER_SCAN) -> int:
    best_idx, best_score = 0, None
    for idx, row in enumerate(rows[:max_scan]):
        score = score_header_row(row or [])
        if best_score is None or score > best_score:
            best_idx, best_score = idx, score
    return best_idx


def detect_header_row_llm(rows: List[List[Any]], llm) -> Optional[int]:
    preview = "\n".join("\t".join(cell_text(c) for c in row) for row in rows[:30])
    parsed = llm.chat_json(
        "You identify header rows in CSV/XLSX data.",
        'Given the following table preview, return JSON {"headerRowIndex": <number starting at 0>}.\n' + preview,
        max_tokens=200,
    )
    if not parsed:
        return None
    idx = parsed.get("headerRowIndex")
    if isinstance(idx, bool) or not isinstance(idx, (int, float)) or int(idx) != idx:
        return None
    idx = int(idx)
    return idx if 0 <= idx < len(rows) else None


def _find_debit_credit(headers: List[str]) -> Dict[str, int]:
    debit = next((i for i, h in enumerate(headers) if _DEBIT.search(h)), -1)
    credit = next((i for i, h in enumerate(headers) if _CREDIT.search(h)), -1)
    return {"debit": debit, "credit": credit}


def map_headers_local(headers: List[str]) -> Dict[str, int]:
    canon = [canonical(h) for h in headers]
    mapping = {}
    for field in STANDARD_FIELDS:
        mapping[field] = next((i for i, h in enumerate(canon) if h in _SYNONYM_SETS[field]), -1)
    mapping.update(_find_debit_credit(headers))
    return mapping


def map_headers_llm(headers: List[str], sample_rows: List[List[Any]], llm) -> Optional[Dict[str, int]]:
    system = "You map spreadsheet headers to a fixed schema."
    user = (
        f"Headers: {json.dumps(headers)}\n"
        f"Sample rows: {json.dumps([[cell_text(c) for c in r] for r in sample_rows[:5]])}\n"
        'Return JSON: {"mapping": {'
        + ", ".join(f'"{f}": <idx or -1>' for f in STANDARD_FIELDS)
        + "}}"
    )
    parsed = llm.chat_json(system, user, max_tokens=300)
    if not parsed or not isinstance(parsed.get("mapping"), dict):
        return None
    mapping = {}
    for field in STANDARD_FIELDS:
        value = parsed["mapping"].get(field, -1)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        value = int(value)
        if value >= len(headers) or value < -1:
            return None
        mapping[field] = value
    mapping.update(_find_debit_credit(headers))
    return mapping


def _pick(row: List[Any], idx: Optional[int]) -> Any:
    if idx is None or idx < 0 or idx >= len(row):
        return None
    value = row[idx]
    return None if _is_blank(value) else value


def _text_or_none(value: Any) -> Optional[str]:
    text = cell_text(value)
    return text or None


def normalize_row(row: List[Any], mapping: Dict[str, int]) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "date": parse_date(_pick(row, mapping.get("date"))),
        "accountNumber": _text_or_none(_pick(row, mapping.get("accountNumber"))),
        "description": _text_or_none(_pick(row, mapping.get("description"))),
        "amount": None,
        "category": _text_or_none(_pick(row, mapping.get("category"))),
        "vendor": _text_or_none(_pick(row, mapping.get("vendor"))),
        "contractNumber": _text_or_none(_pick(row, mapping.get("contractNumber"))),
    }

    signed = None
    if mapping.get("amount", -1) >= 0:
        signed = parse_amount(_pick(row, mapping["amount"]), signed=True)
    else:
        debit = _pick(row, mapping.get("debit"))
        credit = _pick(row, mapping.get("credit"))
        if debit is not None or credit is not None:
            signed = (parse_amount(debit) or 0.0) - (parse_amount(credit) or 0.0)
    if signed is not None:
        out["amount"] = abs(signed)
    out["isCredit"] = bool(signed is not None and signed < 0)
    return out


def _has_any(row: Dict[str, Any]) -> bool:
    return any(row.get(f) not in (None, "") for f in STANDARD_FIELDS)


def normalize(data: bytes, filename: str, use_assist: bool = False, llm=None) -> Dict[str, Any]:
    """Normalize a GL spreadsheet.

    Returns ``{rows, mapping, headerRowIndex, logs, warnings, errors}``.
    """
    logs: List[str] = []
    warnings: List[str] = []
    errors: List[str] = []

    rows = read_rows(data, filename)
    if not rows:
        return {"rows": [], "mapping": {}, "headerRowIndex": 0, "logs": logs, "warnings": warnings,
                "errors": ["Empty spreadsheet"]}
    logs.append(f"Parsed {len(rows)} rows from {filename}")

    assist = use_assist and llm is not None and llm.configured
    header_idx = None
    if assist:
        header_idx = detect_header_row_llm(rows, llm)
        if header_idx is None:
            warnings.append("LLM header detection failed; using local heuristic")
        else:
            logs.append(f"LLM header detection used: row {header_idx}")
    if header_idx is None:
        header_idx = detect_header_row_local(rows)
        logs.append(f"Local header detection used: row {header_idx}")

    headers = [cell_text(c) for c in rows[header_idx]]
    data_rows = rows[header_idx + 1:]
    mapping = None
    if assist:
        mapping = map_headers_llm(headers, data_rows, llm)
        if mapping is None:
            warnings.append("LLM header mapping failed; using local synonyms")
        else:
            logs.append("LLM header mapping used")
    if mapping is None:
        mapping = map_headers_local(headers)
        logs.append("Local header mapping used")

    if mapping["amount"] < 0:
        if mapping["debit"] >= 0 or mapping["credit"] >= 0:
            logs.append("Amount computed as debit - credit")
        else:
            errors.append("No amount column detected")

    normalized = []
    for offset, row in enumerate(data_rows):
        out = normalize_row(row, mapping)
        if not _has_any(out):
            continue
        line_no = header_idx + 2 + offset
        raw_date = _pick(row, mapping.get("date"))
        if raw_date is not None and out["date"] is None:
            warnings.append(f"Row {line_no}: unparseable date {cell_text(raw_date)!r}")
        raw_amount = _pick(row, mapping.get("amount"))
        if raw_amount is not None and out["amount"] is None:
            warnings.append(f"Row {line_no}: unparseable amount {cell_text(raw_amount)!r}")
        normalized.append(out)

    logs.append(f"Normalized {len(normalized)} rows")
    logger.info(f"Spreadsheet {filename}: header row {header_idx}, {len(normalized)} rows")
    return {
        "rows": normalized,
        "mapping": mapping,
        "headerRowIndex": header_idx,
        "logs": logs,
        "warnings": warnings,
        "errors": errors,
    }
