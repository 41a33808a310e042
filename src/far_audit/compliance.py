"""
FAR allowability review of GL rows through the LLM collaborator.

Rows go out in batches of at most 15. Each reply is parsed strictly, then
leniently, and any indices the model left out are asked for again (up to
five continuation rounds per batch). The model's verdicts are passed
through as-is; only the row id is copied from the input.
"""

import json
from typing import Callable, Dict, List, Optional

from loguru import logger

from .errors import CollaboratorError, ConfigurationError, ValidationError
from .json_recovery import parse_with_ladder
from .models import CLASSIFICATIONS, Classification


BATCH_SIZE = 15
MAX_CONTINUATIONS = 5
MAX_ATTACHMENTS = 5
RATIONALE_LIMIT = 160

SYSTEM_PROMPT = "\n".join([
    "You are a compliance assistant for FAR cost allowability. You will receive a JSON object with an array "
    '"rows". Each row may include:',
    "index (0-based), id (unique string), accountNumber, description, amount, date (YYYY-MM-DD), category, vendor, "
    "contractNumber, attachmentsCount (integer), hasReceipt (boolean), attachments (linked supporting documents: "
    "documentItemId, documentId, filename, docType, processingMethod, ocr {amount, date, vendor, confidence}, "
    "ocrFull summary, unallowableHint).",
    "",
    "Return exactly one top-level JSON object and nothing else (no prose, no markdown, no code fences). Schema:",
    '{"results":[{"index":0,"id":"<same as input id>","classification":"ALLOWED|UNALLOWABLE|NEEDS_REVIEW|'
    'RECEIPT_REQUIRED","rationale":"...","farSection":"31.xxx or \\"\\""}]}',
    "",
    "Hard rules:",
    "- Output strictly JSON only.",
    "- results.length == number of input rows.",
    "- Copy both index and id from each input row.",
    f"- rationale <= {RATIONALE_LIMIT} chars, factual, tied to the row.",
    '- farSection only when clearly applicable; else "".',
    "- If insufficient/ambiguous -> NEEDS_REVIEW.",
    "- If travel/lodging/meals/airfare (or large purchases) lack receipts -> RECEIPT_REQUIRED.",
    "- Amount >= 3000 and attachmentsCount == 0 -> RECEIPT_REQUIRED.",
    "",
    "Decision logic (first match wins):",
    '- Alcohol -> UNALLOWABLE ("31.205-51").',
    '- Lobbying/political -> UNALLOWABLE ("31.205-22").',
    '- Donations/charity -> UNALLOWABLE ("31.205-8").',
    '- Fines/penalties -> UNALLOWABLE ("31.205-15").',
    '- Interest/bank/finance fees -> UNALLOWABLE ("31.205-20").',
    '- Entertainment/gifts/PR/morale -> UNALLOWABLE ("31.205-14").',
    "- Airfare above coach (first/business/premium/seat upgrade) without clear justification -> UNALLOWABLE "
    '(excess) ("31.205-46").',
    '- Travel/lodging/meals/airfare missing receipts/support -> RECEIPT_REQUIRED ("31.205-46").',
    "- Ordinary office/admin supplies, utilities/telecom, necessary software/cloud clearly allocable & reasonable "
    '-> ALLOWED ("31.201-2").',
    "- Legal/professional/claims/litigation unclear -> NEEDS_REVIEW unless a specific section applies.",
    "- Direct travel to client/government site with null contractNumber and allocability unclear -> NEEDS_REVIEW.",
])

CONTINUE_PROMPT = "\n".join([
    "Continue classification with the same rules and schema. Return ONLY the remaining results for the rows "
    "provided below.",
    'Return exactly one JSON object and nothing else: {"results":[{...}]}',
    "Do not repeat indices already returned; include only the rows supplied in this message. "
    "Ensure indices and ids match input.",
])


def initial_max_tokens(n_rows: int) -> int:
    return min(8000, max(800, 60 * n_rows + 300))


def continuation_max_tokens(n_missing: int) -> int:
    return min(8000, max(600, 60 * n_missing + 200))


def _is_index(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and float(value).is_integer()


def has_reviewable_attachment(attachments: List[Dict]) -> bool:
    for a in attachments or []:
        mime = str(a.get("mimeType") or "").lower()
        if mime.startswith("image/") or mime == "application/pdf":
            return True
    return False


class ComplianceReviewer:
    """Batched, resumable classification of GL rows.

    ``attachments_lookup(gl_id)`` returns the documents linked to a GL line as
    dicts carrying at least ``mimeType``; they feed both the precondition and
    the per-row ``attachments`` payload.
    """

    def __init__(self, llm, batch_size: int = BATCH_SIZE, max_continuations: int = MAX_CONTINUATIONS):
        self.llm = llm
        self.batch_size = batch_size
        self.max_continuations = max_continuations

    def review(self, rows: List[Dict], attachments_lookup: Callable[[str], List[Dict]]) -> Dict:
        if not isinstance(rows, list) or not rows:
            raise ValidationError("rows must be a non-empty array")
        if self.llm is None or not self.llm.configured:
            raise ConfigurationError("LLM is not configured")

        attachments = {}
        for row in rows:
            gl_id = row.get("id")
            if gl_id is not None and str(gl_id) not in attachments:
                attachments[str(gl_id)] = attachments_lookup(str(gl_id)) or []
        if not any(has_reviewable_attachment(a) for a in attachments.values()):
            raise ValidationError(
                "Upload at least one receipt or invoice (image or PDF) linked to these GL rows before review"
            )

        payload_rows = [self._payload_row(row, i, attachments) for i, row in enumerate(rows)]
        ids = {r["index"]: r.get("id") for r in payload_rows}

        logs: List[str] = []
        warnings: List[str] = []
        by_index: Dict[int, Dict] = {}
        for start in range(0, len(payload_rows), self.batch_size):
            batch = payload_rows[start:start + self.batch_size]
            found, warning = self._review_batch(batch, logs)
            by_index.update(found)
            if warning:
                warnings.append(warning)

        results = []
        for index in sorted(by_index):
            raw = by_index[index]
            results.append(Classification(
                index=index,
                id=ids.get(index),
                classification=str(raw.get("classification") or ""),
                rationale=str(raw.get("rationale") or "")[:RATIONALE_LIMIT],
                far_section=str(raw.get("farSection") or ""),
            ).to_dict())

        expected = len(payload_rows)
        warning: Optional[str] = warnings[0] if warnings else None
        if len(results) < expected:
            warning = f"Partial results: {len(results)}/{expected}"
        unknown = [r["index"] for r in results if r["classification"] not in CLASSIFICATIONS]
        if unknown:
            logs.append(f"unrecognized_classification: indices={unknown}")
        logger.info(f"LLM review: {len(results)}/{expected} rows classified" + (f" ({warning})" if warning else ""))
        return {"results": results, "warning": warning, "logs": logs}

    def _payload_row(self, row: Dict, position: int, attachments: Dict[str, List[Dict]]) -> Dict:
        index = int(row["index"]) if _is_index(row.get("index")) else position
        out = {
            "index": index,
            "accountNumber": row.get("accountNumber"),
            "description": row.get("description"),
            "amount": row.get("amount"),
            "date": row.get("date"),
            "category": row.get("category"),
            "vendor": row.get("vendor"),
            "contractNumber": row.get("contractNumber"),
        }
        if row.get("id") is not None:
            out["id"] = str(row["id"])
        docs = attachments.get(out.get("id"), [])
        count = row.get("attachmentsCount")
        out["attachmentsCount"] = count if isinstance(count, int) and not isinstance(count, bool) else len(docs)
        has_receipt = row.get("hasReceipt")
        out["hasReceipt"] = has_receipt if isinstance(has_receipt, bool) else out["attachmentsCount"] > 0
        if docs:
            out["attachments"] = [
                {
                    "documentItemId": d.get("documentItemId"),
                    "documentId": d.get("documentId"),
                    "filename": d.get("filename"),
                    "docType": d.get("docType"),
                    "processingMethod": d.get("processingMethod"),
                    "ocr": {
                        "amount": d.get("amount"),
                        "date": d.get("date"),
                        "vendor": d.get("vendor"),
                        "confidence": d.get("confidence"),
                    },
                    "ocrFull": d.get("summary"),
                    "unallowableHint": bool(d.get("unallowable")),
                }
                for d in docs[:MAX_ATTACHMENTS]
            ]
        return out

    def _call(self, system: str, user: str, max_tokens: int) -> str:
        return self.llm.chat(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            temperature=0,
            max_tokens=max_tokens,
        )

    @staticmethod
    def _absorb(parsed: Dict, wanted: set, by_index: Dict[int, Dict]) -> int:
        added = 0
        for r in parsed.get("results") or []:
            if not isinstance(r, dict) or not _is_index(r.get("index")):
                continue
            index = int(r["index"])
            if index in wanted and index not in by_index:
                by_index[index] = r
                added += 1
        return added

    def _review_batch(self, batch: List[Dict], logs: List[str]):
        wanted = {r["index"] for r in batch}
        by_index: Dict[int, Dict] = {}

        max_tokens = initial_max_tokens(len(batch))
        logs.append(f"initial_request: rows={len(batch)}, max_tokens={max_tokens}")
        try:
            content = self._call(
                SYSTEM_PROMPT,
                "Classify these rows. Reply JSON only.\n" + json.dumps({"rows": batch}, default=str),
                max_tokens,
            )
        except CollaboratorError as e:
            logger.warning(f"LLM review request failed: {e}")
            logs.append("request_error: initial")
            return by_index, f"LLM request failed: {e}"

        parsed = parse_with_ladder(content, "results")
        if parsed is None or not isinstance(parsed.get("results"), list):
            logger.warning(f"Invalid model response: {content[:200]!r}")
            logs.append("parse_error: initial")
            return by_index, "Invalid model response"
        self._absorb(parsed, wanted, by_index)
        logs.append(f"initial_parsed: results={len(by_index)}/{len(batch)}")

        warning = None
        for _ in range(self.max_continuations):
            missing = [r for r in batch if r["index"] not in by_index]
            if not missing:
                break
            logs.append(
                f"continue_request: from={missing[0]['index']} to={missing[-1]['index']} count={len(missing)}"
            )
            try:
                content = self._call(
                    CONTINUE_PROMPT,
                    "Continue from remaining rows. Reply JSON only.\n" + json.dumps({"rows": missing}, default=str),
                    continuation_max_tokens(len(missing)),
                )
            except CollaboratorError as e:
                logger.warning(f"LLM continuation failed: {e}")
                logs.append("request_error: continuation")
                warning = f"LLM request failed: {e}"
                break
            parsed = parse_with_ladder(content, "results")
            if parsed is None or not isinstance(parsed.get("results"), list):
                logs.append("parse_error: continuation")
                warning = "Continuation parse failed"
                break
            added = self._absorb(parsed, wanted, by_index)
            logs.append(f"continue_parsed: added={added}, total={len(by_index)}/{len(batch)}")
        return by_index, warning
