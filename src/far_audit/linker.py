from typing import Dict, Iterable, List, Optional

from loguru import logger

from .matcher import match_item
from .models import GLDocLink


def line_descriptions(item: Dict) -> List[str]:
    lines = (item.get("details") or {}).get("lines") or []
    return [str(l.get("desc")).strip() for l in lines if isinstance(l, dict) and l.get("desc")]


def summarize_item(item: Dict) -> Optional[str]:
    """``vendor | date | $amount | line descriptions``, skipping blanks."""
    amount = item.get("amount")
    parts = [
        item.get("vendor"),
        item.get("date"),
        f"${amount:.2f}" if isinstance(amount, (int, float)) else None,
        *line_descriptions(item),
    ]
    summary = " | ".join(str(p) for p in parts if p)
    return summary or None


def has_unallowable_keyword(text: Optional[str], keywords: Iterable[str]) -> bool:
    t = (text or "").lower()
    return any(k in t for k in keywords)


def is_unallowable(item: Dict, cfg: Dict) -> bool:
    keywords = cfg["unallowable_keywords"]
    return any(has_unallowable_keyword(d, keywords) for d in line_descriptions(item))


def build_links(items: List[Dict], gl_entries: List[Dict], cfg: Dict) -> List[GLDocLink]:
    """Match each stored item (must carry ``id``) and return the resulting links."""
    links: List[GLDocLink] = []
    for item in items:
        result = match_item(item, gl_entries, cfg)
        if not result.gl_entry_id:
            logger.info(f"No GL match for item {item.get('id')} (best {result.score})")
            continue
        if result.fallback:
            logger.info(f"Item {item.get('id')} linked to {result.gl_entry_id} via {result.fallback} fallback")
        links.append(GLDocLink(
            document_item_id=str(item["id"]),
            gl_entry_id=result.gl_entry_id,
            score=round(result.score / 100.0, 4),
            doc_summary=summarize_item(item),
            doc_flag_unallowable=is_unallowable(item, cfg),
            discrepancies=result.discrepancies,
        ))
    return links
