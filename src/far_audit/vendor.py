import re
from typing import Optional

from rapidfuzz import fuzz


STOPWORDS = {
    "inc", "llc", "ltd", "co", "corp", "corporation", "company", "the", "and",
    "business", "store", "stores", "online", "marketplace",
}
_TLD = re.compile(r"\.(com|net|org|io)\b")
_PUNCT = re.compile(r"[^a-z0-9\s]")


def normalize_vendor(text: Optional[str]) -> str:
    if not text:
        return ""
    s = str(text).lower()
    s = _TLD.sub(" ", s)
    s = _PUNCT.sub(" ", s)
    tokens = [t for t in s.split() if t not in STOPWORDS]
    return " ".join(tokens)


def vendor_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Best of Levenshtein ratio, token-set ratio and partial ratio, in [0, 1]."""
    na, nb = normalize_vendor(a), normalize_vendor(b)
    if not na or not nb:
        return 0.0
    score = max(
        fuzz.ratio(na, nb),
        fuzz.token_set_ratio(na, nb),
        fuzz.partial_ratio(na, nb),
    )
    return score / 100.0
