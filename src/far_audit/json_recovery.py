"""
Recovering JSON objects from LLM replies that may be wrapped in prose,
fenced, or truncated mid-array.
"""

import json
import re
from typing import Dict, Iterator, List, Optional


_OUTER_OBJECT = re.compile(r"\{[\s\S]*\}")


def _strip_fences(content: str) -> str:
    s = content.strip()
    if "```json" in s:
        start = s.find("```json") + 7
        end = s.find("```", start)
        return s[start:end if end != -1 else None].strip()
    if s.startswith("```") and s.endswith("```"):
        return s[3:-3].strip()
    return s


def parse_json_object(content: Optional[str]) -> Optional[Dict]:
    """Whole-text parse, then the outermost ``{...}`` span. None if neither works."""
    if not content:
        return None
    text = _strip_fences(content)
    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass
    m = _OUTER_OBJECT.search(text)
    if m:
        try:
            parsed = json.loads(m.group(0))
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            return None
    return None


def iter_array_objects(text: str, key: str) -> Iterator[Dict]:
    """Stream the complete top-level objects of the array stored under ``key``.

    Walks the text after ``"key"`` and its opening ``[``, tracking brace depth
    while honouring string quoting and backslash escapes. Objects cut off by
    truncation, or that fail to decode, are skipped.
    """
    key_idx = text.find(f'"{key}"')
    if key_idx == -1:
        return
    pos = text.find("[", key_idx)
    if pos == -1:
        return

    in_string = False
    escaped = False
    depth = 0
    start = -1
    for i in range(pos + 1, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}":
            if depth == 0:
                continue
            depth -= 1
            if depth == 0 and start != -1:
                try:
                    obj = json.loads(text[start:i + 1])
                except json.JSONDecodeError:
                    obj = None
                if isinstance(obj, dict):
                    yield obj
                start = -1
        elif ch == "]" and depth == 0:
            return


def parse_with_ladder(content: Optional[str], key: str = "results") -> Optional[Dict]:
    """Strict parse, outer-object parse, then the streaming array salvage."""
    parsed = parse_json_object(content)
    if parsed is not None and isinstance(parsed.get(key), list):
        return parsed
    objs: List[Dict] = list(iter_array_objects(content or "", key))
    if objs:
        return {key: objs}
    return parsed
