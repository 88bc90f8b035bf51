import json
import re
from typing import Any, Iterator, List, Optional

from pipelines.lib.errors import PlanningError


def _safe_trunc(text: Any, limit: int) -> str:
    s = str(text or "")
    if len(s) <= limit:
        return s
    return s[:limit] + "...(truncated)"


def _safe_json_dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _balanced_objects(text: str) -> Iterator[str]:
    s = text or ""
    start = s.find("{")
    while start != -1:
        depth = 0
        in_str = False
        escaped = False
        end: Optional[int] = None
        for i in range(start, len(s)):
            ch = s[i]
            if in_str:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        if end is None:
            return
        yield s[start : end + 1]
        start = s.find("{", start + 1)


def strip_llm_reasoning_sections(text: str) -> str:
    s = str(text or "")
    if not s:
        return ""
    s = re.sub(r"(?is)<(think|analysis|reasoning)[^>]*>.*?</\1>", " ", s)
    s = re.sub(r"(?is)</?(think|analysis|reasoning)[^>]*>", " ", s)
    s = re.sub(r"(?is)```(?:think|thinking|analysis|reasoning)[^\n]*\n.*?```", " ", s)
    return s.strip()


def extract_json_candidates(text: str) -> List[str]:
    s = (text or "").strip()
    if not s:
        return []
    out: List[str] = []
    fence = re.search(r"```(?:json)?\s*(.*?)\s*```", s, re.S | re.I)
    if fence and (fence.group(1) or "").strip().startswith("{"):
        out.append(fence.group(1).strip())
    if s.startswith("{") and s.endswith("}") and s not in out:
        out.append(s)
    for cand in _balanced_objects(s):
        if cand not in out:
            out.append(cand)
    return out


def parse_json_dict_from_llm(text: str) -> dict:
    s = (text or "").strip()
    if not s:
        raise PlanningError("LLM did not return JSON")
    candidates: List[str] = []
    cleaned = strip_llm_reasoning_sections(s)
    for source in (cleaned, s):
        for cand in extract_json_candidates(source):
            if cand not in candidates:
                candidates.append(cand)
    if not candidates:
        candidates = [cleaned or s]
    last_err: Optional[Exception] = None
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError as exc:
            last_err = exc
            continue
        if isinstance(parsed, dict):
            return parsed
    if last_err is not None:
        raise PlanningError(f"LLM JSON parse failed: {last_err}") from last_err
    raise PlanningError("LLM JSON root must be an object")
