import re
from typing import Iterable, Optional


# Stems match plural and inflected forms; "percentile" is an order statistic, not a share.
PERCENTAGE_CUE_RE = re.compile(
    r"\b(percent(?!ile)\w*|proportion\w*|відсот\w*|частк\w*)\b|%",
    re.I,
)

FULL_DATASET_CUE_RE = re.compile(
    r"\b(percent(?!ile)\w*|proportion\w*|ratio\w*|compar\w*|versus|vs\.?|share\w*|total\w*|"
    r"відсот\w*|частк\w*|співвіднош\w*|порівнян\w*|загальн\w*)\b"
    r"|\ball\s+rows\b|\bвсі\s+рядк\w*|%",
    re.I,
)

# Narrower cue used by sandbox construction on top of the analyzer flag.
SANDBOX_FULL_DATASET_STEP_RE = re.compile(r"\b(ratio\w*|comparison\w*|versus)\b", re.I)

ROW_REFERENCE_CUE_RE = re.compile(
    r"\b(row|rows|index|indices|position|order|ordering|рядк\w*|рядок|індекс\w*|позиці\w*)\b",
    re.I,
)

METRIC_PATTERNS = {
    "average": r"\b(mean|average|avg|середн\w*)\b",
    "median": r"\b(median|медіан\w*)\b",
    "stddev": r"\b(std|stdev|stddev|standard\s+deviation|стандартн\w*\s+відхил\w*)\b",
    "variance": r"\b(variance|var|дисперс\w*)\b",
    "min": r"\b(min|minimum|lowest|smallest|мін(імум|імал\w*)?)\b",
    "max": r"\b(max|maximum|highest|largest|макс(имум|имал\w*)?)\b",
    "count": r"\b(count|how\s+many|number\s+of|скільк\w*|кількість)\b",
    "sum": r"\b(sums?|totals?|сума|підсум\w*)\b",
}


def is_percentage_query(text: str) -> bool:
    return bool(PERCENTAGE_CUE_RE.search(text or ""))


def has_full_dataset_cue(texts: Iterable[Optional[str]]) -> bool:
    return any(FULL_DATASET_CUE_RE.search(t or "") for t in texts or [])


def has_sandbox_full_dataset_step(steps: Iterable[Optional[str]]) -> bool:
    return any(SANDBOX_FULL_DATASET_STEP_RE.search(s or "") for s in steps or [])


def has_row_reference_cue(steps: Iterable[Optional[str]]) -> bool:
    return any(ROW_REFERENCE_CUE_RE.search(s or "") for s in steps or [])

