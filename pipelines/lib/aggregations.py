from __future__ import annotations

import math
import re
from typing import Any, Callable, Dict, Iterable, List, Sequence

import numpy as np
import pandas as pd

from pipelines.lib.tabular import parse_number


def numeric_values(values: Iterable[Any]) -> List[float]:
    out: List[float] = []
    for value in values:
        number = parse_number(value)
        if number is not None:
            out.append(number)
    return out


def agg_sum(values: Sequence[float]) -> float:
    return float(math.fsum(values)) if values else 0.0


def agg_average(values: Sequence[float]) -> float:
    return float(math.fsum(values) / len(values)) if values else 0.0


def agg_max(values: Sequence[float]) -> float:
    return float(max(values)) if values else 0.0


def agg_min(values: Sequence[float]) -> float:
    return float(min(values)) if values else 0.0


def agg_count(values: Sequence[float]) -> float:
    return float(len(values))


def variance(values: Sequence[float]) -> float:
    """Sample variance (n - 1 denominator); 0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    return float(np.var(np.asarray(values, dtype=float), ddof=1))


def stddev_sample(values: Sequence[float]) -> float:
    return math.sqrt(variance(values))


def stddev_population(values: Sequence[float]) -> float:
    """sqrt(sum of squared deviations / n); 0 for an empty sequence."""
    if not values:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float), ddof=0))


def median(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    ordered = sorted(float(v) for v in values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2.0
    return ordered[mid]


def percentile(values: Sequence[float], p: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(float(v) for v in values)
    if p <= 0:
        return ordered[0]
    if p >= 100:
        return ordered[-1]
    rank = (float(p) / 100.0) * (len(ordered) - 1)
    lower = int(math.floor(rank))
    upper = int(math.ceil(rank))
    if lower == upper:
        return ordered[lower]
    weight = rank - lower
    return ordered[lower] * (1.0 - weight) + ordered[upper] * weight


AGGREGATIONS: Dict[str, Callable[[Sequence[float]], float]] = {
    "sum": agg_sum,
    "total": agg_sum,
    "average": agg_average,
    "avg": agg_average,
    "mean": agg_average,
    "max": agg_max,
    "maximum": agg_max,
    "min": agg_min,
    "minimum": agg_min,
    "count": agg_count,
    "variance": variance,
    "var": variance,
    "stddev": stddev_sample,
    "stdev": stddev_sample,
    "std": stddev_sample,
    "stddev_sample": stddev_sample,
    "stddev_population": stddev_population,
    "stdevp": stddev_population,
    "median": median,
}

_PERCENTILE_RE = re.compile(r"^(?:p|percentile[_:\s]?|pct)(\d{1,3}(?:\.\d+)?)$", re.I)


def normalize_aggregation(kind: Any) -> str:
    return re.sub(r"\s+", "_", str(kind or "").strip().lower())


def resolve_aggregation(kind: Any) -> Callable[[Sequence[float]], float]:
    """Unknown kinds fall back to sum."""
    name = normalize_aggregation(kind)
    m = _PERCENTILE_RE.match(name)
    if m:
        p = float(m.group(1))
        return lambda values: percentile(values, p)
    return AGGREGATIONS.get(name, agg_sum)


def is_known_aggregation(kind: Any) -> bool:
    name = normalize_aggregation(kind)
    return name in AGGREGATIONS or bool(_PERCENTILE_RE.match(name))


def aggregate(values: Any, kind: str = "sum") -> float:
    if isinstance(values, (pd.Series, pd.Index, np.ndarray)):
        values = list(values)
    elif isinstance(values, pd.DataFrame):
        raise TypeError("aggregate() expects a single column, got a DataFrame")
    return resolve_aggregation(kind)(numeric_values(values))
