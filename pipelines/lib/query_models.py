from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from pipelines.lib.tabular import FilterPredicate


class StrategyKind(str, Enum):
    STANDARD_FORMULA = "standard_formula"
    HELPER_COLUMNS = "helper_columns"
    MANUAL_CALCULATION = "manual_calculation"
    SUB_QUERIES = "sub_queries"

    @property
    def display_name(self) -> str:
        return _STRATEGY_DISPLAY_NAMES[self]


_STRATEGY_DISPLAY_NAMES = {
    StrategyKind.STANDARD_FORMULA: "Standard Formula",
    StrategyKind.HELPER_COLUMNS: "Helper Columns",
    StrategyKind.MANUAL_CALCULATION: "Manual Calculation",
    StrategyKind.SUB_QUERIES: "Sub-queries",
}

CASCADE_ORDER = (
    StrategyKind.STANDARD_FORMULA,
    StrategyKind.HELPER_COLUMNS,
    StrategyKind.MANUAL_CALCULATION,
    StrategyKind.SUB_QUERIES,
)


@dataclass
class QueryIntent:
    columns_needed: List[str] = field(default_factory=list)
    filters: List[FilterPredicate] = field(default_factory=list)
    aggregation: str = "sum"
    group_by: Optional[str] = None
    requires_calculation: bool = False
    calculation_steps: List[str] = field(default_factory=list)
    requires_full_dataset: bool = False
    fallback: bool = False

    @property
    def is_simple(self) -> bool:
        return not self.requires_calculation and not self.group_by

    def to_dict(self) -> Dict[str, Any]:
        return {
            "columns_needed": list(self.columns_needed),
            "filters": [f.to_dict() for f in self.filters],
            "aggregation": self.aggregation,
            "group_by": self.group_by,
            "requires_calculation": self.requires_calculation,
            "calculation_steps": list(self.calculation_steps),
            "requires_full_dataset": self.requires_full_dataset,
            "fallback": self.fallback,
        }


@dataclass
class HelperColumn:
    name: str
    formula: str
    purpose: str = ""
    column_index: Optional[int] = None


@dataclass
class Strategy:
    approach: str
    formula: str
    helper_columns: List[HelperColumn] = field(default_factory=list)
    explanation: str = ""
    confidence: float = 0.8
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return json_safe(dataclasses.asdict(self))


@dataclass
class StrategyAttempt:
    kind: StrategyKind
    attempt: int
    formula: str = ""
    value: Any = None
    error: str = ""
    confidence: float = 0.0


@dataclass
class ExecutionResult:
    query: str
    success: bool = False
    value: Any = None
    formula: Optional[str] = None
    explanation: str = ""
    error: Optional[str] = None
    error_type: Optional[str] = None
    confidence: float = 0.0
    strategy_name: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "query": self.query,
            "explanation": self.explanation,
            "confidence": round(float(self.confidence), 4),
            "strategy": self.strategy_name,
            "formula": self.formula,
            "metadata": json_safe(self.metadata),
        }
        if self.success:
            out["value"] = json_safe(self.value)
        else:
            out["error"] = self.error or "unknown error"
            out["error_type"] = self.error_type
        return out


def json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, np.generic):
        return json_safe(value.item())
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return value.isoformat()
    if isinstance(value, FilterPredicate):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return json_safe(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(v) for v in value]
    return str(value)
