from __future__ import annotations

import math
import operator
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd


NUMERIC_MATCH_TOLERANCE = 1e-4
TYPE_INFERENCE_SAMPLE = 20
SERIAL_DATE_EPOCH = datetime(1899, 12, 30)
_SERIAL_DATE_MAX = 2958465.0

_NUMERIC_TEXT_RE = re.compile(r"^[+-]?(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?(?:[eE][+-]?\d+)?$|^[+-]?\.\d+$")
_DATE_TEXT_RE = re.compile(
    r"^\d{4}-\d{1,2}-\d{1,2}(?:[ T]\d{1,2}:\d{2}(?::\d{2}(?:\.\d+)?)?)?$"
    r"|^\d{1,2}[/.\-]\d{1,2}[/.\-]\d{2,4}$"
    r"|^\d{4}/\d{1,2}/\d{1,2}$"
    r"|^[A-Za-z]{3,9}\.?\s+\d{1,2},?\s+\d{4}$"
    r"|^\d{1,2}\s+[A-Za-z]{3,9}\.?,?\s+\d{4}$"
)
_BOOL_TEXT = {"true", "false"}


class ColumnType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    FORMULA = "formula"
    EMPTY = "empty"


def column_letter(index: int) -> str:
    n = int(index) + 1
    out = ""
    while n > 0:
        n, rem = divmod(n - 1, 26)
        out = chr(65 + rem) + out
    return out


def display_row(row_index: int) -> int:
    # Header occupies display row 1.
    return int(row_index) + 2


def is_empty_cell(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, float):
        return math.isnan(value)
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def is_formula_text(value: Any) -> bool:
    return isinstance(value, str) and value.lstrip().startswith("=")


def parse_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, (bool, np.bool_)):
        return None
    if isinstance(value, (int, float, np.integer, np.floating)):
        number = float(value)
        return None if math.isnan(number) else number
    if isinstance(value, str):
        text = value.strip().replace("$", "").replace(",", "")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, (bool, np.bool_)):
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, np.datetime64):
        ts = pd.Timestamp(value)
        return None if pd.isna(ts) else ts.date()
    if isinstance(value, (int, float, np.integer, np.floating)):
        serial = float(value)
        if not math.isfinite(serial) or serial < 1 or serial > _SERIAL_DATE_MAX:
            return None
        return (SERIAL_DATE_EPOCH + timedelta(days=serial)).date()
    if isinstance(value, str):
        text = value.strip()
        if not text or not _DATE_TEXT_RE.match(text):
            return None
        ts = pd.to_datetime(text, errors="coerce")
        if pd.isna(ts):
            return None
        return ts.date()
    return None


def cell_text(value: Any) -> str:
    if is_empty_cell(value):
        return ""
    if isinstance(value, (pd.Timestamp, datetime)):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def coerce_cell(value: Any) -> Any:
    """Normalise a source cell for the working copy: numeric-looking text becomes a number."""
    if is_empty_cell(value):
        return None
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("="):
            return value
        if _NUMERIC_TEXT_RE.match(text):
            plain = text.replace(",", "")
            if "." in plain or "e" in plain.lower():
                return float(plain)
            return int(plain)
    return value


def infer_column_type(values: Iterable[Any]) -> ColumnType:
    sample: List[Any] = []
    for value in values:
        if is_empty_cell(value):
            continue
        sample.append(value)
        if len(sample) >= TYPE_INFERENCE_SAMPLE:
            break
    if not sample:
        return ColumnType.EMPTY
    if all(is_formula_text(v) for v in sample):
        return ColumnType.FORMULA
    half = len(sample) / 2.0
    numeric = sum(1 for v in sample if parse_number(v) is not None)
    if numeric > half:
        return ColumnType.NUMBER
    dates = sum(1 for v in sample if parse_number(v) is None and parse_date(v) is not None)
    if dates > half:
        return ColumnType.DATE
    bools = sum(
        1 for v in sample if isinstance(v, (bool, np.bool_)) or (isinstance(v, str) and v.strip().lower() in _BOOL_TEXT)
    )
    if bools > half:
        return ColumnType.BOOLEAN
    return ColumnType.TEXT


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    index: int
    type: ColumnType = ColumnType.TEXT

    @property
    def letter(self) -> str:
        return column_letter(self.index)


@dataclass(frozen=True)
class TabularSnapshot:
    """
    Read-only view of one sheet: ordered typed columns and rectangular rows.
    Row/column coordinates are 0-based; display_row()/column_letter() give the 1-based form.
    """

    columns: Tuple[ColumnInfo, ...]
    rows: Tuple[Tuple[Any, ...], ...]
    name: str = "Sheet1"

    def __post_init__(self) -> None:
        columns = tuple(self.columns)
        rows = tuple(tuple(r) for r in self.rows)
        width = len(columns)
        for i, row in enumerate(rows):
            if len(row) != width:
                raise ValueError(f"row {i} has {len(row)} cells, expected {width}")
        object.__setattr__(self, "columns", columns)
        object.__setattr__(self, "rows", rows)

    @classmethod
    def from_records(
        cls,
        headers: Sequence[Any],
        rows: Iterable[Sequence[Any]],
        name: str = "Sheet1",
    ) -> "TabularSnapshot":
        header_list = [str(h) if h is not None else "" for h in headers]
        width = len(header_list)
        data: List[Tuple[Any, ...]] = []
        for i, row in enumerate(rows):
            cells = list(row)
            if len(cells) > width:
                raise ValueError(f"row {i} has {len(cells)} cells, expected at most {width}")
            cells.extend([None] * (width - len(cells)))
            data.append(tuple(None if is_empty_cell(c) else c for c in cells))
        columns = tuple(
            ColumnInfo(name=h, index=i, type=infer_column_type(r[i] for r in data)) for i, h in enumerate(header_list)
        )
        return cls(columns=columns, rows=tuple(data), name=str(name or "Sheet1"))

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, name: str = "Sheet1") -> "TabularSnapshot":
        frame = df.astype(object).where(pd.notna(df), None)
        return cls.from_records([str(c) for c in df.columns], frame.values.tolist(), name=name)

    @property
    def headers(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def column_count(self) -> int:
        return len(self.columns)

    def column_index(self, name: str) -> Optional[int]:
        return resolve_column(self.headers, name)

    def column_values(self, index: int) -> List[Any]:
        return [row[index] for row in self.rows]

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([list(r) for r in self.rows], columns=self.headers)


def resolve_column(headers: Sequence[str], name: str) -> Optional[int]:
    wanted = str(name or "").strip()
    if not wanted:
        return None
    for i, h in enumerate(headers):
        if str(h) == wanted:
            return i
    lowered = wanted.lower()
    for i, h in enumerate(headers):
        if str(h).strip().lower() == lowered:
            return i
    return None


SourceLike = Union[TabularSnapshot, pd.DataFrame, Mapping[str, Union[TabularSnapshot, pd.DataFrame]]]


def _as_snapshot(obj: Any, name: str) -> TabularSnapshot:
    if isinstance(obj, TabularSnapshot):
        return obj
    if isinstance(obj, pd.DataFrame):
        return TabularSnapshot.from_dataframe(obj, name=name)
    raise TypeError(f"unsupported sheet type: {type(obj).__name__}")


def select_sheet(source: SourceLike, selector: Optional[Union[str, int]] = None) -> TabularSnapshot:
    if isinstance(source, (TabularSnapshot, pd.DataFrame)):
        return _as_snapshot(source, name="Sheet1")
    if isinstance(source, Mapping):
        names = [str(k) for k in source.keys()]
        if not names:
            raise ValueError("workbook has no sheets")
        keys = list(source.keys())
        if selector is None or (isinstance(selector, str) and not selector.strip()):
            return _as_snapshot(source[keys[0]], name=names[0])
        if isinstance(selector, int) and not isinstance(selector, bool):
            if 0 <= selector < len(keys):
                return _as_snapshot(source[keys[selector]], name=names[selector])
            raise ValueError(f"sheet not found: {selector}")
        wanted = str(selector).strip().lower()
        for key, sheet_name in zip(keys, names):
            if sheet_name.strip().lower() == wanted:
                return _as_snapshot(source[key], name=sheet_name)
        raise ValueError(f"sheet not found: {selector}")
    raise TypeError(f"unsupported source type: {type(source).__name__}")


class FilterOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    GREATER = "greater"
    LESS = "less"
    GREATER_OR_EQUAL = "greaterOrEqual"
    LESS_OR_EQUAL = "lessOrEqual"
    DATE_GREATER = "dateGreater"
    DATE_LESS = "dateLess"
    DATE_GREATER_OR_EQUAL = "dateGreaterOrEqual"
    DATE_LESS_OR_EQUAL = "dateLessOrEqual"

    @classmethod
    def parse(cls, text: Any) -> "FilterOperator":
        if isinstance(text, FilterOperator):
            return text
        key = re.sub(r"[\s_\-]+", "", str(text or "")).lower()
        op = _OPERATOR_ALIASES.get(key)
        if op is None:
            raise ValueError(f"unknown_filter_operator:{text}")
        return op


_OPERATOR_ALIASES: Dict[str, FilterOperator] = {
    "equals": FilterOperator.EQUALS,
    "equal": FilterOperator.EQUALS,
    "eq": FilterOperator.EQUALS,
    "is": FilterOperator.EQUALS,
    "=": FilterOperator.EQUALS,
    "==": FilterOperator.EQUALS,
    "contains": FilterOperator.CONTAINS,
    "like": FilterOperator.CONTAINS,
    "includes": FilterOperator.CONTAINS,
    "greater": FilterOperator.GREATER,
    "greaterthan": FilterOperator.GREATER,
    "gt": FilterOperator.GREATER,
    ">": FilterOperator.GREATER,
    "less": FilterOperator.LESS,
    "lessthan": FilterOperator.LESS,
    "lt": FilterOperator.LESS,
    "<": FilterOperator.LESS,
    "greaterorequal": FilterOperator.GREATER_OR_EQUAL,
    "ge": FilterOperator.GREATER_OR_EQUAL,
    "gte": FilterOperator.GREATER_OR_EQUAL,
    ">=": FilterOperator.GREATER_OR_EQUAL,
    "lessorequal": FilterOperator.LESS_OR_EQUAL,
    "le": FilterOperator.LESS_OR_EQUAL,
    "lte": FilterOperator.LESS_OR_EQUAL,
    "<=": FilterOperator.LESS_OR_EQUAL,
    "dategreater": FilterOperator.DATE_GREATER,
    "date>": FilterOperator.DATE_GREATER,
    "after": FilterOperator.DATE_GREATER,
    "dateless": FilterOperator.DATE_LESS,
    "date<": FilterOperator.DATE_LESS,
    "before": FilterOperator.DATE_LESS,
    "dategreaterorequal": FilterOperator.DATE_GREATER_OR_EQUAL,
    "date>=": FilterOperator.DATE_GREATER_OR_EQUAL,
    "datelessorequal": FilterOperator.DATE_LESS_OR_EQUAL,
    "date<=": FilterOperator.DATE_LESS_OR_EQUAL,
}


def _matches_equals(cell: Any, expected: str) -> bool:
    expected_text = str(expected or "").strip()
    if is_empty_cell(cell):
        return not expected_text
    cell_num = parse_number(cell)
    expected_num = parse_number(expected_text)
    if cell_num is not None and expected_num is not None:
        return abs(cell_num - expected_num) < NUMERIC_MATCH_TOLERANCE
    cell_date = parse_date(cell)
    expected_date = parse_date(expected_text)
    if cell_date is not None and expected_date is not None:
        return cell_date == expected_date
    return cell_text(cell).lower() == expected_text.lower()


def _matches_contains(cell: Any, expected: str) -> bool:
    return str(expected or "").strip().lower() in cell_text(cell).lower()


def _numeric_comparator(compare: Callable[[float, float], bool]) -> Callable[[Any, str], bool]:
    def _match(cell: Any, expected: str) -> bool:
        cell_num = parse_number(cell)
        expected_num = parse_number(expected)
        if cell_num is None or expected_num is None:
            return False
        return compare(cell_num, expected_num)

    return _match


def _date_comparator(compare: Callable[[date, date], bool]) -> Callable[[Any, str], bool]:
    def _match(cell: Any, expected: str) -> bool:
        cell_date = parse_date(cell)
        expected_date = parse_date(expected)
        if cell_date is None or expected_date is None:
            return False
        return compare(cell_date, expected_date)

    return _match


_COMPARATORS: Dict[FilterOperator, Callable[[Any, str], bool]] = {
    FilterOperator.EQUALS: _matches_equals,
    FilterOperator.CONTAINS: _matches_contains,
    FilterOperator.GREATER: _numeric_comparator(operator.gt),
    FilterOperator.LESS: _numeric_comparator(operator.lt),
    FilterOperator.GREATER_OR_EQUAL: _numeric_comparator(operator.ge),
    FilterOperator.LESS_OR_EQUAL: _numeric_comparator(operator.le),
    FilterOperator.DATE_GREATER: _date_comparator(operator.gt),
    FilterOperator.DATE_LESS: _date_comparator(operator.lt),
    FilterOperator.DATE_GREATER_OR_EQUAL: _date_comparator(operator.ge),
    FilterOperator.DATE_LESS_OR_EQUAL: _date_comparator(operator.le),
}


def _strip_quotes(text: str) -> str:
    s = str(text or "").strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        return s[1:-1]
    return s


@dataclass(frozen=True)
class FilterPredicate:
    column: str
    operator: FilterOperator
    value: str = ""

    def matches(self, cell: Any) -> bool:
        return _COMPARATORS[self.operator](cell, self.value)

    def to_dict(self) -> Dict[str, str]:
        return {"column": self.column, "operator": self.operator.value, "value": self.value}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FilterPredicate":
        column = str(payload.get("column") or "").strip()
        if not column:
            raise ValueError("filter_missing_column")
        raw_value = payload.get("value")
        value = "" if raw_value is None else _strip_quotes(cell_text(raw_value) if not isinstance(raw_value, str) else raw_value)
        return cls(column=column, operator=FilterOperator.parse(payload.get("operator")), value=value)


def coerce_filters(items: Iterable[Union[FilterPredicate, Mapping[str, Any]]]) -> List[FilterPredicate]:
    out: List[FilterPredicate] = []
    for item in items or []:
        out.append(item if isinstance(item, FilterPredicate) else FilterPredicate.from_dict(item))
    return out


@dataclass
class BoundFilters:
    predicates: List[Tuple[int, FilterPredicate]] = field(default_factory=list)
    unresolved: List[FilterPredicate] = field(default_factory=list)

    def matches(self, row: Sequence[Any]) -> bool:
        return all(predicate.matches(row[idx]) for idx, predicate in self.predicates)


def bind_filters(headers: Sequence[str], filters: Iterable[FilterPredicate]) -> BoundFilters:
    bound = BoundFilters()
    for predicate in filters or []:
        idx = resolve_column(headers, predicate.column)
        if idx is None:
            bound.unresolved.append(predicate)
        else:
            bound.predicates.append((idx, predicate))
    return bound


def row_matches(row: Sequence[Any], headers: Sequence[str], filters: Iterable[FilterPredicate]) -> bool:
    return bind_filters(headers, filters).matches(row)


def match_rows(df: pd.DataFrame, filters: Iterable[Union[FilterPredicate, Mapping[str, Any]]]) -> pd.Series:
    bound = bind_filters([str(c) for c in df.columns], coerce_filters(filters))
    mask = pd.Series(True, index=df.index, dtype=bool)
    for idx, predicate in bound.predicates:
        mask &= df.iloc[:, idx].map(predicate.matches).astype(bool)
    return mask
