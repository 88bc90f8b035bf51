from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from pipelines.lib.errors import EvaluationError, SandboxCreationError
from pipelines.lib.expression_evaluator import ROW_PLACEHOLDER, ExpressionEvaluator, references_name, to_scalar
from pipelines.lib.query_models import HelperColumn, QueryIntent
from pipelines.lib.query_signals import has_row_reference_cue, has_sandbox_full_dataset_step
from pipelines.lib.route_trace import current_route_tracer
from pipelines.lib.tabular import (
    FilterPredicate,
    TabularSnapshot,
    bind_filters,
    coerce_cell,
    column_letter,
    is_empty_cell,
    parse_number,
)


ROW_NUMBER_COLUMN = "_RowNum"


@dataclass
class SandboxContext:
    name: str
    created_at: datetime
    source_name: str = ""
    original_row_count: int = 0
    filtered_row_count: int = 0
    applied_filters: List[FilterPredicate] = field(default_factory=list)
    full_dataset_preserved: bool = False
    column_stats: Dict[str, int] = field(default_factory=dict)
    truncated: bool = False
    metadata_columns: List[str] = field(default_factory=list)
    helper_columns: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "source_name": self.source_name,
            "original_row_count": self.original_row_count,
            "filtered_row_count": self.filtered_row_count,
            "applied_filters": [f.to_dict() for f in self.applied_filters],
            "full_dataset_preserved": self.full_dataset_preserved,
            "column_stats": dict(self.column_stats),
            "truncated": self.truncated,
            "metadata_columns": list(self.metadata_columns),
            "helper_columns": list(self.helper_columns),
        }


@dataclass
class Sandbox:
    """Private working copy of one query's data. Never shared between queries."""

    name: str
    frame: pd.DataFrame
    data_columns: List[str]
    results: Dict[str, Any] = field(default_factory=dict)
    disposed: bool = False

    @property
    def headers(self) -> List[str]:
        return [str(c) for c in self.frame.columns]

    @property
    def row_count(self) -> int:
        return int(self.frame.shape[0])

    def display_row_range(self) -> str:
        if self.row_count <= 0:
            return "none"
        return f"2 to {self.row_count + 1}"

    def data_rows(self) -> Iterator[List[Any]]:
        frame = self.frame[self.data_columns]
        for row in frame.itertuples(index=False, name=None):
            yield [None if is_empty_cell(v) else v for v in row]

    def column_values(self, name: str) -> List[Any]:
        return [None if is_empty_cell(v) else v for v in self.frame[name].tolist()]

    def dispose(self) -> None:
        self.frame = pd.DataFrame()
        self.results.clear()
        self.disposed = True


def _unique_headers(headers: Sequence[str]) -> List[str]:
    out: List[str] = []
    seen: Dict[str, int] = {}
    for i, raw in enumerate(headers):
        name = str(raw).strip() if raw is not None else ""
        if not name:
            name = f"Column {column_letter(i)}"
        key = name.lower()
        if key in seen:
            seen[key] += 1
            name = f"{name}_{seen[key]}"
        else:
            seen[key] = 1
        out.append(name)
    return out


class SandboxManager:
    def __init__(self, max_rows: int = 50000, max_columns: int = 100, validation_sample_rows: int = 10) -> None:
        self.max_rows = max(1, int(max_rows))
        self.max_columns = max(1, int(max_columns))
        self.validation_sample_rows = max(1, int(validation_sample_rows))
        self._active: Dict[str, Sandbox] = {}
        self._lock = threading.Lock()

    @property
    def active_sandboxes(self) -> List[str]:
        with self._lock:
            return list(self._active.keys())

    def needs_full_dataset(self, intent: QueryIntent) -> bool:
        return bool(intent.requires_full_dataset) or has_sandbox_full_dataset_step(intent.calculation_steps)

    def _new_name(self) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        return f"_sandbox_{stamp}_{uuid.uuid4().hex[:8]}"

    def create_sandbox(self, source: TabularSnapshot, intent: QueryIntent) -> Tuple[Sandbox, SandboxContext]:
        name = self._new_name()
        try:
            sandbox, context = self._build(name, source, intent)
        except Exception as exc:
            logging.error("event=sandbox_create_failed name=%s error=%s", name, f"{type(exc).__name__}: {exc}")
            tracer = current_route_tracer()
            if tracer:
                tracer.record_stage(
                    stage_key="sandbox_create",
                    stage_name="Sandbox Create",
                    status="error",
                    error={"type": type(exc).__name__, "message": str(exc)},
                )
            raise SandboxCreationError(f"sandbox creation failed: {type(exc).__name__}: {exc}", sandbox_name=name) from exc
        with self._lock:
            self._active[name] = sandbox
        logging.info(
            "event=sandbox_created name=%s source=%s original_rows=%s sandbox_rows=%s full_dataset=%s truncated=%s",
            name,
            context.source_name,
            context.original_row_count,
            context.filtered_row_count,
            context.full_dataset_preserved,
            context.truncated,
        )
        tracer = current_route_tracer()
        if tracer:
            tracer.record_stage(
                stage_key="sandbox_create",
                stage_name="Sandbox Create",
                purpose="Copy the rows this query needs into a private working frame.",
                output_payload=context.to_dict(),
            )
        return sandbox, context

    def _build(self, name: str, source: TabularSnapshot, intent: QueryIntent) -> Tuple[Sandbox, SandboxContext]:
        context = SandboxContext(
            name=name,
            created_at=datetime.now(timezone.utc),
            source_name=source.name,
            original_row_count=source.row_count,
        )
        if source.column_count > self.max_columns:
            logging.warning(
                "event=sandbox_columns_capped name=%s columns=%s cap=%s", name, source.column_count, self.max_columns
            )
        headers = _unique_headers(source.headers[: self.max_columns])
        width = len(headers)
        full = self.needs_full_dataset(intent)

        rows: List[List[Any]] = []
        if full:
            for row in source.rows:
                if len(rows) >= self.max_rows:
                    context.truncated = True
                    break
                rows.append([coerce_cell(c) for c in row[:width]])
        else:
            bound = bind_filters(source.headers, intent.filters)
            for predicate in bound.unresolved:
                logging.warning("event=sandbox_filter_column_missing name=%s column=%s", name, predicate.column)
            for row in source.rows:
                if not bound.matches(row):
                    continue
                if len(rows) >= self.max_rows:
                    context.truncated = True
                    break
                rows.append([coerce_cell(c) for c in row[:width]])
            context.applied_filters = list(intent.filters)

        if context.truncated:
            logging.warning("event=sandbox_rows_capped name=%s cap=%s", name, self.max_rows)
        context.filtered_row_count = len(rows)
        context.full_dataset_preserved = full and not context.truncated

        frame = pd.DataFrame(rows, columns=headers)
        for col in headers:
            values = [v for v in frame[col].tolist() if not is_empty_cell(v)]
            if values:
                context.column_stats[col] = sum(1 for v in values if parse_number(v) is not None)

        if (
            intent.requires_calculation
            and has_row_reference_cue(intent.calculation_steps)
            and ROW_NUMBER_COLUMN not in frame.columns
        ):
            frame[ROW_NUMBER_COLUMN] = np.arange(1, len(rows) + 1, dtype=int)
            context.metadata_columns.append(ROW_NUMBER_COLUMN)

        return Sandbox(name=name, frame=frame, data_columns=list(headers)), context

    def validate_sandbox(self, sandbox: Sandbox, context: SandboxContext) -> bool:
        problems: List[str] = []
        if sandbox.row_count != context.filtered_row_count:
            problems.append(f"row_count={sandbox.row_count} expected={context.filtered_row_count}")
        if not sandbox.data_columns:
            problems.append("no_headers")
        if sandbox.row_count > 0:
            sample = sandbox.frame[sandbox.data_columns].head(self.validation_sample_rows)
            if not sample.notna().to_numpy().any():
                problems.append("sample_rows_empty")
        if problems:
            logging.warning("event=sandbox_validation_failed name=%s problems=%s", sandbox.name, ",".join(problems))
            return False
        return True

    async def apply_helper_columns(
        self,
        sandbox: Sandbox,
        helpers: Sequence[HelperColumn],
        evaluator: ExpressionEvaluator,
        context: Optional[SandboxContext] = None,
    ) -> List[str]:
        """
        Materialise helper columns after the existing ones. A helper formula that
        references the row placeholder is evaluated once per data row with the
        0-based row index bound; otherwise it is evaluated once for the whole frame.
        """
        added: List[str] = []
        for helper in helpers:
            name = _unique_headers(sandbox.headers + [helper.name])[-1]
            per_row = references_name(helper.formula, ROW_PLACEHOLDER)
            values = await evaluator.evaluate_column(sandbox, helper.formula, per_row=per_row)
            sandbox.frame[name] = self._align_column(sandbox, name, values)
            helper.column_index = sandbox.headers.index(name)
            if context is not None:
                context.helper_columns.append(name)
            added.append(name)
            logging.info(
                "event=helper_column_added sandbox=%s column=%s letter=%s per_row=%s",
                sandbox.name,
                name,
                column_letter(helper.column_index),
                per_row,
            )
        return added

    def _align_column(self, sandbox: Sandbox, name: str, values: Any) -> Any:
        n = sandbox.row_count
        if isinstance(values, pd.DataFrame):
            raise EvaluationError("#SPILL!", f"helper column {name} produced a table")
        if isinstance(values, pd.Series):
            if values.index.equals(sandbox.frame.index):
                return values
            values = values.tolist()
        if isinstance(values, (list, tuple, np.ndarray)):
            if len(values) != n:
                raise EvaluationError("#REF!", f"helper column {name} produced {len(values)} values for {n} rows")
            return list(values)
        return [to_scalar(values)] * n

    def cleanup(self, sandbox: Optional[Sandbox]) -> None:
        if sandbox is None or sandbox.disposed:
            return
        tracer = current_route_tracer()
        try:
            with self._lock:
                self._active.pop(sandbox.name, None)
            sandbox.dispose()
        except Exception as exc:
            logging.warning("event=sandbox_cleanup_failed name=%s error=%s", sandbox.name, f"{type(exc).__name__}: {exc}")
            if tracer:
                tracer.record_stage(
                    stage_key="sandbox_cleanup",
                    stage_name="Sandbox Cleanup",
                    status="error",
                    error={"type": type(exc).__name__, "message": str(exc)},
                )
            return
        logging.info("event=sandbox_cleaned name=%s", sandbox.name)
        if tracer:
            tracer.record_stage(stage_key="sandbox_cleanup", stage_name="Sandbox Cleanup", output_payload={"name": sandbox.name})

    @contextmanager
    def open(self, source: TabularSnapshot, intent: QueryIntent) -> Iterator[Tuple[Sandbox, SandboxContext]]:
        sandbox, context = self.create_sandbox(source, intent)
        try:
            yield sandbox, context
        finally:
            self.cleanup(sandbox)
