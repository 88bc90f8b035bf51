from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pipelines.lib.errors import PlanningError
from pipelines.lib.expression_evaluator import error_marker_of, normalize_expression
from pipelines.lib.llm_client import TextCompletionClient
from pipelines.lib.llm_json import _safe_json_dumps, _safe_trunc
from pipelines.lib.pipeline_prompts import (
    DEFAULT_REFINE_SYSTEM,
    DEFAULT_STRATEGY_SYSTEM,
    REFINE_ERROR_HINTS,
    REFINE_RESPONSE_SCHEMA,
    STRATEGY_RESPONSE_SCHEMA,
)
from pipelines.lib.query_models import HelperColumn, QueryIntent, Strategy
from pipelines.lib.query_signals import is_percentage_query
from pipelines.lib.sandbox_manager import Sandbox, SandboxContext
from pipelines.lib.tabular import column_letter, infer_column_type, resolve_column

_PREVIEW_ROWS = 5


class _HelperItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    formula: str
    purpose: str = ""


class _FormulaModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    formula: str
    explanation: str = ""

    @field_validator("formula")
    @classmethod
    def _formula_not_blank(cls, value: str) -> str:
        formula = normalize_expression(value)
        if not formula:
            raise ValueError("formula is empty")
        return formula


class StrategyResponse(_FormulaModel):
    approach: str = ""
    helper_columns: List[_HelperItem] = Field(default_factory=list)


class RefineResponse(_FormulaModel):
    pass


def build_prompt_context(sandbox: Sandbox, context: SandboxContext, query: str, intent: QueryIntent) -> str:
    lines: List[str] = [f"Question: {query}", "", "Columns (letter: name [type]):"]
    for i, header in enumerate(sandbox.headers):
        col_type = infer_column_type(sandbox.column_values(header))
        lines.append(f"- {column_letter(i)}: {header} [{col_type.value}]")

    prefiltered = bool(context.applied_filters)
    lines += [
        "",
        f"Data rows: {sandbox.display_row_range()}",
        f"Original row count: {context.original_row_count}",
        f"Rows in df: {context.filtered_row_count}",
        f"Full dataset preserved: {str(context.full_dataset_preserved).lower()}",
        f"Filters already applied to df: {_safe_json_dumps([f.to_dict() for f in context.applied_filters])}",
        f"Query filters: {_safe_json_dumps([f.to_dict() for f in intent.filters])}",
        f"Required aggregation: {intent.aggregation}",
        f"Group by: {intent.group_by or 'none'}",
    ]
    if intent.calculation_steps:
        lines.append("Calculation steps:")
        lines += [f"- {step}" for step in intent.calculation_steps]
    if context.column_stats:
        lines.append(f"Numeric values per column: {_safe_json_dumps(context.column_stats)}")
    if context.metadata_columns:
        lines.append(f"Metadata columns: {', '.join(context.metadata_columns)}")
    if context.truncated:
        lines.append("Note: df was truncated to the row cap.")

    if is_percentage_query(query):
        if context.full_dataset_preserved:
            lines.append(
                "Percentage: df holds ALL rows. Use match_rows(df, <query filters>).mean() * 100 "
                "so the denominator is the full row count."
            )
        elif prefiltered:
            lines.append("Percentage: df was already filtered, do not filter again.")

    preview = sandbox.frame.head(_PREVIEW_ROWS).to_dict(orient="records")
    lines += ["", f"Preview (first {_PREVIEW_ROWS} rows): {_safe_trunc(_safe_json_dumps(preview), 2000)}"]
    return "\n".join(lines)


class StrategyPlanner:
    """
    Produces a Strategy (a guarded pandas expression plus optional helper
    columns) for a sandbox. Parse or schema failures degrade to a deterministic
    default strategy; transport failures propagate as CompletionError.
    """

    def __init__(
        self,
        completion_client: TextCompletionClient,
        default_confidence: float = 0.8,
        fallback_confidence: float = 0.3,
        refine_decay: float = 0.8,
    ) -> None:
        self._client = completion_client
        self.default_confidence = float(default_confidence)
        self.fallback_confidence = float(fallback_confidence)
        self.refine_decay = float(refine_decay)

    async def plan(self, sandbox: Sandbox, context: SandboxContext, query: str, intent: QueryIntent) -> Strategy:
        messages = [
            {"role": "system", "content": DEFAULT_STRATEGY_SYSTEM},
            {"role": "user", "content": build_prompt_context(sandbox, context, query, intent)},
        ]
        try:
            payload = await self._client.complete(messages, STRATEGY_RESPONSE_SCHEMA, schema_name="strategy")
            parsed = StrategyResponse.model_validate(payload)
        except (PlanningError, ValidationError) as exc:
            logging.warning("event=strategy_plan_invalid error=%s", f"{type(exc).__name__}: {_safe_trunc(exc, 400)}")
            return self.default_strategy(sandbox, context, query, intent)

        strategy = Strategy(
            approach=parsed.approach.strip() or "formula",
            formula=parsed.formula,
            helper_columns=[
                HelperColumn(name=h.name.strip() or f"Helper{i + 1}", formula=h.formula, purpose=h.purpose)
                for i, h in enumerate(parsed.helper_columns)
                if h.formula.strip()
            ],
            explanation=parsed.explanation,
            confidence=self.default_confidence,
        )
        logging.info(
            "event=strategy_planned approach=%s helpers=%s formula=%s",
            strategy.approach,
            len(strategy.helper_columns),
            _safe_trunc(strategy.formula, 300),
        )
        return strategy

    async def refine(
        self,
        previous: Strategy,
        error_message: str,
        sandbox: Sandbox,
        context: SandboxContext,
        query: str,
        intent: QueryIntent,
    ) -> Strategy:
        marker = error_marker_of(error_message)
        hint = REFINE_ERROR_HINTS.get(marker or "", "Fix the reported error.")
        user = (
            f"{build_prompt_context(sandbox, context, query, intent)}\n\n"
            f"Previous formula:\n{previous.formula}\n\n"
            f"Error: {_safe_trunc(error_message, 600)}\n"
            f"Hint: {hint}"
        )
        messages = [{"role": "system", "content": DEFAULT_REFINE_SYSTEM}, {"role": "user", "content": user}]
        try:
            payload = await self._client.complete(messages, REFINE_RESPONSE_SCHEMA, schema_name="strategy_refine")
            parsed = RefineResponse.model_validate(payload)
        except (PlanningError, ValidationError) as exc:
            logging.warning("event=strategy_refine_invalid error=%s", f"{type(exc).__name__}: {_safe_trunc(exc, 400)}")
            return self.default_strategy(sandbox, context, query, intent)

        refined = Strategy(
            approach=previous.approach,
            formula=parsed.formula,
            helper_columns=list(previous.helper_columns),
            explanation=parsed.explanation or previous.explanation,
            confidence=previous.confidence * self.refine_decay,
        )
        logging.info(
            "event=strategy_refined marker=%s confidence=%.3f formula=%s",
            marker or "",
            refined.confidence,
            _safe_trunc(refined.formula, 300),
        )
        return refined

    def default_strategy(
        self, sandbox: Sandbox, context: SandboxContext, query: str, intent: QueryIntent
    ) -> Strategy:
        formula, explanation = default_formula(sandbox, context, query, intent)
        return Strategy(
            approach="fallback",
            formula=formula,
            explanation=explanation,
            confidence=self.fallback_confidence,
            fallback=True,
        )


def _first_known_column(headers: List[str], names: List[str]) -> Optional[str]:
    for name in names:
        idx = resolve_column(headers, name)
        if idx is not None:
            return headers[idx]
    return None


def default_formula(sandbox: Sandbox, context: SandboxContext, query: str, intent: QueryIntent) -> Tuple[str, str]:
    filters: List[Dict[str, Any]] = [f.to_dict() for f in intent.filters]
    if is_percentage_query(query) and filters:
        return (
            f"match_rows(df, {filters!r}).mean() * 100 if len(df) else 0",
            "Share of rows matching the criteria over all rows",
        )

    # Filters are re-applied only when the sandbox kept every row.
    frame = f"df[match_rows(df, {filters!r})]" if filters and not context.applied_filters else "df"
    column = _first_known_column(sandbox.data_columns, intent.columns_needed)
    if column is None:
        return f"len({frame})", "Count of matching rows"
    kind = intent.aggregation or "sum"
    if kind == "count":
        return f"int({frame}[{column!r}].notna().sum())", f"Count of values in {column}"
    return f"aggregate({frame}[{column!r}], {kind!r})", f"{kind} of {column}"
