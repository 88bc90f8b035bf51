from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pipelines.lib.aggregations import aggregate, numeric_values
from pipelines.lib.expression_evaluator import ExpressionEvaluator, error_marker_of
from pipelines.lib.llm_json import _safe_trunc
from pipelines.lib.query_models import CASCADE_ORDER, ExecutionResult, QueryIntent, StrategyAttempt, StrategyKind
from pipelines.lib.query_signals import is_percentage_query
from pipelines.lib.result_validator import ResultValidator
from pipelines.lib.route_trace import current_route_tracer
from pipelines.lib.sandbox_manager import Sandbox, SandboxContext, SandboxManager
from pipelines.lib.strategy_planner import StrategyPlanner
from pipelines.lib.tabular import bind_filters, resolve_column


@dataclass
class EngineConfig:
    max_retries: int = 5
    base_confidence: float = 1.0
    confidence_step: float = 0.15
    min_confidence: float = 0.3
    simple_query_bonus: float = 0.1
    early_stop_confidence: float = 0.9
    helper_columns_confidence: float = 0.85
    manual_percentage_confidence: float = 0.95
    manual_aggregate_confidence: float = 0.85
    sub_query_confidence: float = 0.7
    target_location: str = "Z1"

    def attempt_confidence(self, attempt: int, simple: bool) -> float:
        bonus = self.simple_query_bonus if simple else 0.0
        raw = self.base_confidence - self.confidence_step * (attempt - 1) + bonus
        return max(self.min_confidence, min(1.0, raw))


@dataclass
class _CascadeRun:
    attempts: List[StrategyAttempt] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    strategies_attempted: List[str] = field(default_factory=list)

    def record(self, kind: StrategyKind, attempt: int, formula: str = "", **kwargs: Any) -> None:
        self.attempts.append(StrategyAttempt(kind=kind, attempt=attempt, formula=formula or "", **kwargs))

    def metadata(self) -> Dict[str, Any]:
        return {
            "strategies_attempted": list(self.strategies_attempted),
            "attempts": [
                {
                    "kind": a.kind.value,
                    "attempt": a.attempt,
                    "formula": a.formula,
                    "error": a.error,
                    "confidence": round(a.confidence, 4),
                }
                for a in self.attempts
            ],
            "errors": list(self.errors),
        }


StrategyRunner = Callable[[Sandbox, SandboxContext, str, QueryIntent, _CascadeRun], Awaitable[ExecutionResult]]


class StrategyExecutionEngine:
    """
    Runs the fixed strategy cascade (standard formula, helper columns, manual
    calculation, sub-queries) against one sandbox. Every successful result is
    validated; the best validated result wins and a confident one stops the
    cascade early.
    """

    def __init__(
        self,
        planner: StrategyPlanner,
        evaluator: ExpressionEvaluator,
        sandbox_manager: SandboxManager,
        validator: ResultValidator,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.planner = planner
        self.evaluator = evaluator
        self.sandbox_manager = sandbox_manager
        self.validator = validator
        self.config = config or EngineConfig()
        self._dispatch: Dict[StrategyKind, StrategyRunner] = {
            StrategyKind.STANDARD_FORMULA: self._standard_formula,
            StrategyKind.HELPER_COLUMNS: self._helper_columns,
            StrategyKind.MANUAL_CALCULATION: self._manual_calculation,
            StrategyKind.SUB_QUERIES: self._sub_queries,
        }
        missing = [kind.value for kind in StrategyKind if kind not in self._dispatch]
        if missing:
            raise ValueError(f"no runner for strategy kinds: {missing}")

    async def execute(
        self,
        sandbox: Sandbox,
        context: SandboxContext,
        query: str,
        intent: QueryIntent,
    ) -> ExecutionResult:
        run = _CascadeRun()
        best: Optional[ExecutionResult] = None
        tracer = current_route_tracer()

        for kind in CASCADE_ORDER:
            name = kind.display_name
            run.strategies_attempted.append(name)
            stage_id = ""
            if tracer:
                stage_id = tracer.start_stage(
                    stage_key=f"strategy_{kind.value}",
                    stage_name=name,
                    purpose="Run one strategy of the cascade and validate its result.",
                    input_payload={"query": query, "sandbox": sandbox.name},
                )
            logging.info("event=strategy_started strategy=%s sandbox=%s", kind.value, sandbox.name)

            try:
                result = await self._dispatch[kind](sandbox, context, query, intent, run)
            except Exception as exc:
                error = f"{name}: {type(exc).__name__}: {_safe_trunc(exc, 400)}"
                run.errors.append(error)
                logging.warning("event=strategy_failed strategy=%s error=%s", kind.value, error)
                if tracer and stage_id:
                    tracer.end_stage(stage_id, status="error", error={"type": type(exc).__name__, "message": str(exc)})
                continue

            if not result.success:
                run.errors.append(f"{name}: {result.error or 'unknown error'}")
                logging.info("event=strategy_unsuccessful strategy=%s error=%s", kind.value, _safe_trunc(result.error, 300))
                if tracer and stage_id:
                    tracer.end_stage(stage_id, status="failed", output_payload=result.to_dict())
                continue

            validated = self.validator.validate(result, context, intent, query)
            if not validated.success:
                run.errors.append(f"{name}: {validated.error}")
                if tracer and stage_id:
                    tracer.end_stage(stage_id, status="rejected", output_payload=validated.to_dict())
                continue

            if tracer and stage_id:
                tracer.end_stage(stage_id, status="ok", output_payload=validated.to_dict())
            logging.info(
                "event=strategy_succeeded strategy=%s confidence=%.3f value=%s",
                kind.value,
                validated.confidence,
                _safe_trunc(validated.value, 200),
            )
            if best is None or validated.confidence > best.confidence:
                best = validated
            if best.confidence >= self.config.early_stop_confidence:
                logging.info("event=cascade_early_stop strategy=%s confidence=%.3f", kind.value, best.confidence)
                break

        summary = run.metadata()
        if best is not None:
            return dataclasses.replace(best, metadata={**best.metadata, **summary})

        error = "all strategies failed: " + "; ".join(run.errors)
        logging.warning("event=cascade_exhausted sandbox=%s errors=%s", sandbox.name, len(run.errors))
        return ExecutionResult(
            query=query,
            success=False,
            error=error,
            error_type="exhaustion",
            confidence=0.0,
            strategy_name="",
            metadata=summary,
        )

    async def _standard_formula(
        self, sandbox: Sandbox, context: SandboxContext, query: str, intent: QueryIntent, run: _CascadeRun
    ) -> ExecutionResult:
        kind = StrategyKind.STANDARD_FORMULA
        strategy = await self.planner.plan(sandbox, context, query, intent)
        last_error = ""
        for attempt in range(1, self.config.max_retries + 1):
            outcome = await self.evaluator.evaluate(sandbox, strategy.formula, self.config.target_location)
            if outcome.ok:
                confidence = self.config.attempt_confidence(attempt, intent.is_simple)
                run.record(kind, attempt, strategy.formula, value=outcome.value, confidence=confidence)
                return ExecutionResult(
                    query=query,
                    success=True,
                    value=outcome.value,
                    formula=strategy.formula,
                    explanation=strategy.explanation or f"Computed with approach: {strategy.approach}",
                    confidence=confidence,
                    strategy_name=kind.display_name,
                    metadata={
                        "attempt": attempt,
                        "approach": strategy.approach,
                        "formatted_value": outcome.formatted_text,
                        "target_location": outcome.target_location,
                        "fallback_strategy": strategy.fallback,
                    },
                )

            last_error = outcome.error
            run.record(kind, attempt, strategy.formula, error=outcome.error)
            if error_marker_of(outcome.error) is None:
                logging.info("event=strategy_not_refinable attempt=%s error=%s", attempt, _safe_trunc(outcome.error, 200))
                break
            if attempt < self.config.max_retries:
                strategy = await self.planner.refine(strategy, outcome.error, sandbox, context, query, intent)

        return ExecutionResult(
            query=query,
            success=False,
            formula=strategy.formula,
            error=last_error or "no attempts made",
            error_type="evaluation",
            strategy_name=kind.display_name,
        )

    async def _helper_columns(
        self, sandbox: Sandbox, context: SandboxContext, query: str, intent: QueryIntent, run: _CascadeRun
    ) -> ExecutionResult:
        kind = StrategyKind.HELPER_COLUMNS
        strategy = await self.planner.plan(sandbox, context, query, intent)
        await self.sandbox_manager.apply_helper_columns(sandbox, strategy.helper_columns, self.evaluator, context)
        outcome = await self.evaluator.evaluate(sandbox, strategy.formula, self.config.target_location)
        count = len(strategy.helper_columns)
        if not outcome.ok:
            run.record(kind, 1, strategy.formula, error=outcome.error)
            return ExecutionResult(
                query=query,
                success=False,
                formula=strategy.formula,
                error=outcome.error,
                error_type="evaluation",
                strategy_name=kind.display_name,
            )

        confidence = self.config.helper_columns_confidence
        run.record(kind, 1, strategy.formula, value=outcome.value, confidence=confidence)
        return ExecutionResult(
            query=query,
            success=True,
            value=outcome.value,
            formula=strategy.formula,
            explanation=f"{strategy.explanation} (with {count} helper columns)".strip(),
            confidence=confidence,
            strategy_name=kind.display_name,
            metadata={
                "helper_column_count": count,
                "helper_columns": [h.name for h in strategy.helper_columns],
                "formatted_value": outcome.formatted_text,
            },
        )

    def _calculate_manually(
        self, sandbox: Sandbox, context: SandboxContext, query: str, intent: QueryIntent, kind: StrategyKind
    ) -> ExecutionResult:
        headers = sandbox.data_columns
        if is_percentage_query(query) and intent.filters:
            bound = bind_filters(headers, intent.filters)
            total = 0
            matching = 0
            for row in sandbox.data_rows():
                total += 1
                if bound.matches(row):
                    matching += 1
            pct = (matching * 100.0 / total) if total > 0 else 0.0
            return ExecutionResult(
                query=query,
                success=True,
                value=pct,
                explanation=f"Manual calculation: {matching} of {total} rows match the criteria ({pct:.2f}%)",
                confidence=self.config.manual_percentage_confidence,
                strategy_name=kind.display_name,
                metadata={"matching_rows": matching, "total_rows": total},
            )

        column = None
        for name in intent.columns_needed:
            idx = resolve_column(headers, name)
            if idx is not None:
                column = headers[idx]
                break
        values: List[float] = []
        if column is not None:
            # Row filters are still pending when the sandbox kept every row.
            bound = bind_filters(headers, [] if context.applied_filters else intent.filters)
            col_idx = headers.index(column)
            values = numeric_values(row[col_idx] for row in sandbox.data_rows() if bound.matches(row))
        if not values:
            return ExecutionResult(
                query=query,
                success=False,
                error="No data found for specified columns",
                error_type="no_data",
                strategy_name=kind.display_name,
            )

        value = aggregate(values, intent.aggregation)
        return ExecutionResult(
            query=query,
            success=True,
            value=value,
            explanation=f"Manual {intent.aggregation} calculation on {len(values)} values of {column}",
            confidence=self.config.manual_aggregate_confidence,
            strategy_name=kind.display_name,
            metadata={"value_count": len(values), "column": column},
        )

    async def _manual_calculation(
        self, sandbox: Sandbox, context: SandboxContext, query: str, intent: QueryIntent, run: _CascadeRun
    ) -> ExecutionResult:
        kind = StrategyKind.MANUAL_CALCULATION
        result = self._calculate_manually(sandbox, context, query, intent, kind)
        run.record(kind, 1, value=result.value, error=result.error or "", confidence=result.confidence)
        return result

    async def _sub_queries(
        self, sandbox: Sandbox, context: SandboxContext, query: str, intent: QueryIntent, run: _CascadeRun
    ) -> ExecutionResult:
        kind = StrategyKind.SUB_QUERIES
        # No decomposition yet; reuse the manual path at reduced confidence.
        result = self._calculate_manually(sandbox, context, query, intent, kind)
        if result.success:
            result = dataclasses.replace(result, confidence=self.config.sub_query_confidence)
        run.record(kind, 1, value=result.value, error=result.error or "", confidence=result.confidence)
        return result
