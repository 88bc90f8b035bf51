import asyncio

import pytest

from pipelines.lib.errors import CompletionError, PlanningError
from pipelines.lib.expression_evaluator import EvaluationOutcome, ExpressionEvaluator, PandasExpressionEvaluator
from pipelines.lib.query_models import HelperColumn, QueryIntent, Strategy, StrategyKind
from pipelines.lib.result_validator import ResultValidator
from pipelines.lib.sandbox_manager import SandboxManager
from pipelines.lib.strategy_engine import EngineConfig, StrategyExecutionEngine, _CascadeRun
from pipelines.lib.tabular import FilterPredicate, TabularSnapshot


DONE = FilterPredicate.from_dict({"column": "Status", "operator": "equals", "value": "Done"})
PCT_QUERY = "What percentage of orders are Done?"


class _FakePlanner:
    """Hands out queued strategies (or raises queued errors); raises PlanningError once drained."""

    def __init__(self, plans=None, refinements=None):
        self.plans = list(plans or [])
        self.refinements = list(refinements or [])
        self.plan_calls = 0
        self.refine_errors = []

    @staticmethod
    def _next(queue):
        if not queue:
            raise PlanningError("no more strategies")
        item = queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def plan(self, sandbox, context, query, intent):
        self.plan_calls += 1
        return self._next(self.plans)

    async def refine(self, previous, error_message, sandbox, context, query, intent):
        self.refine_errors.append(error_message)
        return self._next(self.refinements)


class _FakeEvaluator(ExpressionEvaluator):
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def evaluate(self, sandbox, expression, target_location="Z1", bindings=None):
        self.calls += 1
        return self.outcomes.pop(0)


def _statuses(n_done: int, n_open: int) -> TabularSnapshot:
    rows = [["Done", 10]] * n_done + [["Open", 20]] * n_open
    return TabularSnapshot.from_records(["Status", "Amount"], rows, name="Orders")


def _amounts() -> TabularSnapshot:
    return TabularSnapshot.from_records(["Status", "Amount"], [["Done", 10], ["Open", 20], ["Done", 30]])


def _engine(planner, evaluator=None, config=None):
    manager = SandboxManager()
    engine = StrategyExecutionEngine(
        planner, evaluator or PandasExpressionEvaluator(), manager, ResultValidator(), config=config
    )
    return engine, manager


def _run(engine, manager, source, intent, query):
    with manager.open(source, intent) as (sandbox, context):
        return asyncio.run(engine.execute(sandbox, context, query, intent))


def test_confident_first_attempt_stops_the_cascade() -> None:
    planner = _FakePlanner(plans=[Strategy(approach="direct", formula="df['Amount'].sum()")])
    engine, manager = _engine(planner)
    intent = QueryIntent(columns_needed=["Amount"], aggregation="sum")
    result = _run(engine, manager, _amounts(), intent, "Total amount")
    assert result.success
    assert result.value == 60
    assert result.confidence == 1.0
    assert result.strategy_name == "Standard Formula"
    assert result.metadata["strategies_attempted"] == ["Standard Formula"]
    assert result.metadata["attempt"] == 1
    assert result.metadata["target_location"] == "Z1"
    assert planner.plan_calls == 1


def test_refined_attempts_decay_confidence() -> None:
    planner = _FakePlanner(
        plans=[Strategy(approach="direct", formula="df['Missing'].sum()")],
        refinements=[
            Strategy(approach="direct", formula="1 / 0"),
            Strategy(approach="direct", formula="df['Amount'].sum()"),
        ],
    )
    engine, manager = _engine(planner)
    intent = QueryIntent(aggregation="sum", requires_calculation=True)
    result = _run(engine, manager, _amounts(), intent, "Total amount")

    assert result.success
    assert result.strategy_name == "Standard Formula"
    assert result.confidence == pytest.approx(0.7)
    assert result.metadata["attempt"] == 3
    assert planner.refine_errors[0].startswith("#REF!")
    assert planner.refine_errors[1].startswith("#DIV/0!")
    assert result.metadata["strategies_attempted"] == [
        "Standard Formula",
        "Helper Columns",
        "Manual Calculation",
        "Sub-queries",
    ]
    assert any(e.startswith("Helper Columns: PlanningError") for e in result.metadata["errors"])
    assert "Manual Calculation: No data found for specified columns" in result.metadata["errors"]


def test_attempt_confidence_is_floored_and_non_increasing() -> None:
    config = EngineConfig()
    assert config.attempt_confidence(1, simple=True) == 1.0
    assert config.attempt_confidence(2, simple=True) == pytest.approx(0.95)
    assert config.attempt_confidence(2, simple=False) == pytest.approx(0.85)
    assert config.attempt_confidence(10, simple=False) == 0.3
    values = [config.attempt_confidence(k, simple=False) for k in range(1, 12)]
    assert values == sorted(values, reverse=True)
    assert min(values) >= config.min_confidence


def test_error_without_marker_ends_standard_formula() -> None:
    planner = _FakePlanner(plans=[Strategy(approach="direct", formula="x")])
    evaluator = _FakeEvaluator([EvaluationOutcome(error="evaluator crashed")])
    engine, manager = _engine(planner, evaluator)
    intent = QueryIntent()
    run = _CascadeRun()
    with manager.open(_amounts(), intent) as (sandbox, context):
        result = asyncio.run(engine._standard_formula(sandbox, context, "q", intent, run))
    assert not result.success
    assert result.error == "evaluator crashed"
    assert planner.refine_errors == []
    assert evaluator.calls == 1
    assert len(run.attempts) == 1


def test_helper_columns_strategy_materialises_columns() -> None:
    planner = _FakePlanner(
        plans=[
            Strategy(approach="direct", formula="df['Missing'].sum()"),
            Strategy(
                approach="helpers",
                formula="df['Double'].sum()",
                helper_columns=[HelperColumn(name="Double", formula="df.at[row, 'Amount'] * 2")],
                explanation="Sum of doubled amounts",
            ),
        ]
    )
    engine, manager = _engine(planner, config=EngineConfig(max_retries=1))
    intent = QueryIntent(columns_needed=["Amount"], aggregation="sum", requires_calculation=True)
    result = _run(engine, manager, _amounts(), intent, "Sum of doubled amount")

    assert result.success
    assert result.strategy_name == "Helper Columns"
    assert result.value == 120
    assert result.confidence == 0.85
    assert result.explanation == "Sum of doubled amounts (with 1 helper columns)"
    assert result.metadata["helper_column_count"] == 1
    assert result.metadata["helper_columns"] == ["Double"]
    assert planner.refine_errors == []


def test_manual_percentage_after_completion_failures() -> None:
    planner = _FakePlanner(plans=[CompletionError("down"), CompletionError("down")])
    engine, manager = _engine(planner)
    intent = QueryIntent(
        columns_needed=["Status"], filters=[DONE], aggregation="percentage", requires_full_dataset=True
    )
    result = _run(engine, manager, _statuses(3, 7), intent, PCT_QUERY)

    assert result.success
    assert result.value == 30.0
    assert result.confidence == 0.95
    assert result.strategy_name == "Manual Calculation"
    assert result.explanation == "Manual calculation: 3 of 10 rows match the criteria (30.00%)"
    assert result.metadata["matching_rows"] == 3
    assert result.metadata["total_rows"] == 10
    assert len(result.metadata["strategies_attempted"]) == 3
    assert result.metadata["errors"][0].startswith("Standard Formula: CompletionError")


def test_in_place_formula_cannot_corrupt_later_strategies() -> None:
    planner = _FakePlanner(
        plans=[Strategy(approach="direct", formula="df.drop(df.index[df['Status'] != 'Done'], inplace=True)")]
    )
    engine, manager = _engine(planner)
    intent = QueryIntent(
        columns_needed=["Status"], filters=[DONE], aggregation="percentage", requires_full_dataset=True
    )
    result = _run(engine, manager, _statuses(3, 7), intent, PCT_QUERY)

    assert result.success
    assert result.value == 30.0
    assert result.confidence == 0.95
    assert result.strategy_name == "Manual Calculation"
    assert result.metadata["total_rows"] == 10
    assert planner.refine_errors[0].startswith("#N/A")


def test_manual_aggregate_applies_pending_filters_only_on_full_copies() -> None:
    engine, manager = _engine(_FakePlanner())
    intent = QueryIntent(columns_needed=["Amount"], filters=[DONE], aggregation="average", requires_full_dataset=True)
    with manager.open(_amounts(), intent) as (sandbox, context):
        result = engine._calculate_manually(sandbox, context, "Average amount", intent, StrategyKind.MANUAL_CALCULATION)
    assert result.value == 20.0
    assert result.metadata == {"value_count": 2, "column": "Amount"}


def test_sub_queries_reuse_manual_path_with_lower_confidence() -> None:
    engine, manager = _engine(_FakePlanner())
    intent = QueryIntent(columns_needed=["Amount"], aggregation="max")
    run = _CascadeRun()
    with manager.open(_amounts(), intent) as (sandbox, context):
        result = asyncio.run(engine._sub_queries(sandbox, context, "Largest amount", intent, run))
    assert result.success
    assert result.value == 30
    assert result.confidence == 0.7
    assert result.strategy_name == "Sub-queries"
    assert run.attempts[0].kind is StrategyKind.SUB_QUERIES


def test_all_strategies_failing_reports_exhaustion() -> None:
    engine, manager = _engine(_FakePlanner())
    result = _run(engine, manager, _amounts(), QueryIntent(columns_needed=["Missing"]), "Total of missing")
    assert not result.success
    assert result.error_type == "exhaustion"
    assert result.confidence == 0.0
    assert result.error.startswith("all strategies failed: Standard Formula: PlanningError")
    assert len(result.metadata["errors"]) == 4


def test_validator_rejections_are_recorded_and_cascade_continues() -> None:
    planner = _FakePlanner(plans=[Strategy(approach="direct", formula="len(df) / len(df) * 100")])
    engine, manager = _engine(planner)
    intent = QueryIntent(columns_needed=["Status"], filters=[DONE], aggregation="percentage")
    result = _run(engine, manager, _statuses(3, 7), intent, PCT_QUERY)

    assert not result.success
    assert result.error_type == "exhaustion"
    assert "Standard Formula: Incorrect percentage calculation due to pre-filtered data" in result.metadata["errors"]
    assert "Manual Calculation: Incorrect percentage calculation due to pre-filtered data" in result.metadata["errors"]


def test_cancellation_propagates_out_of_the_cascade() -> None:
    planner = _FakePlanner(plans=[asyncio.CancelledError()])
    engine, manager = _engine(planner)
    with pytest.raises(asyncio.CancelledError):
        _run(engine, manager, _amounts(), QueryIntent(), "Total amount")
    assert manager.active_sandboxes == []


def test_every_strategy_kind_has_a_runner() -> None:
    engine, _manager = _engine(_FakePlanner())
    assert set(engine._dispatch) == set(StrategyKind)
