import asyncio
import multiprocessing
from typing import Tuple

import pandas as pd
import pytest

from pipelines.lib.errors import EvaluationError
from pipelines.lib.expression_evaluator import (
    EvaluationOutcome,
    GuardViolation,
    PandasExpressionEvaluator,
    ast_guard,
    error_marker_of,
    normalize_expression,
    references_name,
)
from pipelines.lib.sandbox_manager import Sandbox


def _sandbox() -> Sandbox:
    df = pd.DataFrame(
        {
            "Name": ["a", "b", "c"],
            "Status": ["Done", "Open", "Done"],
            "Amount": [10, 20, 30],
        }
    )
    return Sandbox(name="_sandbox_test", frame=df, data_columns=list(df.columns))


def _evaluate(expr: str, evaluator: PandasExpressionEvaluator = None) -> Tuple[Sandbox, EvaluationOutcome]:
    sandbox = _sandbox()
    outcome = asyncio.run((evaluator or PandasExpressionEvaluator()).evaluate(sandbox, expr))
    return sandbox, outcome


def test_evaluate_scalar_stores_result_at_target() -> None:
    sandbox, outcome = _evaluate("df['Amount'].sum()")
    assert outcome.ok
    assert outcome.value == 60
    assert outcome.formatted_text == "60"
    assert sandbox.results["Z1"] == 60


def test_evaluate_tolerates_leading_equals_and_fences() -> None:
    _sandbox_, outcome = _evaluate("=df['Amount'].max()")
    assert outcome.value == 30
    assert normalize_expression("```python\nlen(df)\n```") == "len(df)"


def test_statements_must_assign_result() -> None:
    _s, outcome = _evaluate("total = df['Amount'].sum()\nresult = total / 2")
    assert outcome.value == 30.0
    _s, missing = _evaluate("total = df['Amount'].sum()")
    assert missing.formatted_text.startswith("#NAME?")


def test_helpers_in_scope() -> None:
    _s, outcome = _evaluate(
        "match_rows(df, [{'column': 'Status', 'operator': 'equals', 'value': 'Done'}]).mean() * 100"
    )
    assert outcome.value == pytest.approx(200 / 3)
    _s, agg = _evaluate("aggregate(df['Amount'], 'median')")
    assert agg.value == 20.0


@pytest.mark.parametrize(
    "expr, marker",
    [
        ("1 / 0", "#DIV/0!"),
        ("df['Missing'].sum()", "#REF!"),
        ("df['Amount'].iloc[10]", "#REF!"),
        ("unknown_name + 1", "#NAME?"),
        ("df['Amount'].no_such_method()", "#NAME?"),
        ("df['Name'].sum() + 1", "#VALUE!"),
        ("None", "#N/A"),
        ("df['Amount']", "#SPILL!"),
        ("import os", "#BLOCKED!"),
        ("open('/etc/passwd').read()", "#BLOCKED!"),
        ("df['Amount'].sum(", "#SYNTAX!"),
    ],
)
def test_errors_are_reported_as_markers(expr: str, marker: str) -> None:
    sandbox, outcome = _evaluate(expr)
    assert not outcome.ok
    assert outcome.formatted_text.startswith(marker)
    assert error_marker_of(outcome.error) == marker
    assert "Z1" not in sandbox.results


def test_single_value_series_is_reduced_to_scalar() -> None:
    _s, outcome = _evaluate("df.loc[df['Name'] == 'b', 'Amount']")
    assert outcome.value == 20


def test_evaluation_timeout_marker() -> None:
    evaluator = PandasExpressionEvaluator(timeout_s=0.1)
    _s, outcome = _evaluate("sum(range(10**12))", evaluator)
    assert outcome.formatted_text.startswith("#TIMEOUT!")
    assert outcome.error_type == "timeout"
    assert multiprocessing.active_children() == []


def test_in_place_mutations_never_reach_the_sandbox_frame() -> None:
    evaluator = PandasExpressionEvaluator()
    sandbox = _sandbox()
    outcome = asyncio.run(
        evaluator.evaluate(sandbox, "df.drop(df.index[df['Status'] != 'Done'], inplace=True)\nresult = len(df)")
    )
    assert outcome.value == 2
    column = asyncio.run(
        evaluator.evaluate_column(sandbox, "df['Amount'] = 0\nresult = df['Amount'] + 1", per_row=False)
    )
    assert column.tolist() == [1, 1, 1]
    assert len(sandbox.frame) == 3
    assert sandbox.frame["Amount"].tolist() == [10, 20, 30]


def test_ast_guard_allows_safe_pd_converters() -> None:
    ast_guard("result = pd.to_numeric(df['x'], errors='coerce')")
    ast_guard("result = pd.to_datetime(df['ts'], errors='coerce')")


@pytest.mark.parametrize(
    "code, reason",
    [
        ("pd.read_csv('x.csv')", "forbidden_pandas_io"),
        ("pd.to_pickle(df, '/tmp/out.pkl')", "forbidden_pandas_io"),
        ("df.to_csv('out.csv')", "forbidden_dataframe_io"),
        ("df.__class__", "forbidden_dunder_attr"),
        ("(lambda x: x)(1)", "forbidden_node:Lambda"),
        ("eval('1')", "forbidden_call:eval"),
    ],
)
def test_ast_guard_blocks(code: str, reason: str) -> None:
    with pytest.raises(GuardViolation, match=reason):
        ast_guard(code)


def test_references_name_is_structural() -> None:
    assert references_name("df.at[row, 'Amount'] * 2", "row")
    assert not references_name("df['row'] * 2", "row")
    assert not references_name("df.rows", "row")


def test_evaluate_column_per_row_and_vectorised() -> None:
    evaluator = PandasExpressionEvaluator()
    sandbox = _sandbox()
    per_row = asyncio.run(evaluator.evaluate_column(sandbox, "df.at[row, 'Amount'] * 2", per_row=True))
    assert per_row == [20, 40, 60]
    whole = asyncio.run(evaluator.evaluate_column(sandbox, "df['Amount'] > 15", per_row=False))
    assert whole.tolist() == [False, True, True]


def test_evaluate_column_error_carries_marker_and_display_row() -> None:
    evaluator = PandasExpressionEvaluator()
    with pytest.raises(EvaluationError) as info:
        asyncio.run(evaluator.evaluate_column(_sandbox(), "df.at[row, 'Missing']", per_row=True))
    assert info.value.marker == "#REF!"
    assert "row 2" in info.value.message
