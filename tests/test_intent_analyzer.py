import asyncio
import logging

from pipelines.lib.errors import CompletionError, PlanningError
from pipelines.lib.intent_analyzer import QueryIntentAnalyzer, guess_metric, mentioned_columns
from pipelines.lib.llm_client import TextCompletionClient
from pipelines.lib.query_signals import has_full_dataset_cue, is_percentage_query
from pipelines.lib.tabular import ColumnType, FilterOperator


HEADERS = ["Status", "Amount", "Region"]


class _FakeClient(TextCompletionClient):
    def __init__(self, outcomes):
        self._outcomes = list(outcomes)
        self.calls = []

    async def complete(self, messages, response_schema, schema_name="response"):
        self.calls.append({"messages": messages, "schema_name": schema_name})
        item = self._outcomes.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def _analyze(outcome, query: str = "What is the total amount?"):
    client = _FakeClient([outcome])
    analyzer = QueryIntentAnalyzer(client)
    intent = asyncio.run(analyzer.analyze(query, HEADERS, {"Amount": ColumnType.NUMBER}))
    return intent, client


def test_valid_payload_becomes_intent() -> None:
    intent, client = _analyze(
        {
            "columns_needed": ["amount"],
            "filters": [{"column": "Status", "operator": "equals", "value": "'Done'"}],
            "aggregation": "Average",
            "group_by": "null",
            "requires_calculation": False,
            "calculation_steps": ["", "average the Amount column"],
            "requires_full_dataset": False,
        },
        query="Average amount of done orders",
    )
    assert not intent.fallback
    assert intent.columns_needed == ["Amount"]
    assert intent.aggregation == "average"
    assert intent.group_by is None
    assert intent.calculation_steps == ["average the Amount column"]
    assert intent.filters[0].operator is FilterOperator.EQUALS
    assert intent.filters[0].value == "Done"
    assert not intent.requires_full_dataset
    assert client.calls[0]["schema_name"] == "query_intent"
    user_message = client.calls[0]["messages"][-1]["content"]
    assert '"type": "number"' in user_message
    assert '"type": "unknown"' in user_message


def test_unknown_operator_is_dropped_and_aliases_parse() -> None:
    intent, _client = _analyze(
        {
            "columns_needed": ["Amount"],
            "filters": [
                {"column": "Amount", "operator": "between", "value": "1"},
                {"column": "Amount", "operator": ">=", "value": "10"},
            ],
            "aggregation": "count",
        }
    )
    assert len(intent.filters) == 1
    assert intent.filters[0].operator is FilterOperator.GREATER_OR_EQUAL


def test_unresolved_columns_are_kept_verbatim() -> None:
    intent, _client = _analyze({"columns_needed": ["Revenue", "region"], "aggregation": "sum"})
    assert intent.columns_needed == ["Revenue", "Region"]


def test_percentage_wording_forces_full_dataset() -> None:
    intent, _client = _analyze(
        {
            "columns_needed": ["Status"],
            "filters": [{"column": "Status", "operator": "equals", "value": "Done"}],
            "aggregation": "percentage",
            "requires_full_dataset": False,
        },
        query="What percentage of orders are Done?",
    )
    assert intent.requires_full_dataset


def test_ratio_in_calculation_steps_forces_full_dataset() -> None:
    intent, _client = _analyze(
        {"columns_needed": ["Amount"], "aggregation": "sum", "calculation_steps": ["compute the ratio of A to B"]},
        query="Amount split",
    )
    assert intent.requires_full_dataset


def test_completion_failure_falls_back_to_heuristics() -> None:
    intent, _client = _analyze(CompletionError("down"), query="What is the median Amount?")
    assert intent.fallback
    assert intent.aggregation == "median"
    assert intent.columns_needed == ["Amount"]
    assert intent.filters == []


def test_unparsable_and_invalid_payloads_fall_back() -> None:
    intent, _client = _analyze(PlanningError("no json"), query="What percent of Status is Done?")
    assert intent.fallback
    assert intent.aggregation == "percentage"
    assert intent.requires_full_dataset
    assert intent.columns_needed == ["Status"]

    intent, _client = _analyze({"requires_calculation": "maybe", "filters": "none"})
    assert intent.fallback
    assert intent.aggregation == "sum"


def test_guess_metric_and_mentioned_columns() -> None:
    assert guess_metric("how many orders") == "count"
    assert guess_metric("highest amount") == "max"
    assert guess_metric("share in %") == "percentage"
    assert guess_metric("show me things") == "sum"
    assert mentioned_columns("amount by region", HEADERS) == ["Amount", "Region"]


def test_plural_share_wording_is_recognised() -> None:
    intent, _client = _analyze(PlanningError("no json"), query="What percentages of Status are Done?")
    assert intent.aggregation == "percentage"
    assert intent.requires_full_dataset
    assert guess_metric("proportions of done orders") == "percentage"
    assert guess_metric("sum of totals") == "sum"
    assert has_full_dataset_cue(["Amount totals by region"])
    assert has_full_dataset_cue(["ratios of done to open"])
    assert not is_percentage_query("90th percentile of Amount")
    assert guess_metric("90th percentile of Amount") == "sum"


def test_unknown_aggregation_is_kept_and_logged(caplog) -> None:
    with caplog.at_level(logging.WARNING):
        intent, _client = _analyze({"columns_needed": ["Amount"], "aggregation": "Geometric Mean"})
    assert intent.aggregation == "geometric mean"
    assert "event=intent_unknown_aggregation aggregation=geometric mean" in caplog.text

    caplog.clear()
    with caplog.at_level(logging.WARNING):
        _analyze({"columns_needed": ["Amount"], "aggregation": "p90"})
    assert "intent_unknown_aggregation" not in caplog.text
