from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pipelines.lib.aggregations import is_known_aggregation
from pipelines.lib.errors import CompletionError, PlanningError
from pipelines.lib.llm_client import TextCompletionClient
from pipelines.lib.llm_json import _safe_json_dumps
from pipelines.lib.pipeline_prompts import DEFAULT_INTENT_SYSTEM, INTENT_RESPONSE_SCHEMA
from pipelines.lib.query_models import QueryIntent
from pipelines.lib.query_signals import METRIC_PATTERNS, has_full_dataset_cue, is_percentage_query
from pipelines.lib.tabular import ColumnType, FilterPredicate, resolve_column


class _FilterItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    column: str
    operator: str
    value: Any = ""


class IntentResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    columns_needed: List[str] = Field(default_factory=list)
    filters: List[_FilterItem] = Field(default_factory=list)
    aggregation: str = "sum"
    group_by: Optional[str] = None
    requires_calculation: bool = False
    calculation_steps: List[str] = Field(default_factory=list)
    requires_full_dataset: bool = False

    @field_validator("aggregation", mode="before")
    @classmethod
    def _aggregation_text(cls, value: Any) -> str:
        return str(value or "sum").strip().lower() or "sum"

    @field_validator("group_by", mode="before")
    @classmethod
    def _blank_group_by(cls, value: Any) -> Optional[str]:
        text = str(value or "").strip()
        return None if not text or text.lower() in {"null", "none"} else text


def guess_metric(query: str, default: str = "sum") -> str:
    q = query or ""
    if is_percentage_query(q):
        return "percentage"
    for name, pattern in METRIC_PATTERNS.items():
        if re.search(pattern, q, re.I):
            return name
    return default


def mentioned_columns(query: str, headers: Sequence[str]) -> List[str]:
    q = (query or "").lower()
    return [h for h in headers if str(h).strip() and str(h).strip().lower() in q]


class QueryIntentAnalyzer:
    """Turns a natural-language question into a QueryIntent with one structured completion call."""

    def __init__(self, completion_client: TextCompletionClient) -> None:
        self._client = completion_client

    def _messages(
        self,
        query: str,
        column_headers: Sequence[str],
        column_types: Optional[Dict[str, ColumnType]],
    ) -> List[Dict[str, str]]:
        types = column_types or {}
        columns = [{"name": h, "type": ColumnType(types[h]).value if h in types else "unknown"} for h in column_headers]
        user = f"Columns: {_safe_json_dumps(columns)}\nQuestion: {query}"
        return [{"role": "system", "content": DEFAULT_INTENT_SYSTEM}, {"role": "user", "content": user}]

    async def analyze(
        self,
        query: str,
        column_headers: Sequence[str],
        column_types: Optional[Dict[str, ColumnType]] = None,
    ) -> QueryIntent:
        headers = [str(h) for h in column_headers]
        try:
            payload = await self._client.complete(
                self._messages(query, headers, column_types), INTENT_RESPONSE_SCHEMA, schema_name="query_intent"
            )
            parsed = IntentResponse.model_validate(payload)
        except ValidationError as exc:
            logging.warning("event=intent_schema_invalid error=%s", f"{type(exc).__name__}: {exc}")
            return self.fallback_intent(query, headers)
        except (PlanningError, CompletionError) as exc:
            logging.warning("event=intent_analysis_failed error=%s", f"{type(exc).__name__}: {exc}")
            return self.fallback_intent(query, headers)
        return self._to_intent(parsed, query, headers)

    def _to_intent(self, parsed: IntentResponse, query: str, headers: Sequence[str]) -> QueryIntent:
        filters: List[FilterPredicate] = []
        for item in parsed.filters:
            try:
                filters.append(FilterPredicate.from_dict(item.model_dump()))
            except ValueError as exc:
                logging.warning(
                    "event=intent_filter_dropped column=%s operator=%s error=%s", item.column, item.operator, exc
                )

        columns = []
        for name in parsed.columns_needed:
            idx = resolve_column(headers, name)
            columns.append(headers[idx] if idx is not None else name)

        steps = [s for s in parsed.calculation_steps if str(s).strip()]
        intent = QueryIntent(
            columns_needed=columns,
            filters=filters,
            aggregation=parsed.aggregation,
            group_by=parsed.group_by,
            requires_calculation=parsed.requires_calculation,
            calculation_steps=steps,
            requires_full_dataset=parsed.requires_full_dataset or has_full_dataset_cue([query, *steps]),
        )
        if intent.aggregation != "percentage" and not is_known_aggregation(intent.aggregation):
            logging.warning("event=intent_unknown_aggregation aggregation=%s fallback=sum", intent.aggregation)
        logging.info(
            "event=intent_analyzed aggregation=%s columns=%s filters=%s full_dataset=%s calc=%s",
            intent.aggregation,
            intent.columns_needed,
            len(intent.filters),
            intent.requires_full_dataset,
            intent.requires_calculation,
        )
        return intent

    def fallback_intent(self, query: str, headers: Sequence[str]) -> QueryIntent:
        intent = QueryIntent(
            columns_needed=mentioned_columns(query, headers),
            aggregation=guess_metric(query),
            requires_full_dataset=has_full_dataset_cue([query]),
            fallback=True,
        )
        logging.info("event=intent_fallback aggregation=%s columns=%s", intent.aggregation, intent.columns_needed)
        return intent
