import asyncio
import contextvars
import logging
import os
import time
import uuid
from typing import Any, ClassVar, Dict, Optional, Union

from pydantic import BaseModel, Field

from pipelines.lib.errors import SandboxCreationError
from pipelines.lib.expression_evaluator import ExpressionEvaluator, PandasExpressionEvaluator
from pipelines.lib.intent_analyzer import QueryIntentAnalyzer
from pipelines.lib.llm_client import (
    StructuredLMHandler,
    TextCompletionClient,
    build_openai_client,
    llm_call_stats,
    llm_usage_summary,
    reset_llm_call_stats,
    start_llm_call_stats,
)
from pipelines.lib.query_models import ExecutionResult
from pipelines.lib.result_validator import ResultValidator
from pipelines.lib.route_trace import (
    RouteTracer,
    current_route_tracer,
    reset_active_route_tracer,
    set_active_route_tracer,
)
from pipelines.lib.sandbox_manager import SandboxManager
from pipelines.lib.strategy_engine import EngineConfig, StrategyExecutionEngine
from pipelines.lib.strategy_planner import StrategyPlanner
from pipelines.lib.tabular import SourceLike, select_sheet


_QUERY_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("pipeline_query_id", default="-")
_TRACE_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("pipeline_trace_id", default="-")

_TRUE_VALUES = ("1", "true", "yes", "on")


class _QueryTraceLoggingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "_query_trace_injected", False):
            return True
        query_id = (_QUERY_ID_CTX.get() or "-").strip() or "-"
        trace_id = (_TRACE_ID_CTX.get() or "-").strip() or "-"
        record.msg = f"query_id={query_id} trace_id={trace_id} {record.msg}"
        record._query_trace_injected = True
        return True


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


class Pipeline(object):
    class Valves(BaseModel):
        id: str = Field(default=os.getenv("PIPELINE_ID", "spreadsheet-query"))
        name: str = Field(default=os.getenv("PIPELINE_NAME", "Spreadsheet Query"))
        debug: bool = Field(default=_env_bool("PIPELINE_DEBUG", False))

        llm_base_url: str = Field(default=os.getenv("QUERY_LLM_BASE_URL", ""))
        llm_api_key: str = Field(default=os.getenv("QUERY_LLM_API_KEY", ""))
        llm_model: str = Field(default=os.getenv("QUERY_LLM_MODEL", "gpt-4o-mini"))
        llm_timeout_s: int = Field(default=_env_int("QUERY_LLM_TIMEOUT_S", 45), ge=1)
        llm_max_retries: int = Field(default=_env_int("QUERY_LLM_MAX_RETRIES", 3), ge=0)
        llm_backoff_initial_s: float = Field(default=_env_float("QUERY_LLM_BACKOFF_INITIAL_S", 1.0), ge=0.0)
        llm_backoff_max_s: float = Field(default=_env_float("QUERY_LLM_BACKOFF_MAX_S", 4.0), ge=0.0)
        llm_temperature: float = Field(default=_env_float("QUERY_LLM_TEMPERATURE", 0.0), ge=0.0, le=2.0)
        llm_max_tokens: int = Field(default=_env_int("QUERY_LLM_MAX_TOKENS", 700), ge=64)

        sandbox_max_rows: int = Field(default=_env_int("SANDBOX_MAX_ROWS", 50000), ge=1)
        sandbox_max_columns: int = Field(default=_env_int("SANDBOX_MAX_COLUMNS", 100), ge=1)

        engine_max_retries: int = Field(default=_env_int("ENGINE_MAX_RETRIES", 5), ge=1)
        engine_confidence_step: float = Field(default=_env_float("ENGINE_CONFIDENCE_STEP", 0.15), ge=0.0, le=1.0)
        engine_min_confidence: float = Field(default=_env_float("ENGINE_MIN_CONFIDENCE", 0.3), ge=0.0, le=1.0)
        engine_early_stop_confidence: float = Field(
            default=_env_float("ENGINE_EARLY_STOP_CONFIDENCE", 0.9), ge=0.0, le=1.0
        )
        evaluator_timeout_s: float = Field(default=_env_float("EVALUATOR_TIMEOUT_S", 30.0), gt=0.0)
        evaluator_max_memory_mb: int = Field(default=_env_int("EVALUATOR_MAX_MEMORY_MB", 0), ge=0)
        query_timeout_s: float = Field(default=_env_float("QUERY_TIMEOUT_S", 120.0), gt=0.0)

        route_trace_enabled: bool = Field(default=_env_bool("ROUTE_TRACE_ENABLED", True))
        route_trace_sink_url: str = Field(default=os.getenv("ROUTE_TRACE_SINK_URL", ""))
        route_trace_sink_api_key: str = Field(default=os.getenv("ROUTE_TRACE_SINK_API_KEY", ""))
        route_trace_max_payload_chars: int = Field(default=_env_int("ROUTE_TRACE_MAX_PAYLOAD_CHARS", 4000), ge=256)
        route_trace_local_path: str = Field(default=os.getenv("ROUTE_TRACE_LOCAL_PATH", ""))

    api_version: ClassVar[str] = "v1"

    def __init__(
        self,
        valves: Optional["Pipeline.Valves"] = None,
        completion_client: Optional[TextCompletionClient] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
    ) -> None:
        self.valves = valves or self.Valves()
        logging.basicConfig(level=logging.DEBUG if self.valves.debug else logging.INFO)
        root_logger = logging.getLogger()
        if self.valves.debug:
            root_logger.setLevel(logging.DEBUG)
        if not any(isinstance(f, _QueryTraceLoggingFilter) for f in root_logger.filters):
            root_logger.addFilter(_QueryTraceLoggingFilter())

        if completion_client is None:
            completion_client = StructuredLMHandler(
                build_openai_client(self.valves.llm_base_url, self.valves.llm_api_key, self.valves.llm_timeout_s),
                model=self.valves.llm_model,
                temperature=self.valves.llm_temperature,
                max_tokens=self.valves.llm_max_tokens,
                max_retries=self.valves.llm_max_retries,
                backoff_initial_s=self.valves.llm_backoff_initial_s,
                backoff_max_s=self.valves.llm_backoff_max_s,
            )
        self.completion_client = completion_client
        self.evaluator = evaluator or PandasExpressionEvaluator(
            timeout_s=self.valves.evaluator_timeout_s, max_memory_mb=self.valves.evaluator_max_memory_mb
        )
        self.sandbox_manager = SandboxManager(
            max_rows=self.valves.sandbox_max_rows, max_columns=self.valves.sandbox_max_columns
        )
        self.analyzer = QueryIntentAnalyzer(self.completion_client)
        self.planner = StrategyPlanner(self.completion_client)
        self.validator = ResultValidator()
        self.engine = StrategyExecutionEngine(
            self.planner, self.evaluator, self.sandbox_manager, self.validator, self.engine_config()
        )
        if self.valves.debug:
            logging.info(
                "event=pipeline_config model=%s base_url=%s api_key_set=%s max_rows=%s query_timeout_s=%s",
                self.valves.llm_model,
                self.valves.llm_base_url,
                bool(self.valves.llm_api_key),
                self.valves.sandbox_max_rows,
                self.valves.query_timeout_s,
            )

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            max_retries=self.valves.engine_max_retries,
            confidence_step=self.valves.engine_confidence_step,
            min_confidence=self.valves.engine_min_confidence,
            early_stop_confidence=self.valves.engine_early_stop_confidence,
        )

    def _route_tracer(self, query_id: str, trace_id: str) -> Optional[RouteTracer]:
        if not self.valves.route_trace_enabled:
            return None
        return RouteTracer(
            query_id=query_id,
            trace_id=trace_id,
            sink_url=self.valves.route_trace_sink_url,
            sink_api_key=self.valves.route_trace_sink_api_key,
            max_payload_chars=self.valves.route_trace_max_payload_chars,
            persist_path=self.valves.route_trace_local_path,
            meta={"pipeline_id": self.valves.id, "model": self.valves.llm_model},
        )

    async def execute_natural_language_query(
        self,
        source: SourceLike,
        query: str,
        sheet: Optional[Union[str, int]] = None,
    ) -> Dict[str, Any]:
        query_id = uuid.uuid4().hex[:16]
        trace_id = uuid.uuid4().hex
        query_token = _QUERY_ID_CTX.set(query_id)
        trace_token = _TRACE_ID_CTX.set(trace_id)
        stats_token = start_llm_call_stats()
        tracer = self._route_tracer(query_id, trace_id)
        tracer_token = set_active_route_tracer(tracer)
        started = time.monotonic()
        try:
            try:
                result = await asyncio.wait_for(
                    self._execute(source, query, sheet), timeout=float(self.valves.query_timeout_s)
                )
            except asyncio.TimeoutError:
                logging.warning("event=query_timeout timeout_s=%s", self.valves.query_timeout_s)
                result = ExecutionResult(
                    query=str(query or ""),
                    error=f"query timed out after {self.valves.query_timeout_s:g}s",
                    error_type="timeout",
                )
            except asyncio.CancelledError:
                logging.info("event=query_cancelled")
                if tracer:
                    tracer.finalize(status="cancelled")
                raise
            except Exception as exc:
                logging.exception("event=query_failed error=%s", f"{type(exc).__name__}: {exc}")
                result = ExecutionResult(
                    query=str(query or ""),
                    error=f"{type(exc).__name__}: {exc}",
                    error_type="internal_error",
                )

            result.metadata["query_id"] = query_id
            result.metadata["trace_id"] = trace_id
            result.metadata["llm_usage"] = llm_usage_summary(llm_call_stats())
            result.metadata["elapsed_ms"] = round((time.monotonic() - started) * 1000.0, 3)
            logging.info(
                "event=query_done success=%s strategy=%s confidence=%.3f error_type=%s elapsed_ms=%s",
                result.success,
                result.strategy_name,
                result.confidence,
                result.error_type,
                result.metadata["elapsed_ms"],
            )
            if tracer:
                tracer.finalize(status="ok" if result.success else "error")
            return result.to_dict()
        finally:
            reset_active_route_tracer(tracer_token)
            reset_llm_call_stats(stats_token)
            _TRACE_ID_CTX.reset(trace_token)
            _QUERY_ID_CTX.reset(query_token)

    def run(self, source: SourceLike, query: str, sheet: Optional[Union[str, int]] = None) -> Dict[str, Any]:
        return asyncio.run(self.execute_natural_language_query(source, query, sheet=sheet))

    async def _execute(self, source: SourceLike, query: str, sheet: Optional[Union[str, int]]) -> ExecutionResult:
        text = str(query or "").strip()
        if not text:
            return ExecutionResult(query="", error="query is empty", error_type="invalid_request")
        tracer = current_route_tracer()

        try:
            snapshot = select_sheet(source, sheet)
        except (ValueError, TypeError) as exc:
            logging.warning("event=sheet_select_failed selector=%s error=%s", sheet, exc)
            if tracer:
                tracer.record_stage(
                    stage_key="sheet_select",
                    stage_name="Sheet Select",
                    status="error",
                    error={"type": type(exc).__name__, "message": str(exc)},
                )
            return ExecutionResult(query=text, error=str(exc), error_type="invalid_request")
        if tracer:
            tracer.record_stage(
                stage_key="sheet_select",
                stage_name="Sheet Select",
                input_payload={"selector": sheet},
                output_payload={"name": snapshot.name, "rows": snapshot.row_count, "columns": snapshot.headers},
            )

        intent = await self.analyzer.analyze(text, snapshot.headers, {c.name: c.type for c in snapshot.columns})
        if tracer:
            tracer.record_stage(
                stage_key="intent_analysis",
                stage_name="Intent Analysis",
                input_payload={"query": text},
                output_payload=intent.to_dict(),
            )

        try:
            with self.sandbox_manager.open(snapshot, intent) as (sandbox, context):
                sandbox_valid = self.sandbox_manager.validate_sandbox(sandbox, context)
                result = await self.engine.execute(sandbox, context, text, intent)
                result.metadata["intent"] = intent.to_dict()
                result.metadata["intent_fallback"] = intent.fallback
                result.metadata["sandbox"] = context.to_dict()
                result.metadata["sandbox_valid"] = sandbox_valid
                if tracer:
                    tracer.record_stage(
                        stage_key="result_validation",
                        stage_name="Result Validation",
                        status="ok" if result.success else "failed",
                        output_payload=result.to_dict(),
                    )
                return result
        except SandboxCreationError as exc:
            return ExecutionResult(query=text, error=str(exc), error_type="resource_error")
