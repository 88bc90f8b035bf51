from __future__ import annotations

import contextvars
import logging
import re
import time
from typing import Any, Dict, List, Optional, Tuple, Type

import openai
from openai import AsyncOpenAI
from tenacity import RetryError, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from pipelines.lib.errors import CompletionError, PlanningError
from pipelines.lib.llm_json import _safe_json_dumps, _safe_trunc, parse_json_dict_from_llm
from pipelines.lib.pipeline_prompts import JSON_ONLY_GUARD
from pipelines.lib.route_trace import current_route_tracer


TRANSIENT_COMPLETION_ERRORS: Tuple[Type[BaseException], ...] = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)
_RESPONSE_FORMAT_MODES = ("json_schema", "json_object", "none")
_UNSUPPORTED_FORMAT_TOKENS = ("response_format", "json_schema", "json_object", "unsupported")

_LLM_CALL_STATS_CTX: contextvars.ContextVar[Optional[List[Dict[str, Any]]]] = contextvars.ContextVar(
    "llm_call_stats", default=None
)


def start_llm_call_stats() -> contextvars.Token:
    return _LLM_CALL_STATS_CTX.set([])


def reset_llm_call_stats(token: contextvars.Token) -> None:
    _LLM_CALL_STATS_CTX.reset(token)


def llm_call_stats() -> List[Dict[str, Any]]:
    return list(_LLM_CALL_STATS_CTX.get() or [])


def _record_llm_call_stat(item: Dict[str, Any]) -> None:
    stats = _LLM_CALL_STATS_CTX.get()
    if stats is not None:
        stats.append(item)


def llm_usage_summary(calls: List[Dict[str, Any]]) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"calls": len(calls), "failed_calls": 0, "total_tokens": 0, "latency_ms": 0.0}
    for call in calls:
        if call.get("status") != "ok":
            summary["failed_calls"] += 1
        summary["total_tokens"] += int(call.get("total_tokens") or 0)
        summary["latency_ms"] = round(summary["latency_ms"] + float(call.get("latency_ms") or 0.0), 3)
    return summary


def _safe_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _extract_llm_usage(resp: Any) -> Dict[str, Optional[int]]:
    usage = resp.get("usage") if isinstance(resp, dict) else getattr(resp, "usage", None)
    if usage is None:
        return {"prompt_tokens": None, "completion_tokens": None, "total_tokens": None}
    if isinstance(usage, dict):
        getter = usage.get
    else:
        def getter(key: str) -> Any:
            return getattr(usage, key, None)
    return {
        "prompt_tokens": _safe_int(getter("prompt_tokens")),
        "completion_tokens": _safe_int(getter("completion_tokens")),
        "total_tokens": _safe_int(getter("total_tokens")),
    }


def _response_text(resp: Any) -> str:
    choices = getattr(resp, "choices", None) or []
    if not choices:
        raise PlanningError("LLM response has no choices")
    return str(choices[0].message.content or "").strip()


def build_openai_client(base_url: str, api_key: str, timeout_s: float) -> AsyncOpenAI:
    # Transport retries are handled by StructuredLMHandler.
    return AsyncOpenAI(base_url=base_url or None, api_key=api_key or "not-set", timeout=float(timeout_s), max_retries=0)


class TextCompletionClient:
    async def complete(
        self,
        messages: List[Dict[str, str]],
        response_schema: Dict[str, Any],
        schema_name: str = "response",
    ) -> Dict[str, Any]:
        raise NotImplementedError


class StructuredLMHandler(TextCompletionClient):
    """
    Schema-constrained chat completions over an OpenAI-compatible async client.

    Transient transport failures are retried with exponential backoff
    (1s, 2s, 4s with the defaults). When the backend rejects json_schema output
    the handler falls back to json_object and then to plain text, remembering
    the mode that worked.
    """

    def __init__(
        self,
        openai_client: Any,
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 700,
        max_retries: int = 3,
        backoff_initial_s: float = 1.0,
        backoff_max_s: float = 4.0,
        parse_retries: int = 1,
        retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_COMPLETION_ERRORS,
    ) -> None:
        self._client = openai_client
        self.model = str(model)
        self.temperature = float(temperature)
        self.max_tokens = max(64, int(max_tokens))
        self.max_retries = max(0, int(max_retries))
        self.backoff_initial_s = max(0.0, float(backoff_initial_s))
        self.backoff_max_s = max(self.backoff_initial_s, float(backoff_max_s))
        self.parse_retries = max(0, int(parse_retries))
        self.retry_on = tuple(retry_on)
        self.response_format_mode = _RESPONSE_FORMAT_MODES[0]

    def _guarded_messages(
        self,
        messages: List[Dict[str, str]],
        response_schema: Dict[str, Any],
        extra_guard: str = "",
    ) -> List[Dict[str, str]]:
        guard = f"{JSON_ONLY_GUARD}\n\nResponse JSON schema:\n{_safe_json_dumps(response_schema)}"
        if extra_guard:
            guard = f"{extra_guard}\n\n{guard}"
        out: List[Dict[str, str]] = [dict(m) for m in messages or []]
        if out and out[0].get("role") == "system":
            out[0]["content"] = f"{guard}\n\n{out[0].get('content') or ''}".strip()
        else:
            out.insert(0, {"role": "system", "content": guard})
        return out

    def _request_kwargs(
        self,
        messages: List[Dict[str, str]],
        response_schema: Dict[str, Any],
        schema_name: str,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if self.response_format_mode == "json_schema":
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": schema_name, "schema": response_schema, "strict": True},
            }
        elif self.response_format_mode == "json_object":
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    def _log_retry(self, retry_state: Any) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        sleep_s = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logging.warning(
            "event=llm_transport_retry attempt=%s max_attempts=%s sleep_s=%.1f error=%s",
            retry_state.attempt_number,
            self.max_retries + 1,
            sleep_s,
            f"{type(exc).__name__}: {exc}" if exc else "",
        )

    async def _create_with_backoff(self, kwargs: Dict[str, Any]) -> Any:
        @retry(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.backoff_initial_s,
                min=self.backoff_initial_s,
                max=self.backoff_max_s,
            ),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=self._log_retry,
        )
        async def _do_create() -> Any:
            return await self._client.chat.completions.create(**kwargs)

        try:
            return await _do_create()
        except RetryError as exc:
            last = exc.last_attempt.exception()
            raise CompletionError(
                f"completion failed after {self.max_retries + 1} attempts: {type(last).__name__}: {last}"
            ) from last

    async def _create(self, messages: List[Dict[str, str]], response_schema: Dict[str, Any], schema_name: str) -> Any:
        while True:
            kwargs = self._request_kwargs(messages, response_schema, schema_name)
            try:
                return await self._create_with_backoff(kwargs)
            except CompletionError:
                raise
            except Exception as exc:
                err = str(exc).lower()
                mode_index = _RESPONSE_FORMAT_MODES.index(self.response_format_mode)
                if "response_format" not in kwargs or not any(t in err for t in _UNSUPPORTED_FORMAT_TOKENS):
                    raise
                next_mode = _RESPONSE_FORMAT_MODES[mode_index + 1]
                logging.info(
                    "event=llm_response_format_fallback from=%s to=%s model=%s",
                    self.response_format_mode,
                    next_mode,
                    self.model,
                )
                self.response_format_mode = next_mode

    async def complete(
        self,
        messages: List[Dict[str, str]],
        response_schema: Dict[str, Any],
        schema_name: str = "response",
    ) -> Dict[str, Any]:
        tracer = current_route_tracer()
        stage_id = ""
        if tracer:
            stage_id = tracer.start_stage(
                stage_key="llm_call",
                stage_name="LLM Structured Call",
                purpose=f"Request a {schema_name} object from the completion model.",
                input_payload={"model": self.model, "schema": schema_name, "messages": len(messages or [])},
            )
        started = time.monotonic()
        guarded = self._guarded_messages(messages, response_schema)
        raw_text = ""
        resp: Any = None
        try:
            for attempt in range(self.parse_retries + 1):
                resp = await self._create(guarded, response_schema, schema_name)
                raw_text = _response_text(resp)
                try:
                    parsed = parse_json_dict_from_llm(raw_text)
                    break
                except PlanningError as parse_exc:
                    if attempt >= self.parse_retries:
                        raise
                    logging.warning(
                        "event=llm_json_parse_retry schema=%s error=%s raw_preview=%s",
                        schema_name,
                        parse_exc,
                        _safe_trunc(raw_text, 800),
                    )
                    guarded = self._guarded_messages(
                        messages,
                        response_schema,
                        extra_guard="STRICT JSON RETRY MODE. Output exactly one minified JSON object.",
                    )
        except (CompletionError, PlanningError) as exc:
            latency_ms = round((time.monotonic() - started) * 1000.0, 3)
            _record_llm_call_stat(
                {"status": "error", "schema": schema_name, "model": self.model, "latency_ms": latency_ms,
                 "error": f"{type(exc).__name__}: {exc}"}
            )
            logging.warning(
                "event=llm_call_failed schema=%s error=%s raw_preview=%s",
                schema_name,
                f"{type(exc).__name__}: {exc}",
                _safe_trunc(raw_text, 800),
            )
            if tracer and stage_id:
                tracer.end_stage(stage_id, status="error", error={"type": type(exc).__name__, "message": str(exc)})
            raise

        latency_ms = round((time.monotonic() - started) * 1000.0, 3)
        usage = _extract_llm_usage(resp)
        _record_llm_call_stat(
            {
                "status": "ok",
                "schema": schema_name,
                "model": self.model,
                "latency_ms": latency_ms,
                "prompt_tokens": usage.get("prompt_tokens"),
                "completion_tokens": usage.get("completion_tokens"),
                "total_tokens": usage.get("total_tokens"),
                "prompt_tokens_estimate": len(re.findall(r"\S+", _safe_json_dumps(guarded))),
            }
        )
        logging.info("event=llm_call_ok schema=%s latency_ms=%s preview=%s", schema_name, latency_ms, _safe_trunc(parsed, 600))
        if tracer and stage_id:
            tracer.end_stage(stage_id, status="ok", output_payload=parsed, details={"usage": usage, "latency_ms": latency_ms})
        return parsed
