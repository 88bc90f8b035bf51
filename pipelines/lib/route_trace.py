import contextvars
import json
import logging
import os
import re
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import requests

_SECRET_KEY_RE = re.compile(
    r"(api[_-]?key|authorization|auth|token|secret|password|passwd|bearer|cookie|session|private[_-]?key)",
    re.I,
)
_BEARER_RE = re.compile(r"\bBearer\s+[A-Za-z0-9._\-+/=]+", re.I)
_OPENAI_KEY_RE = re.compile(r"\bsk-[A-Za-z0-9\-]{12,}\b")
_LONG_TOKEN_RE = re.compile(r"\b[A-Za-z0-9_\-]{32,}\b")

_ACTIVE_ROUTE_TRACER: contextvars.ContextVar[Optional["RouteTracer"]] = contextvars.ContextVar(
    "active_route_tracer", default=None
)


def set_active_route_tracer(tracer: Optional["RouteTracer"]) -> contextvars.Token:
    return _ACTIVE_ROUTE_TRACER.set(tracer)


def reset_active_route_tracer(token: contextvars.Token) -> None:
    _ACTIVE_ROUTE_TRACER.reset(token)


def current_route_tracer() -> Optional["RouteTracer"]:
    return _ACTIVE_ROUTE_TRACER.get()


def _safe_json_dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str, separators=(",", ":"))
    except (TypeError, ValueError):
        return str(value)


def _safe_preview(text: Any, limit: int) -> str:
    s = str(text or "")
    if len(s) <= limit:
        return s
    return s[:limit] + "...(truncated)"


def _redact_string(text: str) -> str:
    s = str(text or "")
    if not s:
        return s
    s = _BEARER_RE.sub("Bearer [REDACTED]", s)
    s = _OPENAI_KEY_RE.sub("sk-[REDACTED]", s)
    # Long digit-bearing tokens only; plain long words stay readable.
    return _LONG_TOKEN_RE.sub(lambda m: "[REDACTED_TOKEN]" if any(c.isdigit() for c in m.group(0)) else m.group(0), s)


def redact_payload(value: Any, max_depth: int = 6) -> Any:
    if max_depth <= 0:
        return "[MAX_DEPTH]"
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            out[key] = "[REDACTED]" if _SECRET_KEY_RE.search(key) else redact_payload(v, max_depth - 1)
        return out
    if isinstance(value, (list, tuple)):
        return [redact_payload(v, max_depth - 1) for v in value]
    if isinstance(value, bytes):
        return f"[bytes:{len(value)}]"
    if isinstance(value, str):
        return _redact_string(value)
    return value


def summarize_payload(payload: Any, max_preview_chars: int = 400) -> Dict[str, Any]:
    value = redact_payload(payload)
    if value is None:
        return {"kind": "none"}
    raw = value if isinstance(value, str) else _safe_json_dumps(value)
    summary: Dict[str, Any] = {
        "kind": type(value).__name__,
        "size_bytes": len(raw.encode("utf-8", errors="ignore")),
        "preview": _safe_preview(raw, max_preview_chars),
    }
    if isinstance(value, dict):
        summary["kind"] = "json_object"
        summary["keys"] = [str(k) for k in list(value.keys())[:50]]
    elif isinstance(value, list):
        summary["kind"] = "json_array"
        summary["items"] = len(value)
    elif isinstance(value, str):
        summary["kind"] = "text"
        summary["chars"] = len(value)
    return summary


@dataclass
class StageEvent:
    stage_id: str
    stage_index: int
    stage_key: str
    stage_name: str
    purpose: str
    started_at_ts: float
    ended_at_ts: Optional[float] = None
    duration_ms: Optional[float] = None
    status: str = "in_progress"
    input_summary: Dict[str, Any] = field(default_factory=dict)
    output_summary: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = field(default_factory=dict)


class RouteTracer:
    """
    Records the stages a single query passes through (intent analysis, sandbox,
    each strategy attempt, validation, cleanup). Snapshots can be pushed to an
    HTTP sink and the final trace appended to a JSONL file.
    """

    def __init__(
        self,
        *,
        query_id: str = "",
        trace_id: str = "",
        sink_url: str = "",
        sink_api_key: str = "",
        sink_timeout_s: float = 0.8,
        max_payload_chars: int = 4000,
        persist_path: str = "",
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.query_id = str(query_id or "").strip() or uuid.uuid4().hex
        self.trace_id = str(trace_id or "").strip() or uuid.uuid4().hex
        self.sink_url = str(sink_url or "").strip()
        self.sink_api_key = str(sink_api_key or "").strip()
        self.sink_timeout_s = max(0.2, float(sink_timeout_s))
        self.max_payload_chars = max(256, int(max_payload_chars or 4000))
        self.persist_path = str(persist_path or "").strip()
        self.meta = dict(meta or {})

        self._lock = threading.Lock()
        self._started_at_ts = time.time()
        self._ended_at_ts: Optional[float] = None
        self._status = "in_progress"
        self._next_stage_index = 1
        self._open: Dict[str, float] = {}
        self._stages: List[StageEvent] = []

    def start_stage(
        self,
        *,
        stage_key: str,
        stage_name: str,
        purpose: str = "",
        input_payload: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        with self._lock:
            stage_index = self._next_stage_index
            self._next_stage_index += 1
            stage_id = f"{stage_index}:{stage_key}"
            self._stages.append(
                StageEvent(
                    stage_id=stage_id,
                    stage_index=stage_index,
                    stage_key=str(stage_key),
                    stage_name=str(stage_name),
                    purpose=str(purpose),
                    started_at_ts=time.time(),
                    input_summary=summarize_payload(input_payload, max_preview_chars=self.max_payload_chars),
                    details=redact_payload(details or {}),
                )
            )
            self._open[stage_id] = time.monotonic()
            return stage_id

    def end_stage(
        self,
        stage_id: str,
        *,
        status: str = "ok",
        output_payload: Any = None,
        error: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            event = next((it for it in self._stages if it.stage_id == stage_id), None)
            if event is None:
                return
            start = self._open.pop(stage_id, None)
            event.ended_at_ts = time.time()
            if start is not None:
                event.duration_ms = round((time.monotonic() - start) * 1000.0, 3)
            event.status = status
            event.output_summary = summarize_payload(output_payload, max_preview_chars=self.max_payload_chars)
            if error:
                event.error = redact_payload(error)
            if details:
                merged = dict(event.details or {})
                merged.update(redact_payload(details))
                event.details = merged

    def record_stage(
        self,
        *,
        stage_key: str,
        stage_name: str,
        purpose: str = "",
        input_payload: Any = None,
        output_payload: Any = None,
        status: str = "ok",
        details: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        sid = self.start_stage(
            stage_key=stage_key,
            stage_name=stage_name,
            purpose=purpose,
            input_payload=input_payload,
            details=details,
        )
        self.end_stage(sid, status=status, output_payload=output_payload, error=error)

    @property
    def stage_keys(self) -> List[str]:
        with self._lock:
            return [st.stage_key for st in self._stages]

    def to_dict(self, final: bool = False) -> Dict[str, Any]:
        with self._lock:
            ended = self._ended_at_ts or time.time()
            return {
                "trace_id": self.trace_id,
                "query_id": self.query_id,
                "status": self._status,
                "started_at_ts": self._started_at_ts,
                "ended_at_ts": self._ended_at_ts,
                "total_latency_ms": round((ended - self._started_at_ts) * 1000.0, 3),
                "meta": redact_payload(self.meta),
                "stages": [asdict(st) for st in self._stages],
                "final": bool(final),
            }

    def publish_snapshot(self, final: bool = False) -> None:
        payload = self.to_dict(final=final)
        if self.sink_url:
            headers: Dict[str, str] = {"Content-Type": "application/json"}
            if self.sink_api_key:
                headers["Authorization"] = f"Bearer {self.sink_api_key}"
            try:
                requests.post(self.sink_url, headers=headers, json=payload, timeout=self.sink_timeout_s)
            except requests.RequestException as exc:
                logging.warning("event=route_trace_sink_failed trace_id=%s error=%s", self.trace_id, exc)

        if final and self.persist_path:
            try:
                os.makedirs(os.path.dirname(self.persist_path) or ".", exist_ok=True)
                with open(self.persist_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(payload, ensure_ascii=False, default=str))
                    f.write("\n")
            except OSError as exc:
                logging.warning("event=route_trace_persist_failed path=%s error=%s", self.persist_path, exc)

    def finalize(self, status: str = "ok", background: bool = True) -> None:
        with self._lock:
            self._status = status
            self._ended_at_ts = time.time()
        if not (self.sink_url or self.persist_path):
            return
        if not background:
            self.publish_snapshot(final=True)
            return
        # Do not block query completion on sink latency.
        threading.Thread(target=self.publish_snapshot, kwargs={"final": True}, daemon=True).start()
