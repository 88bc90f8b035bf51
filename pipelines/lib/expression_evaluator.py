from __future__ import annotations

import ast
import asyncio
import logging
import math
import multiprocessing
import resource
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from pipelines.lib.aggregations import aggregate, percentile
from pipelines.lib.errors import EvaluationError
from pipelines.lib.llm_json import _safe_trunc
from pipelines.lib.tabular import display_row, match_rows

if TYPE_CHECKING:
    from pipelines.lib.sandbox_manager import Sandbox


DIV_ZERO = "#DIV/0!"
REF_ERROR = "#REF!"
NAME_ERROR = "#NAME?"
VALUE_ERROR = "#VALUE!"
NOT_AVAILABLE = "#N/A"
SPILL_ERROR = "#SPILL!"
BLOCKED_ERROR = "#BLOCKED!"
SYNTAX_ERROR = "#SYNTAX!"
TIMEOUT_ERROR = "#TIMEOUT!"
GENERIC_ERROR = "#ERROR!"

ERROR_MARKERS = (
    DIV_ZERO,
    REF_ERROR,
    NAME_ERROR,
    VALUE_ERROR,
    NOT_AVAILABLE,
    SPILL_ERROR,
    BLOCKED_ERROR,
    SYNTAX_ERROR,
    TIMEOUT_ERROR,
    GENERIC_ERROR,
)

DEFAULT_TARGET_LOCATION = "Z1"
RESULT_VARIABLE = "result"
ROW_PLACEHOLDER = "row"

_FORBIDDEN_NODES = (
    ast.Import,
    ast.ImportFrom,
    ast.Global,
    ast.Nonlocal,
    ast.With,
    ast.AsyncWith,
    ast.Try,
    ast.Raise,
    ast.Lambda,
    ast.FunctionDef,
    ast.AsyncFunctionDef,
    ast.ClassDef,
    ast.Delete,
    ast.While,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
)
_FORBIDDEN_CALLS = {
    "eval",
    "exec",
    "compile",
    "open",
    "input",
    "__import__",
    "globals",
    "locals",
    "vars",
    "dir",
    "getattr",
    "setattr",
    "delattr",
    "help",
    "breakpoint",
}
_SAFE_PD_TO = {"to_numeric", "to_datetime", "to_timedelta"}
_SAFE_BUILTINS: Dict[str, Any] = {
    "len": len,
    "sum": sum,
    "min": min,
    "max": max,
    "sorted": sorted,
    "range": range,
    "enumerate": enumerate,
    "abs": abs,
    "round": round,
    "list": list,
    "dict": dict,
    "set": set,
    "tuple": tuple,
    "float": float,
    "int": int,
    "str": str,
    "bool": bool,
    "zip": zip,
    "any": any,
    "all": all,
    # pandas/numpy perform lazy imports internally; user code cannot reach it through the guard.
    "__import__": __import__,
}


class GuardViolation(ValueError):
    pass


def error_marker_of(text: Any) -> Optional[str]:
    s = str(text or "").strip()
    for marker in ERROR_MARKERS:
        if s.startswith(marker):
            return marker
    return None


def ast_guard(code: str) -> ast.Module:
    tree = ast.parse(code)
    for node in ast.walk(tree):
        if isinstance(node, _FORBIDDEN_NODES):
            raise GuardViolation(f"forbidden_node:{type(node).__name__}")
        if isinstance(node, ast.Attribute) and node.attr.startswith("__"):
            raise GuardViolation("forbidden_dunder_attr")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise GuardViolation("forbidden_dunder_name")
        if isinstance(node, ast.Call):
            if isinstance(node.func, ast.Name) and node.func.id in _FORBIDDEN_CALLS:
                raise GuardViolation(f"forbidden_call:{node.func.id}")
            if isinstance(node.func, ast.Attribute) and isinstance(node.func.value, ast.Name):
                owner, attr = node.func.value.id, node.func.attr
                if owner == "pd" and (attr.startswith("read_") or (attr.startswith("to_") and attr not in _SAFE_PD_TO)):
                    raise GuardViolation("forbidden_pandas_io")
                if owner == "df" and attr.startswith("to_"):
                    raise GuardViolation("forbidden_dataframe_io")
    return tree


def references_name(expression: str, name: str) -> bool:
    try:
        tree = ast.parse(normalize_expression(expression))
    except SyntaxError:
        return False
    return any(isinstance(node, ast.Name) and node.id == name for node in ast.walk(tree))


def normalize_expression(expression: str) -> str:
    s = str(expression or "").strip()
    if s.startswith("```"):
        s = s.strip("`")
        if s.lower().startswith("python"):
            s = s[len("python") :]
        s = s.strip()
    if s.startswith("="):
        s = s[1:].lstrip()
    return s


def marker_for_exception(exc: BaseException) -> str:
    if isinstance(exc, _NonScalarResult):
        return SPILL_ERROR
    if isinstance(exc, ZeroDivisionError):
        return DIV_ZERO
    if isinstance(exc, (KeyError, IndexError)):
        return REF_ERROR
    if isinstance(exc, (NameError, AttributeError)):
        return NAME_ERROR
    if isinstance(exc, GuardViolation):
        return BLOCKED_ERROR
    if isinstance(exc, SyntaxError):
        return SYNTAX_ERROR
    if isinstance(exc, (TypeError, ValueError, ArithmeticError)):
        return VALUE_ERROR
    return GENERIC_ERROR


class _NonScalarResult(Exception):
    pass


def _process_context() -> "multiprocessing.context.BaseContext":
    try:
        return multiprocessing.get_context("fork")
    except ValueError:
        return multiprocessing.get_context("spawn")


def _apply_child_limits(cpu_time_s: int, max_memory_mb: int) -> None:
    if max_memory_mb > 0:
        mem_bytes = max_memory_mb * 1024 * 1024
        try:
            resource.setrlimit(resource.RLIMIT_AS, (mem_bytes, mem_bytes))
        except (ValueError, OSError):
            pass
    if cpu_time_s > 0:
        try:
            resource.setrlimit(resource.RLIMIT_CPU, (cpu_time_s, cpu_time_s))
        except (ValueError, OSError):
            pass


class _RowEvaluationError(Exception):
    def __init__(self, row: int, cause: BaseException) -> None:
        self.row = row
        self.cause = cause
        super().__init__(f"row {row}: {cause}")


def to_scalar(value: Any) -> Any:
    """Reduce an evaluation result to a plain Python scalar; raises _NonScalarResult for multi-value results."""
    if isinstance(value, pd.DataFrame):
        if value.shape == (1, 1):
            return to_scalar(value.iat[0, 0])
        raise _NonScalarResult(f"DataFrame with shape {value.shape}")
    if isinstance(value, (pd.Series, pd.Index, np.ndarray, list, tuple)):
        items = list(value.tolist() if hasattr(value, "tolist") else value)
        if len(items) == 1:
            return to_scalar(items[0])
        raise _NonScalarResult(f"{type(value).__name__} with {len(items)} values")
    if isinstance(value, dict):
        raise _NonScalarResult("dict result")
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.isoformat()
    if value is not None and not isinstance(value, (str, bool, int, float)):
        try:
            if pd.isna(value):
                return None
        except (TypeError, ValueError):
            pass
        return str(value)
    return value


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        return f"{value:.10g}"
    return str(value)


@dataclass
class EvaluationOutcome:
    value: Any = None
    formatted_text: str = ""
    error: str = ""
    error_type: str = ""
    target_location: str = DEFAULT_TARGET_LOCATION
    execution_time_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.error


class ExpressionEvaluator:
    async def evaluate(
        self,
        sandbox: "Sandbox",
        expression: str,
        target_location: str = DEFAULT_TARGET_LOCATION,
        bindings: Optional[Dict[str, Any]] = None,
    ) -> EvaluationOutcome:
        raise NotImplementedError

    async def evaluate_column(self, sandbox: "Sandbox", expression: str, per_row: bool) -> Any:
        raise NotImplementedError


class PandasExpressionEvaluator(ExpressionEvaluator):
    """
    Evaluates guarded pandas expressions against a sandbox frame.

    Each async evaluation runs in a child process that gets its own copy of the
    frame, so a formula that mutates `df` in place never touches the sandbox.
    The child is terminated on timeout and can be held to CPU and address-space
    rlimits.

    Errors never raise; they come back as outcomes whose formatted_text starts
    with a spreadsheet-style marker (#DIV/0!, #REF!, #NAME?, #VALUE!, #N/A,
    #SPILL!, #BLOCKED!, #SYNTAX!, #TIMEOUT!, #ERROR!).
    """

    def __init__(self, timeout_s: float = 30.0, max_error_chars: int = 400, max_memory_mb: int = 0) -> None:
        self.timeout_s = max(0.1, float(timeout_s))
        self.max_error_chars = max(64, int(max_error_chars))
        self.max_memory_mb = max(0, int(max_memory_mb))
        self.cpu_time_s = max(1, math.ceil(self.timeout_s))

    def _environment(self, frame: pd.DataFrame, bindings: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        env: Dict[str, Any] = {
            "df": frame,
            "pd": pd,
            "np": np,
            "match_rows": match_rows,
            "aggregate": aggregate,
            "percentile": percentile,
            "__builtins__": _SAFE_BUILTINS,
        }
        env.update(bindings or {})
        return env

    def _compile(self, expression: str) -> Tuple[str, Any]:
        code = normalize_expression(expression)
        if not code:
            raise SyntaxError("empty expression")
        tree = ast_guard(code)
        if len(tree.body) == 1 and isinstance(tree.body[0], ast.Expr):
            return "eval", compile(ast.Expression(tree.body[0].value), "<formula>", "eval")
        return "exec", compile(tree, "<formula>", "exec")

    def _run(self, compiled: Tuple[str, Any], env: Dict[str, Any]) -> Any:
        mode, code_obj = compiled
        if mode == "eval":
            return eval(code_obj, env, env)
        exec(code_obj, env, env)
        if RESULT_VARIABLE not in env:
            raise NameError(f"name '{RESULT_VARIABLE}' is not defined")
        return env[RESULT_VARIABLE]

    def evaluate_sync(
        self,
        frame: pd.DataFrame,
        expression: str,
        bindings: Optional[Dict[str, Any]] = None,
        scalar: bool = True,
    ) -> Any:
        """Run an expression in the calling process and return its value; raises on failure."""
        value = self._run(self._compile(expression), self._environment(frame, bindings))
        return to_scalar(value) if scalar else value

    def evaluate_rows_sync(self, frame: pd.DataFrame, expression: str, placeholder: str = ROW_PLACEHOLDER) -> List[Any]:
        compiled = self._compile(expression)
        values: List[Any] = []
        for row in range(int(frame.shape[0])):
            try:
                values.append(to_scalar(self._run(compiled, self._environment(frame, {placeholder: row}))))
            except Exception as exc:
                raise _RowEvaluationError(row, exc) from exc
        return values

    def _outcome(self, frame: pd.DataFrame, expression: str, target: str, bindings: Optional[Dict[str, Any]]) -> EvaluationOutcome:
        started = time.perf_counter()
        outcome = EvaluationOutcome(target_location=target)
        try:
            value = self.evaluate_sync(frame, expression, bindings=bindings)
        except _NonScalarResult as exc:
            outcome.error = f"{SPILL_ERROR} expected a single value, got {exc}"
            outcome.error_type = "spill"
        except Exception as exc:
            marker = marker_for_exception(exc)
            outcome.error = f"{marker} {type(exc).__name__}: {_safe_trunc(exc, self.max_error_chars)}"
            outcome.error_type = type(exc).__name__
        else:
            if value is None or (isinstance(value, str) and not value.strip()):
                outcome.error = f"{NOT_AVAILABLE} expression produced no value"
                outcome.error_type = "not_available"
            else:
                outcome.value = value
                outcome.formatted_text = format_value(value)
        if outcome.error:
            outcome.formatted_text = outcome.error
        outcome.execution_time_ms = round((time.perf_counter() - started) * 1000.0, 3)
        return outcome

    def _child_main(
        self,
        conn: Any,
        task: str,
        frame: pd.DataFrame,
        expression: str,
        target: str,
        bindings: Optional[Dict[str, Any]],
    ) -> None:
        _apply_child_limits(self.cpu_time_s, self.max_memory_mb)
        try:
            if task == "outcome":
                reply: Tuple[Any, ...] = ("ok", self._outcome(frame, expression, target, bindings))
            elif task == "rows":
                reply = ("ok", self.evaluate_rows_sync(frame, expression))
            else:
                reply = ("ok", self.evaluate_sync(frame, expression, None, False))
        except _RowEvaluationError as exc:
            reply = (
                "err",
                marker_for_exception(exc.cause),
                f"row {display_row(exc.row)}: {type(exc.cause).__name__}: {_safe_trunc(exc.cause, self.max_error_chars)}",
            )
        except Exception as exc:
            reply = ("err", marker_for_exception(exc), f"{type(exc).__name__}: {_safe_trunc(exc, self.max_error_chars)}")
        try:
            conn.send(reply)
        except Exception as exc:
            conn.send(("err", GENERIC_ERROR, f"unsendable result: {type(exc).__name__}: {_safe_trunc(exc, 200)}"))
        finally:
            conn.close()

    def _run_isolated(
        self,
        task: str,
        frame: pd.DataFrame,
        expression: str,
        target: str = DEFAULT_TARGET_LOCATION,
        bindings: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Any, ...]:
        """Blocks for at most timeout_s plus the join grace; returns ("ok", value), ("err", marker, message) or ("timeout",)."""
        ctx = _process_context()
        recv_conn, send_conn = ctx.Pipe(duplex=False)
        proc = ctx.Process(
            target=self._child_main, args=(send_conn, task, frame, expression, target, bindings), daemon=True
        )
        proc.start()
        send_conn.close()
        timed_out = False
        try:
            if not recv_conn.poll(self.timeout_s):
                timed_out = True
                return ("timeout",)
            try:
                return recv_conn.recv()
            except EOFError:
                proc.join(1.0)
                return ("err", GENERIC_ERROR, f"evaluation process exited with code {proc.exitcode}")
        finally:
            recv_conn.close()
            if not timed_out:
                proc.join(1.0)
            if proc.is_alive():
                proc.terminate()
                proc.join(1.0)
            if timed_out:
                logging.warning("event=evaluation_process_terminated timeout_s=%s", self.timeout_s)

    async def evaluate(
        self,
        sandbox: "Sandbox",
        expression: str,
        target_location: str = DEFAULT_TARGET_LOCATION,
        bindings: Optional[Dict[str, Any]] = None,
    ) -> EvaluationOutcome:
        reply = await asyncio.to_thread(
            self._run_isolated, "outcome", sandbox.frame, expression, target_location, bindings
        )
        if reply[0] == "ok":
            outcome = reply[1]
        else:
            if reply[0] == "timeout":
                outcome = EvaluationOutcome(
                    error=f"{TIMEOUT_ERROR} evaluation exceeded {self.timeout_s:g}s", error_type="timeout"
                )
            else:
                outcome = EvaluationOutcome(error=f"{reply[1]} {reply[2]}", error_type="process_error")
            outcome.target_location = target_location
            outcome.formatted_text = outcome.error
        if outcome.ok:
            sandbox.results[target_location] = outcome.value
        logging.info(
            "event=expression_evaluated sandbox=%s target=%s ok=%s text=%s elapsed_ms=%s",
            sandbox.name,
            target_location,
            outcome.ok,
            _safe_trunc(outcome.formatted_text, 200),
            outcome.execution_time_ms,
        )
        return outcome

    async def evaluate_column(self, sandbox: "Sandbox", expression: str, per_row: bool) -> Any:
        task = "rows" if per_row else "column"
        reply = await asyncio.to_thread(self._run_isolated, task, sandbox.frame, expression)
        if reply[0] == "timeout":
            raise EvaluationError(TIMEOUT_ERROR, f"evaluation exceeded {self.timeout_s:g}s")
        if reply[0] == "err":
            raise EvaluationError(reply[1], reply[2])
        return reply[1]
