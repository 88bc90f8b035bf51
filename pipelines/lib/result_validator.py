from __future__ import annotations

import dataclasses
import logging
import math
from typing import Any, Optional

from pipelines.lib.query_models import ExecutionResult, QueryIntent
from pipelines.lib.query_signals import is_percentage_query
from pipelines.lib.sandbox_manager import SandboxContext


PREFILTERED_PERCENTAGE_ERROR = "Incorrect percentage calculation due to pre-filtered data"
INVALID_NUMERIC_ERROR = "Invalid numeric result (NaN or Infinity)"


def _numeric(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class ResultValidator:
    """
    Domain sanity checks on a successful result. validate() never mutates its
    input and is idempotent: validating an already validated result changes nothing.
    """

    def __init__(self, percentage_tolerance: float = 1e-3, suspicious_cap: float = 0.5) -> None:
        self.percentage_tolerance = float(percentage_tolerance)
        self.suspicious_cap = float(suspicious_cap)

    def _reject(self, result: ExecutionResult, error: str) -> ExecutionResult:
        logging.warning(
            "event=result_rejected strategy=%s value=%s error=%s", result.strategy_name, result.value, error
        )
        return dataclasses.replace(
            result,
            success=False,
            confidence=0.0,
            error=error,
            error_type="validation",
            metadata=dict(result.metadata),
        )

    def validate(
        self,
        result: ExecutionResult,
        context: SandboxContext,
        intent: QueryIntent,
        query: str,
    ) -> ExecutionResult:
        if not result.success:
            return dataclasses.replace(result, metadata=dict(result.metadata))

        value = _numeric(result.value)
        if value is not None and is_percentage_query(query):
            if value < 0.0 or value > 100.0:
                return self._reject(result, f"Invalid percentage value: {value}")
            if abs(value - 100.0) <= self.percentage_tolerance and intent.filters:
                if not context.full_dataset_preserved:
                    return self._reject(result, PREFILTERED_PERCENTAGE_ERROR)
                metadata = dict(result.metadata)
                metadata["validation_warning"] = "Percentage of 100% with filters applied; verify the criteria"
                logging.info("event=result_confidence_capped strategy=%s cap=%s", result.strategy_name, self.suspicious_cap)
                return dataclasses.replace(
                    result, confidence=min(result.confidence, self.suspicious_cap), metadata=metadata
                )

        if value is not None and not math.isfinite(value):
            return self._reject(result, INVALID_NUMERIC_ERROR)

        return dataclasses.replace(result, metadata=dict(result.metadata))
