from typing import Optional


class QueryEngineError(Exception):
    pass


class PlanningError(QueryEngineError, ValueError):
    """Structured output from the completion service could not be parsed or failed the schema."""


class CompletionError(QueryEngineError):
    """Completion transport failed after the retry budget was spent."""


class EvaluationError(QueryEngineError):
    def __init__(self, marker: str, message: str = "") -> None:
        self.marker = str(marker or "#ERROR!")
        self.message = str(message or "")
        super().__init__(f"{self.marker} {self.message}".strip())


class ResourceError(QueryEngineError):
    pass


class SandboxCreationError(ResourceError):
    def __init__(self, message: str, sandbox_name: Optional[str] = None) -> None:
        self.sandbox_name = sandbox_name
        super().__init__(message)
