"""
Error taxonomy for the ingestion pipeline.

Per-connector failures (``ConnectorFetchError``, ``CircuitOpenError``) are
recovered by the orchestrator; only ``AggregateError`` (every connector
failed) aborts a run. Malformed records are not errors at all: connectors
drop them and carry on.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

E = TypeVar("E", bound=BaseException)


class IngestionError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(timezone.utc)
        self.id = uuid.uuid4().hex

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }


class ConfigurationError(IngestionError):
    def __init__(self, message: str, *, path: Optional[str] = None):
        super().__init__(f"Configuration error: {message}", {"path": path})
        self.path = path


class HttpRequestError(IngestionError):
    """Non-2xx response from a source."""

    def __init__(
        self,
        url: str,
        status_code: int,
        *,
        method: str = "GET",
        reason: str = "",
        retry_after_s: Optional[float] = None,
        body_preview: Optional[str] = None,
    ):
        super().__init__(
            f"HTTP {method} {url} failed with {status_code} {reason}".rstrip(),
            {
                "url": url,
                "status_code": status_code,
                "method": method,
                "retry_after_s": retry_after_s,
            },
        )
        self.url = url
        self.status_code = status_code
        self.method = method
        self.reason = reason
        self.retry_after_s = retry_after_s
        self.body_preview = body_preview


class ConnectorFetchError(IngestionError):
    """A single connector could not produce its batch (network, parse, non-2xx)."""

    def __init__(self, source_id: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(
            f"Source {source_id} error: {message}",
            {"source_id": source_id, "cause": str(cause) if cause else None},
        )
        self.source_id = source_id
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class CircuitOpenError(IngestionError):
    """Fast-fail: the dependency's breaker is OPEN and its cool-down has not elapsed."""

    def __init__(self, name: str, next_attempt_at: Optional[datetime] = None):
        when = next_attempt_at.isoformat() if next_attempt_at else "unknown"
        super().__init__(
            f"Circuit breaker is OPEN for {name}. Next attempt at {when}",
            {"breaker": name, "next_attempt_at": when},
        )
        self.name = name
        self.next_attempt_at = next_attempt_at


class OperationCancelledError(IngestionError):
    def __init__(self, operation: str):
        super().__init__(f"{operation} cancelled", {"operation": operation})
        self.operation = operation


class AnalysisError(IngestionError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"Analysis failed: {message}", {"cause": str(cause) if cause else None})
        if cause is not None:
            self.__cause__ = cause


class AggregateError(IngestionError):
    """Raised when every connector in a run failed; carries all causes."""

    def __init__(self, message: str, errors: Sequence[BaseException]):
        self.errors: List[BaseException] = list(errors)
        super().__init__(
            message,
            {
                "error_count": len(self.errors),
                "errors": [{"name": type(e).__name__, "message": str(e)} for e in self.errors],
            },
        )

    def errors_of_type(self, error_class: Type[E]) -> List[E]:
        return [e for e in self.errors if isinstance(e, error_class)]

    def summary(self) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        for err in self.errors:
            name = type(err).__name__
            by_type[name] = by_type.get(name, 0) + 1
        return {"total": len(self.errors), "by_type": by_type}
