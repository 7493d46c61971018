"""
Error taxonomy, error collection, and retry helpers for the cruise loop.

The cruise core never halts on a collaborator failure: failures are wrapped in
typed exceptions at the point of use, recorded here, and surfaced to callers as
a failed operation (``False`` / ``None``).
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging
import threading
import structlog
from contextlib import asynccontextmanager

from tenacity import (
    retry, stop_after_attempt, wait_exponential,
    retry_if_exception_type, before_sleep_log
)

logger = structlog.get_logger()


class CruiseError(Exception):
    """Base class for cruise-control errors"""
    pass


class CollaboratorError(CruiseError):
    """Raised when an external collaborator call fails or times out"""

    def __init__(self, collaborator: str, operation: str, agent_id: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        self.collaborator = collaborator
        self.operation = operation
        self.agent_id = agent_id
        self.cause = cause
        message = f"{collaborator}.{operation} failed"
        if agent_id:
            message += f" for agent {agent_id}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class RecommendationLookupError(CollaboratorError):
    """Raised when a pool recommendation lookup fails"""

    def __init__(self, pool_address: str, cause: Optional[BaseException] = None):
        self.pool_address = pool_address
        super().__init__("pool_recommendation_source", "get_recommendation", cause=cause)


class ExternalAPIError(CruiseError):
    """Raised when an outbound HTTP call fails"""
    pass


class ConfigurationError(CruiseError):
    """Raised when configuration is invalid"""
    pass


# Enhanced retry decorators with structured logging
def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    exceptions: tuple = (Exception,)
):
    """Retry decorator with exponential backoff"""
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
        reraise=True,
    )


class ErrorCollector:
    """Collects and analyzes errors for better observability"""

    def __init__(self, max_errors: int = 1000):
        self.errors: List[Dict] = []
        self.error_counts: Dict[str, int] = {}
        self.max_errors = max_errors  # Keep last N errors
        self._lock = threading.Lock()

    def record_error(self, error: BaseException, context: Dict[str, Any] = None):
        """Record an error with context"""
        error_type = type(error).__name__
        error_info = {
            "timestamp": datetime.utcnow().isoformat(),
            "type": error_type,
            "message": str(error),
            "context": context or {},
        }

        with self._lock:
            self.errors.append(error_info)

            # Maintain size limit
            if len(self.errors) > self.max_errors:
                self.errors = self.errors[-self.max_errors:]

            self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        logger.error(
            "Error recorded",
            error_type=error_type,
            error_message=str(error),
            context=context
        )

    def get_error_summary(self, hours: int = 24) -> Dict:
        """Get error summary for the last N hours"""
        cutoff_time = datetime.utcnow() - timedelta(hours=hours)

        with self._lock:
            recent_errors = [
                error for error in self.errors
                if datetime.fromisoformat(error["timestamp"]) > cutoff_time
            ]
            error_counts = dict(self.error_counts)

        error_types = {}
        for error in recent_errors:
            error_type = error["type"]
            if error_type not in error_types:
                error_types[error_type] = {"count": 0, "examples": []}

            error_types[error_type]["count"] += 1
            if len(error_types[error_type]["examples"]) < 3:
                error_types[error_type]["examples"].append({
                    "message": error["message"],
                    "timestamp": error["timestamp"],
                    "context": error["context"]
                })

        return {
            "time_window_hours": hours,
            "total_errors": len(recent_errors),
            "error_types": error_types,
            "all_time_counts": error_counts,
        }

    def clear(self):
        with self._lock:
            self.errors.clear()
            self.error_counts.clear()


# Global error collector
error_collector = ErrorCollector()


@asynccontextmanager
async def collaborator_call(collaborator: str, operation: str, agent_id: Optional[str] = None):
    """Wrap a collaborator call so any failure surfaces as a CollaboratorError.

    CollaboratorErrors raised inside the block pass through untouched so that
    the innermost context is kept.
    """
    try:
        yield
    except CollaboratorError as e:
        error_collector.record_error(e, {"collaborator": collaborator, "operation": operation,
                                         "agent_id": agent_id})
        raise
    except Exception as e:
        error_collector.record_error(e, {"collaborator": collaborator, "operation": operation,
                                         "agent_id": agent_id})
        raise CollaboratorError(collaborator, operation, agent_id, cause=e) from e
