"""Error Handling Utilities

This module defines the pipeline error taxonomy, retry logic with exponential
backoff for transient failures, and warning collection for non-fatal per-item
events during a pipeline run.

Propagation rules:
    - Per-item errors (ItemFetchError, InferenceError, per-tree PersistenceError)
      are recorded and never escape the stage that raised them.
    - Stage errors (SourceUnavailableError, PersistenceError on the whole store)
      escape to the orchestrator, which decides whether the run continues.
    - ConfigurationError is raised before any stage runs.
"""

import time
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Type, TypeVar, Any


T = TypeVar('T')


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(PipelineError):
    """Required configuration is missing or invalid.

    Attributes:
        missing_keys: Every configuration key that is absent or unusable,
            reported together so the operator can fix them in one pass.
    """

    def __init__(self, missing_keys: Iterable[str], message: Optional[str] = None):
        self.missing_keys = list(missing_keys)
        if message is None:
            message = (
                "Missing or invalid configuration: "
                + ", ".join(self.missing_keys)
            )
        super().__init__(message)


class SourceUnavailableError(PipelineError):
    """The content source cannot be used at all (auth failure, rate limit, outage)."""


class ItemFetchError(PipelineError):
    """A single item's replies could not be fetched. The item is skipped."""


class InferenceError(PipelineError):
    """The inference service failed for one item (timeout, refusal, bad output)."""


class PersistenceError(PipelineError):
    """A write or read against the persistence store failed."""


class OrphanedCommentError(PersistenceError):
    """A comment names a parent comment that has not been persisted."""


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0
) -> float:
    """Return the exponential backoff delay for a zero-based retry attempt.

    Args:
        attempt: Retry attempt number (0 = first retry)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds

    Returns:
        base_delay * 2^attempt, capped at max_delay

    Example:
        >>> calculate_backoff_delay(0)
        1.0
        >>> calculate_backoff_delay(3)
        8.0
        >>> calculate_backoff_delay(10)
        30.0
    """
    return min(base_delay * (2 ** attempt), max_delay)


def retry_with_backoff(
    fn: Callable[[], T],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,)
) -> T:
    """Execute a callable with exponential backoff retry logic.

    Used for transient failures of external integrations (content source,
    inference service) and of store writes that hit a locked database.

    Args:
        fn: Callable to execute (should take no arguments)
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay cap in seconds (default: 30.0)
        retryable_exceptions: Tuple of exception types to retry on (default: all exceptions)

    Returns:
        The result of fn() on successful execution

    Raises:
        The final exception if all retries are exhausted, or immediately if the exception
        type is not in retryable_exceptions

    Example:
        >>> result = retry_with_backoff(
        ...     lambda: client.send_chat_completion(system, user),
        ...     max_retries=3,
        ...     retryable_exceptions=(openai.RateLimitError,)
        ... )

    Backoff schedule (base_delay=1.0, max_delay=30.0):
        - Attempt 1: immediate
        - Attempt 2: wait 1.0s
        - Attempt 3: wait 2.0s
        - Attempt 4: wait 4.0s
        - etc., capped at max_delay
    """
    for attempt in range(max_retries + 1):
        try:
            return fn()
        except Exception as e:
            if not isinstance(e, retryable_exceptions):
                raise

            if attempt >= max_retries:
                raise

            time.sleep(calculate_backoff_delay(attempt, base_delay, max_delay))

    raise RuntimeError("Unreachable code")


# Supported warning types (non-fatal, per-item)
WARNING_TYPE_ITEM_FETCH_FAILED = "item_fetch_failed"
WARNING_TYPE_INFERENCE_FAILED = "inference_failed"
WARNING_TYPE_PERSISTENCE_FAILED = "persistence_failed"
WARNING_TYPE_EXTENDED_ANALYSIS_FAILED = "extended_analysis_failed"

VALID_WARNING_TYPES = {
    WARNING_TYPE_ITEM_FETCH_FAILED,
    WARNING_TYPE_INFERENCE_FAILED,
    WARNING_TYPE_PERSISTENCE_FAILED,
    WARNING_TYPE_EXTENDED_ANALYSIS_FAILED,
}


class WarningsCollector:
    """Thread-safe collector for non-fatal warnings during a pipeline run.

    Accumulates warning events with type, message, timestamp, and context.
    The run report carries the collected warnings so an operator can see which
    items were skipped without reading the log.

    Example:
        >>> collector = WarningsCollector()
        >>> collector.append(
        ...     "item_fetch_failed",
        ...     "Failed to fetch replies for abc123",
        ...     {"reddit_id": "abc123"}
        ... )
        >>> collector.count("item_fetch_failed")
        1
    """

    def __init__(self):
        self._warnings: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def append(self, warning_type: str, message: str, context: Dict[str, Any]) -> None:
        """Add a warning with type, message, timestamp, and context.

        Args:
            warning_type: One of VALID_WARNING_TYPES
            message: Human-readable description of the warning
            context: Additional structured data (e.g., reddit_id, stage, error)

        Raises:
            ValueError: If warning_type is not in VALID_WARNING_TYPES
        """
        if warning_type not in VALID_WARNING_TYPES:
            raise ValueError(
                f"Invalid warning_type '{warning_type}'. "
                f"Must be one of: {', '.join(sorted(VALID_WARNING_TYPES))}"
            )

        warning = {
            "type": warning_type,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "context": context
        }

        with self._lock:
            self._warnings.append(warning)

    def count(self, warning_type: Optional[str] = None) -> int:
        """Number of collected warnings, optionally filtered by type."""
        with self._lock:
            if warning_type is None:
                return len(self._warnings)
            return sum(1 for w in self._warnings if w["type"] == warning_type)

    def to_list(self) -> List[Dict[str, Any]]:
        """Return a copy of the collected warnings."""
        with self._lock:
            return list(self._warnings)
