"""Error taxonomy and retry policy for the sitemirror engine."""

import builtins
import random
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class ErrorCategory(str, Enum):
    """Categories of errors that can occur in the system."""
    VALIDATION = "validation"
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    BLOCKED = "blocked"
    PARSE = "parse"
    VERIFICATION = "verification"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorKind(str, Enum):
    """Failure kinds a fetch can end with; the orchestrator branches on these."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    BLOCKED = "blocked"
    PARSE = "parse"
    VERIFICATION = "verification"
    STORAGE = "storage"


@dataclass
class ErrorContext:
    """Context information for error handling."""
    operation: str
    url: Optional[str] = None
    job_id: Optional[str] = None
    worker_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "operation": self.operation,
            "url": self.url,
            "job_id": self.job_id,
            "worker_id": self.worker_id,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None
        }


@dataclass
class ErrorInfo:
    """Detailed error information."""
    error_type: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    context: Optional[ErrorContext] = None
    traceback: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    retryable: bool = False
    retry_after: Optional[float] = None


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    blocked_max_attempts: int = 2


class MirrorError(Exception):
    """Base exception class for all sitemirror errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[ErrorContext] = None,
        retryable: bool = False,
        retry_after: Optional[float] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.error_code = error_code
        self.details = details or {}
        self.context = context
        self.retryable = retryable
        self.retry_after = retry_after
        self.timestamp = datetime.utcnow()

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo."""
        return ErrorInfo(
            error_type=self.__class__.__name__,
            message=self.message,
            category=self.category,
            severity=self.severity,
            code=self.error_code,
            details=dict(self.details),
            context=self.context,
            traceback=traceback.format_exc(),
            timestamp=self.timestamp,
            retryable=self.retryable,
            retry_after=self.retry_after
        )


class ValidationError(MirrorError):
    """Raised when a job submission or option set fails validation."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            error_code="VALIDATION_ERROR",
            retryable=False,
            **kwargs
        )
        self.field = field
        if field:
            self.details["field"] = field


class NetworkError(MirrorError):
    """DNS, connection or HTTP-level failure."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NETWORK)
        kwargs.setdefault("error_code", "NETWORK_ERROR")
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            **kwargs
        )
        self.status_code = status_code
        self.url = url
        if status_code:
            self.details["status_code"] = status_code
        if url:
            self.details["url"] = url


class RateLimitError(NetworkError):
    """HTTP 429 from the target; carries the server's retry hint."""

    def __init__(self, message: str, retry_after: Optional[float] = None, url: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            status_code=429,
            url=url,
            category=ErrorCategory.RATE_LIMIT,
            error_code="RATE_LIMIT_ERROR",
            retry_after=retry_after,
            **kwargs
        )


class TimeoutError(MirrorError):
    """Raised when a network or browser operation exceeds its deadline."""

    def __init__(self, message: str, timeout_duration: Optional[float] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.TIMEOUT,
            severity=ErrorSeverity.MEDIUM,
            error_code="TIMEOUT_ERROR",
            retryable=True,
            **kwargs
        )
        if timeout_duration:
            self.details["timeout_duration"] = timeout_duration


class BlockedError(MirrorError):
    """Raised when an anti-bot interstitial could not be bypassed."""

    def __init__(self, message: str, challenge_kind: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.BLOCKED,
            severity=ErrorSeverity.MEDIUM,
            error_code="BLOCKED_ERROR",
            retryable=True,
            **kwargs
        )
        self.challenge_kind = challenge_kind
        if challenge_kind:
            self.details["challenge_kind"] = challenge_kind


class ParseError(MirrorError):
    """Raised when fetched content is malformed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PARSE,
            severity=ErrorSeverity.LOW,
            error_code="PARSE_ERROR",
            retryable=False,
            **kwargs
        )


class VerificationError(MirrorError):
    """Raised when post-capture scoring cannot complete."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VERIFICATION,
            severity=ErrorSeverity.MEDIUM,
            error_code="VERIFICATION_ERROR",
            retryable=False,
            **kwargs
        )


class StorageError(MirrorError):
    """Raised when the database or output directory cannot be written."""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STORAGE,
            severity=ErrorSeverity.CRITICAL,
            error_code="STORAGE_ERROR",
            retryable=False,
            **kwargs
        )
        if path:
            self.details["path"] = path


class ConfigurationError(MirrorError):
    """Raised when configuration is invalid."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            error_code="CONFIGURATION_ERROR",
            retryable=False,
            **kwargs
        )
        if config_key:
            self.details["config_key"] = config_key


class InvalidTransitionError(MirrorError):
    """Raised on an illegal job state transition."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.HIGH,
            error_code="INVALID_TRANSITION",
            retryable=False,
            **kwargs
        )


def error_kind_for(error: BaseException) -> ErrorKind:
    """Map an exception to the fetch error kind it represents."""
    if isinstance(error, BlockedError):
        return ErrorKind.BLOCKED
    if isinstance(error, ParseError):
        return ErrorKind.PARSE
    if isinstance(error, VerificationError):
        return ErrorKind.VERIFICATION
    if isinstance(error, StorageError):
        return ErrorKind.STORAGE
    if isinstance(error, (TimeoutError, builtins.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, (NetworkError, ConnectionError)):
        return ErrorKind.NETWORK
    if isinstance(error, (UnicodeDecodeError, ValueError)):
        return ErrorKind.PARSE
    if isinstance(error, OSError):
        return ErrorKind.STORAGE
    return ErrorKind.NETWORK


class ErrorHandler:
    """Centralized error handling and recovery."""

    NON_RETRYABLE_STATUS = (400, 401, 403, 404, 405, 410, 422)
    RETRYABLE_STATUS = (408, 429, 500, 502, 503, 504)

    def __init__(self, max_recent_errors: int = 100):
        self.error_count: int = 0
        self.recent_errors: List[Dict[str, Any]] = []
        self.max_recent_errors = max_recent_errors
        self.error_counts: Dict[str, int] = {}
        self.last_errors: Dict[str, datetime] = {}

    def handle_error(
        self,
        error: Union[Exception, ErrorInfo],
        context: Optional[ErrorContext] = None
    ) -> ErrorInfo:
        """Handle and categorize an error.

        Args:
            error: Exception or ErrorInfo to handle
            context: Optional error context

        Returns:
            ErrorInfo with details
        """
        if isinstance(error, ErrorInfo):
            error_info = error
        elif isinstance(error, MirrorError):
            error_info = error.to_error_info()
            if context and not error_info.context:
                error_info.context = context
        else:
            error_info = self._categorize_generic_error(error, context)

        self._track_error(error_info)
        self._log_error(error_info)
        return error_info

    def _categorize_generic_error(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> ErrorInfo:
        """Categorize a generic exception."""
        error_type = error.__class__.__name__
        message = str(error)

        category = ErrorCategory.SYSTEM
        severity = ErrorSeverity.MEDIUM
        retryable = False

        kind = error_kind_for(error)
        if kind == ErrorKind.TIMEOUT:
            category = ErrorCategory.TIMEOUT
            retryable = True
        elif isinstance(error, ConnectionError):
            category = ErrorCategory.NETWORK
            retryable = True
        elif isinstance(error, PermissionError):
            category = ErrorCategory.STORAGE
            severity = ErrorSeverity.HIGH
        elif isinstance(error, ValueError):
            category = ErrorCategory.VALIDATION
            severity = ErrorSeverity.LOW

        return ErrorInfo(
            error_type=error_type,
            message=message,
            category=category,
            severity=severity,
            context=context,
            traceback=traceback.format_exc(),
            retryable=retryable
        )

    def _track_error(self, error_info: ErrorInfo) -> None:
        self.error_count += 1

        error_record = {
            "error_type": error_info.error_type,
            "message": error_info.message,
            "category": error_info.category.value,
            "severity": error_info.severity.value,
            "context": error_info.context.to_dict() if error_info.context else None,
            "timestamp": error_info.timestamp.isoformat(),
            "retryable": error_info.retryable,
        }
        self.recent_errors.insert(0, error_record)
        if len(self.recent_errors) > self.max_recent_errors:
            self.recent_errors = self.recent_errors[:self.max_recent_errors]

        error_key = f"{error_info.category.value}:{error_info.error_type}"
        self.error_counts[error_key] = self.error_counts.get(error_key, 0) + 1
        self.last_errors[error_key] = error_info.timestamp

    def _log_error(self, error_info: ErrorInfo) -> None:
        """Log error based on severity."""
        from .logging import get_logger

        logger = get_logger(__name__)
        log_message = f"{error_info.error_type}: {error_info.message}"

        if error_info.context:
            context_info = f" (operation: {error_info.context.operation}"
            if error_info.context.url:
                context_info += f", url: {error_info.context.url}"
            if error_info.context.job_id:
                context_info += f", job: {error_info.context.job_id}"
            context_info += ")"
            log_message += context_info

        if error_info.severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message)
        elif error_info.severity in (ErrorSeverity.HIGH, ErrorSeverity.MEDIUM):
            logger.error(log_message)
        else:
            logger.info(log_message)

        if error_info.traceback and error_info.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            logger.debug(f"Traceback for {error_info.error_type}:\n{error_info.traceback}")

    def should_retry(
        self,
        error: Union[Exception, ErrorInfo],
        attempt: int,
        max_attempts: int = 3
    ) -> bool:
        """Determine if an operation should be retried.

        Args:
            error: Error that occurred
            attempt: Current attempt number (1-based)
            max_attempts: Maximum number of attempts

        Returns:
            True if should retry, False otherwise
        """
        if attempt >= max_attempts:
            return False

        if isinstance(error, ErrorInfo):
            return error.retryable
        if isinstance(error, MirrorError):
            if isinstance(error, NetworkError) and error.status_code:
                if error.status_code in self.NON_RETRYABLE_STATUS:
                    return False
                if error.status_code in self.RETRYABLE_STATUS:
                    return True
            return error.retryable

        return error_kind_for(error) in (ErrorKind.NETWORK, ErrorKind.TIMEOUT)

    def calculate_retry_delay(
        self,
        attempt: int,
        config: Optional[RetryConfig] = None,
        error: Optional[Union[Exception, ErrorInfo]] = None
    ) -> float:
        """Calculate delay before retry.

        Args:
            attempt: Current attempt number (1-based)
            config: Retry configuration
            error: Error that occurred (may specify retry_after)

        Returns:
            Delay in seconds, never below ``config.base_delay``
        """
        if config is None:
            config = RetryConfig()

        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
        delay = min(delay, config.max_delay)

        if config.jitter:
            delay *= (0.5 + random.random() * 0.5)
            delay = max(delay, config.base_delay)

        if error is not None and isinstance(error, (MirrorError, ErrorInfo)) and error.retry_after:
            delay = max(delay, float(error.retry_after))

        return delay

    def get_error_stats(self) -> Dict[str, Any]:
        """Get error statistics."""
        return {
            "error_counts": dict(self.error_counts),
            "last_errors": {
                key: timestamp.isoformat()
                for key, timestamp in self.last_errors.items()
            },
            "total_errors": self.error_count
        }

    def clear_errors(self) -> None:
        """Clear error history."""
        self.error_count = 0
        self.recent_errors.clear()
        self.error_counts.clear()
        self.last_errors.clear()


# Global error handler instance
_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """Get the global error handler instance."""
    global _error_handler
    if _error_handler is None:
        _error_handler = ErrorHandler()
    return _error_handler


def handle_error(
    error: Union[Exception, ErrorInfo, str],
    context: Optional[ErrorContext] = None
) -> ErrorInfo:
    """Convenience function to handle an error."""
    if isinstance(error, str):
        error = MirrorError(error)
    if context is None:
        context = ErrorContext(operation="unknown")
    return get_error_handler().handle_error(error, context)


def should_retry(
    error: Union[Exception, ErrorInfo],
    attempt: int,
    max_attempts: int = 3
) -> bool:
    """Convenience function to check if operation should be retried."""
    return get_error_handler().should_retry(error, attempt, max_attempts)


def calculate_retry_delay(
    attempt: int,
    config: Optional[RetryConfig] = None,
    error: Optional[Union[Exception, ErrorInfo]] = None
) -> float:
    """Convenience function to calculate retry delay."""
    return get_error_handler().calculate_retry_delay(attempt, config, error)
