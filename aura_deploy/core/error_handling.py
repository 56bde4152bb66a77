"""
Error hierarchy and retry support for aura-deploy.

This module provides the exception classes raised outside of the per-target
pipelines (invalid invocation, invalid manifest, failed external tools) and a
retry decorator used where an operation is known to be safe to repeat.
"""

import functools
import logging
import random
import time
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Sequence, Type, TypeVar

from typing_extensions import ParamSpec

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class ErrorSeverity(Enum):
    """Error severity levels for classification and handling."""

    CRITICAL = auto()  # Aborts the whole invocation
    HIGH = auto()  # Aborts one target pipeline
    MEDIUM = auto()  # Recoverable, may retry
    LOW = auto()  # Logged and ignored


class ErrorCategory(Enum):
    """Error categories for classification and routing."""

    SYSTEM = auto()
    VALIDATION = auto()  # Bad CLI arguments or manifest contents
    CONFIGURATION = auto()
    EXTERNAL_TOOL = auto()  # cargo, dpkg-deb, systemctl, ...
    RESOURCE = auto()  # Contended system resources (ids, paths)


class DeployError(Exception):
    """Base exception class with enhanced error information."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ) -> None:
        """
        Initialize base error with comprehensive metadata.

        Args:
            message: Human-readable error message
            severity: Error severity level
            category: Error category for classification
            error_code: Unique error code for tracking
            context: Additional context information
            recoverable: Whether error is recoverable
        """
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.error_code = error_code or self._generate_error_code()
        self.context = context or {}
        self.recoverable = recoverable
        self.timestamp = datetime.now(timezone.utc)

    def _generate_error_code(self) -> str:
        """Generate unique error code based on category and timestamp."""
        timestamp = int(time.time() * 1000) % 100000
        return f"{self.category.name[:3]}-{self.severity.name[:3]}-{timestamp}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.name,
            "category": self.category.name,
            "context": self.context,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat(),
        }


class UnknownPlatformError(DeployError):
    """An explicitly requested platform matches none of the supported families."""

    def __init__(self, requested: str, supported: Sequence[str], **kwargs: Any) -> None:
        context = kwargs.pop("context", {})
        context["requested"] = requested
        context["supported"] = list(supported)
        super().__init__(
            f"Unknown platform: {requested!r} (expected one of: {', '.join(supported)})",
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.VALIDATION,
            context=context,
            recoverable=False,
            **kwargs,
        )
        self.requested = requested


class ManifestError(DeployError):
    """Deployment manifest could not be loaded or failed validation."""

    def __init__(self, message: str, source: Optional[str] = None, **kwargs: Any) -> None:
        context = kwargs.pop("context", {})
        if source:
            context["source"] = source
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.CONFIGURATION,
            context=context,
            recoverable=False,
            **kwargs,
        )


class CommandError(DeployError):
    """An external tool exited with a nonzero status or could not be launched."""

    def __init__(
        self,
        argv: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {})
        context["argv"] = list(argv)
        context["returncode"] = returncode
        super().__init__(
            f"Command failed with code {returncode}: {' '.join(argv)}",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXTERNAL_TOOL,
            context=context,
            recoverable=False,
            **kwargs,
        )
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def diagnostic(self) -> str:
        """The tool's own explanation, preferring stderr over stdout."""
        text = (self.stderr or self.stdout or "").strip()
        return text or self.message


class PrincipalIdConflictError(DeployError):
    """A freshly computed principal id was taken before the principal could be created."""

    def __init__(self, name: str, uid: int, **kwargs: Any) -> None:
        context = kwargs.pop("context", {})
        context["principal"] = name
        context["uid"] = uid
        super().__init__(
            f"Id {uid} for principal {name!r} is already assigned",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.RESOURCE,
            context=context,
            recoverable=True,
            **kwargs,
        )


class RetryConfig:
    """Configuration for retry logic."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retry_on: Optional[List[Type[Exception]]] = None,
        ignore_on: Optional[List[Type[Exception]]] = None,
    ) -> None:
        """
        Initialize retry configuration.

        Args:
            max_attempts: Maximum number of attempts, including the first
            initial_delay: Initial delay in seconds
            max_delay: Maximum delay in seconds
            exponential_base: Base for exponential backoff
            jitter: Add random jitter to delays
            retry_on: List of exceptions to retry on
            ignore_on: List of exceptions to not retry on
        """
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retry_on = retry_on or [Exception]
        self.ignore_on = ignore_on or []

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt number with exponential backoff."""
        delay = min(self.initial_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())
        return delay

    def should_retry(self, exception: Exception) -> bool:
        """Determine if exception should trigger retry."""
        if any(isinstance(exception, exc_type) for exc_type in self.ignore_on):
            return False
        if isinstance(exception, DeployError) and not exception.recoverable:
            return False
        return any(isinstance(exception, exc_type) for exc_type in self.retry_on)


def _handle_retry_attempt(
    config: RetryConfig,
    func_name: str,
    exception: Exception,
    attempt: int,
) -> tuple[bool, Optional[float]]:
    """
    Handle retry attempt logic.

    Args:
        config: Retry configuration
        func_name: Function name for logging
        exception: Exception that occurred
        attempt: Current attempt number (0-indexed)

    Returns:
        Tuple of (should_continue, delay_seconds)
    """
    if not config.should_retry(exception):
        logger.error(
            f"Non-retryable error in {func_name}: {exception}",
            extra={"attempt": attempt + 1, "function": func_name},
        )
        return False, None

    if attempt < config.max_attempts - 1:
        delay = config.calculate_delay(attempt)
        logger.warning(
            f"Retry attempt {attempt + 1}/{config.max_attempts} "
            f"for {func_name} after {delay:.2f}s delay. Error: {exception}",
            extra={
                "attempt": attempt + 1,
                "max_attempts": config.max_attempts,
                "delay": delay,
                "function": func_name,
            },
        )
        return True, delay

    logger.error(
        f"Max retries ({config.max_attempts}) exceeded for {func_name}",
        extra={"max_attempts": config.max_attempts, "function": func_name},
    )
    return False, None


def retry(config: Optional[RetryConfig] = None) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator for retry logic with exponential backoff.

    Args:
        config: Retry configuration

    Returns:
        Decorated function with retry logic
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            for attempt in range(config.max_attempts):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    should_continue, delay = _handle_retry_attempt(
                        config, func.__name__, e, attempt
                    )
                    if not should_continue:
                        raise
                    if delay:
                        time.sleep(delay)
            raise RuntimeError(f"Unexpected error in retry logic for {func.__name__}")

        return wrapper

    return decorator
