"""
Result pattern helpers built on the returns library.

Every pipeline stage returns ``Result[T, StageError]``. A ``StageError`` is a
value, not an exception: it names the failure kind, carries the underlying
tool's diagnostic untouched, and is recorded in the run summary by the
orchestrator.
"""

import functools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from returns.result import Failure, Result, Success
from typing_extensions import ParamSpec

from .error_handling import CommandError, DeployError

P = ParamSpec("P")
T = TypeVar("T")


class FailureKind(str, Enum):
    """Per-target failure taxonomy."""

    BUILD = "build"
    PROVISION = "provision"
    PACKAGING = "packaging"
    REGISTRATION = "registration"
    START = "start"


@dataclass(frozen=True)
class StageError:
    """A fatal, per-target failure."""

    kind: FailureKind
    message: str
    diagnostic: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def reason(self) -> str:
        """Message plus the tool diagnostic, for the run digest."""
        if self.diagnostic and self.diagnostic != self.message:
            return f"{self.message}: {self.diagnostic}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error": self.kind.value,
            "message": self.message,
            "diagnostic": self.diagnostic,
            "details": self.details,
        }

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        kind: FailureKind,
        message: Optional[str] = None,
        **details: Any,
    ) -> "StageError":
        """Create a StageError from an exception, keeping the tool output."""
        if isinstance(exc, CommandError):
            diagnostic = exc.diagnostic
            details.setdefault("argv", exc.argv)
            details.setdefault("returncode", exc.returncode)
        else:
            diagnostic = str(exc)
        details.setdefault("exception_type", type(exc).__name__)
        return cls(
            kind=kind,
            message=message or str(exc),
            diagnostic=diagnostic,
            details=details,
        )


def build_failure(message: str, diagnostic: str = "", **details: Any) -> StageError:
    """Create a build failure."""
    return StageError(FailureKind.BUILD, message, diagnostic, details)


def provision_failure(
    message: str, subtype: str, diagnostic: str = "", **details: Any
) -> StageError:
    """Create a provisioning failure; subtype is principal, directory or payload."""
    details["subtype"] = subtype
    return StageError(FailureKind.PROVISION, message, diagnostic, details)


def packaging_failure(message: str, diagnostic: str = "", **details: Any) -> StageError:
    """Create a packaging failure."""
    return StageError(FailureKind.PACKAGING, message, diagnostic, details)


def start_failure(message: str, diagnostic: str = "", **details: Any) -> StageError:
    """Create a start failure: installed, but never reported running."""
    return StageError(FailureKind.START, message, diagnostic, details)


def with_result(
    kind: FailureKind,
    message: Optional[str] = None,
    **details: Any,
) -> Callable[[Callable[P, Any]], Callable[P, Result[Any, StageError]]]:
    """
    Decorator converting raised deployment errors into ``Failure(StageError)``.

    Functions that already return a Result are passed through unchanged.
    Only ``DeployError`` and ``OSError`` are converted; anything else is a
    programming error and propagates.

    Args:
        kind: Failure kind to attach
        message: Optional fixed message (defaults to the exception text)
        **details: Extra details attached to every failure
    """

    def decorator(func: Callable[P, Any]) -> Callable[P, Result[Any, StageError]]:
        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> Result[Any, StageError]:
            try:
                value = func(*args, **kwargs)
            except (DeployError, OSError) as e:
                return Failure(StageError.from_exception(e, kind, message, **dict(details)))
            if isinstance(value, (Success, Failure)):
                return value
            return Success(value)

        return wrapper

    return decorator


def collect_results(results: Iterable[Result[T, StageError]]) -> Result[List[T], StageError]:
    """Collect results into one, short-circuiting on the first failure."""
    values: List[T] = []
    for result in results:
        if isinstance(result, Failure):
            return result
        values.append(result.unwrap())
    return Success(values)
