"""Core infrastructure: errors, Result helpers and the command runner."""

from .command import CommandResult, CommandRunner
from .error_handling import (
    CommandError,
    DeployError,
    ManifestError,
    PrincipalIdConflictError,
    RetryConfig,
    UnknownPlatformError,
    retry,
)
from .result_pattern import FailureKind, StageError, with_result

__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "DeployError",
    "FailureKind",
    "ManifestError",
    "PrincipalIdConflictError",
    "RetryConfig",
    "StageError",
    "UnknownPlatformError",
    "retry",
    "with_result",
]
