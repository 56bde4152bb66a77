"""Per-target lifecycle states and the run summary."""

import threading
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .core.result_pattern import StageError
from .platforms import PlatformTarget


class LifecycleState(StrEnum):
    """Deployment lifecycle of one target. States advance strictly forward."""

    UNBUILT = "unbuilt"
    BUILT = "built"
    STAGED = "staged"
    PACKAGED = "packaged"
    PROVISIONED = "provisioned"
    REGISTERED = "registered"
    VERIFIED = "verified"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def rank(self) -> int:
        return _PROGRESSION.index(self) if self in _PROGRESSION else len(_PROGRESSION)


_PROGRESSION: Tuple[LifecycleState, ...] = (
    LifecycleState.UNBUILT,
    LifecycleState.BUILT,
    LifecycleState.STAGED,
    LifecycleState.PACKAGED,
    LifecycleState.PROVISIONED,
    LifecycleState.REGISTERED,
    LifecycleState.VERIFIED,
)


class Stage(StrEnum):
    """Pipeline stages; a failure names the one it happened in."""

    BUILD = "build"
    STAGE = "stage"
    PACKAGE = "package"
    PROVISION = "provision"
    REGISTER = "register"
    VERIFY = "verify"


@dataclass
class TargetOutcome:
    """Terminal result of one target's pipeline."""

    target: PlatformTarget
    state: LifecycleState
    stage: Optional[Stage] = None
    error: Optional[StageError] = None
    reason: str = ""
    package: Optional[Path] = None
    artifacts: List[Path] = field(default_factory=list)
    extra_packages: List[Path] = field(default_factory=list)
    status_hint: str = ""

    @classmethod
    def skipped(cls, target: PlatformTarget, reason: str) -> "TargetOutcome":
        return cls(target=target, state=LifecycleState.SKIPPED, reason=reason)

    @classmethod
    def failed(
        cls,
        target: PlatformTarget,
        stage: Stage,
        error: StageError,
        package: Optional[Path] = None,
        artifacts: Optional[List[Path]] = None,
        extra_packages: Optional[List[Path]] = None,
        status_hint: str = "",
    ) -> "TargetOutcome":
        return cls(
            target=target,
            state=LifecycleState.FAILED,
            stage=stage,
            error=error,
            reason=error.reason,
            package=package,
            artifacts=list(artifacts or []),
            extra_packages=list(extra_packages or []),
            status_hint=status_hint,
        )

    def succeeded(self, package_only: bool = False) -> bool:
        terminal = LifecycleState.PACKAGED if package_only else LifecycleState.VERIFIED
        return self.state == terminal

    @property
    def packages(self) -> List[Path]:
        return ([self.package] if self.package else []) + list(self.extra_packages)

    def describe(self) -> str:
        if self.state == LifecycleState.FAILED:
            return f"failed({self.stage.value if self.stage else '?'}, {self.reason})"
        if self.state == LifecycleState.SKIPPED and self.reason:
            return f"skipped ({self.reason})"
        return self.state.value


_INSTALL_COMMANDS = {
    ".deb": "sudo dpkg -i {}",
    ".rpm": "sudo rpm -i {}",
    ".pkg": "sudo installer -pkg {} -target /",
    ".msi": 'msiexec /i "{}"',
}


def install_hint(package: Path) -> str:
    """Command that installs a package by hand, or an empty string for unknown formats."""
    template = _INSTALL_COMMANDS.get(Path(package).suffix)
    return template.format(package) if template else ""


class RunSummary:
    """
    Mapping of target to outcome for one invocation.

    Targets may finish on different threads; ``record`` is serialized by a
    lock. The summary is read-only once the run is over.
    """

    def __init__(self, run_id: str = "", package_only: bool = False):
        self.run_id = run_id
        self.package_only = package_only
        self._outcomes: Dict[PlatformTarget, TargetOutcome] = {}
        self._lock = threading.Lock()

    def record(self, outcome: TargetOutcome) -> None:
        with self._lock:
            if outcome.target in self._outcomes:
                raise ValueError(f"Outcome for {outcome.target.value} already recorded")
            self._outcomes[outcome.target] = outcome

    def __getitem__(self, target: PlatformTarget) -> TargetOutcome:
        return self._outcomes[target]

    def __contains__(self, target: object) -> bool:
        return target in self._outcomes

    def __iter__(self) -> Iterator[TargetOutcome]:
        # Stable, enumeration order regardless of completion order
        return iter(
            sorted(self._outcomes.values(), key=lambda o: list(PlatformTarget).index(o.target))
        )

    def __len__(self) -> int:
        return len(self._outcomes)

    def states(self) -> Dict[PlatformTarget, LifecycleState]:
        return {outcome.target: outcome.state for outcome in self}

    @property
    def succeeded(self) -> bool:
        """True iff every non-skipped target reached its success terminal."""
        return all(
            outcome.succeeded(self.package_only)
            for outcome in self
            if outcome.state != LifecycleState.SKIPPED
        )

    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def digest(self) -> str:
        """Plain-text report: one line per target, then its packages and how to install them."""
        lines = [f"Deployment run {self.run_id}".rstrip()]
        for outcome in self:
            lines.append(f"  {outcome.target.value:<8} {outcome.describe()}")
            for package in outcome.packages:
                lines.append(f"           package:  {package}")
                hint = install_hint(package)
                if hint:
                    lines.append(f"           install:  {hint}")
            if outcome.packages and outcome.status_hint:
                lines.append(f"           status:   {outcome.status_hint}")
            for artifact in outcome.artifacts:
                lines.append(f"           artifact: {artifact}")
        lines.append("Result: " + ("success" if self.succeeded else "failure"))
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, object]:
        return {
            "run_id": self.run_id,
            "package_only": self.package_only,
            "succeeded": self.succeeded,
            "targets": {
                outcome.target.value: {
                    "state": outcome.state.value,
                    "stage": outcome.stage.value if outcome.stage else None,
                    "reason": outcome.reason,
                    "error": outcome.error.to_dict() if outcome.error else None,
                    "package": str(outcome.package) if outcome.package else None,
                    "extra_packages": [str(p) for p in outcome.extra_packages],
                    "artifacts": [str(a) for a in outcome.artifacts],
                }
                for outcome in self
            },
        }
