"""
Platform target resolution.

Classifies the host, or an explicitly requested target, into one of the
supported platform families. Each family has a native packaging mechanism, a
service-manager dialect and a set of install prefixes, captured in an
immutable ``PlatformProfile``.

The host signal is passed in explicitly; ``detect_host_signal`` is the only
place that inspects the running environment.
"""

import os
import sys
from dataclasses import dataclass
from enum import StrEnum
from pathlib import PurePath, PurePosixPath, PureWindowsPath
from typing import Dict, Iterable, Optional, Tuple, Union

from structlog import get_logger

from .core.error_handling import UnknownPlatformError

logger = get_logger(__name__)


class PlatformTarget(StrEnum):
    """Supported platform families."""

    LINUX = "linux"
    WINDOWS = "windows"
    MACOS = "macos"


class PackagingMechanism(StrEnum):
    """Native packaging mechanisms."""

    DEB = "deb"
    MSI = "msi"
    PKG = "pkg"
    RPM = "rpm"


class ServiceDialect(StrEnum):
    """Native service-manager dialects."""

    SYSTEMD = "systemd"
    WINSW = "winsw"
    LAUNCHD = "launchd"


ALL_TARGETS = tuple(PlatformTarget)

_ALIASES = {
    "linux": PlatformTarget.LINUX,
    "windows": PlatformTarget.WINDOWS,
    "win": PlatformTarget.WINDOWS,
    "macos": PlatformTarget.MACOS,
    "mac": PlatformTarget.MACOS,
    "darwin": PlatformTarget.MACOS,
}


@dataclass(frozen=True)
class Skip:
    """A requested target that cannot run on this host. Not an error."""

    target: Optional[PlatformTarget]
    host: Optional[PlatformTarget]

    @property
    def reason(self) -> str:
        host = self.host.value if self.host else "unknown host"
        if self.target is None:
            return f"no supported platform matches the host ({host})"
        return f"not on {self.target.value} (host is {host})"


Resolution = Union[PlatformTarget, Skip]


@dataclass(frozen=True)
class PlatformProfile:
    """Packaging, service-manager and filesystem conventions of one family."""

    target: PlatformTarget
    packaging: PackagingMechanism
    dialect: ServiceDialect
    bin_dir: PurePath
    data_dir: PurePath
    log_dir: PurePath
    descriptor_dir: PurePath
    principal_prefix: str = ""
    directory_group: Optional[str] = None
    principal_id_floor: Optional[int] = None
    executable_suffix: str = ""
    # Produced next to the primary package when their tool is installed
    optional_packaging: Tuple[PackagingMechanism, ...] = ()

    @classmethod
    def for_target(
        cls, target: PlatformTarget, app: str = "aura", display_name: str = "AuraDB"
    ) -> "PlatformProfile":
        """Build the profile of a target for one application."""
        match target:
            case PlatformTarget.LINUX:
                return cls(
                    target=target,
                    packaging=PackagingMechanism.DEB,
                    optional_packaging=(PackagingMechanism.RPM,),
                    dialect=ServiceDialect.SYSTEMD,
                    bin_dir=PurePosixPath("/usr/bin"),
                    data_dir=PurePosixPath("/var/lib") / app,
                    log_dir=PurePosixPath("/var/log") / app,
                    descriptor_dir=PurePosixPath("/etc/systemd/system"),
                )
            case PlatformTarget.MACOS:
                # Ids below 500 are reserved for the OS on macOS
                return cls(
                    target=target,
                    packaging=PackagingMechanism.PKG,
                    dialect=ServiceDialect.LAUNCHD,
                    bin_dir=PurePosixPath("/usr/local/bin"),
                    data_dir=PurePosixPath("/var/lib") / app,
                    log_dir=PurePosixPath("/var/log") / app,
                    descriptor_dir=PurePosixPath("/Library/LaunchDaemons"),
                    principal_prefix="_",
                    directory_group="admin",
                    principal_id_floor=500,
                )
            case PlatformTarget.WINDOWS:
                program_files = PureWindowsPath("C:/Program Files") / display_name
                program_data = PureWindowsPath("C:/ProgramData") / display_name
                return cls(
                    target=target,
                    packaging=PackagingMechanism.MSI,
                    dialect=ServiceDialect.WINSW,
                    bin_dir=program_files / "bin",
                    data_dir=program_data / "data",
                    log_dir=program_data / "logs",
                    descriptor_dir=program_files / "service",
                    executable_suffix=".exe",
                )
        raise UnknownPlatformError(str(target), [t.value for t in ALL_TARGETS])

    @property
    def install_prefix(self) -> PurePath:
        """Directory holding the binary dir."""
        return self.bin_dir.parent

    def principal_name(self, base: str) -> str:
        """Platform naming convention for system principals."""
        return f"{self.principal_prefix}{base}"

    def executable(self, file_name: str) -> PurePath:
        """Installed path of an executable."""
        return self.bin_dir / f"{file_name}{self.executable_suffix}"


def parse_target(name: str) -> PlatformTarget:
    """
    Parse an explicit platform name.

    Raises:
        UnknownPlatformError: If the name matches no supported family
    """
    target = _ALIASES.get(name.strip().lower())
    if target is None:
        raise UnknownPlatformError(name, [t.value for t in ALL_TARGETS])
    return target


def classify_host(host_signal: str) -> Optional[PlatformTarget]:
    """Classify a platform-identifying string (``sys.platform`` or ``$OSTYPE``)."""
    signal = host_signal.strip().lower()
    if signal.startswith("linux"):
        return PlatformTarget.LINUX
    if signal.startswith(("darwin", "macos")):
        return PlatformTarget.MACOS
    if signal.startswith(("win", "msys", "cygwin", "mingw")):
        return PlatformTarget.WINDOWS
    return None


def detect_host_signal(override: Optional[str] = None) -> str:
    """Read the host signal once: explicit override, then ``$OSTYPE``, then ``sys.platform``."""
    return override or os.environ.get("OSTYPE") or sys.platform


def resolve(requested: Optional[str], host_signal: str) -> Resolution:
    """
    Resolve one target against the host.

    Args:
        requested: Explicit platform name, or None to infer from the host
        host_signal: Platform-identifying string of the host

    Returns:
        The target when it matches the host, otherwise ``Skip``

    Raises:
        UnknownPlatformError: If ``requested`` names no supported family
    """
    host = classify_host(host_signal)
    if requested is None:
        if host is None:
            logger.warning("Unrecognised host platform", host_signal=host_signal)
            return Skip(target=None, host=None)
        return host

    target = parse_target(requested)
    if target != host:
        return Skip(target=target, host=host)
    return target


def resolve_all(
    requested: Union[None, str, Iterable[str]], host_signal: str
) -> Dict[PlatformTarget, Resolution]:
    """
    Resolve a multi-target request; ``None``, ``""`` and ``"all"`` mean every family.

    All names are validated before any is resolved, so a bad name aborts the
    whole request.
    """
    if requested is None or isinstance(requested, str):
        names = [requested] if requested else []
    else:
        names = list(requested)

    if not names or any(n.strip().lower() == "all" for n in names):
        targets = list(ALL_TARGETS)
    else:
        targets = []
        for name in names:
            target = parse_target(name)
            if target not in targets:
                targets.append(target)

    resolved: Dict[PlatformTarget, Resolution] = {}
    for target in targets:
        resolved[target] = resolve(target.value, host_signal)
        if isinstance(resolved[target], Skip):
            logger.info("Skipping target", target=target.value, reason=resolved[target].reason)
    return resolved
