"""Data models shared by the deployment pipeline stages."""

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path, PurePath
from typing import Optional, Tuple

from .platforms import PlatformTarget

EXECUTABLE_MODE = 0o755
DESCRIPTOR_MODE = 0o644
DATA_DIR_MODE = 0o700
LOG_DIR_MODE = 0o755

ROOT_OWNER = "root"


class RestartPolicy(StrEnum):
    """Service restart policies."""

    ALWAYS = "always"


@dataclass(frozen=True)
class BuildArtifact:
    """An executable produced by the build toolchain."""

    name: str
    path: Path
    mode: int = EXECUTABLE_MODE


@dataclass(frozen=True)
class SystemPrincipal:
    """Dedicated low-privilege identity the service runs as."""

    name: str
    home: PurePath
    uid: Optional[int] = None
    group: Optional[str] = None
    shell_disabled: bool = True

    def with_uid(self, uid: Optional[int]) -> "SystemPrincipal":
        return SystemPrincipal(self.name, self.home, uid, self.group, self.shell_disabled)


@dataclass(frozen=True)
class ProvisionedDirectory:
    """A directory owned by the principal with a fixed mode."""

    path: PurePath
    owner: str
    mode: int
    group: Optional[str] = None


@dataclass(frozen=True)
class ServiceDescriptor:
    """Dialect-independent description of a persistent service."""

    identifier: str
    display_name: str
    executable: PurePath
    working_directory: PurePath
    log_destination: PurePath
    account: str
    descriptor_path: PurePath
    arguments: Tuple[str, ...] = ()
    description: str = ""
    restart: RestartPolicy = RestartPolicy.ALWAYS

    @property
    def command_line(self) -> Tuple[str, ...]:
        return (str(self.executable), *self.arguments)


@dataclass(frozen=True)
class InstallEntry:
    """One file of the staging tree: a built artifact or inline content."""

    destination: PurePath
    owner: str
    mode: int
    source: Optional[Path] = None
    content: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.source is None) == (self.content is None):
            raise ValueError(f"{self.destination}: exactly one of source or content is required")


@dataclass(frozen=True)
class HookScripts:
    """Pre-/post-install payloads handed to the native packaging mechanism."""

    pre_install: str
    post_install: str
    suffix: str = ".sh"


@dataclass(frozen=True)
class InstallRoot:
    """Everything one target installs, independent of where it is written."""

    target: PlatformTarget
    entries: Tuple[InstallEntry, ...]
    hooks: HookScripts
    principal: SystemPrincipal
    directories: Tuple[ProvisionedDirectory, ...]
    service: ServiceDescriptor
    artifacts: Tuple[BuildArtifact, ...] = field(default=())

    def entry(self, destination: PurePath) -> InstallEntry:
        for item in self.entries:
            if item.destination == destination:
                return item
        raise KeyError(str(destination))

    @property
    def destinations(self) -> Tuple[PurePath, ...]:
        return tuple(item.destination for item in self.entries)
