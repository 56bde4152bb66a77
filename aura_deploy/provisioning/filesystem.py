"""Filesystem backends: directory ownership/permissions and payload placement."""

import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List, Optional

from structlog import get_logger

from ..core.command import CommandRunner
from ..descriptors import windows_acl_grants
from ..models import InstallRoot, ProvisionedDirectory
from ..platforms import PlatformProfile, PlatformTarget
from ..staging import materialize, relative_destination

logger = get_logger(__name__)

ChownFunc = Callable[[Path, Optional[str], Optional[str]], None]


def _shutil_chown(path: Path, user: Optional[str], group: Optional[str]) -> None:
    shutil.chown(path, user=user, group=group)


class FileSystem(ABC):
    """
    Filesystem rooted at ``root``.

    Absolute install paths are re-rooted below ``root``, which is ``/`` (or
    the system drive) on a real install and a scratch directory in tests.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def local_path(self, path) -> Path:
        return self.root / relative_destination(path)

    def ensure_directory(self, directory: ProvisionedDirectory) -> Path:
        """Create if absent, then unconditionally re-apply owner and mode."""
        path = self.local_path(directory.path)
        existed = path.is_dir()
        path.mkdir(parents=True, exist_ok=True)
        self.apply_owner(path, directory)
        self.apply_mode(path, directory)
        logger.info(
            "Provisioned directory",
            path=str(directory.path),
            owner=directory.owner,
            mode=f"{directory.mode:o}",
            created=not existed,
        )
        return path

    def install_payload(self, root: InstallRoot) -> List[Path]:
        """Place the install root's files at their destinations."""
        written = materialize(root, self.root)
        logger.info("Placed install payload", target=root.target.value, files=len(written))
        return written

    @abstractmethod
    def apply_owner(self, path: Path, directory: ProvisionedDirectory) -> None:
        """Make the directory's principal its owner."""

    @abstractmethod
    def apply_mode(self, path: Path, directory: ProvisionedDirectory) -> None:
        """Apply the directory's permission mode."""


class PosixFileSystem(FileSystem):
    """chown/chmod based permissions."""

    def __init__(self, root: Path = Path("/"), chown: Optional[ChownFunc] = None):
        super().__init__(root)
        self._chown = chown or _shutil_chown

    def apply_owner(self, path: Path, directory: ProvisionedDirectory) -> None:
        self._chown(path, directory.owner, directory.group)

    def apply_mode(self, path: Path, directory: ProvisionedDirectory) -> None:
        # mkdir honours the umask; chmod does not
        os.chmod(path, directory.mode)


class WindowsFileSystem(FileSystem):
    """ACL based permissions via ``icacls``."""

    def __init__(self, runner: CommandRunner, root: Path = Path("C:/")):
        super().__init__(root)
        self.runner = runner

    def apply_owner(self, path: Path, directory: ProvisionedDirectory) -> None:
        self.runner.run(["icacls", str(path), "/setowner", directory.owner])

    def apply_mode(self, path: Path, directory: ProvisionedDirectory) -> None:
        grants = windows_acl_grants(directory.owner, directory.mode)
        self.runner.run(["icacls", str(path), "/inheritance:r", "/grant:r", *grants])


def filesystem_for(profile: PlatformProfile, runner: CommandRunner, root: Path) -> FileSystem:
    """Filesystem backend of a platform family."""
    if profile.target == PlatformTarget.WINDOWS:
        return WindowsFileSystem(runner, root)
    return PosixFileSystem(root)
