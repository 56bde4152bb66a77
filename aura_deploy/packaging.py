"""
Package emitters: thin adapters over the native packaging tools.

Each emitter writes the install root into its own staging directory, adds
the format's metadata and hook scripts, and hands the tree to the external
tool. A nonzero exit becomes a PACKAGING failure carrying the tool's stderr
untouched.
"""

import os
import platform
import shutil
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from pathlib import Path, PurePath
from typing import Dict, List, Optional, Tuple

from returns.result import Failure, Result, Success
from structlog import get_logger

from .core.command import CommandRunner
from .core.error_handling import DeployError, ErrorCategory
from .core.result_pattern import FailureKind, StageError, packaging_failure, with_result
from .manifest import DeploymentManifest
from .models import EXECUTABLE_MODE, InstallRoot
from .platforms import PackagingMechanism, PlatformProfile
from .staging import materialize, relative_destination

logger = get_logger(__name__)

WIX_NAMESPACE = "http://wixtoolset.org/schemas/v4/wxs"


def debian_architecture(cargo_target: Optional[str] = None) -> str:
    """Debian architecture name of a rust target triple, or of the host."""
    machine = cargo_target.split("-", 1)[0] if cargo_target else platform.machine()
    match machine.lower():
        case "x86_64" | "amd64":
            return "amd64"
        case "aarch64" | "arm64":
            return "arm64"
        case "armv7" | "armv7l" | "armv7a":
            return "armhf"
        case "i386" | "i586" | "i686":
            return "i386"
        case unknown:
            logger.warning("Unknown machine architecture, using it verbatim", arch=unknown)
            return unknown


def rpm_architecture(cargo_target: Optional[str] = None) -> str:
    """RPM architecture name of a rust target triple, or of the host."""
    machine = cargo_target.split("-", 1)[0] if cargo_target else platform.machine()
    match machine.lower():
        case "x86_64" | "amd64":
            return "x86_64"
        case "aarch64" | "arm64":
            return "aarch64"
        case "armv7" | "armv7l" | "armv7a":
            return "armv7hl"
        case "i386" | "i586" | "i686":
            return "i686"
        case unknown:
            return unknown


class Emitter(ABC):
    """Base class of the per-mechanism package emitters."""

    mechanism: PackagingMechanism
    tool: str

    def __init__(
        self,
        runner: CommandRunner,
        manifest: DeploymentManifest,
        staging_dir: Path,
        output_dir: Path,
    ):
        """
        Args:
            runner: Command runner for the packaging tool
            manifest: Application description (package name, version, ...)
            staging_dir: Scratch directory owned by this emitter
            output_dir: Directory receiving the finished package
        """
        self.runner = runner
        self.manifest = manifest
        self.staging_dir = Path(staging_dir)
        self.output_dir = Path(output_dir)

    @property
    def root_dir(self) -> Path:
        return self.staging_dir / "root"

    def available(self) -> bool:
        """Whether the packaging tool can run on this host."""
        return True

    @abstractmethod
    def package_name(self) -> str:
        """File name of the produced package."""

    def emit(self, root: InstallRoot, profile: PlatformProfile) -> Result[Path, StageError]:
        """
        Produce the native package for an install root.

        Returns:
            Success with the package path, or a PACKAGING failure
        """
        output = self.output_dir / self.package_name()
        logger.info(
            "Emitting package",
            target=profile.target.value,
            mechanism=self.mechanism.value,
            output=str(output),
        )
        result = self._emit(root, profile, output)
        match result:
            case Success(path) if not Path(path).is_file():
                return Failure(
                    packaging_failure(
                        f"{self.mechanism.value} tool reported success but wrote no package",
                        diagnostic=f"missing {path}",
                    )
                )
            case Success(path):
                logger.info("Package written", target=profile.target.value, package=str(path))
        return result

    @with_result(FailureKind.PACKAGING, message="Package emission failed")
    def _emit(self, root: InstallRoot, profile: PlatformProfile, output: Path) -> Path:
        self._prepare_staging()
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.build_package(root, profile, output)
        return output

    @abstractmethod
    def build_package(self, root: InstallRoot, profile: PlatformProfile, output: Path) -> None:
        """Write format metadata into the staging dir and run the tool."""

    def _prepare_staging(self) -> None:
        if self.staging_dir.exists():
            shutil.rmtree(self.staging_dir)
        self.staging_dir.mkdir(parents=True)

    @staticmethod
    def _write_script(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        os.chmod(path, EXECUTABLE_MODE)


class DebEmitter(Emitter):
    """Debian package via ``dpkg-deb``."""

    mechanism = PackagingMechanism.DEB
    tool = "dpkg-deb"

    def package_name(self) -> str:
        arch = debian_architecture(self.manifest.cargo_target)
        return f"{self.manifest.app}_{self.manifest.version}_{arch}.deb"

    def control_file(self) -> str:
        fields = {
            "Package": self.manifest.app,
            "Version": self.manifest.version,
            "Section": "database",
            "Priority": "optional",
            "Architecture": debian_architecture(self.manifest.cargo_target),
            "Maintainer": self.manifest.maintainer,
            "Description": self.manifest.description,
        }
        return "".join(f"{key}: {value}\n" for key, value in fields.items())

    def build_package(self, root: InstallRoot, profile: PlatformProfile, output: Path) -> None:
        materialize(root, self.root_dir)
        debian = self.root_dir / "DEBIAN"
        debian.mkdir(parents=True, exist_ok=True)
        (debian / "control").write_text(self.control_file(), encoding="utf-8")
        self._write_script(debian / "preinst", root.hooks.pre_install)
        self._write_script(debian / "postinst", root.hooks.post_install)

        self.runner.run(
            ["dpkg-deb", "--build", "--root-owner-group", self.root_dir, output],
            description=f"Building {output.name}",
        )


class RpmEmitter(Emitter):
    """
    RPM package via ``rpmbuild``.

    Built from the same install root and hook scripts as the Debian package.
    ``rpmbuild`` is optional on a Linux host; when it is missing the RPM is
    skipped rather than failing the target.
    """

    mechanism = PackagingMechanism.RPM
    tool = "rpmbuild"
    release = "1"

    @property
    def spec_path(self) -> Path:
        return self.staging_dir / f"{self.manifest.app}.spec"

    def available(self) -> bool:
        return shutil.which(self.tool) is not None

    def package_name(self) -> str:
        arch = rpm_architecture(self.manifest.cargo_target)
        return f"{self.manifest.app}-{self.manifest.version}-{self.release}.{arch}.rpm"

    def spec_file(self, root: InstallRoot) -> str:
        manifest = self.manifest
        header = {
            "Name": manifest.app,
            "Version": manifest.version,
            "Release": self.release,
            "Summary": manifest.description,
            "License": manifest.license,
            "Packager": manifest.maintainer,
            "BuildArch": rpm_architecture(manifest.cargo_target),
            "AutoReqProv": "no",
        }
        lines = [f"{key}: {value}" for key, value in header.items()]
        # Ship the cargo release binaries as built
        lines += [
            "%define __os_install_post %{nil}",
            "%define debug_package %{nil}",
            "",
            "%description",
            manifest.description,
            "",
            "%install",
            "mkdir -p %{buildroot}",
            f'cp -a "{self.root_dir}/." %{{buildroot}}/',
            "",
            "%pre",
            root.hooks.pre_install.rstrip(),
            "",
            "%post",
            root.hooks.post_install.rstrip(),
            "",
            "%files",
        ]
        for entry in root.entries:
            lines.append(f'%attr({entry.mode:04o}, {entry.owner}, -) "{entry.destination}"')
        return "\n".join(lines) + "\n"

    def build_package(self, root: InstallRoot, profile: PlatformProfile, output: Path) -> None:
        materialize(root, self.root_dir)
        self.spec_path.write_text(self.spec_file(root), encoding="utf-8")

        self.runner.run(
            [
                self.tool,
                "-bb",
                "--define",
                f"_topdir {self.staging_dir / 'rpmbuild'}",
                "--define",
                f"_rpmdir {self.output_dir}",
                "--define",
                f"_build_name_fmt {output.name}",
                self.spec_path,
            ],
            description=f"Building {output.name}",
        )


class PkgEmitter(Emitter):
    """macOS flat installer package via ``pkgbuild``."""

    mechanism = PackagingMechanism.PKG
    tool = "pkgbuild"

    @property
    def scripts_dir(self) -> Path:
        return self.staging_dir / "scripts"

    def package_name(self) -> str:
        return f"{self.manifest.app}-{self.manifest.version}.pkg"

    def build_package(self, root: InstallRoot, profile: PlatformProfile, output: Path) -> None:
        materialize(root, self.root_dir)
        self._write_script(self.scripts_dir / "preinstall", root.hooks.pre_install)
        self._write_script(self.scripts_dir / "postinstall", root.hooks.post_install)

        self.runner.run(
            [
                "pkgbuild",
                "--root",
                self.root_dir,
                "--identifier",
                self.manifest.launchd_label,
                "--version",
                self.manifest.version,
                "--scripts",
                self.scripts_dir,
                "--install-location",
                "/",
                output,
            ],
            description=f"Building {output.name}",
        )


class MsiEmitter(Emitter):
    """Windows Installer package via the WiX v4 toolset."""

    mechanism = PackagingMechanism.MSI
    tool = "wix"
    hooks_dir_name = "hooks"

    def package_name(self) -> str:
        return f"{self.manifest.app}-{self.manifest.version}-x64.msi"

    def build_package(self, root: InstallRoot, profile: PlatformProfile, output: Path) -> None:
        materialize(root, self.root_dir)
        prefix = profile.install_prefix
        hooks_dir = prefix / self.hooks_dir_name
        hook_files = {
            "PreInstall": hooks_dir / f"preinstall{root.hooks.suffix}",
            "PostInstall": hooks_dir / f"postinstall{root.hooks.suffix}",
        }
        self._write_script(
            self.root_dir / relative_destination(hook_files["PreInstall"]), root.hooks.pre_install
        )
        self._write_script(
            self.root_dir / relative_destination(hook_files["PostInstall"]), root.hooks.post_install
        )

        files = [*root.destinations, *hook_files.values()]
        source = self.staging_dir / f"{self.manifest.app}.wxs"
        source.write_text(self.render_source(profile, files, hook_files), encoding="utf-8")

        self.runner.run(
            ["wix", "build", "-arch", "x64", "-o", output, source],
            cwd=self.staging_dir,
            description=f"Building {output.name}",
        )

    def render_source(
        self,
        profile: PlatformProfile,
        files: List[PurePath],
        hook_files: Dict[str, PurePath],
    ) -> str:
        """
        Render the WiX source describing every installed file.

        Args:
            profile: Windows profile; every file must live below its install prefix
            files: Installed file destinations
            hook_files: Custom action id to the installed hook script

        Returns:
            WiX v4 XML source
        """
        prefix = profile.install_prefix
        ET.register_namespace("", WIX_NAMESPACE)
        wix = ET.Element(_wix("Wix"))
        package = ET.SubElement(
            wix,
            _wix("Package"),
            Name=self.manifest.display_name,
            Manufacturer=self.manifest.maintainer,
            Version=self.manifest.version,
            UpgradeCode=self.manifest.upgrade_code,
            Scope="perMachine",
        )
        ET.SubElement(
            package,
            _wix("MajorUpgrade"),
            DowngradeErrorMessage="A newer version is already installed.",
        )
        ET.SubElement(package, _wix("MediaTemplate"), EmbedCab="yes")

        program_files = ET.SubElement(package, _wix("StandardDirectory"), Id="ProgramFiles64Folder")
        install_folder = ET.SubElement(
            program_files, _wix("Directory"), Id="INSTALLFOLDER", Name=prefix.name
        )

        directories: Dict[Tuple[str, ...], ET.Element] = {(): install_folder}
        for index, destination in enumerate(files):
            relative = _relative_to(destination, prefix)
            parent = self._directory(directories, relative.parts[:-1])
            component = ET.SubElement(parent, _wix("Component"), Id=f"Cmp{index}")
            ET.SubElement(
                component,
                _wix("File"),
                Id=f"File{index}",
                Name=relative.name,
                Source=str(self.root_dir / relative_destination(destination)),
                KeyPath="yes",
            )
            ET.SubElement(package, _wix("ComponentRef"), Id=f"Cmp{index}")

        sequence = ET.SubElement(package, _wix("InstallExecuteSequence"))
        previous = "InstallFiles"
        for action, script in hook_files.items():
            installed = _relative_to(script, prefix)
            ET.SubElement(
                package,
                _wix("CustomAction"),
                Id=action,
                Directory="INSTALLFOLDER",
                ExeCommand=(
                    "powershell.exe -NoProfile -ExecutionPolicy Bypass "
                    f"-File \"[INSTALLFOLDER]{installed}\""
                ),
                Execute="deferred",
                Impersonate="no",
                Return="check",
            )
            ET.SubElement(
                sequence, _wix("Custom"), Action=action, After=previous, Condition="NOT REMOVE"
            )
            previous = action

        ET.indent(wix)
        return ET.tostring(wix, encoding="unicode", xml_declaration=True) + "\n"

    @staticmethod
    def _directory(directories: Dict[Tuple[str, ...], ET.Element], parts: Tuple[str, ...]) -> ET.Element:
        if parts not in directories:
            parent = MsiEmitter._directory(directories, parts[:-1])
            directories[parts] = ET.SubElement(
                parent,
                _wix("Directory"),
                Id="Dir" + "_".join(p.replace(" ", "") for p in parts),
                Name=parts[-1],
            )
        return directories[parts]


def _wix(tag: str) -> str:
    return f"{{{WIX_NAMESPACE}}}{tag}"


def _relative_to(destination: PurePath, prefix: PurePath) -> PurePath:
    try:
        return destination.relative_to(prefix)
    except ValueError as e:
        raise DeployError(
            f"{destination} is outside the install folder {prefix}",
            category=ErrorCategory.CONFIGURATION,
        ) from e


_EMITTERS = {
    PackagingMechanism.DEB: DebEmitter,
    PackagingMechanism.PKG: PkgEmitter,
    PackagingMechanism.MSI: MsiEmitter,
    PackagingMechanism.RPM: RpmEmitter,
}


def emitter_for(
    profile: PlatformProfile,
    runner: CommandRunner,
    manifest: DeploymentManifest,
    staging_dir: Path,
    output_dir: Path,
) -> Emitter:
    """Emitter of a profile's packaging mechanism."""
    return _EMITTERS[profile.packaging](runner, manifest, staging_dir, output_dir)


def optional_emitters_for(
    profile: PlatformProfile,
    runner: CommandRunner,
    manifest: DeploymentManifest,
    staging_dir: Path,
    output_dir: Path,
) -> List[Emitter]:
    """Emitters of the profile's optional mechanisms, each in its own staging subdirectory."""
    return [
        _EMITTERS[mechanism](runner, manifest, Path(staging_dir) / mechanism.value, output_dir)
        for mechanism in profile.optional_packaging
    ]
