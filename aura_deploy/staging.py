"""
Install root assembly.

``assemble`` is a pure function of the build artifacts, the target profile
and the manifest: it decides every destination path, mode and owner, and
renders the service descriptor and hook payloads. Nothing touches the disk
until ``materialize`` writes the tree somewhere.
"""

import os
import shutil
import tempfile
from pathlib import Path, PurePath
from typing import Dict, Iterable, List

from structlog import get_logger

from .descriptors import render_descriptor, render_hooks
from .manifest import DeploymentManifest
from .models import (
    DATA_DIR_MODE,
    DESCRIPTOR_MODE,
    EXECUTABLE_MODE,
    LOG_DIR_MODE,
    ROOT_OWNER,
    BuildArtifact,
    InstallEntry,
    InstallRoot,
    ProvisionedDirectory,
    ServiceDescriptor,
    SystemPrincipal,
)
from .platforms import PlatformProfile, PlatformTarget, ServiceDialect

logger = get_logger(__name__)

_DESCRIPTOR_SUFFIXES = {
    ServiceDialect.SYSTEMD: ".service",
    ServiceDialect.LAUNCHD: ".plist",
    ServiceDialect.WINSW: ".xml",
}


def system_owner(profile: PlatformProfile) -> str:
    """Owner of installed binaries and descriptors."""
    return "Administrators" if profile.target == PlatformTarget.WINDOWS else ROOT_OWNER


def build_principal(profile: PlatformProfile, manifest: DeploymentManifest) -> SystemPrincipal:
    name = profile.principal_name(manifest.principal_base)
    group = None if profile.target == PlatformTarget.WINDOWS else (profile.directory_group or name)
    return SystemPrincipal(name=name, home=profile.data_dir, group=group)


def build_directories(
    profile: PlatformProfile, principal: SystemPrincipal
) -> tuple[ProvisionedDirectory, ...]:
    """Data dir (owner only) and log dir (world readable), both owned by the principal."""
    return (
        ProvisionedDirectory(profile.data_dir, principal.name, DATA_DIR_MODE, principal.group),
        ProvisionedDirectory(profile.log_dir, principal.name, LOG_DIR_MODE, principal.group),
    )


def build_service_descriptor(
    profile: PlatformProfile, manifest: DeploymentManifest, principal: SystemPrincipal
) -> ServiceDescriptor:
    binary = manifest.service_binary
    identifier = manifest.service_identifier(profile.dialect)
    return ServiceDescriptor(
        identifier=identifier,
        display_name=manifest.display_name,
        description=f"{manifest.display_name} server",
        executable=profile.executable(binary.output_name),
        arguments=tuple(binary.arguments),
        working_directory=profile.data_dir,
        log_destination=profile.log_dir / f"{binary.output_name}.log",
        account=principal.name,
        descriptor_path=profile.descriptor_dir / f"{identifier}{_DESCRIPTOR_SUFFIXES[profile.dialect]}",
    )


def assemble(
    artifacts: Iterable[BuildArtifact],
    profile: PlatformProfile,
    manifest: DeploymentManifest,
    start_timeout: int = 10,
    winsw: str = "winsw",
) -> InstallRoot:
    """
    Map build artifacts and rendered metadata onto install destinations.

    Args:
        artifacts: Executables from the builder
        profile: Target platform conventions
        manifest: Application description
        start_timeout: Seconds the post-install hook waits for the service
        winsw: WinSW executable referenced by Windows hooks

    Returns:
        InstallRoot with executables (0755), the service descriptor (0644) and
        the pre-/post-install hooks
    """
    artifacts = tuple(artifacts)
    output_names: Dict[str, str] = {b.name: b.output_name for b in manifest.binaries}
    owner = system_owner(profile)

    entries: List[InstallEntry] = []
    for artifact in artifacts:
        file_name = output_names.get(artifact.name, artifact.path.stem)
        entries.append(
            InstallEntry(
                destination=profile.executable(file_name),
                owner=owner,
                mode=EXECUTABLE_MODE,
                source=artifact.path,
            )
        )

    principal = build_principal(profile, manifest)
    directories = build_directories(profile, principal)
    service = build_service_descriptor(profile, manifest, principal)
    entries.append(
        InstallEntry(
            destination=service.descriptor_path,
            owner=owner,
            mode=DESCRIPTOR_MODE,
            content=render_descriptor(service, profile.dialect),
        )
    )

    hooks = render_hooks(profile, principal, directories, service, start_timeout, winsw)
    logger.debug(
        "Assembled install root",
        target=profile.target.value,
        entries=[str(e.destination) for e in entries],
    )
    return InstallRoot(
        target=profile.target,
        entries=tuple(entries),
        hooks=hooks,
        principal=principal,
        directories=directories,
        service=service,
        artifacts=artifacts,
    )


def relative_destination(destination: PurePath) -> Path:
    """Strip the anchor (``/`` or ``C:\\``) so a destination can be re-rooted."""
    parts = destination.parts[1:] if destination.anchor else destination.parts
    return Path(*parts)


def materialize(root: InstallRoot, destination: Path) -> List[Path]:
    """
    Write an install root below ``destination``, applying modes but not owners.

    Each file is written next to its destination and renamed over it, so an
    executable that is currently running (a redeploy) is replaced rather than
    overwritten in place.

    Args:
        root: Assembled install root
        destination: Directory standing in for the filesystem root

    Returns:
        Paths written, in entry order
    """
    written: List[Path] = []
    for entry in root.entries:
        path = Path(destination) / relative_destination(entry.destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        os.close(fd)
        temp = Path(temp_name)
        try:
            if entry.source is not None:
                shutil.copyfile(entry.source, temp)
            else:
                temp.write_text(entry.content or "", encoding="utf-8")
            os.chmod(temp, entry.mode)
            os.replace(temp, path)
        except BaseException:
            temp.unlink(missing_ok=True)
            raise
        written.append(path)
    return written
