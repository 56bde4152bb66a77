"""
Service descriptor and install hook rendering.

Every function here is pure: it turns a ``ServiceDescriptor`` (plus the
principal and directories it needs) into the concrete text a native tool
consumes. Invoking those tools is the job of ``packaging`` and ``services``.
"""

import plistlib
import xml.etree.ElementTree as ET
from pathlib import PurePath
from shlex import quote
from typing import List, Sequence

from .models import HookScripts, ProvisionedDirectory, ServiceDescriptor, SystemPrincipal
from .platforms import PlatformProfile, ServiceDialect

# Built-in Windows identities that keep access to every provisioned directory
WINDOWS_ADMIN_IDENTITIES = ("SYSTEM", "Administrators")


def render_descriptor(descriptor: ServiceDescriptor, dialect: ServiceDialect) -> str:
    """Render a descriptor into the syntax of a service-manager dialect."""
    match dialect:
        case ServiceDialect.SYSTEMD:
            return render_systemd_unit(descriptor)
        case ServiceDialect.LAUNCHD:
            return render_launchd_plist(descriptor)
        case ServiceDialect.WINSW:
            return render_winsw_config(descriptor)
    raise ValueError(f"Unsupported service dialect: {dialect}")


def render_systemd_unit(descriptor: ServiceDescriptor) -> str:
    exec_start = " ".join(quote(part) for part in descriptor.command_line)
    lines = [
        "[Unit]",
        f"Description={descriptor.description or descriptor.display_name}",
        "After=network-online.target",
        "Wants=network-online.target",
        "",
        "[Service]",
        "Type=simple",
        f"User={descriptor.account}",
        f"Group={descriptor.account}",
        f"ExecStart={exec_start}",
        f"WorkingDirectory={descriptor.working_directory}",
        f"Restart={descriptor.restart.value}",
        "RestartSec=5",
        f"StandardOutput=append:{descriptor.log_destination}",
        f"StandardError=append:{descriptor.log_destination}",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
        "",
    ]
    return "\n".join(lines)


def render_launchd_plist(descriptor: ServiceDescriptor) -> str:
    plist = {
        "Label": descriptor.identifier,
        "ProgramArguments": list(descriptor.command_line),
        "WorkingDirectory": str(descriptor.working_directory),
        "UserName": descriptor.account,
        "RunAtLoad": True,
        # launchd has no "restart always"; KeepAlive=true relaunches on any exit
        "KeepAlive": True,
        "StandardOutPath": str(descriptor.log_destination),
        "StandardErrorPath": str(descriptor.log_destination),
    }
    return plistlib.dumps(plist, sort_keys=False).decode("utf-8")


def render_winsw_config(descriptor: ServiceDescriptor) -> str:
    service = ET.Element("service")
    ET.SubElement(service, "id").text = descriptor.identifier
    ET.SubElement(service, "name").text = descriptor.display_name
    ET.SubElement(service, "description").text = (
        descriptor.description or descriptor.display_name
    )
    ET.SubElement(service, "executable").text = str(descriptor.executable)
    if descriptor.arguments:
        ET.SubElement(service, "arguments").text = " ".join(descriptor.arguments)
    ET.SubElement(service, "workingdirectory").text = str(descriptor.working_directory)
    ET.SubElement(service, "logpath").text = str(PurePath(descriptor.log_destination).parent)
    ET.SubElement(service, "log", mode="roll")
    ET.SubElement(service, "onfailure", action="restart", delay="5 sec")
    ET.SubElement(service, "startmode").text = "Automatic"
    account = ET.SubElement(service, "serviceaccount")
    ET.SubElement(account, "username").text = f".\\{descriptor.account}"
    ET.SubElement(account, "allowservicelogon").text = "true"
    ET.indent(service)
    return ET.tostring(service, encoding="unicode", xml_declaration=False) + "\n"


def windows_acl_grants(owner: str, mode: int) -> List[str]:
    """
    Translate a POSIX mode into ``icacls /grant:r`` arguments.

    The owner always gets full control. Read/execute for group/other
    (0o005) becomes read/execute for the local Users group.
    """
    grants = [f"{owner}:(OI)(CI)F"]
    grants += [f"{identity}:(OI)(CI)F" for identity in WINDOWS_ADMIN_IDENTITIES]
    if mode & 0o005:
        grants.append("Users:(OI)(CI)RX")
    return grants


def render_hooks(
    profile: PlatformProfile,
    principal: SystemPrincipal,
    directories: Sequence[ProvisionedDirectory],
    descriptor: ServiceDescriptor,
    start_timeout: int = 10,
    winsw: str = "winsw",
) -> HookScripts:
    """Render the pre-/post-install payloads for a target's dialect."""
    attempts = max(1, int(start_timeout))
    match profile.dialect:
        case ServiceDialect.SYSTEMD:
            return HookScripts(
                pre_install=_linux_pre_install(principal, directories),
                post_install=_systemd_post_install(descriptor, attempts),
            )
        case ServiceDialect.LAUNCHD:
            return HookScripts(
                pre_install=_macos_pre_install(principal, directories, profile),
                post_install=_launchd_post_install(descriptor, attempts),
            )
        case ServiceDialect.WINSW:
            return HookScripts(
                pre_install=_windows_pre_install(principal, directories),
                post_install=_winsw_post_install(descriptor, attempts, winsw),
                suffix=".ps1",
            )
    raise ValueError(f"Unsupported service dialect: {profile.dialect}")


def _posix_directory_lines(directories: Sequence[ProvisionedDirectory]) -> List[str]:
    lines = []
    for directory in directories:
        path = quote(str(directory.path))
        owner = directory.owner if not directory.group else f"{directory.owner}:{directory.group}"
        lines += [
            f"mkdir -p {path}",
            f"chown {quote(owner)} {path}",
            f"chmod {directory.mode:o} {path}",
        ]
    return lines


def _linux_pre_install(
    principal: SystemPrincipal, directories: Sequence[ProvisionedDirectory]
) -> str:
    user = quote(principal.name)
    home = quote(str(principal.home))
    lines = [
        "#!/bin/sh",
        f"# Pre-install: create the {principal.name} system user and its directories",
        "set -e",
        "",
        f"if ! id -u {user} >/dev/null 2>&1; then",
        f"    useradd --system --user-group --shell /usr/sbin/nologin "
        f"--home-dir {home} --no-create-home {user}",
        f"    echo \"Created system user {principal.name}\"",
        "else",
        f"    echo \"User {principal.name} already exists\"",
        "fi",
        "",
        *_posix_directory_lines(directories),
        "",
    ]
    return "\n".join(lines)


def _macos_pre_install(
    principal: SystemPrincipal,
    directories: Sequence[ProvisionedDirectory],
    profile: PlatformProfile,
) -> str:
    record = quote(f"/Users/{principal.name}")
    floor = profile.principal_id_floor or 0
    lines = [
        "#!/bin/sh",
        f"# Pre-install: create the {principal.name} system user and its directories",
        "set -e",
        "",
        f"if ! dscl . -read {record} >/dev/null 2>&1; then",
        "    NEXT_ID=$(dscl . -list /Users UniqueID | awk 'BEGIN{max=0} {if($2>max) max=$2} END{print max+1}')",
        f"    if [ \"$NEXT_ID\" -lt {floor} ]; then NEXT_ID={floor}; fi",
        f"    dscl . -create {record}",
        f"    dscl . -create {record} UserShell /usr/bin/false",
        f"    dscl . -create {record} RealName {quote(principal.name + ' system user')}",
        f"    dscl . -create {record} UniqueID \"$NEXT_ID\"",
        f"    dscl . -create {record} PrimaryGroupID 20",
        f"    dscl . -create {record} NFSHomeDirectory {quote(str(principal.home))}",
        f"    dscl . -create {record} IsHidden 1",
        f"    echo \"Created system user {principal.name}\"",
        "else",
        f"    echo \"User {principal.name} already exists\"",
        "fi",
        "",
        *_posix_directory_lines(directories),
        "",
    ]
    return "\n".join(lines)


def _systemd_post_install(descriptor: ServiceDescriptor, attempts: int) -> str:
    unit = quote(descriptor.identifier)
    lines = [
        "#!/bin/sh",
        f"# Post-install: register and start {descriptor.identifier}",
        "set -e",
        "",
        "systemctl daemon-reload",
        f"systemctl enable {unit}",
        f"systemctl start {unit}",
        "",
        *_posix_wait_lines(f"systemctl is-active --quiet {unit}", descriptor.identifier, attempts),
    ]
    return "\n".join(lines)


def _launchd_post_install(descriptor: ServiceDescriptor, attempts: int) -> str:
    domain = quote(f"system/{descriptor.identifier}")
    plist = quote(str(descriptor.descriptor_path))
    lines = [
        "#!/bin/sh",
        f"# Post-install: register and start {descriptor.identifier}",
        "set -e",
        "",
        f"launchctl bootout {domain} >/dev/null 2>&1 || true",
        f"launchctl bootstrap system {plist}",
        f"launchctl enable {domain}",
        f"launchctl kickstart -k {domain}",
        "",
        *_posix_wait_lines(
            f"launchctl print {domain} 2>/dev/null | grep -q 'state = running'",
            descriptor.identifier,
            attempts,
        ),
    ]
    return "\n".join(lines)


def _posix_wait_lines(check: str, name: str, attempts: int) -> List[str]:
    return [
        "i=0",
        f"while [ \"$i\" -lt {attempts} ]; do",
        f"    if {check}; then",
        f"        echo \"{name} is running\"",
        "        exit 0",
        "    fi",
        "    i=$((i + 1))",
        "    sleep 1",
        "done",
        f"echo \"{name} did not reach the running state\" >&2",
        "exit 1",
        "",
    ]


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _windows_pre_install(
    principal: SystemPrincipal, directories: Sequence[ProvisionedDirectory]
) -> str:
    name = _ps_quote(principal.name)
    lines = [
        f"# Pre-install: create the {principal.name} service account and its directories",
        "$ErrorActionPreference = 'Stop'",
        "",
        f"net user {name} *> $null",
        "if ($LASTEXITCODE -ne 0) {",
        f"    net user {name} /add /expires:never /passwordreq:no /comment:{_ps_quote('Service account')}",
        f"    Write-Output {_ps_quote('Created service account ' + principal.name)}",
        "} else {",
        f"    Write-Output {_ps_quote('Account ' + principal.name + ' already exists')}",
        "}",
        "",
    ]
    for directory in directories:
        path = _ps_quote(str(directory.path))
        grants = " ".join(_ps_quote(g) for g in windows_acl_grants(directory.owner, directory.mode))
        lines += [
            f"New-Item -ItemType Directory -Force -Path {path} | Out-Null",
            f"icacls {path} /setowner {name} | Out-Null",
            f"icacls {path} /inheritance:r /grant:r {grants} | Out-Null",
        ]
    lines.append("")
    return "\n".join(lines)


def _winsw_post_install(descriptor: ServiceDescriptor, attempts: int, winsw: str) -> str:
    config = _ps_quote(str(descriptor.descriptor_path))
    service_id = _ps_quote(descriptor.identifier)
    exe = _ps_quote(winsw)
    lines = [
        f"# Post-install: register and start {descriptor.identifier}",
        "$ErrorActionPreference = 'Stop'",
        "",
        f"& {exe} install {config}",
        f"& {exe} start {config}",
        "",
        f"for ($i = 0; $i -lt {attempts}; $i++) {{",
        f"    $svc = Get-Service -Name {service_id} -ErrorAction SilentlyContinue",
        "    if ($svc -and $svc.Status -eq 'Running') {",
        f"        Write-Output {_ps_quote(descriptor.identifier + ' is running')}",
        "        exit 0",
        "    }",
        "    Start-Sleep -Seconds 1",
        "}",
        f"Write-Error {_ps_quote(descriptor.identifier + ' did not reach the running state')}",
        "exit 1",
        "",
    ]
    return "\n".join(lines)
