"""Tests for service descriptor and hook rendering."""

import plistlib
import xml.etree.ElementTree as ET
from pathlib import PurePosixPath

import pytest

from aura_deploy.descriptors import (
    render_descriptor,
    render_hooks,
    render_launchd_plist,
    render_systemd_unit,
    render_winsw_config,
    windows_acl_grants,
)
from aura_deploy.models import ServiceDescriptor
from aura_deploy.platforms import ServiceDialect
from aura_deploy.staging import build_directories, build_principal, build_service_descriptor


@pytest.fixture
def descriptor():
    return ServiceDescriptor(
        identifier="aura-server",
        display_name="AuraDB",
        executable=PurePosixPath("/usr/bin/aura-server"),
        arguments=("--port", "7600"),
        working_directory=PurePosixPath("/var/lib/aura"),
        log_destination=PurePosixPath("/var/log/aura/aura-server.log"),
        account="aura",
        descriptor_path=PurePosixPath("/etc/systemd/system/aura-server.service"),
    )


def test_systemd_unit_minimum_fields(descriptor):
    unit = render_systemd_unit(descriptor)

    assert "User=aura" in unit
    assert "ExecStart=/usr/bin/aura-server --port 7600" in unit
    assert "WorkingDirectory=/var/lib/aura" in unit
    assert "Restart=always" in unit
    assert "StandardOutput=append:/var/log/aura/aura-server.log" in unit
    assert "StandardError=append:/var/log/aura/aura-server.log" in unit
    assert "WantedBy=multi-user.target" in unit


def test_launchd_plist_minimum_fields(descriptor):
    plist = plistlib.loads(render_launchd_plist(descriptor).encode("utf-8"))

    assert plist["Label"] == "aura-server"
    assert plist["ProgramArguments"] == ["/usr/bin/aura-server", "--port", "7600"]
    assert plist["WorkingDirectory"] == "/var/lib/aura"
    assert plist["UserName"] == "aura"
    assert plist["KeepAlive"] is True
    assert plist["RunAtLoad"] is True
    assert plist["StandardOutPath"] == "/var/log/aura/aura-server.log"
    assert plist["StandardErrorPath"] == "/var/log/aura/aura-server.log"


def test_winsw_config_minimum_fields(descriptor):
    service = ET.fromstring(render_winsw_config(descriptor))

    assert service.findtext("id") == "aura-server"
    assert service.findtext("executable") == "/usr/bin/aura-server"
    assert service.findtext("arguments") == "--port 7600"
    assert service.findtext("workingdirectory") == "/var/lib/aura"
    assert service.findtext("logpath") == "/var/log/aura"
    assert service.find("log").get("mode") == "roll"
    assert service.find("onfailure").get("action") == "restart"
    assert service.findtext("serviceaccount/username") == ".\\aura"


@pytest.mark.parametrize("dialect", list(ServiceDialect))
def test_render_descriptor_dispatches(descriptor, dialect):
    assert descriptor.identifier in render_descriptor(descriptor, dialect)


def test_acl_grants_follow_mode():
    private = windows_acl_grants("aura", 0o700)
    shared = windows_acl_grants("aura", 0o755)

    assert private == ["aura:(OI)(CI)F", "SYSTEM:(OI)(CI)F", "Administrators:(OI)(CI)F"]
    assert shared == private + ["Users:(OI)(CI)RX"]


class TestHooks:
    """Pre-/post-install payloads."""

    def _hooks(self, profile, manifest):
        principal = build_principal(profile, manifest)
        directories = build_directories(profile, principal)
        service = build_service_descriptor(profile, manifest, principal)
        return render_hooks(profile, principal, directories, service, start_timeout=5)

    def test_linux_hooks(self, linux_profile, manifest):
        hooks = self._hooks(linux_profile, manifest)

        assert hooks.pre_install.startswith("#!/bin/sh")
        assert "useradd --system" in hooks.pre_install
        assert "chmod 700 /var/lib/aura" in hooks.pre_install
        assert "chmod 755 /var/log/aura" in hooks.pre_install
        assert "systemctl enable aura-server" in hooks.post_install
        assert 'while [ "$i" -lt 5 ]' in hooks.post_install

    def test_macos_hooks_clamp_to_floor(self, macos_profile, manifest):
        hooks = self._hooks(macos_profile, manifest)

        assert "dscl . -create /Users/_aura UniqueID" in hooks.pre_install
        assert '-lt 500 ]; then NEXT_ID=500' in hooks.pre_install
        assert "chown _aura:admin /var/lib/aura" in hooks.pre_install
        assert "launchctl bootstrap system /Library/LaunchDaemons/com.aura.db.plist" in (
            hooks.post_install
        )

    def test_windows_hooks_are_powershell(self, windows_profile, manifest):
        hooks = self._hooks(windows_profile, manifest)

        assert hooks.suffix == ".ps1"
        assert "net user 'aura' /add" in hooks.pre_install
        assert "/inheritance:r" in hooks.pre_install
        assert "& 'winsw' install" in hooks.post_install
        assert "Get-Service -Name 'AuraDB'" in hooks.post_install
