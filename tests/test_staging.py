"""Tests for install root assembly and materialization."""

import shutil
import stat
import subprocess
import sys
from pathlib import Path, PurePosixPath, PureWindowsPath

import pytest

from aura_deploy.models import BuildArtifact, InstallEntry
from aura_deploy.staging import assemble, materialize, relative_destination
from conftest import local


@pytest.fixture
def artifacts(tmp_path):
    out = tmp_path / "target" / "release"
    out.mkdir(parents=True)
    server = out / "aura-server"
    cli = out / "aura"
    server.write_bytes(b"server")
    cli.write_bytes(b"cli")
    return [BuildArtifact("aura-server", server), BuildArtifact("aura-cli", cli)]


class TestAssemble:
    """Pure mapping of artifacts onto destinations."""

    def test_linux_entries(self, artifacts, linux_profile, manifest):
        root = assemble(artifacts, linux_profile, manifest)

        assert root.destinations == (
            PurePosixPath("/usr/bin/aura-server"),
            PurePosixPath("/usr/bin/aura"),
            PurePosixPath("/etc/systemd/system/aura-server.service"),
        )
        server = root.entry(PurePosixPath("/usr/bin/aura-server"))
        assert server.mode == 0o755
        assert server.owner == "root"
        unit = root.entry(PurePosixPath("/etc/systemd/system/aura-server.service"))
        assert unit.mode == 0o644
        assert "ExecStart=/usr/bin/aura-server" in unit.content

    def test_only_server_is_a_service(self, artifacts, linux_profile, manifest):
        root = assemble(artifacts, linux_profile, manifest)

        assert root.service.executable == PurePosixPath("/usr/bin/aura-server")
        assert [d.name for d in root.artifacts] == ["aura-server", "aura-cli"]

    def test_principal_and_directories(self, artifacts, macos_profile, manifest):
        root = assemble(artifacts, macos_profile, manifest)

        assert root.principal.name == "_aura"
        assert root.principal.home == PurePosixPath("/var/lib/aura")
        assert [(str(d.path), d.mode, d.owner, d.group) for d in root.directories] == [
            ("/var/lib/aura", 0o700, "_aura", "admin"),
            ("/var/log/aura", 0o755, "_aura", "admin"),
        ]
        assert root.service.descriptor_path == PurePosixPath(
            "/Library/LaunchDaemons/com.aura.db.plist"
        )

    def test_windows_descriptor_and_hooks(self, artifacts, windows_profile, manifest):
        root = assemble(artifacts, windows_profile, manifest)

        assert root.service.descriptor_path == PureWindowsPath(
            "C:/Program Files/AuraDB/service/AuraDB.xml"
        )
        assert root.entry(PureWindowsPath("C:/Program Files/AuraDB/bin/aura.exe")).owner == (
            "Administrators"
        )
        assert root.hooks.suffix == ".ps1"

    def test_assemble_does_not_touch_disk(self, tmp_path, linux_profile, manifest):
        missing = [BuildArtifact("aura-server", tmp_path / "nope")]

        root = assemble(missing, linux_profile, manifest)

        assert root.entries[0].source == tmp_path / "nope"


class TestMaterialize:
    """Writing an install root under a scratch directory."""

    def test_writes_files_with_modes(self, tmp_path, artifacts, linux_profile, manifest):
        root = assemble(artifacts, linux_profile, manifest)
        dest = tmp_path / "out"

        written = materialize(root, dest)

        server = local(dest, PurePosixPath("/usr/bin/aura-server"))
        unit = local(dest, PurePosixPath("/etc/systemd/system/aura-server.service"))
        assert written[0] == server
        assert server.read_bytes() == b"server"
        assert stat.S_IMODE(server.stat().st_mode) == 0o755
        assert stat.S_IMODE(unit.stat().st_mode) == 0o644
        assert "User=aura" in unit.read_text()

    def test_rewrites_existing_tree(self, tmp_path, artifacts, linux_profile, manifest):
        root = assemble(artifacts, linux_profile, manifest)
        dest = tmp_path / "out"

        materialize(root, dest)
        materialize(root, dest)

        assert local(dest, PurePosixPath("/usr/bin/aura")).read_bytes() == b"cli"

    @pytest.mark.skipif(
        not sys.platform.startswith("linux") or shutil.which("sleep") is None,
        reason="needs a Linux executable to run",
    )
    def test_replaces_running_executable(self, tmp_path, artifacts, linux_profile, manifest):
        root = assemble(artifacts, linux_profile, manifest)
        dest = tmp_path / "out"
        server = local(dest, PurePosixPath("/usr/bin/aura-server"))
        server.parent.mkdir(parents=True)
        shutil.copy2(shutil.which("sleep"), server)
        running = subprocess.Popen([str(server), "30"])
        try:
            materialize(root, dest)
        finally:
            running.kill()
            running.wait()

        assert server.read_bytes() == b"server"
        assert stat.S_IMODE(server.stat().st_mode) == 0o755
        assert sorted(p.name for p in server.parent.iterdir()) == ["aura", "aura-server"]


def test_relative_destination_strips_anchor():
    assert relative_destination(PurePosixPath("/usr/bin/aura")) == Path("usr/bin/aura")
    assert relative_destination(PureWindowsPath("C:/Program Files/AuraDB/bin/aura.exe")) == Path(
        "Program Files", "AuraDB", "bin", "aura.exe"
    )


def test_install_entry_requires_exactly_one_payload(tmp_path):
    with pytest.raises(ValueError):
        InstallEntry(PurePosixPath("/x"), "root", 0o644)
    with pytest.raises(ValueError):
        InstallEntry(PurePosixPath("/x"), "root", 0o644, source=tmp_path, content="x")
