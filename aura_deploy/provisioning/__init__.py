"""System principal and filesystem provisioning."""

from .accounts import (
    LinuxAccounts,
    MacAccounts,
    PrincipalDirectory,
    WindowsAccounts,
    accounts_for,
)
from .filesystem import FileSystem, PosixFileSystem, WindowsFileSystem, filesystem_for
from .provisioner import PrincipalProvisioner, next_principal_id

__all__ = [
    "FileSystem",
    "LinuxAccounts",
    "MacAccounts",
    "PosixFileSystem",
    "PrincipalDirectory",
    "PrincipalProvisioner",
    "WindowsAccounts",
    "WindowsFileSystem",
    "accounts_for",
    "filesystem_for",
    "next_principal_id",
]
