"""
Deployment manifest: the declarative description of the application being
deployed (names, binaries, service identifiers and package metadata).
"""

from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .core.error_handling import ManifestError


class BinarySpec(BaseModel):
    """One executable produced by the build toolchain."""

    name: str = Field(..., description="Cargo binary target name")
    file_name: Optional[str] = Field(
        default=None, description="Produced file name, when it differs from the target name"
    )
    service: bool = Field(default=False, description="Run persistently under the service manager")
    arguments: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Binary name cannot be empty")
        return v

    @property
    def output_name(self) -> str:
        return self.file_name or self.name


class DeploymentManifest(BaseModel):
    """Application description shared by every platform target."""

    app: str = Field(default="aura", description="Short name used in paths and the principal")
    display_name: str = Field(default="AuraDB")
    version: str = Field(default="0.1.0")
    description: str = Field(default="AuraDB database server and command-line client")
    maintainer: str = Field(default="AuraDB Maintainers <maintainers@aura.invalid>")
    license: str = Field(default="Proprietary", description="License tag of the RPM package")
    principal: Optional[str] = Field(
        default=None, description="Base principal name; defaults to the app name"
    )
    service_name: str = Field(default="aura-server", description="systemd unit name")
    launchd_label: str = Field(default="com.aura.db")
    windows_service_id: str = Field(default="AuraDB")
    upgrade_code: str = Field(
        default="6F1F3A8E-2C1B-4C8B-9C55-0A3E2D7B1A44", description="MSI upgrade code"
    )
    cargo_target: Optional[str] = Field(
        default=None, description="Rust target triple for cross builds"
    )
    binaries: List[BinarySpec] = Field(
        default_factory=lambda: [
            BinarySpec(name="aura-server", service=True),
            BinarySpec(name="aura-cli", file_name="aura"),
        ]
    )

    @field_validator("app")
    @classmethod
    def validate_app(cls, v: str) -> str:
        v = v.strip()
        if not v or any(c in v for c in "/\\ "):
            raise ValueError("app must be a non-empty name without spaces or path separators")
        return v

    @model_validator(mode="after")
    def validate_binaries(self) -> "DeploymentManifest":
        if not self.binaries:
            raise ValueError("at least one binary is required")
        services = [b for b in self.binaries if b.service]
        if len(services) != 1:
            raise ValueError(f"exactly one service binary is required, found {len(services)}")
        names = [b.name for b in self.binaries]
        if len(set(names)) != len(names):
            raise ValueError("binary names must be unique")
        return self

    @property
    def principal_base(self) -> str:
        return self.principal or self.app

    @property
    def service_binary(self) -> BinarySpec:
        return next(b for b in self.binaries if b.service)

    def service_identifier(self, dialect: str) -> str:
        """Identifier of the service in a service-manager dialect."""
        match dialect:
            case "launchd":
                return self.launchd_label
            case "winsw":
                return self.windows_service_id
            case _:
                return self.service_name


def load_manifest(path: Optional[Path] = None) -> DeploymentManifest:
    """
    Load a manifest from YAML, or return the built-in AuraDB manifest.

    Args:
        path: YAML file path, or None for the defaults

    Returns:
        Validated DeploymentManifest

    Raises:
        ManifestError: If the file is unreadable, not a mapping, or invalid
    """
    if path is None:
        return DeploymentManifest()

    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ManifestError(f"Cannot read manifest: {e}", source=str(path)) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ManifestError("Manifest root must be a mapping", source=str(path))

    try:
        return DeploymentManifest(**data)
    except ValidationError as e:
        raise ManifestError(f"Invalid manifest: {e}", source=str(path)) from e
