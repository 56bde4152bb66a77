"""aura-deploy: cross-platform deployment orchestrator for AuraDB."""

from .lifecycle import LifecycleState, RunSummary, TargetOutcome
from .manifest import DeploymentManifest, load_manifest
from .orchestrator import DeployOptions, Orchestrator
from .platforms import PlatformProfile, PlatformTarget, Skip, resolve, resolve_all

__version__ = "0.1.0"

__all__ = [
    "DeployOptions",
    "DeploymentManifest",
    "LifecycleState",
    "Orchestrator",
    "PlatformProfile",
    "PlatformTarget",
    "RunSummary",
    "Skip",
    "TargetOutcome",
    "load_manifest",
    "resolve",
    "resolve_all",
]
