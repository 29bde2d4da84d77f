# -----------------------------------------------------------------------------
# DOMAIN LAYER
# -----------------------------------------------------------------------------
# Contains the Release Instructions (Pydantic models) passed between the
# pipeline stages, and the deployment parameter contract.
# -----------------------------------------------------------------------------

from .models import (
    TARGET_TRIPLE,
    BuildArtifact,
    CrossCompileProfile,
    DeploymentParameterSet,
    EnvironmentBindings,
    HostOS,
    ImageLayerSet,
    ImageReference,
    NativeProfile,
    PlatformProfile,
    SignerConfig,
    StageSpec,
    ToolRole,
)

__all__ = [
    "TARGET_TRIPLE",
    "BuildArtifact",
    "CrossCompileProfile",
    "DeploymentParameterSet",
    "EnvironmentBindings",
    "HostOS",
    "ImageLayerSet",
    "ImageReference",
    "NativeProfile",
    "PlatformProfile",
    "SignerConfig",
    "StageSpec",
    "ToolRole",
]
