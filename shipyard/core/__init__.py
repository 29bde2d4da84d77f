# -----------------------------------------------------------------------------
# CORE LAYER
# -----------------------------------------------------------------------------
# The release stages of Shipyard:
# - detect: Platform Detector (host OS -> toolchain profile)
# - configure: Toolchain Configurator (profile -> environment bindings)
# - ReleaseBuilder: rustup/cargo release build, atomic publish
# - ImageAssembler: multi-stage image build and tagging
# - ArtifactCache: dependency cache between image builds
# - ParameterRegistry: deployment parameter contract
# - ReleasePipeline: the orchestrator
# -----------------------------------------------------------------------------

from .assembler import ImageAssembler, ImageBuildError, ImageFailureKind
from .builder import (
    BuildError,
    CompilationError,
    DependencyInstallError,
    ReleaseBuilder,
    ToolchainResolutionError,
)
from .cache import ArtifactCache, CacheError, CacheInputs
from .config import ConfigError, ReleaseConfig
from .detector import detect
from .params import ParameterRegistry, ParameterSetError, load_parameter_set, render_tfvars
from .pipeline import ReleasePipeline, ReleaseResult
from .toolchain import configure

__all__ = [
    "ArtifactCache", "CacheError", "CacheInputs",
    "BuildError", "CompilationError", "DependencyInstallError", "ToolchainResolutionError",
    "ConfigError", "ReleaseConfig",
    "ImageAssembler", "ImageBuildError", "ImageFailureKind",
    "ParameterRegistry", "ParameterSetError", "load_parameter_set", "render_tfvars",
    "ReleaseBuilder",
    "ReleasePipeline", "ReleaseResult",
    "configure", "detect",
]
