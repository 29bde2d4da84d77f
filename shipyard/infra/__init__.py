# -----------------------------------------------------------------------------
# INFRASTRUCTURE LAYER
# -----------------------------------------------------------------------------
# Contains low-level infrastructure wrappers:
# - DockerProvider: Docker SDK wrapper with connection check and auto-wake
# - CommandRunner: subprocess wrapper for the Rust toolchain
# -----------------------------------------------------------------------------

from .docker_client import DockerProvider, DockerProviderError
from .shell import CommandFailedError, CommandNotFoundError, CommandRunner

__all__ = [
    "CommandFailedError",
    "CommandNotFoundError",
    "CommandRunner",
    "DockerProvider",
    "DockerProviderError",
]
