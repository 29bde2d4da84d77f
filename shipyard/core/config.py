# -----------------------------------------------------------------------------
# RELEASE CONFIGURATION
# -----------------------------------------------------------------------------
# Responsibility: Collect the release settings from environment variables.
# The CLI takes no flags; `.env` in the workspace is loaded first (see
# shipyard.main), then SHIPYARD_* variables are read here.
#
# Environment Variables:
# - SHIPYARD_WORKSPACE: Cargo workspace / build context (default: cwd)
# - SHIPYARD_PACKAGE: Package to release (default: mpc-recovery)
# - SHIPYARD_IMAGE_TAG: Runtime image reference (default: near/mpc-recovery)
# - SHIPYARD_DOCKERFILE: Rendered build file, relative to the workspace
# - SHIPYARD_IMAGE_MODE: multi-stage | prebuilt
# - SHIPYARD_RUNTIME_IMAGE: Base image of the runtime stage
# - SHIPYARD_EXTRA_LINK_FLAGS: Extra link flags for cross builds
# - SHIPYARD_CACHE: "false" disables the dependency cache
# - SHIPYARD_CACHE_DIR: Dependency cache location
# - SHIPYARD_RELEASE_DIR: Where release records are written
# - SHIPYARD_PARAMS: Optional parameter file checked against the image
# - DOCKER_HOST: Docker daemon address
# -----------------------------------------------------------------------------

import os
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shipyard.core.layers import RUNTIME_IMAGE
from shipyard.domain.models import ImageReferenceString

DEFAULT_PACKAGE = "mpc-recovery"
DEFAULT_IMAGE_TAG = "near/mpc-recovery"
DEFAULT_DOCKERFILE = "build/Dockerfile.release"
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "shipyard"
DEFAULT_RELEASE_DIR = "releases"

# rustc options whose value may come as the next word ("-L /opt/lib")
VALUE_OPTIONS = frozenset({"-L", "-l", "-C"})


class ConfigError(Exception):
    """Raised when the release environment variables are invalid."""

    pass


def split_link_flags(value: str) -> tuple[str, ...]:
    """Split a flag string, keeping an option and its separate value as one flag."""
    flags: list[str] = []
    pending = None
    try:
        words = shlex.split(value)
    except ValueError as e:
        raise ConfigError(f"Unparseable link flags: {e}") from e
    for word in words:
        if pending is not None:
            flags.append(f"{pending} {word}")
            pending = None
        elif word in VALUE_OPTIONS:
            pending = word
        else:
            flags.append(word)
    if pending is not None:
        raise ConfigError(f"Link flag {pending} is missing its value")
    return tuple(flags)


class ReleaseConfig(BaseModel):
    """Settings for one release invocation."""

    model_config = ConfigDict(frozen=True)

    workspace: Path
    package: str = Field(default=DEFAULT_PACKAGE, pattern=r"^[a-zA-Z][a-zA-Z0-9_-]*$")
    image_tag: ImageReferenceString = DEFAULT_IMAGE_TAG
    dockerfile: Path = Path(DEFAULT_DOCKERFILE)
    image_mode: Literal["multi-stage", "prebuilt"] = "multi-stage"
    runtime_image: str = RUNTIME_IMAGE
    extra_link_flags: tuple[str, ...] = ()
    use_cache: bool = True
    cache_dir: Path = DEFAULT_CACHE_DIR
    release_dir: Path = Path(DEFAULT_RELEASE_DIR)
    params_file: Path | None = None
    docker_host: str | None = None

    @property
    def dockerfile_path(self) -> Path:
        return self._in_workspace(self.dockerfile)

    @property
    def release_path(self) -> Path:
        return self._in_workspace(self.release_dir)

    @property
    def params_path(self) -> Path | None:
        return self._in_workspace(self.params_file) if self.params_file else None

    def _in_workspace(self, path: Path) -> Path:
        return path if path.is_absolute() else self.workspace / path

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ReleaseConfig":
        """
        Build the configuration from environment variables.

        Raises:
            ConfigError: If a variable holds an invalid value.
        """
        env = os.environ if environ is None else environ

        values: dict = {"workspace": Path(env.get("SHIPYARD_WORKSPACE") or os.getcwd())}
        optional = {
            "SHIPYARD_PACKAGE": "package",
            "SHIPYARD_IMAGE_TAG": "image_tag",
            "SHIPYARD_DOCKERFILE": "dockerfile",
            "SHIPYARD_IMAGE_MODE": "image_mode",
            "SHIPYARD_RUNTIME_IMAGE": "runtime_image",
            "SHIPYARD_CACHE_DIR": "cache_dir",
            "SHIPYARD_RELEASE_DIR": "release_dir",
            "SHIPYARD_PARAMS": "params_file",
            "DOCKER_HOST": "docker_host",
        }
        for variable, field in optional.items():
            if env.get(variable):
                values[field] = env[variable]

        if env.get("SHIPYARD_EXTRA_LINK_FLAGS"):
            values["extra_link_flags"] = split_link_flags(env["SHIPYARD_EXTRA_LINK_FLAGS"])
        if env.get("SHIPYARD_CACHE"):
            values["use_cache"] = env["SHIPYARD_CACHE"].lower() not in ("0", "false", "no")

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid release configuration: {e}") from e
