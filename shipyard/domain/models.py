# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# DOMAIN MODELS - RELEASE INSTRUCTIONS
# -----------------------------------------------------------------------------
# These Pydantic models describe everything the release pipeline passes
# between its stages: the platform profile, the toolchain bindings, the
# compiled artifact, the image layer plan and the per-environment
# deployment parameters.
#
# Every model is frozen: a stage receives its input by value and can never
# mutate what an earlier stage produced.
# -----------------------------------------------------------------------------

import os
import re
from collections.abc import Mapping
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import (
    AfterValidator,
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

# The one platform every release binary is compiled for.
TARGET_TRIPLE = "x86_64-unknown-linux-gnu"

# Executable prefix of the GNU cross toolchain for TARGET_TRIPLE.
CROSS_TOOL_PREFIX = "x86_64-linux-gnu"

# Copy source meaning "the build context on the host".
HOST_SOURCE = "host"

# Stage names, in the order they appear in a layer plan.
BUILDER_STAGE = "builder"
EXPORT_STAGE = "export-artifacts"
RUNTIME_STAGE = "runtime"
STAGE_ORDER = (BUILDER_STAGE, EXPORT_STAGE, RUNTIME_STAGE)

PACKAGE_PATTERN = r"^[a-zA-Z][a-zA-Z0-9_-]*$"

# Image references: lowercase path components, an optional registry port, a
# tag of up to 128 word characters, dots and dashes
_PATH_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
REPOSITORY_PATTERN = rf"^{_PATH_COMPONENT}(?::[0-9]+)?(?:/{_PATH_COMPONENT})*$"
TAG_PATTERN = r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$"


class HostOS(str, Enum):
    """Host operating systems the platform detector distinguishes."""

    LINUX = "Linux"
    DARWIN = "Darwin"
    OTHER = "Other"


class ToolRole(str, Enum):
    """Roles a cross toolchain executable can be bound to."""

    LINKER = "linker"
    CC = "cc"
    CXX = "cxx"
    AR = "ar"


# -----------------------------------------------------------------------------
# PLATFORM PROFILES
# -----------------------------------------------------------------------------


class _ProfileBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    host_os: HostOS
    target_triple: str = Field(default=TARGET_TRIPLE, description="Fixed deployment target")

    @field_validator("target_triple")
    @classmethod
    def _target_is_fixed(cls, value: str) -> str:
        if value != TARGET_TRIPLE:
            raise ValueError(f"target_triple must be {TARGET_TRIPLE}, got {value}")
        return value


class NativeProfile(_ProfileBase):
    """
    The host already matches the target: the native toolchain is used as-is.
    """

    kind: Literal["native"] = "native"
    toolchain_bindings: dict[ToolRole, str] = Field(default_factory=dict)
    extra_link_flags: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _no_bindings(self) -> "NativeProfile":
        if self.toolchain_bindings or self.extra_link_flags:
            raise ValueError("A native profile cannot carry toolchain bindings or link flags")
        return self

    @property
    def is_cross(self) -> bool:
        return False


class CrossCompileProfile(_ProfileBase):
    """
    The host differs from the target: compiler, linker and archiver must be
    redirected to the cross toolchain for TARGET_TRIPLE.
    """

    kind: Literal["cross"] = "cross"
    toolchain_bindings: dict[ToolRole, str] = Field(..., min_length=1)
    extra_link_flags: tuple[str, ...] = ()

    @property
    def is_cross(self) -> bool:
        return True


PlatformProfile = Annotated[
    Union[NativeProfile, CrossCompileProfile], Field(discriminator="kind")
]


class EnvironmentBindings(BaseModel):
    """
    Toolchain environment for a single build invocation.

    Held as a value and merged into the child process environment on demand;
    the interpreter's own os.environ is never touched.
    """

    model_config = ConfigDict(frozen=True)

    variables: dict[str, str] = Field(default_factory=dict)

    def apply(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Return a new environment: `base` (default os.environ) overlaid with the bindings."""
        env = dict(os.environ if base is None else base)
        env.update(self.variables)
        return env


# -----------------------------------------------------------------------------
# BUILD ARTIFACT
# -----------------------------------------------------------------------------


class BuildArtifact(BaseModel):
    """A published release binary, owned by the pipeline until the image stage."""

    model_config = ConfigDict(frozen=True)

    binary_path: str = Field(..., min_length=1)
    package_name: str = Field(..., pattern=PACKAGE_PATTERN)
    target_triple: str = TARGET_TRIPLE
    sha256: str = Field(..., pattern=r"^[0-9a-f]{64}$")


# -----------------------------------------------------------------------------
# IMAGE LAYER PLAN
# -----------------------------------------------------------------------------


class CopyStep(BaseModel):
    """COPY `src` from `source` (a stage name or the host context) to `dest`."""

    model_config = ConfigDict(frozen=True)

    op: Literal["copy"] = "copy"
    source: str = HOST_SOURCE
    src: str
    dest: str


class RunStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    op: Literal["run"] = "run"
    command: str = Field(..., min_length=1)


class WorkdirStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    op: Literal["workdir"] = "workdir"
    path: str


Instruction = Annotated[Union[CopyStep, RunStep, WorkdirStep], Field(discriminator="op")]


class StageSpec(BaseModel):
    """One stage of a multi-stage image build."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., pattern=r"^[a-z][a-z0-9-]*$")
    base_image: str = Field(..., min_length=1)
    steps: tuple[Instruction, ...] = ()
    outputs: tuple[str, ...] = ()
    entrypoint: tuple[str, ...] = ()

    @property
    def inputs(self) -> list[CopyStep]:
        """Every (source, path) pair this stage copies in."""
        return [step for step in self.steps if isinstance(step, CopyStep)]


class ImageLayerSet(BaseModel):
    """
    Ordered stages of an image build plus the identity of the binary it ships.

    `binary_path` is the compiled-binary output the runtime stage is allowed
    to copy: a path inside the builder stage for a multi-stage plan, or a
    context-relative host path for a prebuilt plan.
    """

    model_config = ConfigDict(frozen=True)

    mode: Literal["multi-stage", "prebuilt"] = "multi-stage"
    package_name: str = Field(..., pattern=PACKAGE_PATTERN)
    target_triple: str = TARGET_TRIPLE
    binary_path: str
    stages: tuple[StageSpec, ...] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _stage_order(self) -> "ImageLayerSet":
        names = [stage.name for stage in self.stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate stage names: {names}")
        unknown = [name for name in names if name not in STAGE_ORDER]
        if unknown:
            raise ValueError(f"Unknown stages: {unknown}")
        if names != sorted(names, key=STAGE_ORDER.index):
            raise ValueError(f"Stages out of order: {names}")
        if names[-1] != RUNTIME_STAGE:
            raise ValueError("The last stage of a layer plan must be the runtime stage")
        return self

    def stage(self, name: str) -> StageSpec:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def has_stage(self, name: str) -> bool:
        return any(stage.name == name for stage in self.stages)


class ImageReference(BaseModel):
    """A tagged image, `repository:tag`, plus the daemon's image id once built."""

    model_config = ConfigDict(frozen=True)

    repository: str = Field(..., pattern=REPOSITORY_PATTERN)
    tag: str = Field(default="latest", pattern=TAG_PATTERN)
    image_id: str | None = None

    @classmethod
    def parse(cls, reference: str, image_id: str | None = None) -> "ImageReference":
        """Split `repo[:tag]`; a colon inside a registry host:port is not a tag."""
        repository, _, tag = reference.rpartition(":")
        if not repository or "/" in tag:
            return cls(repository=reference, image_id=image_id)
        return cls(repository=repository, tag=tag, image_id=image_id)

    def __str__(self) -> str:
        return f"{self.repository}:{self.tag}"


# -----------------------------------------------------------------------------
# DEPLOYMENT PARAMETERS
# -----------------------------------------------------------------------------

SECRET_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,255}$")
RAW_KEY_PATTERN = re.compile(r"^(?:[0-9a-fA-F]{64}|[0-9a-fA-F]{128})$")

_HTTP_URL = TypeAdapter(AnyHttpUrl)


def _secret_reference(value: str) -> str:
    # The value is never echoed back: a literal secret must not reach a log.
    if not SECRET_ID_PATTERN.match(value):
        raise ValueError("must be a secret-store identifier ([A-Za-z0-9_-], max 255 chars)")
    if RAW_KEY_PATTERN.match(value):
        raise ValueError("looks like raw key material, expected a secret-store identifier")
    return value


def _http_url(value: str) -> str:
    _HTTP_URL.validate_python(value)
    return value


def _image_reference(value: str) -> str:
    try:
        ImageReference.parse(value)
    except ValidationError as e:
        raise ValueError(f"not a valid image reference: {value}") from e
    return value


SecretReference = Annotated[str, AfterValidator(_secret_reference)]
HttpUrlString = Annotated[str, AfterValidator(_http_url)]
ImageReferenceString = Annotated[str, AfterValidator(_image_reference)]


class TelemetryLevel(str, Enum):
    OFF = "off"
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"
    TRACE = "trace"


class SignerConfig(BaseModel):
    """One signer's secret references. Its position in the list is its signer index."""

    model_config = ConfigDict(frozen=True)

    cipher_key_secret_id: SecretReference
    sk_share_secret_id: SecretReference


class DeploymentParameterSet(BaseModel):
    """
    Environment-specific values the provisioning layer needs to deploy the
    signing service.

    Secret fields are indirections into an external secret store; nothing in
    this model is ever a resolved secret value.
    """

    model_config = ConfigDict(
        frozen=True, str_strip_whitespace=True, use_enum_values=True, validate_default=True
    )

    env: str = Field(..., min_length=1, max_length=32, pattern=r"^[a-z][a-z0-9-]*$")
    project: str = Field(..., min_length=1)
    docker_image: ImageReferenceString
    account_creator_id: str = Field(..., min_length=1)
    account_creator_sk_secret_id: SecretReference
    fast_auth_partners_secret_id: SecretReference
    signer_configs: tuple[SignerConfig, ...] = Field(..., min_length=1)
    jwt_signature_pk_url: HttpUrlString
    otlp_endpoint: HttpUrlString
    opentelemetry_level: TelemetryLevel

    @property
    def secret_references(self) -> frozenset[str]:
        refs = {self.account_creator_sk_secret_id, self.fast_auth_partners_secret_id}
        for signer in self.signer_configs:
            refs.add(signer.cipher_key_secret_id)
            refs.add(signer.sk_share_secret_id)
        return frozenset(refs)

    @property
    def image_reference(self) -> ImageReference:
        return ImageReference.parse(self.docker_image)
