# -----------------------------------------------------------------------------
# THE LAYER PLANNER
# -----------------------------------------------------------------------------
# Responsibility: Describe the release image as an ordered set of stages and
# render it as a Dockerfile.
#
# Release plan (multi-stage):
# - builder:          full Rust toolchain, protobuf compiler, compiles the
#                     package with incremental compilation disabled
# - export-artifacts: scratch image holding only the target dir and cargo
#                     caches, the transport for the next build's warm cache
# - runtime:          slim base, runtime libraries, the compiled binary
#
# Prebuilt plan: a single runtime stage that ships a binary compiled on the
# host by the Release Builder.
#
# The runtime stage may only ever copy the compiled binary. No source, no
# toolchain, no package-manager metadata reaches the shipped image.
# -----------------------------------------------------------------------------

import json
from collections.abc import Sequence
from pathlib import Path

from shipyard.domain.models import (
    BUILDER_STAGE,
    EXPORT_STAGE,
    HOST_SOURCE,
    RUNTIME_STAGE,
    BuildArtifact,
    CopyStep,
    ImageLayerSet,
    RunStep,
    StageSpec,
    WorkdirStep,
)

# The toolchain and runtime bases share one Debian release, so the binary
# never needs a newer glibc than the runtime ships.
DEBIAN_RELEASE = "bookworm"
BUILDER_IMAGE = f"rust:1-{DEBIAN_RELEASE}"
EXPORT_IMAGE = "scratch"
RUNTIME_IMAGE = f"debian:{DEBIAN_RELEASE}-slim"

# Debian codenames recognised in base image tags
DEBIAN_RELEASES = ("buster", "bullseye", "bookworm", "trixie", "forky")

# Compiler-level system dependencies of the builder stage
BUILD_PACKAGES = ("protobuf-compiler", "libprotobuf-dev")

# Shared libraries the service binary links against at runtime
RUNTIME_PACKAGES = ("ca-certificates", "libssl3")

APP_DIR = "/usr/src/app"
CARGO_HOME = "/usr/local/cargo"
BIN_DIR = "/usr/local/bin"

# Pre-warmed cache inside the build context. The assembler creates the
# directory before every build, so the COPY holds on a cold cache too.
CACHE_DIR = "target/cache"
CACHE_COPY_SOURCE = f"./{CACHE_DIR}/usr/"

# cargo only creates these on demand; the builder creates them so the
# export stage can copy them unconditionally
CARGO_STATE_DIRS = ("git", "registry/cache", "registry/index")
CARGO_STATE_FILES = (".crates.toml", ".crates2.json")

# Builder paths worth keeping between builds, (source, destination)
EXPORTED_PATHS = (
    (f"{APP_DIR}/target", f"{APP_DIR}/target"),
    (f"{CARGO_HOME}/bin", f"{CARGO_HOME}/bin"),
) + tuple(
    (f"{CARGO_HOME}/{name}", f"{CARGO_HOME}/{name}")
    for name in (*CARGO_STATE_DIRS, *CARGO_STATE_FILES)
)

# Characters that make a COPY source a pattern
GLOB_CHARS = "*?["


class LayerPlanError(ValueError):
    """Raised when a layer plan breaks the runtime-surface or stage rules."""

    def __init__(self, message: str, violations: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.violations = list(violations)


def _apt_install(packages: Sequence[str], clean: bool) -> str:
    command = (
        "apt-get update"
        " && DEBIAN_FRONTEND=noninteractive"
        f" apt-get install --no-install-recommends --assume-yes {' '.join(packages)}"
    )
    if clean:
        command += " && rm -rf /var/lib/apt/lists/*"
    return command


def _ensure_cargo_state() -> str:
    dirs = " ".join(f"{CARGO_HOME}/{name}" for name in CARGO_STATE_DIRS)
    files = " ".join(f"{CARGO_HOME}/{name}" for name in CARGO_STATE_FILES)
    return f"mkdir -p {dirs} && touch {files}"


def debian_release(image: str) -> str | None:
    """Debian codename named in an image tag (rust:1-bookworm -> bookworm), if any."""
    _, _, tag = image.rpartition(":")
    for part in tag.split("-"):
        if part in DEBIAN_RELEASES:
            return part
    return None


def _runtime_stage(
    package: str, copy: CopyStep, runtime_image: str, runtime_packages: Sequence[str]
) -> StageSpec:
    steps: list = []
    if runtime_packages:
        steps.append(RunStep(command=_apt_install(runtime_packages, clean=True)))
    steps.extend([copy, WorkdirStep(path=BIN_DIR)])
    return StageSpec(
        name=RUNTIME_STAGE,
        base_image=runtime_image,
        steps=tuple(steps),
        outputs=(copy.dest,),
        entrypoint=(package,),
    )


def release_plan(
    package: str,
    builder_image: str = BUILDER_IMAGE,
    runtime_image: str = RUNTIME_IMAGE,
    build_packages: Sequence[str] = BUILD_PACKAGES,
    runtime_packages: Sequence[str] = RUNTIME_PACKAGES,
) -> ImageLayerSet:
    """Three-stage plan that compiles `package` inside the builder stage."""
    binary = f"{APP_DIR}/target/release/{package}"

    builder = StageSpec(
        name=BUILDER_STAGE,
        base_image=builder_image,
        steps=(
            WorkdirStep(path=APP_DIR),
            RunStep(command=_apt_install(build_packages, clean=False)),
            CopyStep(src=".", dest="."),
            CopyStep(src=CACHE_COPY_SOURCE, dest="/usr/"),
            RunStep(command=f"rm -rf ./{CACHE_DIR}"),
            RunStep(command=f"CARGO_INCREMENTAL=0 cargo build --release --package {package}"),
            RunStep(command=_ensure_cargo_state()),
        ),
        outputs=(binary, *(src for src, _ in EXPORTED_PATHS)),
    )

    export = StageSpec(
        name=EXPORT_STAGE,
        base_image=EXPORT_IMAGE,
        steps=tuple(
            CopyStep(source=BUILDER_STAGE, src=src, dest=dest) for src, dest in EXPORTED_PATHS
        ),
        outputs=tuple(dest for _, dest in EXPORTED_PATHS),
    )

    runtime = _runtime_stage(
        package,
        CopyStep(source=BUILDER_STAGE, src=binary, dest=f"{BIN_DIR}/{package}"),
        runtime_image,
        runtime_packages,
    )

    return ImageLayerSet(
        mode="multi-stage",
        package_name=package,
        binary_path=binary,
        stages=(builder, export, runtime),
    )


def prebuilt_plan(
    artifact: BuildArtifact,
    context_dir: str | Path,
    runtime_image: str = RUNTIME_IMAGE,
    runtime_packages: Sequence[str] = RUNTIME_PACKAGES,
) -> ImageLayerSet:
    """
    Runtime-only plan shipping a binary already compiled on the host.

    Raises:
        LayerPlanError: If the artifact lies outside the build context.
    """
    binary = Path(artifact.binary_path).resolve()
    try:
        relative = binary.relative_to(Path(context_dir).resolve())
    except ValueError as e:
        raise LayerPlanError(
            f"Artifact {binary} is outside the build context {context_dir}",
            violations=[f"copy source outside context: {binary}"],
        ) from e

    package = artifact.package_name
    runtime = _runtime_stage(
        package,
        CopyStep(source=HOST_SOURCE, src=relative.as_posix(), dest=f"{BIN_DIR}/{package}"),
        runtime_image,
        runtime_packages,
    )
    return ImageLayerSet(
        mode="prebuilt",
        package_name=package,
        target_triple=artifact.target_triple,
        binary_path=relative.as_posix(),
        stages=(runtime,),
    )


def runtime_file_set(plan: ImageLayerSet) -> set[str]:
    """Paths the runtime stage copies into the shipped image."""
    return {step.dest for step in plan.stage(RUNTIME_STAGE).inputs}


def check_runtime_surface(plan: ImageLayerSet) -> None:
    """
    Verify the runtime stage only receives the compiled binary.

    Raises:
        LayerPlanError: Listing every violation found.
    """
    runtime = plan.stage(RUNTIME_STAGE)
    allowed_source = BUILDER_STAGE if plan.mode == "multi-stage" else HOST_SOURCE
    violations = []

    for step in runtime.inputs:
        if step.source != allowed_source or step.src != plan.binary_path:
            violations.append(f"runtime copies {step.src} from {step.source}")

    if not runtime.inputs:
        violations.append("runtime stage does not copy the compiled binary")

    if runtime.entrypoint != (plan.package_name,):
        violations.append(f"runtime entrypoint must be [{plan.package_name}]")

    if plan.has_stage(BUILDER_STAGE) and runtime.base_image == plan.stage(BUILDER_STAGE).base_image:
        violations.append("runtime stage reuses the builder toolchain image")

    if violations:
        raise LayerPlanError("Runtime stage exposes more than the compiled binary", violations)


def check_plan(plan: ImageLayerSet) -> None:
    """
    Full plan check: stage references point backwards, every COPY names an
    exact path its source stage declares, builder and runtime bases share a
    Debian release, and the runtime surface is minimal.

    Raises:
        LayerPlanError: On the first class of violation found.
    """
    outputs: dict[str, tuple[str, ...]] = {}
    violations = []
    for stage in plan.stages:
        for step in stage.inputs:
            if any(c in step.src for c in GLOB_CHARS):
                violations.append(f"{stage.name} copies a pattern: {step.src}")
            elif step.source == HOST_SOURCE:
                continue
            elif step.source not in outputs:
                violations.append(f"{stage.name} copies from unknown or later stage {step.source}")
            elif step.src not in outputs[step.source]:
                violations.append(f"{stage.name} copies {step.src}, which {step.source} does not produce")
        outputs[stage.name] = stage.outputs

    if plan.mode == "multi-stage":
        if plan.binary_path not in outputs.get(BUILDER_STAGE, ()):
            violations.append(f"builder stage does not produce {plan.binary_path}")

    if plan.has_stage(BUILDER_STAGE):
        built_on = debian_release(plan.stage(BUILDER_STAGE).base_image)
        runs_on = debian_release(plan.stage(RUNTIME_STAGE).base_image)
        if built_on and runs_on and built_on != runs_on:
            violations.append(f"builder is Debian {built_on} but runtime is Debian {runs_on}")

    if violations:
        raise LayerPlanError("Layer plan references are invalid", violations)

    check_runtime_surface(plan)


def render_dockerfile(plan: ImageLayerSet) -> str:
    """Render `plan` as Dockerfile text, one FROM block per stage."""
    blocks = []
    for stage in plan.stages:
        lines = [f"FROM {stage.base_image} AS {stage.name}"]
        for step in stage.steps:
            if isinstance(step, WorkdirStep):
                lines.append(f"WORKDIR {step.path}")
            elif isinstance(step, RunStep):
                lines.append(f"RUN {step.command}")
            elif step.source == HOST_SOURCE:
                lines.append(f"COPY {step.src} {step.dest}")
            else:
                lines.append(f"COPY --from={step.source} {step.src} {step.dest}")
        if stage.entrypoint:
            lines.append("")
            lines.append(f"ENTRYPOINT {json.dumps(list(stage.entrypoint))}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"
