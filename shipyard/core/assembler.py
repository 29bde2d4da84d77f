# -----------------------------------------------------------------------------
# THE IMAGE ASSEMBLER
# -----------------------------------------------------------------------------
# Responsibility: Turn a layer plan into tagged images with the Docker SDK.
#
# - Creates what the plan copies from the build context, renders the build file
# - build(): export-artifacts stage (cache transport) and runtime stage, untagged
# - publish(): tags the built images; the pipeline calls it last, so a failed
#   release never moves the release tag
# - Extracts the export stage's /usr tree for the dependency cache
#
# This is the "Body" of the release: it executes the plan, it does not decide
# what goes into it.
# -----------------------------------------------------------------------------

import io
import re
import tarfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from docker.errors import APIError, BuildError
from docker.models.images import Image
from rich.console import Console

from shipyard.core.layers import CACHE_DIR, LayerPlanError, check_plan, render_dockerfile
from shipyard.domain.models import (
    BUILDER_STAGE,
    EXPORT_STAGE,
    HOST_SOURCE,
    RUNTIME_STAGE,
    BuildArtifact,
    ImageLayerSet,
    ImageReference,
)
from shipyard.infra.docker_client import DockerProvider

console = Console()

# Docker platform for each target architecture
DOCKER_PLATFORMS = {
    "x86_64": "linux/amd64",
    "aarch64": "linux/arm64",
}

# Path of the export stage that holds everything worth caching
EXPORT_ROOT = "/usr"

_PULL_FAILURE = re.compile(
    r"pull access denied|manifest unknown|manifest for .* not found|"
    r"repository does not exist|failed to resolve source metadata|"
    r"failed to do request|toomanyrequests",
    re.IGNORECASE,
)
_COPY_FAILURE = re.compile(
    r"COPY failed|no source files were specified|failed to compute cache key|"
    r"failed to calculate checksum",
    re.IGNORECASE,
)
_PACKAGE_MANAGERS = ("apt-get", "apt ", "apk ", "dnf ", "yum ")


class ImageFailureKind(str, Enum):
    INVALID_PLAN = "invalid_plan"
    MISSING_COPY_SOURCE = "missing_copy_source"
    PACKAGE_INSTALL_FAILURE = "package_install_failure"
    BASE_IMAGE_PULL_FAILURE = "base_image_pull_failure"
    STAGE_COMMAND_FAILURE = "stage_command_failure"
    DAEMON_FAILURE = "daemon_failure"


class ImageBuildError(Exception):
    """Raised when any stage of the image build fails."""

    def __init__(
        self,
        message: str,
        kind: ImageFailureKind,
        stage: str | None = None,
        build_log: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.stage = stage
        self.build_log = build_log or []


@dataclass
class BuiltImages:
    """Images of a finished build, not yet tagged."""

    runtime: Image
    export: Image | None = None


def docker_platform(triple: str) -> str:
    arch = triple.split("-", 1)[0]
    return DOCKER_PLATFORMS.get(arch, f"linux/{arch}")


def export_reference(reference: ImageReference) -> ImageReference:
    """Tag under which the export-artifacts image of `reference` is kept."""
    return ImageReference(repository=reference.repository, tag=f"{reference.tag}-{EXPORT_STAGE}")


def log_lines(chunks) -> list[str]:
    """Flatten Docker build log chunks into text lines."""
    lines = []
    for chunk in chunks or []:
        if not isinstance(chunk, dict):
            lines.append(str(chunk).rstrip())
            continue
        text = chunk.get("stream") or chunk.get("error") or chunk.get("status") or ""
        lines.extend(line for line in str(text).splitlines() if line.strip())
    return lines


def classify_build_failure(reason: str, lines: list[str]) -> ImageFailureKind:
    """Decide which stage failure a Docker build error represents."""
    text = "\n".join([reason, *lines[-20:]])
    if _PULL_FAILURE.search(text):
        return ImageFailureKind.BASE_IMAGE_PULL_FAILURE
    if _COPY_FAILURE.search(text):
        return ImageFailureKind.MISSING_COPY_SOURCE

    last_step = next((line for line in reversed(lines) if line.startswith("Step ")), "")
    failed = f"{last_step}\n{reason}"
    if any(manager in failed for manager in _PACKAGE_MANAGERS):
        return ImageFailureKind.PACKAGE_INSTALL_FAILURE
    return ImageFailureKind.STAGE_COMMAND_FAILURE


class ImageAssembler:
    """
    Builds the release image from a layer plan.

    Args:
        provider: Connected DockerProvider.
        context_dir: Build context sent to the daemon.
        dockerfile: Where the rendered build file is written.
    """

    def __init__(
        self, provider: DockerProvider, context_dir: str | Path, dockerfile: str | Path
    ) -> None:
        self._provider = provider
        self._context = Path(context_dir)
        self._dockerfile = Path(dockerfile)

    def _validate(self, artifact: BuildArtifact, plan: ImageLayerSet) -> None:
        if artifact.target_triple != plan.target_triple:
            raise ImageBuildError(
                f"Artifact targets {artifact.target_triple}, plan targets {plan.target_triple}",
                kind=ImageFailureKind.INVALID_PLAN,
            )
        if artifact.package_name != plan.package_name:
            raise ImageBuildError(
                f"Artifact is {artifact.package_name}, plan ships {plan.package_name}",
                kind=ImageFailureKind.INVALID_PLAN,
            )
        try:
            check_plan(plan)
        except LayerPlanError as e:
            for violation in e.violations:
                console.print(f"[red][ASSEMBLER]   {violation}[/red]")
            raise ImageBuildError(str(e), kind=ImageFailureKind.INVALID_PLAN) from e

    def _prepare_context(self, plan: ImageLayerSet) -> None:
        """
        Make the build context satisfy every COPY of `plan`.

        The builder's cache directory is created even when no cache was
        restored: an empty directory is a cold build, not a failure.
        """
        if plan.has_stage(BUILDER_STAGE):
            (self._context / CACHE_DIR / "usr").mkdir(parents=True, exist_ok=True)

        # Checked up front; the daemon's own message is vaguer
        for stage in plan.stages:
            for step in stage.inputs:
                if step.source == HOST_SOURCE and not (self._context / step.src).exists():
                    raise ImageBuildError(
                        f"COPY source missing from build context: {step.src}",
                        kind=ImageFailureKind.MISSING_COPY_SOURCE,
                        stage=stage.name,
                    )

    def _write_dockerfile(self, plan: ImageLayerSet) -> str:
        self._dockerfile.parent.mkdir(parents=True, exist_ok=True)
        self._dockerfile.write_text(render_dockerfile(plan), encoding="utf-8")
        console.print(f"[cyan][ASSEMBLER] Build file written: {self._dockerfile}[/cyan]")
        try:
            return self._dockerfile.resolve().relative_to(self._context.resolve()).as_posix()
        except ValueError:
            return str(self._dockerfile.resolve())

    def _build_stage(self, stage: str, dockerfile: str, platform: str) -> Image:
        client = self._provider.get_client()
        console.print(f"[cyan][ASSEMBLER] Building stage '{stage}' ({platform})...[/cyan]")
        try:
            image, logs = client.images.build(
                path=str(self._context),
                dockerfile=dockerfile,
                target=stage,
                platform=platform,
                rm=True,
                forcerm=True,
            )
        except BuildError as e:
            lines = log_lines(e.build_log)
            for line in lines[-40:]:
                console.print(f"[dim]{line}[/dim]", markup=False)
            kind = classify_build_failure(e.msg, lines)
            console.print(f"[red][ASSEMBLER] Stage '{stage}' FAILED ({kind.value})[/red]")
            raise ImageBuildError(
                f"Stage '{stage}' failed: {e.msg}", kind=kind, stage=stage, build_log=lines
            ) from e
        except APIError as e:
            kind = (
                ImageFailureKind.BASE_IMAGE_PULL_FAILURE
                if _PULL_FAILURE.search(str(e))
                else ImageFailureKind.DAEMON_FAILURE
            )
            raise ImageBuildError(
                f"Docker daemon error in stage '{stage}': {e}", kind=kind, stage=stage
            ) from e

        for line in log_lines(logs):
            console.print(f"[dim]{line}[/dim]", markup=False)
        console.print(f"[green][ASSEMBLER] Stage '{stage}' built: {image.short_id}[/green]")
        return image

    def build(self, artifact: BuildArtifact, plan: ImageLayerSet) -> BuiltImages:
        """
        Build every stage of `plan` without tagging anything.

        Args:
            artifact: The Release Builder's output.
            plan: Layer plan shipping that artifact.

        Raises:
            ImageBuildError: If validation or any stage fails.
        """
        self._validate(artifact, plan)
        self._prepare_context(plan)
        dockerfile = self._write_dockerfile(plan)
        platform = docker_platform(plan.target_triple)

        export_image = None
        if plan.has_stage(EXPORT_STAGE):
            export_image = self._build_stage(EXPORT_STAGE, dockerfile, platform)
        runtime_image = self._build_stage(RUNTIME_STAGE, dockerfile, platform)
        return BuiltImages(runtime=runtime_image, export=export_image)

    def publish(self, built: BuiltImages, tag: str) -> ImageReference:
        """Tag the built images: runtime as `tag`, export as `<tag>-export-artifacts`."""
        reference = ImageReference.parse(tag)
        built.runtime.tag(reference.repository, reference.tag)
        if built.export is not None:
            cache_ref = export_reference(reference)
            built.export.tag(cache_ref.repository, cache_ref.tag)
            console.print(f"[cyan][ASSEMBLER] Cache image tagged: {cache_ref}[/cyan]")

        console.print(f"[green][ASSEMBLER] Release image tagged: {reference}[/green]")
        return ImageReference(
            repository=reference.repository, tag=reference.tag, image_id=built.runtime.id
        )

    def assemble(self, artifact: BuildArtifact, plan: ImageLayerSet, tag: str) -> ImageReference:
        """
        Build and tag the release image.

        Args:
            artifact: The Release Builder's output.
            plan: Layer plan shipping that artifact.
            tag: Image reference for the runtime image (e.g. near/mpc-recovery).

        Returns:
            ImageReference of the tagged runtime image.

        Raises:
            ImageBuildError: If validation or any stage fails; nothing is tagged then.
        """
        # A malformed tag is rejected before any stage runs
        ImageReference.parse(tag)
        return self.publish(self.build(artifact, plan), tag)

    def export_cache(self, image: str, dest: str | Path) -> Path:
        """
        Copy the /usr tree of an export-artifacts image into `dest`.

        Args:
            image: Tag or id of the export-artifacts image.
            dest: Directory the tree is extracted into.

        Returns:
            Path of the extracted tree (`dest`/usr).
        """
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        client = self._provider.get_client()

        # A scratch image has no shell; the container is created, never started
        container = None
        try:
            container = client.containers.create(image, command="/export")
            bits, _ = container.get_archive(EXPORT_ROOT)
            buffer = io.BytesIO()
            for chunk in bits:
                buffer.write(chunk)
            buffer.seek(0)
            with tarfile.open(fileobj=buffer, mode="r") as tar:
                tar.extractall(dest, filter="data")
        except (APIError, tarfile.TarError) as e:
            raise ImageBuildError(
                f"Could not export {EXPORT_ROOT} from {image}: {e}",
                kind=ImageFailureKind.DAEMON_FAILURE,
                stage=EXPORT_STAGE,
            ) from e
        finally:
            if container is not None:
                container.remove(force=True)

        console.print(f"[green][ASSEMBLER] Exported cache tree from {image}[/green]")
        return dest / EXPORT_ROOT.strip("/")
