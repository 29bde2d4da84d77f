# -----------------------------------------------------------------------------
# THE RELEASE PIPELINE - ORCHESTRATOR
# -----------------------------------------------------------------------------
# Responsibility: Run the release stages in order, one at a time:
#   (check parameters) -> detect -> configure -> build -> (restore cache)
#   -> build images -> (store cache) -> tag
#
# Fail fast: the first error stops every remaining stage and is re-raised
# untouched. A release either ends with a tagged runtime image or with
# nothing published. There are no retries.
#
# Release Record: every run leaves releases/<run_id>/release_record.json,
# pass or fail.
# -----------------------------------------------------------------------------

import json
import tempfile
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console

from shipyard.core.assembler import ImageAssembler
from shipyard.core.builder import ReleaseBuilder
from shipyard.core.cache import ArtifactCache, CacheInputs, hash_source_tree
from shipyard.core.config import ReleaseConfig
from shipyard.core.detector import detect
from shipyard.core.layers import CACHE_DIR, prebuilt_plan, release_plan
from shipyard.core.params import check_image, load_parameter_set
from shipyard.core.toolchain import configure
from shipyard.domain.models import BuildArtifact, ImageLayerSet, ImageReference
from shipyard.infra.docker_client import DockerProvider
from shipyard.infra.shell import CommandRunner

console = Console()


@dataclass
class RecordEntry:
    """A single entry in the release record."""

    timestamp: str
    event: str
    details: str | None = None


@dataclass
class ReleaseResult:
    """Outcome of a successful release."""

    run_id: str
    artifact: BuildArtifact
    image: ImageReference
    cache_key: str | None
    duration_seconds: float


class ReleaseRecord:
    """
    Evidence of one release run.

    The folder holds:
    - artifact.json: the published binary and its digest
    - release_record.json: every event plus the final verdict
    """

    def __init__(self, folder: Path) -> None:
        self.folder = folder
        self.folder.mkdir(parents=True, exist_ok=True)
        self._events: list[RecordEntry] = []
        self.verdict: str | None = None

    def log(self, event: str, details: str | None = None) -> None:
        self._events.append(
            RecordEntry(
                timestamp=datetime.now(timezone.utc).isoformat(), event=event, details=details
            )
        )

    @property
    def events(self) -> list[str]:
        return [entry.event for entry in self._events]

    def save_artifact(self, artifact: BuildArtifact) -> None:
        path = self.folder / "artifact.json"
        with open(path, "w") as f:
            json.dump(artifact.model_dump(), f, indent=2)
        self.log("ARTIFACT_SAVED", str(path))

    def finalize(self, verdict: str) -> Path:
        self.verdict = verdict
        path = self.folder / "release_record.json"
        with open(path, "w") as f:
            json.dump(
                {
                    "verdict": verdict,
                    "events": [
                        {"timestamp": e.timestamp, "event": e.event, "details": e.details}
                        for e in self._events
                    ],
                },
                f,
                indent=2,
            )
        console.print(f"[cyan][PIPELINE] Release record saved: {path}[/cyan]")
        return path


class ReleasePipeline:
    """
    Sequential release of one package into one runtime image.

    Args:
        config: Release settings.
        provider_factory: Builds the DockerProvider; called only once the
            binary has compiled.
        runner: Command runner for the toolchain (default: in the workspace).
        system: Host OS identifier override for the platform detector.
    """

    def __init__(
        self,
        config: ReleaseConfig,
        provider_factory: Callable[..., DockerProvider] = DockerProvider,
        runner: CommandRunner | None = None,
        system: str | None = None,
    ) -> None:
        self._config = config
        self._provider_factory = provider_factory
        self._runner = runner or CommandRunner(config.workspace)
        self._system = system

    def _plan(self, artifact: BuildArtifact) -> ImageLayerSet:
        config = self._config
        if config.image_mode == "prebuilt":
            return prebuilt_plan(artifact, config.workspace, runtime_image=config.runtime_image)
        return release_plan(config.package, runtime_image=config.runtime_image)

    def _generated_files(self) -> list[str]:
        """Workspace-relative files this pipeline writes itself."""
        try:
            rel = self._config.dockerfile_path.resolve().relative_to(
                self._config.workspace.resolve()
            )
        except ValueError:
            return []
        return [rel.as_posix()]

    def run(self) -> ReleaseResult:
        """
        Execute the release.

        Returns:
            ReleaseResult for the tagged image.

        Raises:
            Whatever stage error occurred first (BuildError, ImageBuildError,
            CacheError, ParameterSetError, DockerProviderError).
        """
        config = self._config
        run_id = uuid.uuid4().hex[:12]
        start = time.monotonic()
        record = ReleaseRecord(config.release_path / run_id)
        record.log("RELEASE_STARTED", f"{config.package} -> {config.image_tag}")
        console.rule(f"[bold cyan]RELEASE {run_id}: {config.package}[/bold cyan]")

        try:
            reference = ImageReference.parse(config.image_tag)
            if config.params_path is not None:
                params = load_parameter_set(config.params_path)
                check_image(params, reference)
                record.log("PARAMETERS_MATCH", params.env)

            profile = detect(self._system, extra_link_flags=config.extra_link_flags)
            record.log("PLATFORM_DETECTED", f"{profile.kind} ({profile.host_os.value})")

            bindings = configure(profile)
            record.log("TOOLCHAIN_CONFIGURED", ", ".join(bindings.variables) or "native")

            builder = ReleaseBuilder(config.workspace, config.package, runner=self._runner)
            artifact = builder.build(profile, bindings)
            record.log("BUILD_COMPLETE", artifact.sha256)
            record.save_artifact(artifact)

            plan = self._plan(artifact)
            record.log("PLAN_READY", plan.mode)

            cache = None
            cache_inputs = None
            if config.use_cache and plan.mode == "multi-stage":
                cache = ArtifactCache(config.cache_dir)
                cache_inputs = CacheInputs(
                    source_hash=hash_source_tree(
                        config.workspace, exclude=self._generated_files()
                    ),
                    target_triple=plan.target_triple,
                )
                restored = cache.restore(cache_inputs, config.workspace / CACHE_DIR / "usr")
                record.log("CACHE_RESTORED" if restored else "CACHE_MISS")

            provider = self._provider_factory(base_url=config.docker_host)
            assembler = ImageAssembler(provider, config.workspace, config.dockerfile_path)
            built = assembler.build(artifact, plan)
            record.log("IMAGE_BUILT", built.runtime.id)

            cache_key = None
            if cache is not None and cache_inputs is not None and built.export is not None:
                with tempfile.TemporaryDirectory(prefix="shipyard-export-") as tmp:
                    tree = assembler.export_cache(built.export.id, tmp)
                    cache_key = cache.store(cache_inputs, tree)
                record.log("CACHE_STORED", cache_key)

            # Last step: nothing is tagged unless everything above succeeded
            image = assembler.publish(built, str(reference))
            record.log("IMAGE_TAGGED", f"{image} ({image.image_id})")

        except Exception as e:
            console.print(f"[red][PIPELINE] Release FAILED: {type(e).__name__}: {e}[/red]")
            record.log("RELEASE_FAILED", f"{type(e).__name__}: {e}")
            record.finalize("FAIL")
            raise

        duration = time.monotonic() - start
        record.log("RELEASE_COMPLETE", f"Duration: {duration:.1f}s")
        record.finalize("PASS")
        console.print(f"[green][PIPELINE] Release complete: {image} ({duration:.1f}s)[/green]")

        return ReleaseResult(
            run_id=run_id,
            artifact=artifact,
            image=image,
            cache_key=cache_key,
            duration_seconds=duration,
        )
