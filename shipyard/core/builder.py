# -----------------------------------------------------------------------------
# THE RELEASE BUILDER
# -----------------------------------------------------------------------------
# Responsibility: Compile the signing service in release mode for the fixed
# target triple and publish the binary for the Image Assembler.
#
# Steps:
# 1. rustup target add <triple>  (idempotent, safe to repeat)
# 2. Cross hosts: every bound toolchain executable must resolve on PATH
# 3. cargo build --release --target <triple> --package <package>
# 4. Publish target/<triple>/release/<package> into dist/ atomically
#
# Fail fast: every error is fatal and nothing is retried.
# -----------------------------------------------------------------------------

import hashlib
import os
import shutil
import tempfile
from pathlib import Path

from rich.console import Console

from shipyard.core.toolchain import configure
from shipyard.domain.models import BuildArtifact, EnvironmentBindings, PlatformProfile
from shipyard.infra.shell import CommandFailedError, CommandNotFoundError, CommandRunner

console = Console()

DIST_DIR_NAME = "dist"


class BuildError(Exception):
    """Base class for every Release Builder failure."""

    pass


class ToolchainResolutionError(BuildError):
    """Raised when a required compiler, linker or toolchain manager is missing."""

    def __init__(self, message: str, executable: str) -> None:
        super().__init__(message)
        self.executable = executable


class DependencyInstallError(BuildError):
    """Raised when the target's standard library cannot be installed."""

    def __init__(self, message: str, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class CompilationError(BuildError):
    """Raised when cargo exits non-zero or produces no binary."""

    def __init__(self, message: str, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ReleaseBuilder:
    """
    Produces one BuildArtifact per invocation, or raises a BuildError.

    Callers never see a half-written binary: the compiled output is copied to
    a temporary file next to its final location and renamed into place.
    """

    def __init__(
        self,
        workspace: str | Path,
        package: str,
        runner: CommandRunner | None = None,
        dist_dir: str | Path | None = None,
    ) -> None:
        self._workspace = Path(workspace)
        self._package = package
        self._runner = runner or CommandRunner(self._workspace)
        self._dist_dir = Path(dist_dir) if dist_dir else self._workspace / DIST_DIR_NAME

    def compiled_path(self, triple: str) -> Path:
        """Where cargo leaves the release binary for `triple`."""
        return self._workspace / "target" / triple / "release" / self._package

    def published_path(self, triple: str) -> Path:
        return self._dist_dir / triple / self._package

    def build(
        self, profile: PlatformProfile, bindings: EnvironmentBindings | None = None
    ) -> BuildArtifact:
        """
        Compile and publish the release binary.

        Args:
            profile: Platform profile from the detector.
            bindings: Toolchain bindings; computed from `profile` when omitted.

        Returns:
            BuildArtifact for the published binary.

        Raises:
            ToolchainResolutionError: rustup, cargo or a cross tool is missing.
            DependencyInstallError: rustup could not add the target.
            CompilationError: cargo failed or produced no binary.
        """
        triple = profile.target_triple
        bindings = bindings if bindings is not None else configure(profile)
        env = bindings.apply()

        console.print(f"[cyan][BUILDER] Building {self._package} for {triple}[/cyan]")

        self._add_target(triple, env)
        if profile.is_cross:
            self._check_cross_toolchain(profile, env)
        self._compile(triple, env)
        artifact = self._publish(triple)

        console.print(
            f"[green][BUILDER] Release binary ready: {artifact.binary_path} "
            f"(sha256 {artifact.sha256[:12]})[/green]"
        )
        return artifact

    def _add_target(self, triple: str, env: dict[str, str]) -> None:
        console.print(f"[cyan][BUILDER] Ensuring Rust target {triple} is installed...[/cyan]")
        try:
            self._runner.run(["rustup", "target", "add", triple], env=env)
        except CommandNotFoundError as e:
            raise ToolchainResolutionError(
                "rustup not found - install the Rust toolchain", executable=e.executable
            ) from e
        except CommandFailedError as e:
            raise DependencyInstallError(
                f"rustup target add {triple} failed (exit {e.exit_code})", exit_code=e.exit_code
            ) from e

    def _check_cross_toolchain(self, profile: PlatformProfile, env: dict[str, str]) -> None:
        for role, executable in profile.toolchain_bindings.items():
            if self._runner.which(executable, env=env) is None:
                console.print(f"[red][BUILDER] Cross {role.value} not found: {executable}[/red]")
                raise ToolchainResolutionError(
                    f"Cross toolchain executable not found for {role.value}: {executable}",
                    executable=executable,
                )

    def _compile(self, triple: str, env: dict[str, str]) -> None:
        cmd = ["cargo", "build", "--release", "--target", triple, "--package", self._package]
        try:
            self._runner.run(cmd, env=env)
        except CommandNotFoundError as e:
            raise ToolchainResolutionError(
                "cargo not found - install the Rust toolchain", executable=e.executable
            ) from e
        except CommandFailedError as e:
            console.print(f"[red][BUILDER] Compilation FAILED (exit: {e.exit_code})[/red]")
            raise CompilationError(
                f"cargo build failed with exit code {e.exit_code}", exit_code=e.exit_code
            ) from e

    def _publish(self, triple: str) -> BuildArtifact:
        compiled = self.compiled_path(triple)
        if not compiled.is_file():
            raise CompilationError(f"cargo reported success but {compiled} is missing", exit_code=0)

        final = self.published_path(triple)
        final.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._package}.", dir=final.parent)
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            shutil.copy2(compiled, tmp)
            digest = sha256_file(tmp)
            os.replace(tmp, final)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        return BuildArtifact(
            binary_path=str(final),
            package_name=self._package,
            target_triple=triple,
            sha256=digest,
        )
