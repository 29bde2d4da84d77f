# -----------------------------------------------------------------------------
# SHELL INFRASTRUCTURE - Toolchain Command Execution
# -----------------------------------------------------------------------------
# Responsibility: Run toolchain commands (rustup, cargo) for the Release
# Builder. Uses subprocess for lean, direct command execution.
#
# Features:
# - Explicit environment per command (toolchain bindings are never exported
#   into the interpreter's own environment)
# - Output streamed straight to the operator's terminal by default, so the
#   compiler log is surfaced verbatim
# - No timeout: a release build runs until the toolchain exits
# -----------------------------------------------------------------------------

import shlex
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from rich.console import Console

console = Console()


class CommandNotFoundError(Exception):
    """Raised when the executable of a command cannot be found."""

    def __init__(self, executable: str) -> None:
        super().__init__(f"Executable not found: {executable}")
        self.executable = executable


class CommandFailedError(Exception):
    """Raised when a command exits with a non-zero status."""

    def __init__(self, cmd: Sequence[str], exit_code: int, output: str = "") -> None:
        super().__init__(f"Command failed with exit code {exit_code}: {shlex.join(cmd)}")
        self.cmd = list(cmd)
        self.exit_code = exit_code
        self.output = output


class CommandRunner:
    """
    Lean subprocess wrapper bound to a working directory.

    Why subprocess over a build-system library:
    - rustup and cargo are the contract, nothing else is needed
    - The exit code of the toolchain is propagated untouched
    """

    def __init__(self, cwd: str | Path) -> None:
        self._cwd = Path(cwd)

    @property
    def cwd(self) -> Path:
        return self._cwd

    def which(self, executable: str, env: Mapping[str, str] | None = None) -> str | None:
        """Resolve `executable` on the PATH of `env` (default: the current PATH)."""
        path = env.get("PATH") if env is not None else None
        return shutil.which(executable, path=path)

    def run(
        self,
        cmd: Sequence[str],
        env: Mapping[str, str] | None = None,
        capture_output: bool = False,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """
        Run a command in the working directory.

        Args:
            cmd: Command parts (e.g., ["cargo", "build", "--release"])
            env: Complete environment for the child process
            capture_output: Capture stdout/stderr instead of streaming them
            check: Raise on non-zero exit

        Returns:
            CompletedProcess result

        Raises:
            CommandNotFoundError: If the executable does not exist
            CommandFailedError: If the command fails and check=True
        """
        console.print(f"[dim][SHELL] $ {shlex.join(cmd)}[/dim]")
        try:
            result = subprocess.run(
                list(cmd),
                cwd=self._cwd,
                env=dict(env) if env is not None else None,
                capture_output=capture_output,
                text=True,
            )
        except FileNotFoundError as e:
            raise CommandNotFoundError(cmd[0]) from e

        if check and result.returncode != 0:
            output = (result.stderr or result.stdout or "") if capture_output else ""
            raise CommandFailedError(cmd, result.returncode, output)

        return result
