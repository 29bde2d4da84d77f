# -----------------------------------------------------------------------------
# DOCKER PROVIDER
# -----------------------------------------------------------------------------
# Responsibility: Hands the Image Assembler a live Docker SDK client.
# Validates the daemon connection up front so an unreachable daemon fails the
# release before any image stage starts.
#
# This is part of the Infrastructure layer - the assembler never builds its
# own client.
# -----------------------------------------------------------------------------

import platform
import subprocess
import time

import docker
from docker import DockerClient
from docker.errors import DockerException
from rich.console import Console
from rich.panel import Panel

console = Console()

# Seconds to wait for a sleeping Docker Desktop to answer a ping
WAKE_TIMEOUT_SECONDS = 60


class DockerProviderError(Exception):
    """Raised when the Docker daemon is unreachable and cannot be recovered."""

    pass


class DockerProvider:
    """
    Docker SDK wrapper used by the release pipeline.

    - Connects to DOCKER_HOST when given, the local daemon otherwise
    - Wakes Docker Desktop on macOS hosts, the common cross-compiling setup
    - Fails fast with a clear message when the daemon stays unavailable
    """

    def __init__(self, base_url: str | None = None, auto_wake: bool = True) -> None:
        """
        Connect to the daemon the release images are built on.

        Args:
            base_url: Daemon address (e.g. tcp://docker-proxy:2375); local daemon if None.
            auto_wake: Try to start a stopped local engine before giving up.
        """
        self._client: DockerClient | None = None
        self._base_url = base_url
        self._auto_wake = auto_wake

        self._connect()

    def _new_client(self) -> DockerClient:
        if self._base_url:
            return docker.DockerClient(base_url=self._base_url)
        return docker.from_env()

    def _wake_docker(self) -> DockerClient | None:
        """
        Attempt to launch the Docker engine if it's sleeping.

        Returns:
            A pinged client, or None when the engine never answered.
        """
        system = platform.system()
        console.print("[yellow][DOCKER] Local engine not answering, starting it...[/yellow]")

        if system == "Darwin":
            subprocess.run(["open", "-a", "Docker"], check=False)
        elif system == "Linux":
            # User-level systemctl avoids a sudo password prompt
            subprocess.run(["systemctl", "--user", "start", "docker"], check=False)
        else:
            console.print(f"[yellow][DOCKER] No auto-wake for {system}[/yellow]")
            return None

        with console.status(
            f"[yellow]Waiting for Docker Engine (up to {WAKE_TIMEOUT_SECONDS}s)...[/yellow]",
            spinner="clock",
        ):
            for _ in range(WAKE_TIMEOUT_SECONDS):
                try:
                    client = self._new_client()
                    client.ping()
                    console.print("[green][DOCKER] Engine answered, continuing release.[/green]")
                    return client
                except DockerException:
                    time.sleep(1)

        console.print(f"[red][DOCKER] Engine still silent after {WAKE_TIMEOUT_SECONDS}s[/red]")
        return None

    def _connect(self) -> None:
        """
        Establish connection to the Docker daemon.

        Raises:
            DockerProviderError: If no daemon answers, after the optional wake attempt.
        """
        try:
            self._client = self._new_client()
            self._client.ping()
            target = self._base_url or "local Docker Engine"
            console.print(f"[green][DOCKER] Connected to {target}[/green]")
        except DockerException:
            self._client = None
            if self._auto_wake and not self._base_url:
                self._client = self._wake_docker()

            if self._client is None:
                console.print(
                    Panel(
                        "[bold red]CRITICAL: Docker Engine Unavailable[/bold red]\n\n"
                        "1. Start Docker (or check DOCKER_HOST)\n"
                        "2. Wait for the engine to answer `docker info`\n"
                        "3. Re-run the release",
                        title="RELEASE HALT",
                        border_style="red",
                    )
                )
                raise DockerProviderError(f"No Docker daemon at {self._base_url or 'the local socket'}")

    def get_client(self) -> DockerClient:
        """
        Get the Docker client, verifying the connection is still active.

        Raises:
            DockerProviderError: If the Docker connection is lost.
        """
        if self._client is None:
            raise DockerProviderError("Docker provider has no client")

        try:
            self._client.ping()
            return self._client
        except DockerException as e:
            console.print(f"[red][DOCKER] Connection lost: {e}[/red]")
            raise DockerProviderError(f"Docker connection lost: {e}") from e

    def is_connected(self) -> bool:
        """True if Docker is currently reachable."""
        if self._client is None:
            return False
        try:
            self._client.ping()
            return True
        except DockerException:
            return False
