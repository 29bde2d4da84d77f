# -----------------------------------------------------------------------------
# SHIPYARD - COMMAND LINE INTERFACE
# -----------------------------------------------------------------------------
# Responsibility: The operator's entry points.
#
# - shipyard: run the full release. No flags, configured by environment
#   variables (and a `.env` file in the workspace). Exit code 0 on success,
#   the compiler's exit code on a compilation failure, 1 on anything else.
# - shipyard-params <file>...: validate deployment parameter files and print
#   them in the provisioning layer's format.
# -----------------------------------------------------------------------------

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel

from shipyard.core.assembler import ImageBuildError
from shipyard.core.builder import BuildError, CompilationError
from shipyard.core.cache import CacheError
from shipyard.core.config import ConfigError, ReleaseConfig
from shipyard.core.layers import LayerPlanError
from shipyard.core.params import ParameterSetError, load_parameter_set, render_tfvars
from shipyard.core.pipeline import ReleasePipeline
from shipyard.infra.docker_client import DockerProviderError

console = Console()

SYSTEM_NAME = "SHIPYARD"


def exit_code_for(error: Exception) -> int:
    """Process exit code for a release failure."""
    if isinstance(error, CompilationError) and error.exit_code > 0:
        return error.exit_code
    return 1


def _halt(title: str, error: Exception) -> int:
    body = f"[bold red]{type(error).__name__}[/bold red]\n\n{error}"
    details = getattr(error, "details", "")
    kind = getattr(error, "kind", None)
    if kind is not None:
        body += f"\n\nKind: {kind.value}"
    if details:
        body += f"\n\n{details}"
    console.print(Panel(body, title=title, border_style="red"))
    return exit_code_for(error)


def main() -> int:
    """Run the release pipeline once."""
    workspace = Path(os.getenv("SHIPYARD_WORKSPACE") or os.getcwd())
    load_dotenv(workspace / ".env")

    try:
        config = ReleaseConfig.from_env()
    except ConfigError as e:
        return _halt("CONFIGURATION ERROR", e)

    console.print(
        f"[bold green]{SYSTEM_NAME} release: {config.package} -> {config.image_tag}[/bold green]"
    )

    try:
        result = ReleasePipeline(config).run()
    except BuildError as e:
        return _halt("BUILD HALTED", e)
    except ImageBuildError as e:
        return _halt("IMAGE BUILD HALTED", e)
    except (CacheError, LayerPlanError, ParameterSetError, DockerProviderError) as e:
        return _halt("RELEASE HALTED", e)

    console.print(
        Panel(
            f"[bold green]RELEASE COMPLETE[/bold green]\n\n"
            f"Image:  {result.image}\n"
            f"Binary: {result.artifact.binary_path}\n"
            f"SHA256: {result.artifact.sha256}",
            title=result.run_id,
            border_style="green",
        )
    )
    return 0


def params_main(argv: list[str] | None = None) -> int:
    """Validate parameter files and print their rendering."""
    args = sys.argv[1:] if argv is None else argv
    if not args:
        console.print("[yellow]usage: shipyard-params <parameter-file>...[/yellow]")
        return 2

    for arg in args:
        try:
            params = load_parameter_set(arg)
        except ParameterSetError as e:
            return _halt("PARAMETERS REJECTED", e)
        console.rule(f"[cyan]{params.env}[/cyan]")
        console.print(render_tfvars(params), markup=False, highlight=False, soft_wrap=True, end="")
    return 0


if __name__ == "__main__":
    sys.exit(main())
