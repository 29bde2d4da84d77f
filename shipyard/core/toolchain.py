# -----------------------------------------------------------------------------
# THE TOOLCHAIN CONFIGURATOR
# -----------------------------------------------------------------------------
# Responsibility: Turn a platform profile into the environment variables that
# point cargo and the cc crate at the cross toolchain.
#
# The result is a value (EnvironmentBindings) handed to the Release Builder;
# nothing here touches os.environ. Executables are not checked for existence,
# the builder does that before compiling.
# -----------------------------------------------------------------------------

from collections.abc import Iterable

from rich.console import Console

from shipyard.domain.models import EnvironmentBindings, PlatformProfile, ToolRole

console = Console()


def cargo_target_key(triple: str) -> str:
    """x86_64-unknown-linux-gnu -> X86_64_UNKNOWN_LINUX_GNU (cargo's env form)."""
    return triple.upper().replace("-", "_")


def cc_target_key(triple: str) -> str:
    """x86_64-unknown-linux-gnu -> x86_64_unknown_linux_gnu (cc crate's env form)."""
    return triple.replace("-", "_")


def binding_variable(role: ToolRole, triple: str) -> str:
    """Name of the environment variable that binds `role` for `triple`."""
    if role is ToolRole.LINKER:
        return f"CARGO_TARGET_{cargo_target_key(triple)}_LINKER"
    return f"{role.value.upper()}_{cc_target_key(triple)}"


def rustflags_variable(triple: str) -> str:
    return f"CARGO_TARGET_{cargo_target_key(triple)}_RUSTFLAGS"


def dedupe_flags(flags: Iterable[str]) -> list[str]:
    """Drop repeated flags, keeping the first occurrence and the original order."""
    seen: set[str] = set()
    result = []
    for flag in flags:
        flag = flag.strip()
        if flag and flag not in seen:
            seen.add(flag)
            result.append(flag)
    return result


def configure(profile: PlatformProfile) -> EnvironmentBindings:
    """
    Compute the toolchain environment for `profile`.

    Native profiles yield empty bindings. Applying the same profile any number
    of times yields equal bindings: variables are assigned, never appended.
    """
    triple = profile.target_triple
    variables: dict[str, str] = {}

    # Fixed role order keeps the mapping deterministic
    for role in ToolRole:
        executable = profile.toolchain_bindings.get(role)
        if executable:
            variables[binding_variable(role, triple)] = executable

    flags = dedupe_flags(profile.extra_link_flags)
    if flags:
        variables[rustflags_variable(triple)] = " ".join(flags)

    if variables:
        console.print(f"[cyan][TOOLCHAIN] {len(variables)} binding(s) for {triple}[/cyan]")
        for name, value in variables.items():
            console.print(f"[dim][TOOLCHAIN]   {name}={value}[/dim]")
    else:
        console.print("[cyan][TOOLCHAIN] Native toolchain, no bindings[/cyan]")

    return EnvironmentBindings(variables=variables)
