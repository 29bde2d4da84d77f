# -----------------------------------------------------------------------------
# THE PLATFORM DETECTOR
# -----------------------------------------------------------------------------
# Responsibility: Inspect the host OS once per release and pick the toolchain
# profile. A Linux host compiles natively; a macOS host must cross-compile to
# the fixed Linux target. Unknown hosts get the native no-op profile.
# -----------------------------------------------------------------------------

import platform
from collections.abc import Sequence

from rich.console import Console

from shipyard.domain.models import (
    CROSS_TOOL_PREFIX,
    TARGET_TRIPLE,
    CrossCompileProfile,
    HostOS,
    NativeProfile,
    PlatformProfile,
    ToolRole,
)

console = Console()

# Cross toolchain executables for TARGET_TRIPLE (GNU cross binutils/gcc)
CROSS_TOOLCHAIN = {
    ToolRole.LINKER: f"{CROSS_TOOL_PREFIX}-gcc",
    ToolRole.CC: f"{CROSS_TOOL_PREFIX}-gcc",
    ToolRole.CXX: f"{CROSS_TOOL_PREFIX}-g++",
    ToolRole.AR: f"{CROSS_TOOL_PREFIX}-ar",
}


def classify_host(system: str) -> HostOS:
    """Map a raw `platform.system()` identifier to a HostOS."""
    for host in (HostOS.LINUX, HostOS.DARWIN):
        if system == host.value:
            return host
    return HostOS.OTHER


def detect(system: str | None = None, extra_link_flags: Sequence[str] = ()) -> PlatformProfile:
    """
    Select the toolchain profile for this host.

    Args:
        system: Host OS identifier; defaults to platform.system().
        extra_link_flags: Additional link flags for a cross build (ignored natively).

    Returns:
        NativeProfile when the host matches the target (or is unknown),
        CrossCompileProfile otherwise.
    """
    raw = system if system is not None else platform.system()
    host_os = classify_host(raw)

    if host_os is HostOS.DARWIN:
        profile = CrossCompileProfile(
            host_os=host_os,
            toolchain_bindings=dict(CROSS_TOOLCHAIN),
            extra_link_flags=tuple(extra_link_flags),
        )
        console.print(f"[cyan][PLATFORM] {raw} host: cross-compiling to {TARGET_TRIPLE}[/cyan]")
        return profile

    if host_os is HostOS.OTHER:
        console.print(f"[yellow][PLATFORM] Unrecognised host '{raw}', using native toolchain[/yellow]")
    else:
        console.print(f"[cyan][PLATFORM] {raw} host: native toolchain for {TARGET_TRIPLE}[/cyan]")
    return NativeProfile(host_os=host_os)
