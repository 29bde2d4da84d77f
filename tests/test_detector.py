# =============================================================================
# SHIPYARD PLATFORM DETECTOR TESTS
# =============================================================================
# Tests for host detection and toolchain profile selection.
# =============================================================================

from unittest.mock import patch

from shipyard.core.detector import CROSS_TOOLCHAIN, classify_host, detect
from shipyard.domain.models import (
    TARGET_TRIPLE,
    CrossCompileProfile,
    HostOS,
    NativeProfile,
    ToolRole,
)


class TestClassifyHost:
    """Test raw OS identifier mapping."""

    def test_linux(self):
        assert classify_host("Linux") is HostOS.LINUX

    def test_darwin(self):
        assert classify_host("Darwin") is HostOS.DARWIN

    def test_unknown(self):
        assert classify_host("Windows") is HostOS.OTHER
        assert classify_host("") is HostOS.OTHER


class TestDetect:
    """Test profile selection."""

    def test_darwin_host_cross_compiles(self):
        """Darwin host gets a cross profile with a cross linker for the target."""
        profile = detect("Darwin")

        assert isinstance(profile, CrossCompileProfile)
        assert profile.toolchain_bindings
        assert profile.toolchain_bindings[ToolRole.LINKER].endswith("x86_64-linux-gnu-gcc")
        assert profile.target_triple == TARGET_TRIPLE

    def test_darwin_binds_every_role(self):
        """Linker, C, C++ compilers and archiver are all redirected."""
        profile = detect("Darwin")
        assert profile.toolchain_bindings == CROSS_TOOLCHAIN
        assert profile.toolchain_bindings[ToolRole.CXX] == "x86_64-linux-gnu-g++"
        assert profile.toolchain_bindings[ToolRole.AR] == "x86_64-linux-gnu-ar"

    def test_linux_host_is_native(self):
        """Linux host matches the target: no bindings."""
        profile = detect("Linux")

        assert isinstance(profile, NativeProfile)
        assert profile.toolchain_bindings == {}
        assert profile.target_triple == TARGET_TRIPLE

    def test_unknown_host_falls_back_to_native(self):
        """Unknown OS gets the no-op profile rather than a guess."""
        profile = detect("FreeBSD")

        assert isinstance(profile, NativeProfile)
        assert profile.host_os is HostOS.OTHER
        assert profile.toolchain_bindings == {}

    def test_target_never_follows_host(self):
        """Every host compiles for the same deployment triple."""
        for system in ("Linux", "Darwin", "Windows"):
            assert detect(system).target_triple == TARGET_TRIPLE

    def test_extra_link_flags_only_for_cross(self):
        """Native profiles ignore extra link flags."""
        flags = ("-L", "/opt/homebrew/lib")
        assert detect("Darwin", extra_link_flags=flags).extra_link_flags == flags
        assert detect("Linux", extra_link_flags=flags).extra_link_flags == ()

    @patch("shipyard.core.detector.platform.system", return_value="Darwin")
    def test_defaults_to_platform_system(self, mock_system):
        """Without an explicit identifier the real host is inspected."""
        profile = detect()
        mock_system.assert_called_once()
        assert isinstance(profile, CrossCompileProfile)
