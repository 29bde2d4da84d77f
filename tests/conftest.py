"""
Pytest configuration and fixtures for Shipyard tests.
"""

import io
import sys
import tarfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from shipyard.domain.models import TARGET_TRIPLE  # noqa: E402

PACKAGE = "mpc-recovery"


def usr_tar_bytes() -> bytes:
    """Tar stream shaped like `docker cp` of /usr from an export-artifacts image."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, content in (
            ("usr/src/app/target/release/mpc-recovery", b"binary"),
            ("usr/local/cargo/registry/index/config.json", b"{}"),
        ):
            info = tarfile.TarInfo(name=name)
            info.size = len(content)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


@pytest.fixture
def workspace(tmp_path):
    """A minimal Cargo workspace."""
    root = tmp_path / "workspace"
    (root / "mpc-recovery" / "src").mkdir(parents=True)
    (root / "Cargo.toml").write_text('[workspace]\nmembers = ["mpc-recovery"]\n')
    (root / "mpc-recovery" / "Cargo.toml").write_text('[package]\nname = "mpc-recovery"\n')
    (root / "mpc-recovery" / "src" / "main.rs").write_text("fn main() {}\n")
    return root


@pytest.fixture
def fake_runner(workspace):
    """
    CommandRunner stand-in: every command succeeds and `cargo build` leaves a
    binary where cargo would.
    """
    runner = MagicMock()
    runner.which.side_effect = lambda executable, env=None: f"/usr/bin/{executable}"

    def _run(cmd, env=None, capture_output=False, check=True):
        if cmd[:2] == ["cargo", "build"]:
            binary = workspace / "target" / TARGET_TRIPLE / "release" / PACKAGE
            binary.parent.mkdir(parents=True, exist_ok=True)
            binary.write_bytes(b"\x7fELF release binary")
        return MagicMock(returncode=0)

    runner.run.side_effect = _run
    return runner


@pytest.fixture
def mock_docker_client():
    """Mock Docker client for testing."""
    client = MagicMock()
    client.ping.return_value = True

    image = MagicMock()
    image.id = "sha256:" + "a" * 64
    image.short_id = "sha256:aaaaaaaaaa"
    client.images.build.return_value = (image, [{"stream": "Step 1/1 : FROM scratch\n"}])

    container = MagicMock()
    container.get_archive.side_effect = lambda path: (iter([usr_tar_bytes()]), {"name": "usr"})
    client.containers.create.return_value = container

    return client


@pytest.fixture
def mock_provider(mock_docker_client):
    """DockerProvider stand-in handing out the mock client."""
    provider = MagicMock()
    provider.get_client.return_value = mock_docker_client
    return provider


@pytest.fixture
def params_dict():
    """Valid dev parameter set."""
    return {
        "env": "dev",
        "project": "pagoda-discovery-platform-dev",
        "docker_image": "near/mpc-recovery:latest",
        "account_creator_id": "mpc-recovery-dev-creator.testnet",
        "account_creator_sk_secret_id": "mpc-account-creator-sk-dev",
        "fast_auth_partners_secret_id": "mpc-fast-auth-partners-dev",
        "signer_configs": [
            {"cipher_key_secret_id": "mpc-cipher-0-dev", "sk_share_secret_id": "mpc-sk-share-0-dev"},
            {"cipher_key_secret_id": "mpc-cipher-1-dev", "sk_share_secret_id": "mpc-sk-share-1-dev"},
            {"cipher_key_secret_id": "mpc-cipher-2-dev", "sk_share_secret_id": "mpc-sk-share-2-dev"},
        ],
        "jwt_signature_pk_url": "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com",
        "otlp_endpoint": "http://localhost:4317",
        "opentelemetry_level": "debug",
    }
