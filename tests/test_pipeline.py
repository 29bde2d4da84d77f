# =============================================================================
# SHIPYARD RELEASE PIPELINE TESTS
# =============================================================================
# End-to-end pipeline tests with a fake toolchain and a mocked Docker daemon.
# =============================================================================

import json
from unittest.mock import MagicMock, patch

import pytest
import yaml
from docker.errors import APIError

from shipyard.core.assembler import ImageBuildError
from shipyard.core.builder import CompilationError
from shipyard.core.cache import CacheError
from shipyard.core.config import ReleaseConfig
from shipyard.core.layers import release_plan
from shipyard.core.params import ParameterSetError
from shipyard.core.pipeline import ReleasePipeline, ReleaseRecord
from shipyard.domain.models import HOST_SOURCE
from shipyard.infra.shell import CommandFailedError


def _record(workspace):
    records = list((workspace / "releases").glob("*/release_record.json"))
    assert len(records) == 1
    return json.loads(records[0].read_text())


@pytest.fixture
def config(workspace, tmp_path):
    return ReleaseConfig(workspace=workspace, cache_dir=tmp_path / "cache")


@pytest.fixture
def provider_factory(mock_provider):
    return MagicMock(return_value=mock_provider)


class TestReleasePipelineSuccess:
    """Test a full release."""

    def test_release_produces_tagged_image(self, config, fake_runner, provider_factory):
        pipeline = ReleasePipeline(config, provider_factory, runner=fake_runner, system="Linux")

        result = pipeline.run()

        assert str(result.image) == "near/mpc-recovery:latest"
        assert result.artifact.package_name == "mpc-recovery"
        assert result.cache_key is not None
        provider_factory.assert_called_once_with(base_url=None)

    def test_record_events_in_order(self, config, fake_runner, provider_factory, workspace):
        ReleasePipeline(config, provider_factory, runner=fake_runner, system="Linux").run()

        record = _record(workspace)
        assert record["verdict"] == "PASS"
        assert [e["event"] for e in record["events"]] == [
            "RELEASE_STARTED",
            "PLATFORM_DETECTED",
            "TOOLCHAIN_CONFIGURED",
            "BUILD_COMPLETE",
            "ARTIFACT_SAVED",
            "PLAN_READY",
            "CACHE_MISS",
            "IMAGE_BUILT",
            "CACHE_STORED",
            "IMAGE_TAGGED",
            "RELEASE_COMPLETE",
        ]

    def test_second_release_restores_cache(self, config, fake_runner, provider_factory, workspace):
        ReleasePipeline(config, provider_factory, runner=fake_runner, system="Linux").run()
        for path in (workspace / "releases").iterdir():
            for child in path.iterdir():
                child.unlink()
            path.rmdir()

        ReleasePipeline(config, provider_factory, runner=fake_runner, system="Linux").run()

        assert "CACHE_RESTORED" in [e["event"] for e in _record(workspace)["events"]]
        restored = workspace / "target" / "cache" / "usr" / "src" / "app" / "target" / "release"
        assert (restored / "mpc-recovery").read_bytes() == b"binary"

    def test_cache_disabled(self, workspace, tmp_path, fake_runner, provider_factory, mock_docker_client):
        config = ReleaseConfig(workspace=workspace, cache_dir=tmp_path / "cache", use_cache=False)

        result = ReleasePipeline(config, provider_factory, runner=fake_runner, system="Linux").run()

        assert result.cache_key is None
        mock_docker_client.containers.create.assert_not_called()

    def test_context_satisfies_every_copy_without_cache(
        self, workspace, tmp_path, fake_runner, provider_factory
    ):
        """With no cache at all the context still holds every host COPY source."""
        config = ReleaseConfig(workspace=workspace, cache_dir=tmp_path / "cache", use_cache=False)

        ReleasePipeline(config, provider_factory, runner=fake_runner, system="Linux").run()

        assert (workspace / "target" / "cache" / "usr").is_dir()
        for stage in release_plan("mpc-recovery").stages:
            for step in stage.inputs:
                if step.source == HOST_SOURCE:
                    assert (workspace / step.src).exists(), step.src
        dockerfile = (workspace / "build" / "Dockerfile.release").read_text()
        assert not any(c in line for line in dockerfile.splitlines() if line.startswith("COPY") for c in "*?[")

    def test_cache_exported_from_untagged_image(self, config, fake_runner, provider_factory, mock_docker_client):
        ReleasePipeline(config, provider_factory, runner=fake_runner, system="Linux").run()

        image = mock_docker_client.images.build.return_value[0]
        assert mock_docker_client.containers.create.call_args.args[0] == image.id

    def test_prebuilt_mode_ships_host_binary(self, workspace, tmp_path, fake_runner, provider_factory, mock_docker_client):
        config = ReleaseConfig(workspace=workspace, cache_dir=tmp_path / "cache", image_mode="prebuilt")

        ReleasePipeline(config, provider_factory, runner=fake_runner, system="Darwin").run()

        targets = [call.kwargs["target"] for call in mock_docker_client.images.build.call_args_list]
        assert targets == ["runtime"]
        dockerfile = (workspace / "build" / "Dockerfile.release").read_text()
        assert "COPY dist/x86_64-unknown-linux-gnu/mpc-recovery /usr/local/bin/mpc-recovery" in dockerfile

    def test_parameters_checked_against_image(self, workspace, tmp_path, fake_runner, provider_factory, params_dict):
        params_file = tmp_path / "dev.yaml"
        params_file.write_text(yaml.safe_dump(params_dict))
        config = ReleaseConfig(workspace=workspace, cache_dir=tmp_path / "cache", params_file=params_file)

        ReleasePipeline(config, provider_factory, runner=fake_runner, system="Linux").run()

        assert "PARAMETERS_MATCH" in [e["event"] for e in _record(workspace)["events"]]


class TestReleasePipelineFailures:
    """Test fail-fast behaviour."""

    def test_compile_error_never_reaches_docker(self, config, fake_runner, provider_factory, workspace):
        """A compilation failure stops the run before any image work."""

        def _run(cmd, env=None, capture_output=False, check=True):
            if cmd[:2] == ["cargo", "build"]:
                raise CommandFailedError(cmd, 101)

        fake_runner.run.side_effect = _run

        with pytest.raises(CompilationError) as exc_info:
            ReleasePipeline(config, provider_factory, runner=fake_runner, system="Linux").run()

        assert exc_info.value.exit_code == 101
        provider_factory.assert_not_called()
        record = _record(workspace)
        assert record["verdict"] == "FAIL"
        assert record["events"][-1]["event"] == "RELEASE_FAILED"
        assert not (workspace / "dist").exists()

    def test_parameter_mismatch_fails_release(self, workspace, tmp_path, fake_runner, provider_factory, params_dict):
        params_dict["docker_image"] = "near/mpc-recovery:v9"
        params_file = tmp_path / "dev.yaml"
        params_file.write_text(yaml.safe_dump(params_dict))
        config = ReleaseConfig(workspace=workspace, cache_dir=tmp_path / "cache", params_file=params_file)

        with pytest.raises(ParameterSetError):
            ReleasePipeline(config, provider_factory, runner=fake_runner, system="Linux").run()

        assert _record(workspace)["verdict"] == "FAIL"
        fake_runner.run.assert_not_called()
        provider_factory.assert_not_called()

    def test_cache_store_failure_publishes_nothing(
        self, config, fake_runner, provider_factory, mock_docker_client, workspace
    ):
        """Images are built but a later failure leaves no tag behind."""
        with patch("shipyard.core.pipeline.ArtifactCache.store", side_effect=CacheError("disk full")):
            with pytest.raises(CacheError):
                ReleasePipeline(config, provider_factory, runner=fake_runner, system="Linux").run()

        mock_docker_client.images.build.assert_called()
        mock_docker_client.images.build.return_value[0].tag.assert_not_called()
        record = _record(workspace)
        assert record["verdict"] == "FAIL"
        assert "IMAGE_TAGGED" not in [e["event"] for e in record["events"]]

    def test_export_failure_publishes_nothing(self, config, fake_runner, provider_factory, mock_docker_client):
        container = mock_docker_client.containers.create.return_value
        container.get_archive.side_effect = APIError("Could not find the file /usr in container")

        with pytest.raises(ImageBuildError):
            ReleasePipeline(config, provider_factory, runner=fake_runner, system="Linux").run()

        mock_docker_client.images.build.return_value[0].tag.assert_not_called()


class TestReleaseRecord:
    """Test the release record."""

    def test_finalize_writes_verdict(self, tmp_path):
        record = ReleaseRecord(tmp_path / "run")
        record.log("RELEASE_STARTED", "mpc-recovery")

        path = record.finalize("PASS")

        data = json.loads(path.read_text())
        assert data["verdict"] == "PASS"
        assert data["events"][0]["details"] == "mpc-recovery"
        assert record.events == ["RELEASE_STARTED"]
