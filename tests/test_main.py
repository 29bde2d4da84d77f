# =============================================================================
# SHIPYARD COMMAND LINE TESTS
# =============================================================================
# Tests for the `shipyard` and `shipyard-params` entry points.
# =============================================================================

import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import yaml

from shipyard.core.assembler import ImageBuildError, ImageFailureKind
from shipyard.core.builder import CompilationError, DependencyInstallError
from shipyard.domain.models import BuildArtifact, ImageReference

DEPLOY_DIR = Path(__file__).parent.parent / "deploy"


class TestExitCodeFor:
    """Test exit_code_for()."""

    def test_compiler_exit_code_propagated(self):
        from shipyard.main import exit_code_for

        assert exit_code_for(CompilationError("cargo failed", exit_code=101)) == 101

    def test_missing_binary_is_one(self):
        from shipyard.main import exit_code_for

        assert exit_code_for(CompilationError("no binary", exit_code=0)) == 1

    def test_other_failures_are_one(self):
        from shipyard.main import exit_code_for

        assert exit_code_for(DependencyInstallError("rustup failed", exit_code=4)) == 1
        assert exit_code_for(ImageBuildError("boom", kind=ImageFailureKind.DAEMON_FAILURE)) == 1


class TestMain:
    """Test main()."""

    @patch("shipyard.main.ReleasePipeline")
    def test_success(self, mock_pipeline, tmp_path):
        from shipyard.main import main

        mock_pipeline.return_value.run.return_value = MagicMock(
            run_id="abc123",
            image=ImageReference.parse("near/mpc-recovery:latest"),
            artifact=BuildArtifact(binary_path="dist/mpc-recovery", package_name="mpc-recovery", sha256="0" * 64),
        )

        with patch.dict(os.environ, {"SHIPYARD_WORKSPACE": str(tmp_path)}):
            assert main() == 0

        config = mock_pipeline.call_args.args[0]
        assert config.workspace == tmp_path

    @patch("shipyard.main.ReleasePipeline")
    def test_compile_failure_exit_code(self, mock_pipeline, tmp_path):
        from shipyard.main import main

        mock_pipeline.return_value.run.side_effect = CompilationError("cargo failed", exit_code=101)

        with patch.dict(os.environ, {"SHIPYARD_WORKSPACE": str(tmp_path)}):
            assert main() == 101

    @patch("shipyard.main.ReleasePipeline")
    def test_image_failure(self, mock_pipeline, tmp_path):
        from shipyard.main import main

        mock_pipeline.return_value.run.side_effect = ImageBuildError(
            "pull failed", kind=ImageFailureKind.BASE_IMAGE_PULL_FAILURE, stage="runtime"
        )

        with patch.dict(os.environ, {"SHIPYARD_WORKSPACE": str(tmp_path)}):
            assert main() == 1

    @patch("shipyard.main.ReleasePipeline")
    def test_invalid_configuration(self, mock_pipeline, tmp_path):
        from shipyard.main import main

        with patch.dict(os.environ, {"SHIPYARD_WORKSPACE": str(tmp_path), "SHIPYARD_IMAGE_MODE": "fat"}):
            assert main() == 1
        mock_pipeline.assert_not_called()

    @patch("shipyard.main.ReleasePipeline")
    def test_dotenv_in_workspace_is_loaded(self, mock_pipeline, tmp_path):
        from shipyard.main import main

        (tmp_path / ".env").write_text("SHIPYARD_IMAGE_TAG=near/mpc-recovery:from-dotenv\n")
        mock_pipeline.return_value.run.side_effect = CompilationError("stop", exit_code=2)

        with patch.dict(os.environ, {"SHIPYARD_WORKSPACE": str(tmp_path)}):
            main()

        config = mock_pipeline.call_args.args[0]
        assert config.image_tag == "near/mpc-recovery:from-dotenv"


class TestParamsMain:
    """Test params_main()."""

    def test_usage_without_arguments(self):
        from shipyard.main import params_main

        assert params_main([]) == 2

    def test_renders_valid_file(self, capsys):
        from shipyard.main import params_main

        assert params_main([str(DEPLOY_DIR / "dev.yaml")]) == 0
        assert 'env = "dev"' in capsys.readouterr().out

    def test_rejects_invalid_file(self, tmp_path, params_dict):
        from shipyard.main import params_main

        params_dict["signer_configs"] = []
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump(params_dict))

        assert params_main([str(path)]) == 1
