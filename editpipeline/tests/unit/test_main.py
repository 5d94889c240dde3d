"""Unit tests for the command line entry point."""

from unittest.mock import patch

import pytest

from editpipeline.__main__ import EXIT_FAILED, EXIT_OK, build_parser, main
from editpipeline.core.exceptions import AuthError
from editpipeline.tests.mock_utils import (
    DEFAULT_IMAGE,
    FakeRemoteAIClient,
    create_test_settings,
)


@pytest.fixture
def image_file(tmp_path):
    path = tmp_path / "photo.png"
    path.write_bytes(b"\x89PNG-source")
    return path


def run_cli(argv, client):
    with (
        patch("editpipeline.__main__.get_settings", return_value=create_test_settings()),
        patch("editpipeline.__main__.setup_logging"),
        patch("editpipeline.__main__.HttpRemoteAIClient", side_effect=lambda **_: client),
    ):
        return main(argv)


class TestParser:
    """Tests for argument parsing."""

    def test_defaults(self):
        """Test optional arguments default to None."""
        args = build_parser().parse_args(["photo.png"])
        assert args.mask is None
        assert args.prompt is None
        assert args.out is None
        assert args.timeout is None
        assert args.metrics_file is None

    def test_missing_image_is_usage_error(self, tmp_path):
        """Test a missing input file exits with status 2."""
        with pytest.raises(SystemExit) as exc_info:
            main([str(tmp_path / "missing.png")])
        assert exc_info.value.code == 2


class TestMain:
    """Tests for running a request from the command line."""

    def test_success_writes_output(self, image_file, capsys):
        """Test a successful run writes the edited image next to the source."""
        exit_code = run_cli([str(image_file)], FakeRemoteAIClient())

        assert exit_code == EXIT_OK
        output = image_file.with_name("photo_edited.png")
        assert output.read_bytes() == DEFAULT_IMAGE
        stdout = capsys.readouterr().out
        assert "generation_complete" in stdout
        assert "wrote" in stdout

    def test_explicit_output_and_prompt(self, image_file, tmp_path):
        """Test --out and --prompt are honored."""
        client = FakeRemoteAIClient()
        out = tmp_path / "result.png"

        exit_code = run_cli([str(image_file), "--out", str(out), "--prompt", "add a hat"], client)

        assert exit_code == EXIT_OK
        assert out.exists()
        assert client.prompts == ["add a hat"]

    def test_failure_exit_code(self, image_file, capsys):
        """Test a failed request exits with status 1 and reports the kind."""
        client = FakeRemoteAIClient(analyze_outcomes=[AuthError("rejected")])

        assert run_cli([str(image_file)], client) == EXIT_FAILED
        assert "auth" in capsys.readouterr().err
        assert not image_file.with_name("photo_edited.png").exists()

    def test_metrics_file_written_on_success(self, image_file, tmp_path):
        """Test --metrics-file dumps the Prometheus exposition after the run."""
        metrics_path = tmp_path / "run.prom"

        exit_code = run_cli(
            [str(image_file), "--metrics-file", str(metrics_path)], FakeRemoteAIClient()
        )

        assert exit_code == EXIT_OK
        body = metrics_path.read_text(encoding="utf-8")
        assert "editpipeline_pipeline_results_total" in body
        assert 'status="succeeded"' in body

    def test_metrics_file_written_on_failure(self, image_file, tmp_path):
        """Test metrics are written even when the request fails."""
        metrics_path = tmp_path / "run.prom"
        client = FakeRemoteAIClient(analyze_outcomes=[AuthError("rejected")])

        exit_code = run_cli([str(image_file), "--metrics-file", str(metrics_path)], client)

        assert exit_code == EXIT_FAILED
        assert "editpipeline_pipeline_errors_total" in metrics_path.read_text(encoding="utf-8")
