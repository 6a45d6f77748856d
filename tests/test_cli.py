"""Tests for the command-line interface."""

import io
import json
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from pypdf import PdfReader

from src.cli import main, print_ranges, split_file
from src.errors import ValidationError
from src.reconcile.reconciler import RunSummary


class TestPrintRanges:
    """Tests for print_ranges."""

    def test_prints_json_pairs(self, capsys: pytest.CaptureFixture[str]) -> None:
        ranges = print_ranges([1, 3, 4, 7], 10)
        assert [(r.start, r.end) for r in ranges] == [(1, 2), (3, 3), (4, 6), (7, 10)]
        assert json.loads(capsys.readouterr().out) == [[1, 2], [3, 3], [4, 6], [7, 10]]

    def test_invalid_pages_raise(self) -> None:
        with pytest.raises(ValidationError):
            print_ranges([3, 1], 5)


class TestSplitFile:
    """Tests for split_file."""

    def test_writes_one_file_per_range(
        self, tmp_path: Path, pdf_factory: Callable[[int], bytes]
    ) -> None:
        source = tmp_path / "batch.pdf"
        source.write_bytes(pdf_factory(5))

        written = split_file(source, [1, 4], tmp_path / "out")

        assert [p.name for p in written] == ["batch-part-01.pdf", "batch-part-02.pdf"]
        page_counts = [len(PdfReader(io.BytesIO(p.read_bytes())).pages) for p in written]
        assert page_counts == [3, 2]

    def test_no_pages_keeps_file_whole(
        self, tmp_path: Path, pdf_factory: Callable[[int], bytes]
    ) -> None:
        source = tmp_path / "single.pdf"
        source.write_bytes(pdf_factory(3))
        written = split_file(source, [], tmp_path / "out")
        assert len(written) == 1

    def test_verbose_output(
        self,
        tmp_path: Path,
        pdf_factory: Callable[[int], bytes],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        source = tmp_path / "batch.pdf"
        source.write_bytes(pdf_factory(2))
        split_file(source, [1, 2], tmp_path / "out", verbose=True)
        assert "[2/2] pages 2-2" in capsys.readouterr().out


class TestCLIMain:
    """Tests for the CLI main entry point."""

    def test_no_command_shows_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 0
        assert "ranges" in capsys.readouterr().out

    def test_ranges_command(self, capsys: pytest.CaptureFixture[str]) -> None:
        main(["ranges", "1,3", "4"])
        assert json.loads(capsys.readouterr().out) == [[1, 2], [3, 4]]

    def test_ranges_out_of_bounds(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["ranges", "1,9", "4"])
        assert exc_info.value.code == 1
        assert "out of range" in capsys.readouterr().err

    def test_split_nonexistent_file(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["split", str(tmp_path / "missing.pdf")])
        assert exc_info.value.code == 1
        assert "does not exist" in capsys.readouterr().err

    def test_split_command(self, tmp_path: Path, pdf_factory: Callable[[int], bytes]) -> None:
        source = tmp_path / "batch.pdf"
        source.write_bytes(pdf_factory(3))
        out = tmp_path / "out"

        main(["split", str(source), "-p", "1,2", "-o", str(out)])

        assert sorted(p.name for p in out.iterdir()) == [
            "batch-part-01.pdf",
            "batch-part-02.pdf",
        ]

    @patch("src.cli.build_services")
    def test_reconcile_command(
        self, mock_build: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        mock_build.return_value.reconciler.run_once.return_value = RunSummary(checked=2)

        main(["reconcile"])

        assert json.loads(capsys.readouterr().out)["checked"] == 2

    @patch("src.cli.build_services")
    def test_recompute_command(
        self, mock_build: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        mock_build.return_value.records.recompute_all.return_value = {
            "checked": 3,
            "changed": 1,
        }

        main(["recompute"])

        assert json.loads(capsys.readouterr().out) == {"checked": 3, "changed": 1}

    @patch("src.cli.serve")
    def test_serve_command(self, mock_serve: MagicMock, tmp_path: Path) -> None:
        config_path = tmp_path / "config.yaml"
        config_path.write_text("log_level: DEBUG\n")

        main(["-c", str(config_path), "serve", "--port", "9000"])

        config, host, port = mock_serve.call_args.args
        assert config.log_level == "DEBUG"
        assert (host, port) == ("0.0.0.0", 9000)
