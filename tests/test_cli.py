"""Tests for the gmpki-gencerts command line."""

from unittest.mock import patch

import pytest

from gmpki.ca.errors import PersistenceError
from gmpki.cli import build_parser, log_level, main


@pytest.fixture
def no_telemetry():
    with patch("gmpki.cli.setup_logging"), \
         patch("gmpki.cli.setup_tracing"), \
         patch("gmpki.cli.setup_metrics"):
        yield


class TestParser:
    """Tests for argument parsing."""

    def test_defaults(self):
        args = build_parser().parse_args([])
        assert (args.orgs, args.child_orgs, args.servers, args.clients) == (2, 2, 2, 1)
        assert args.depth == 1
        assert args.base_name == "Org"

    def test_negative_counts_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--servers", "-1"])

    def test_empty_base_name_rejected(self, capsys):
        """Test that an empty prefix is a usage error, not a traceback."""
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["--base-name", ""])

        assert exc_info.value.code == 2
        assert "Must not be empty" in capsys.readouterr().err

    def test_verbosity_levels(self):
        assert log_level(1) == "INFO"
        assert log_level(2) == "DEBUG"


class TestMain:
    """Tests for main()."""

    def test_generates_files(self, tmp_path, capsys, no_telemetry):
        exit_code = main(
            ["--orgs", "1", "--child-orgs", "0", "--servers", "1", "--clients", "1", "-o", str(tmp_path)]
        )

        assert exit_code == 0
        assert {p.name for p in tmp_path.glob("*.pem")} == {
            "Org1-key.pem",
            "Org1-cert.pem",
            "Org1-server1-key.pem",
            "Org1-server1-cert.pem",
            "Org1-client1-key.pem",
            "Org1-client1-cert.pem",
        }
        out = capsys.readouterr().out
        assert "Org1-server1" in out

    def test_creates_output_directory(self, tmp_path, no_telemetry):
        target = tmp_path / "nested" / "certs"
        exit_code = main(["--orgs", "1", "--child-orgs", "0", "--servers", "0", "--clients", "0", "-o", str(target)])

        assert exit_code == 0
        assert (target / "Org1-cert.pem").exists()

    def test_failures_set_exit_code(self, tmp_path, capsys, no_telemetry):
        error = PersistenceError("Org1", "disk full")
        with patch("gmpki.services.hierarchy.write_private_key", side_effect=error):
            exit_code = main(
                ["--orgs", "1", "--child-orgs", "0", "--servers", "1", "--clients", "0", "-o", str(tmp_path)]
            )

        assert exit_code == 1
        err = capsys.readouterr().err
        assert "error generating Org1 (org=1)" in err
        assert "Org1-server1" in err
        assert list(tmp_path.glob("*.pem")) == []
