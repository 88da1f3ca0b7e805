"""Tests for the Courier CLI entry point (courier.cli.main).

Covers parser construction, config loading and validation, and
subcommand dispatch.  ``main()`` imports subcommands lazily, so patches
target the *source* module (e.g. ``courier.cli.commands.db.run_db``),
not ``courier.cli.main``.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
import yaml

from courier.cli.main import _build_parser, main


@pytest.fixture
def parser():
    return _build_parser()


@pytest.fixture
def tmp_config(tmp_config_file):
    return str(tmp_config_file)


# ===========================================================================
# Parser construction
# ===========================================================================


class TestBuildParser:
    def test_config_required(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args([])

    def test_no_subcommand(self, parser, tmp_config):
        args = parser.parse_args(["-c", tmp_config])
        assert args.command is None
        assert args.validate_only is False
        assert args.debug is False

    def test_serve_dev(self, parser, tmp_config):
        args = parser.parse_args(["-c", tmp_config, "serve", "--dev"])
        assert args.command == "serve"
        assert args.dev is True

    def test_worker(self, parser, tmp_config):
        assert parser.parse_args(["-c", tmp_config, "worker"]).command == "worker"

    @pytest.mark.parametrize("sub", ["status", "migrate"])
    def test_db(self, parser, tmp_config, sub):
        args = parser.parse_args(["-c", tmp_config, "db", sub])
        assert args.command == "db"
        assert args.db_command == sub

    def test_send_with_template(self, parser, tmp_config):
        args = parser.parse_args(
            [
                "-c",
                tmp_config,
                "send",
                "--channel",
                "email",
                "--to",
                "ada@example.com",
                "--template",
                "8a1f7a4e-0c55-4f3b-9a43-3d0f2f9f3f10",
                "--var",
                "name=Ada",
                "--var",
                "day=Monday",
                "--priority",
                "2",
            ]
        )
        assert args.recipient == "ada@example.com"
        assert args.template_id.startswith("8a1f")
        assert args.body is None
        assert args.var == ["name=Ada", "day=Monday"]
        assert args.priority == 2

    def test_send_requires_template_or_body(self, parser, tmp_config):
        with pytest.raises(SystemExit):
            parser.parse_args(["-c", tmp_config, "send", "--channel", "sms", "--to", "+1555"])

    def test_send_template_and_body_exclusive(self, parser, tmp_config):
        with pytest.raises(SystemExit):
            parser.parse_args(
                [
                    "-c",
                    tmp_config,
                    "send",
                    "--channel",
                    "sms",
                    "--to",
                    "+1555",
                    "--template",
                    "t",
                    "--body",
                    "b",
                ]
            )

    def test_version(self, parser, capsys):
        with patch("courier.__version__", "9.9.9"), pytest.raises(SystemExit) as exc_info:
            _build_parser().parse_args(["--version"])
        assert exc_info.value.code == 0
        assert "courier" in capsys.readouterr().out


# ===========================================================================
# Config loading
# ===========================================================================


class TestConfigLoading:
    def test_missing_file(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(tmp_path / "nope.yaml")])
        assert exc_info.value.code == 1
        assert "configuration file not found" in capsys.readouterr().err

    def test_validate_only_prints_summary(self, tmp_config, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", tmp_config, "--validate-only"])

        assert exc_info.value.code == 0
        out = capsys.readouterr().out
        assert "store:       memory" in out
        assert "email:log-email*" in out
        assert "auth OFF" in out

    def test_cross_field_error_reported(self, tmp_path, minimal_config_data, capsys):
        minimal_config_data["retry"] = {"base_delay_seconds": 600, "max_delay_seconds": 60}
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump(minimal_config_data), encoding="utf-8")

        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(path), "--validate-only"])

        assert exc_info.value.code == 1
        err = capsys.readouterr().err
        assert "Configuration validation failed" in err
        assert "base_delay_seconds" in err

    def test_schema_error_reported(self, tmp_path, minimal_config_data, capsys):
        minimal_config_data["pager"] = {"enabled": True}
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump(minimal_config_data), encoding="utf-8")

        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(path)])

        assert exc_info.value.code == 1
        assert "failed to load configuration" in capsys.readouterr().err


# ===========================================================================
# Dispatch
# ===========================================================================


class TestDispatch:
    def test_default_is_serve(self, tmp_config):
        with patch("courier.cli.commands.serve.run_serve") as run_serve:
            main(["-c", tmp_config])

        run_serve.assert_called_once()
        _, args = run_serve.call_args.args
        assert args.dev is False

    def test_serve_subcommand(self, tmp_config):
        with patch("courier.cli.commands.serve.run_serve") as run_serve:
            main(["-c", tmp_config, "serve", "--dev"])
        assert run_serve.call_args.args[1].dev is True

    def test_worker(self, tmp_config):
        with patch("courier.cli.commands.worker.run_worker") as run_worker:
            main(["-c", tmp_config, "worker"])
        run_worker.assert_called_once()

    def test_db(self, tmp_config):
        with patch("courier.cli.commands.db.run_db") as run_db:
            main(["-c", tmp_config, "db", "status"])
        assert run_db.call_args.args[1].db_command == "status"

    def test_send(self, tmp_config):
        with patch("courier.cli.commands.send.run_send") as run_send:
            main(["-c", tmp_config, "send", "--channel", "sms", "--to", "+1", "--body", "x"])
        run_send.assert_called_once()

    def test_command_error_exits(self, tmp_config, capsys):
        with (
            patch("courier.cli.commands.db.run_db", side_effect=RuntimeError("db down")),
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["-c", tmp_config, "db", "status"])

        assert exc_info.value.code == 1
        assert "courier: error: db down" in capsys.readouterr().err

    def test_command_error_raised_with_debug(self, tmp_config):
        with (
            patch("courier.cli.commands.db.run_db", side_effect=RuntimeError("db down")),
            pytest.raises(RuntimeError, match="db down"),
        ):
            main(["-c", tmp_config, "--debug", "db", "status"])
