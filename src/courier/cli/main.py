"""Courier command-line entry point.

Usage::

    courier -c /etc/courier/config.yaml
    courier -c config.yaml --validate-only
    courier -c config.yaml serve --dev
    courier -c config.yaml worker
    courier -c config.yaml db status
    courier -c config.yaml send --channel email --to a@example.com --body "Hi"
    python -m courier -c config.yaml
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

log = logging.getLogger(__name__)


def _get_version() -> str:
    from courier import __version__  # noqa: PLC0415

    return __version__


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="courier",
        description="Courier: multi-channel notification delivery engine",
    )
    parser.add_argument(
        "-c",
        "--config",
        required=True,
        metavar="PATH",
        help="Path to the configuration file (YAML or JSON).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Enable debug output (full tracebacks, verbose logging).",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        default=False,
        help="Validate the configuration file and exit.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API and workers")
    serve_parser.add_argument(
        "--dev",
        action="store_true",
        default=False,
        help="Use Flask's development server instead of gunicorn.",
    )

    # worker
    subparsers.add_parser("worker", help="Run the delivery workers without HTTP")

    # db
    db_parser = subparsers.add_parser("db", help="Database management")
    db_sub = db_parser.add_subparsers(dest="db_command")
    db_sub.add_parser("status", help="Check database connectivity and schema")
    db_sub.add_parser("migrate", help="Apply the bundled schema")

    # send
    send_parser = subparsers.add_parser("send", help="Enqueue one notification")
    send_parser.add_argument("--channel", required=True, help="email, sms, whatsapp or push")
    send_parser.add_argument("--to", required=True, dest="recipient", help="Recipient address")
    content = send_parser.add_mutually_exclusive_group(required=True)
    content.add_argument("--template", dest="template_id", help="Template UUID")
    content.add_argument("--body", help="Raw message body")
    send_parser.add_argument("--subject", help="Subject (raw email only)")
    send_parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Template variable (repeatable)",
    )
    send_parser.add_argument("--priority", type=int, help="1 (highest) to 10")

    return parser


def _print_error(message: str) -> None:
    """Print a user-facing error to stderr."""
    sys.stderr.write(f"courier: error: {message}\n")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point.  Parses arguments, loads config, dispatches."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    config_path = Path(args.config)
    if not config_path.is_file():
        _print_error(f"configuration file not found: {config_path}")
        sys.exit(1)

    # -- bootstrap logging early (basic stderr until config is loaded) ---
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    # -- load & validate config ---
    try:
        from courier.config import ConfigValidationError, CourierConfig  # noqa: PLC0415

        config = CourierConfig(config_file=str(config_path), schema_file="bundled")
    except ConfigValidationError as exc:
        _print_error(str(exc))
        sys.exit(1)
    except Exception as exc:
        if args.debug:
            raise
        _print_error(f"failed to load configuration: {exc}")
        sys.exit(1)

    # -- replace bootstrap logging with structured logging ---
    from courier.logging import configure_logging  # noqa: PLC0415

    configure_logging(config.settings.logging)
    if args.debug:
        logging.getLogger("courier").setLevel(logging.DEBUG)

    if args.validate_only:
        _print_settings_summary(config)
        sys.exit(0)

    command = args.command
    try:
        if command == "db":
            from courier.cli.commands.db import run_db  # noqa: PLC0415

            run_db(config, args)
        elif command == "worker":
            from courier.cli.commands.worker import run_worker  # noqa: PLC0415

            run_worker(config, args)
        elif command == "send":
            from courier.cli.commands.send import run_send  # noqa: PLC0415

            run_send(config, args)
        else:
            # no subcommand = serve
            if not hasattr(args, "dev"):
                args.dev = False
            _print_settings_summary(config)
            from courier.cli.commands.serve import run_serve  # noqa: PLC0415

            run_serve(config, args)
    except Exception as exc:
        if args.debug:
            raise
        _print_error(str(exc))
        sys.exit(1)


def _print_settings_summary(config) -> None:
    """Print a short summary of the loaded configuration."""
    s = config.settings
    channels = ", ".join(
        f"{b.channel.value}:{b.provider}{'*' if b.is_default else ''}" for b in s.channels
    )
    lines = [
        f"courier {_get_version()}",
        f"  config:      {config!r}",
        f"  server:      {s.server.bind}:{s.server.port} ({s.server.workers} workers)",
        f"  api:         {s.api.base_path} (auth {'on' if s.api.api_keys else 'OFF'})",
        f"  store:       {s.store.backend}",
        f"  workers:     {s.workers.count if s.workers.enabled else 'disabled'}",
        f"  rate limits: {s.rate_limits.backend}",
        f"  channels:    {channels or '(none)'}",
    ]
    sys.stdout.write("\n".join(lines) + "\n")
