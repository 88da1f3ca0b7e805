"""Send subcommand: enqueue a single notification from the shell."""

from __future__ import annotations

import json
import logging
import sys

log = logging.getLogger(__name__)


def parse_vars(pairs: list[str]) -> dict[str, str]:
    """Turn repeated ``--var KEY=VALUE`` arguments into a dict.

    Raises :class:`ValueError` for an entry without ``=`` or with an
    empty key.
    """
    variables: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            msg = f"--var expects KEY=VALUE, got {pair!r}"
            raise ValueError(msg)
        variables[key.strip()] = value
    return variables


def run_send(config, args) -> None:
    """Validate and enqueue one notification, then print it as JSON."""
    from courier.api.serializers import serialize_notification  # noqa: PLC0415
    from courier.app.errors import ApiProblem  # noqa: PLC0415
    from courier.cli.commands.serve import _database_for  # noqa: PLC0415
    from courier.services import NotificationService  # noqa: PLC0415
    from courier.store import create_store  # noqa: PLC0415

    settings = config.settings
    if settings.store.backend == "memory":
        log.warning("store.backend is 'memory': the notification will not outlive this command")

    store = create_store(settings, _database_for(settings))
    service = NotificationService(store, settings)

    try:
        notification = service.enqueue(
            args.channel,
            args.recipient,
            template_id=args.template_id,
            variables=parse_vars(args.var),
            subject=args.subject,
            body=args.body,
            priority=args.priority,
            created_by="cli",
        )
    except ApiProblem as exc:
        sys.stderr.write(f"courier: error: {exc.detail}\n")
        sys.exit(1)

    sys.stdout.write(json.dumps(serialize_notification(notification), indent=2) + "\n")
