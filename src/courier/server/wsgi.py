"""WSGI entry point for external servers (gunicorn, uWSGI, etc.).

The config file path is read from the ``COURIER_CONFIG`` environment
variable.  Do not combine with ``--preload``: the delivery threads are
started at import time and would not survive the fork.

Example::

    export COURIER_CONFIG=/etc/courier/config.yaml
    gunicorn "courier.server.wsgi:app"
"""

from __future__ import annotations

import os
import sys

_config_path = os.environ.get("COURIER_CONFIG")
if _config_path is None:
    sys.stderr.write("courier: COURIER_CONFIG is not set\n")
    sys.exit(1)

# Bootstrap the singleton before anything else imports it.
from courier.config import CourierConfig  # noqa: E402

_config = CourierConfig(config_file=_config_path, schema_file="bundled")

from courier.logging import configure_logging  # noqa: E402

configure_logging(_config.settings.logging)

_db = None
if "database" in (_config.settings.store.backend, _config.settings.rate_limits.backend):
    from courier.db import init_database  # noqa: E402

    _db = init_database(_config.settings.database)

from courier.app import create_app  # noqa: E402

app = create_app(config=_config, database=_db)
