"""Logging subsystem for Courier.

Public API::

    from courier.logging import configure_logging

    configure_logging(settings.logging)
"""

from courier.logging.setup import configure_logging

__all__ = ["configure_logging"]
