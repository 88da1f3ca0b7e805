"""Database subsystem for courier.

Public API::

    from courier.db import init_database, UnitOfWork
"""

from courier.db.init import init_database
from courier.db.unit_of_work import UnitOfWork

__all__ = [
    "UnitOfWork",
    "init_database",
]
