"""PostgreSQL repositories (PyPGKit :class:`BaseRepository` subclasses).

Repositories own the row <-> entity mapping and single-statement
queries.  Multi-table state changes live in
:class:`courier.store.postgres.PostgresStore`, which runs them on a
:class:`courier.db.UnitOfWork`.
"""

from courier.repositories.campaign import CampaignRepository
from courier.repositories.notification import NotificationRepository
from courier.repositories.queue_entry import QueueEntryRepository
from courier.repositories.template import TemplateRepository

__all__ = [
    "CampaignRepository",
    "NotificationRepository",
    "QueueEntryRepository",
    "TemplateRepository",
]
