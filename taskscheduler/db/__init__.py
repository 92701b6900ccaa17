"""
Database module.
Contains database connection, models, the job repository and queue cursors.
"""

from taskscheduler.db.connection import (
    close_db,
    get_engine,
    get_session_context,
    init_db,
)
from taskscheduler.db.cursor import QueueCursor
from taskscheduler.db.models import Base, QueueCollection, get_queue_table
from taskscheduler.db.repository import JobRepository

__all__ = [
    "get_session_context",
    "get_engine",
    "init_db",
    "close_db",
    "Base",
    "QueueCollection",
    "get_queue_table",
    "JobRepository",
    "QueueCursor",
]
