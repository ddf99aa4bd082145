"""Relational persistence: models, engine/session setup and stores."""

from mtglog.db.models import Base, NotionDbMap, Task, UploadLog
from mtglog.db.session import init_db, make_engine, make_session_factory
from mtglog.db.store import NotionDbMapStore, TaskStore, UploadLogStore

__all__ = [
    "Base",
    "NotionDbMap",
    "NotionDbMapStore",
    "Task",
    "TaskStore",
    "UploadLog",
    "UploadLogStore",
    "init_db",
    "make_engine",
    "make_session_factory",
]
