"""Database package for OTW orders."""
from .connection import close_db, create_session_factory, get_session_factory, init_db
from .models import Base, IndexMirrorEvent, OrderRecord, UserOrderEntry

__all__ = [
    "Base",
    "IndexMirrorEvent",
    "OrderRecord",
    "UserOrderEntry",
    "close_db",
    "create_session_factory",
    "get_session_factory",
    "init_db",
]
