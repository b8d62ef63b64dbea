"""
Account Directory - durable account, subscriber and threshold records.

Usage:
    from health_monitor.directory import AccountDirectory, create_directory_engine

    engine = create_directory_engine("sqlite+aiosqlite:///health_monitor.db")
    await create_tables(engine)
    directory = AccountDirectory(create_session_factory(engine))
"""

from .engine import create_directory_engine, create_session_factory, create_tables
from .models import AccountModel, Base, SubscriberModel, ThresholdModel
from .repository import AccountDirectory

__all__ = [
    "AccountDirectory",
    "create_directory_engine",
    "create_session_factory",
    "create_tables",
    # ORM
    "Base",
    "AccountModel",
    "SubscriberModel",
    "ThresholdModel",
]
