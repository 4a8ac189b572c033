"""Persistence for commands, groups, runs and their log output."""

from launcher.db.database import Base, Database
from launcher.db.store import Store

__all__ = ["Base", "Database", "Store"]
