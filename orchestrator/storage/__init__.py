"""Storage backends for definitions and instances."""

from .base import WorkflowStore, InstanceStore
from .memory import InMemoryWorkflowStore, InMemoryInstanceStore
from .database import Base, create_database_engine, create_session_factory, create_tables, drop_tables
from .sql import SqlWorkflowStore, SqlInstanceStore

__all__ = [
    "WorkflowStore",
    "InstanceStore",
    "InMemoryWorkflowStore",
    "InMemoryInstanceStore",
    "Base",
    "create_database_engine",
    "create_session_factory",
    "create_tables",
    "drop_tables",
    "SqlWorkflowStore",
    "SqlInstanceStore",
]
