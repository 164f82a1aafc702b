"""Relational storage: capability protocols, SQL adapter and backend selector."""

from mnemo.storage.base import GraphStore, RelationalStore, VectorStore
from mnemo.storage.selector import BackendSelector, ConnectionCell
from mnemo.storage.sql_store import SQLRelationalStore

__all__ = [
    "BackendSelector",
    "ConnectionCell",
    "GraphStore",
    "RelationalStore",
    "SQLRelationalStore",
    "VectorStore",
]
