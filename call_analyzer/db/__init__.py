"""Database module for call_analyzer."""

from .connection import StoreError, get_connection
from .call_log_store import CallLogStore
from .document_store import DocumentStore
from .tag_store import TagStore

__all__ = [
    "StoreError",
    "get_connection",
    "CallLogStore",
    "DocumentStore",
    "TagStore",
]
