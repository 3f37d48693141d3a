# persistence/__init__.py
"""
Persistence - durable local cache of the order set
"""

from .snapshot_store import SnapshotStore

__all__ = ['SnapshotStore']
