"""Mailroom object storage abstraction."""

from mailroom_storage.object_store import ObjectStore, ObjectStoreConfig

__all__ = ["ObjectStore", "ObjectStoreConfig"]
