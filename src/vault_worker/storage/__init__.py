"""
Object storage for uploaded files.
"""

from .object_store import FilesystemObjectStore, ObjectNotFoundError, ObjectStore, file_key

__all__ = ["ObjectStore", "FilesystemObjectStore", "ObjectNotFoundError", "file_key"]
