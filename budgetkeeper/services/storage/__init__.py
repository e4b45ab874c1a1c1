"""
Storage Services Package

Provides the abstract collection store interface, its error taxonomy,
and the JSON-file implementation used in production.
"""

from budgetkeeper.services.storage.interface import (
    CategoryInUseError,
    CategoryTypeMismatchError,
    CollectionStoreInterface,
    CorruptStoreError,
    DuplicateIdError,
    InvalidReferenceError,
    NotFoundError,
    StorageError,
)
from budgetkeeper.services.storage.json_files import JsonCollectionStore

__all__ = [
    # Interface
    "CollectionStoreInterface",
    # Exceptions
    "CategoryInUseError",
    "CategoryTypeMismatchError",
    "CorruptStoreError",
    "DuplicateIdError",
    "InvalidReferenceError",
    "NotFoundError",
    "StorageError",
    # JSON file implementation
    "JsonCollectionStore",
]
