"""Services package."""

from budgetkeeper.services.storage import (
    CategoryInUseError,
    CategoryTypeMismatchError,
    CollectionStoreInterface,
    CorruptStoreError,
    DuplicateIdError,
    InvalidReferenceError,
    JsonCollectionStore,
    NotFoundError,
    StorageError,
)

__all__ = [
    "CategoryInUseError",
    "CategoryTypeMismatchError",
    "CollectionStoreInterface",
    "CorruptStoreError",
    "DuplicateIdError",
    "InvalidReferenceError",
    "JsonCollectionStore",
    "NotFoundError",
    "StorageError",
]
