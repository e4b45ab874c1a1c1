"""
Abstract Storage Interface

DESIGN DECISION: Higher layers see the store as one mapping from
(kind, id) to entity, even though it is physically partitioned per user.
This allows us to:
1. Keep the engine and ledger independent of the on-disk layout
2. Swap the JSON files for a database later
3. Share one error taxonomy across implementations

The interface is intentionally generic - operations take an EntityKind,
not a per-entity method set.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Sequence
from uuid import UUID

from pydantic import BaseModel

from budgetkeeper.models.entities import EntityKind


class CollectionStoreInterface(ABC):
    """
    Abstract interface for the per-user collection store.

    The optional user_id on single-entity operations is a sharding hint:
    implementations may use it to avoid a global lookup, but it never
    changes which entity is returned.
    """

    @abstractmethod
    async def init_db(self) -> None:
        """
        Prepare backing storage and load existing data.

        Idempotent; safe to call multiple times.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release caches and locks."""
        pass

    @abstractmethod
    def reference_lock(self, user_id: UUID) -> asyncio.Lock:
        """
        Lock for check-then-write sequences that span a user's collections.

        Callers hold it from a reference check (category exists, category
        unused, rule unchanged) until the dependent write has committed.
        The store never takes it itself, and it is not reentrant.
        """
        pass

    @abstractmethod
    async def get_all(self, kind: EntityKind) -> list[BaseModel]:
        """
        All entities of a kind across all users.

        Intended for global scans only. Partitions that can't be read
        are reported and left out rather than failing the whole scan.
        """
        pass

    @abstractmethod
    async def get_by_user_id(self, kind: EntityKind, user_id: UUID) -> list[BaseModel]:
        """
        Entities of a kind owned by a user, in insertion order.

        Raises:
            CorruptStoreError: If the user's document for this kind is unreadable
        """
        pass

    @abstractmethod
    async def get_by_id(
        self,
        kind: EntityKind,
        entity_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[BaseModel]:
        """
        Retrieve a single entity.

        Returns:
            The entity if found, None otherwise

        Raises:
            CorruptStoreError: If the entity may live in an unreadable document
        """
        pass

    @abstractmethod
    async def user_exists(self, user_id: UUID) -> bool:
        """Check whether a user record is stored."""
        pass

    @abstractmethod
    async def user_ids(self) -> list[UUID]:
        """Ids of every user partition currently stored."""
        pass

    @abstractmethod
    async def insert(
        self,
        kind: EntityKind,
        entity: BaseModel,
        user_id: Optional[UUID] = None,
    ) -> BaseModel:
        """
        Persist a new entity.

        Raises:
            DuplicateIdError: If the id already exists in this kind
        """
        pass

    @abstractmethod
    async def insert_many(
        self,
        kind: EntityKind,
        entities: Sequence[BaseModel],
        user_id: UUID,
    ) -> list[BaseModel]:
        """
        Persist several new entities for one user in a single write.

        All-or-nothing: a duplicate id rejects the whole batch, including
        an id found in another user's unreadable document.
        """
        pass

    @abstractmethod
    async def update(
        self,
        kind: EntityKind,
        entity_id: UUID,
        fields: dict[str, Any],
        user_id: Optional[UUID] = None,
    ) -> BaseModel:
        """
        Merge fields into an existing entity and refresh updated_at.

        Returns:
            The merged entity

        Raises:
            NotFoundError: If the entity doesn't exist
        """
        pass

    @abstractmethod
    async def remove(
        self,
        kind: EntityKind,
        entity_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> bool:
        """
        Delete one entity.

        Returns:
            True if something was deleted; absence is not an error
        """
        pass

    @abstractmethod
    async def remove_by_user_id(self, kind: EntityKind, user_id: UUID) -> int:
        """
        Delete every entity of a kind owned by a user.

        Returns:
            Number of entities removed
        """
        pass

    @abstractmethod
    async def drop_user(self, user_id: UUID) -> None:
        """Remove whatever is left of a user's partition."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateIdError(StorageError):
    """Attempted to insert an entity whose id already exists."""
    pass


class CorruptStoreError(StorageError):
    """A persisted collection document could not be parsed."""

    def __init__(self, kind: EntityKind, user_id: Optional[UUID], path: Path, reason: str):
        self.kind = kind
        self.user_id = user_id
        self.path = path
        super().__init__(f"Corrupt {kind.value} document at {path}: {reason}")


class InvalidReferenceError(StorageError):
    """A reference points at a missing entity or one owned by another user."""
    pass


class CategoryTypeMismatchError(InvalidReferenceError):
    """An entry's type differs from the type of the category it uses."""
    pass


class CategoryInUseError(StorageError):
    """A category cannot be deleted while transactions or rules use it."""
    pass
