"""
JSON File Storage Implementation

DESIGN DECISION: Each (entity kind, user) pair is one JSON document:

    <data_dir>/<user_id>/users.json
    <data_dir>/<user_id>/categories.json
    <data_dir>/<user_id>/transactions.json
    <data_dir>/<user_id>/recurring.json

Every document is an array of entities in insertion order. A user's own
record lives in their users.json as a one-element array.

TRADEOFFS:
- Every mutation rewrites the whole document (fine for personal volumes)
- A corrupt document only affects its own (kind, user) pair
- Single process only: locks are in-memory asyncio locks

Writes go to a temporary file in the same directory, are fsynced, then
renamed over the target, so a crash never leaves a truncated document.
"""

import asyncio
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Optional, Sequence
from uuid import UUID

import structlog
from pydantic import BaseModel, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from budgetkeeper.audit import AuditLogger
from budgetkeeper.config import StoreSettings, get_settings
from budgetkeeper.models.entities import KIND_MODELS, EntityKind, utc_now
from budgetkeeper.services.storage.interface import (
    CollectionStoreInterface,
    CorruptStoreError,
    DuplicateIdError,
    InvalidReferenceError,
    NotFoundError,
)


# Fields update() refuses to change
IMMUTABLE_FIELDS = frozenset({"id", "user_id", "created_at"})

PartitionKey = tuple[EntityKind, UUID]


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    retry=retry_if_exception_type(PermissionError),
    reraise=True,
)
def _replace(source: str, target: Path) -> None:
    """Atomically rename source over target (retried while the target is locked)."""
    os.replace(source, target)


class JsonCollectionStore(CollectionStoreInterface):
    """
    JSON file implementation of the collection store.

    Keeps a cache of parsed documents keyed by (kind, user_id) and an
    id index (kind -> id -> owning user) so lookups without a user_id
    don't need to scan the disk. Both are refreshed on every write.
    """

    def __init__(
        self,
        settings: Optional[StoreSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._settings = settings or get_settings().store
        self._root = Path(self._settings.data_dir)
        self._audit_logger = audit_logger
        self._logger = structlog.get_logger(__name__)

        self._cache: dict[PartitionKey, list[BaseModel]] = {}
        self._index: dict[EntityKind, dict[UUID, UUID]] = {kind: {} for kind in EntityKind}
        self._locks: dict[PartitionKey, asyncio.Lock] = {}
        self._reference_locks: dict[UUID, asyncio.Lock] = {}
        self._init_lock = asyncio.Lock()
        self._initialized = False

        # Partitions last seen unreadable; their ids are missing from _index
        self._corrupt: dict[PartitionKey, Path] = {}

    @property
    def root(self) -> Path:
        return self._root

    # -------------------------------------------------------------------------
    # Disk access (blocking; always called through asyncio.to_thread)
    # -------------------------------------------------------------------------

    def _document_path(self, kind: EntityKind, user_id: UUID) -> Path:
        return self._root / str(user_id) / f"{kind.value}.json"

    def _read_document(self, kind: EntityKind, user_id: UUID) -> list[BaseModel]:
        """Parse one collection document; a missing file is an empty collection."""
        path = self._document_path(kind, user_id)
        if not path.exists():
            return []

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptStoreError(kind, user_id, path, str(e))

        if not isinstance(raw, list):
            raise CorruptStoreError(kind, user_id, path, "document is not a JSON array")

        model = KIND_MODELS[kind]
        try:
            return [model.model_validate(item) for item in raw]
        except ValidationError as e:
            raise CorruptStoreError(kind, user_id, path, f"invalid entity: {e.error_count()} errors")

    def _write_document(self, kind: EntityKind, user_id: UUID, entities: list[BaseModel]) -> None:
        """Write a whole collection document atomically."""
        path = self._document_path(kind, user_id)
        path.parent.mkdir(parents=True, exist_ok=True)

        payload = json.dumps(
            [entity.model_dump(mode="json") for entity in entities],
            indent=self._settings.indent or None,
            ensure_ascii=False,
        )

        fd, tmp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{kind.value}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            _replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    def _list_user_dirs(self) -> list[UUID]:
        if not self._root.exists():
            return []

        user_ids = []
        for child in self._root.iterdir():
            if not child.is_dir():
                continue
            try:
                user_ids.append(UUID(child.name))
            except ValueError:
                continue  # Not a user partition
        return sorted(user_ids, key=str)

    # -------------------------------------------------------------------------
    # Cache / index bookkeeping
    # -------------------------------------------------------------------------

    def _lock_for(self, key: PartitionKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def reference_lock(self, user_id: UUID) -> asyncio.Lock:
        lock = self._reference_locks.get(user_id)
        if lock is None:
            lock = self._reference_locks[user_id] = asyncio.Lock()
        return lock

    def _report_corrupt(self, error: CorruptStoreError) -> None:
        if self._audit_logger:
            self._audit_logger.log_partition_corrupt(error.kind.value, error.user_id, str(error.path))

    def _commit(self, kind: EntityKind, user_id: UUID, entities: list[BaseModel]) -> None:
        """Refresh cache and index after a successful write."""
        key = (kind, user_id)
        self._corrupt.pop(key, None)
        index = self._index[kind]

        for entity_id in [eid for eid, owner in index.items() if owner == user_id]:
            del index[entity_id]
        for entity in entities:
            index[entity.id] = user_id

        self._cache[key] = entities

    async def _load(self, kind: EntityKind, user_id: UUID) -> list[BaseModel]:
        """Cached read of one partition (the cached list itself, not a copy)."""
        key = (kind, user_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            entities = await asyncio.to_thread(self._read_document, kind, user_id)
        except CorruptStoreError as e:
            self._corrupt[key] = e.path
            self._logger.warning(
                "collection_corrupt",
                kind=kind.value,
                user_id=str(user_id),
                path=str(e.path),
            )
            raise
        self._corrupt.pop(key, None)

        # A writer may have committed while the read was in flight
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        self._cache[key] = entities
        for entity in entities:
            self._index[kind][entity.id] = user_id
        return entities

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.init_db()

    def _resolve_owner(
        self,
        kind: EntityKind,
        entity_id: UUID,
        user_id: Optional[UUID],
    ) -> Optional[UUID]:
        if user_id is not None:
            return user_id
        if kind == EntityKind.USERS:
            return entity_id
        return self._index[kind].get(entity_id)

    def _scan_corrupt(
        self,
        kind: EntityKind,
        candidates: list[UUID],
        entity_ids: set[UUID],
    ) -> Optional[tuple[UUID, UUID]]:
        """
        Look for ids in the raw text of unreadable documents.

        A document that fails to parse still holds its ids as plain text.

        Returns:
            (owner, entity_id) of the first hit, or None
        """
        for user_id in candidates:
            path = self._document_path(kind, user_id)
            try:
                text = path.read_text(encoding="utf-8", errors="replace")
            except FileNotFoundError:
                continue
            for entity_id in entity_ids:
                if str(entity_id) in text:
                    return user_id, entity_id
        return None

    async def _find_in_corrupt(
        self,
        kind: EntityKind,
        entity_ids: Sequence[UUID],
        exclude: Optional[UUID] = None,
    ) -> Optional[tuple[UUID, UUID]]:
        candidates = [uid for k, uid in self._corrupt if k == kind and uid != exclude]
        if not candidates:
            return None
        return await asyncio.to_thread(self._scan_corrupt, kind, candidates, set(entity_ids))

    @staticmethod
    def _copy(entities: Sequence[BaseModel]) -> list[BaseModel]:
        return [entity.model_copy(deep=True) for entity in entities]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def init_db(self) -> None:
        """
        Create the data directory and load every partition.

        Corrupt partitions are reported and skipped; they fail again
        (and only them) when accessed.
        """
        async with self._init_lock:
            await asyncio.to_thread(self._root.mkdir, parents=True, exist_ok=True)

            self._cache.clear()
            self._corrupt.clear()
            for kind in EntityKind:
                self._index[kind].clear()

            corrupt = 0
            for user_id in await asyncio.to_thread(self._list_user_dirs):
                for kind in EntityKind:
                    try:
                        await self._load(kind, user_id)
                    except CorruptStoreError as e:
                        corrupt += 1
                        self._report_corrupt(e)

            self._initialized = True
            self._logger.info(
                "store_initialized",
                data_dir=str(self._root),
                users=len(self._index[EntityKind.USERS]),
                corrupt_partitions=corrupt,
            )

    async def close(self) -> None:
        self._cache.clear()
        for kind in EntityKind:
            self._index[kind].clear()
        self._locks.clear()
        self._reference_locks.clear()
        self._corrupt.clear()
        self._initialized = False

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def user_ids(self) -> list[UUID]:
        await self._ensure_initialized()
        return await asyncio.to_thread(self._list_user_dirs)

    async def get_all(self, kind: EntityKind) -> list[BaseModel]:
        entities: list[BaseModel] = []
        for user_id in await self.user_ids():
            try:
                entities.extend(await self.get_by_user_id(kind, user_id))
            except CorruptStoreError as e:
                self._report_corrupt(e)
        return entities

    async def get_by_user_id(self, kind: EntityKind, user_id: UUID) -> list[BaseModel]:
        await self._ensure_initialized()
        return self._copy(await self._load(kind, user_id))

    async def get_by_id(
        self,
        kind: EntityKind,
        entity_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[BaseModel]:
        await self._ensure_initialized()

        owner = self._resolve_owner(kind, entity_id, user_id)
        if owner is None:
            hit = await self._find_in_corrupt(kind, [entity_id])
            if hit is not None:
                raise CorruptStoreError(
                    kind,
                    hit[0],
                    self._document_path(kind, hit[0]),
                    f"{entity_id} is stored in an unreadable document",
                )
            return None

        for entity in await self._load(kind, owner):
            if entity.id == entity_id:
                return entity.model_copy(deep=True)
        return None

    async def user_exists(self, user_id: UUID) -> bool:
        return await self.get_by_id(EntityKind.USERS, user_id, user_id) is not None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert(
        self,
        kind: EntityKind,
        entity: BaseModel,
        user_id: Optional[UUID] = None,
    ) -> BaseModel:
        owner = user_id or entity.owner_id
        inserted = await self.insert_many(kind, [entity], owner)
        return inserted[0]

    async def insert_many(
        self,
        kind: EntityKind,
        entities: Sequence[BaseModel],
        user_id: UUID,
    ) -> list[BaseModel]:
        await self._ensure_initialized()
        if not entities:
            return []

        model = KIND_MODELS[kind]
        new_ids = set()
        for entity in entities:
            if not isinstance(entity, model):
                raise TypeError(f"{kind.value} expects {model.__name__}, got {type(entity).__name__}")
            if entity.owner_id != user_id:
                raise InvalidReferenceError(
                    f"{kind.value} entity {entity.id} is owned by {entity.owner_id}, not {user_id}"
                )
            if entity.id in new_ids:
                raise DuplicateIdError(f"Duplicate {kind.value} id in batch: {entity.id}")
            new_ids.add(entity.id)

        async with self._lock_for((kind, user_id)):
            current = await asyncio.to_thread(self._read_document, kind, user_id)

            existing_ids = {e.id for e in current}
            for entity_id in new_ids:
                owner = self._index[kind].get(entity_id)
                if entity_id in existing_ids or (owner is not None and owner != user_id):
                    raise DuplicateIdError(f"{kind.value} id already exists: {entity_id}")

            hit = await self._find_in_corrupt(kind, list(new_ids), exclude=user_id)
            if hit is not None:
                raise DuplicateIdError(
                    f"{kind.value} id already exists in an unreadable document: {hit[1]}"
                )

            updated = current + self._copy(entities)
            await asyncio.to_thread(self._write_document, kind, user_id, updated)
            self._commit(kind, user_id, updated)

        self._logger.debug(
            "collection_inserted",
            kind=kind.value,
            user_id=str(user_id),
            count=len(entities),
        )
        return self._copy(entities)

    async def update(
        self,
        kind: EntityKind,
        entity_id: UUID,
        fields: dict[str, Any],
        user_id: Optional[UUID] = None,
    ) -> BaseModel:
        await self._ensure_initialized()

        locked = IMMUTABLE_FIELDS.intersection(fields)
        if locked:
            raise ValueError(f"Cannot update immutable fields: {sorted(locked)}")
        unknown = set(fields).difference(KIND_MODELS[kind].model_fields)
        if unknown:
            raise ValueError(f"Unknown {kind.value} fields: {sorted(unknown)}")

        owner = self._resolve_owner(kind, entity_id, user_id)
        if owner is None:
            raise NotFoundError(f"{kind.value} not found: {entity_id}")

        async with self._lock_for((kind, owner)):
            current = await asyncio.to_thread(self._read_document, kind, owner)

            for position, entity in enumerate(current):
                if entity.id == entity_id:
                    break
            else:
                raise NotFoundError(f"{kind.value} not found: {entity_id}")

            merged = KIND_MODELS[kind].model_validate({
                **entity.model_dump(),
                **fields,
                "updated_at": utc_now(),
            })
            updated = list(current)
            updated[position] = merged

            await asyncio.to_thread(self._write_document, kind, owner, updated)
            self._commit(kind, owner, updated)

        return merged.model_copy(deep=True)

    async def remove(
        self,
        kind: EntityKind,
        entity_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> bool:
        await self._ensure_initialized()

        owner = self._resolve_owner(kind, entity_id, user_id)
        if owner is None:
            return False

        async with self._lock_for((kind, owner)):
            current = await asyncio.to_thread(self._read_document, kind, owner)
            remaining = [e for e in current if e.id != entity_id]
            if len(remaining) == len(current):
                return False

            await asyncio.to_thread(self._write_document, kind, owner, remaining)
            self._commit(kind, owner, remaining)
        return True

    async def remove_by_user_id(self, kind: EntityKind, user_id: UUID) -> int:
        await self._ensure_initialized()

        async with self._lock_for((kind, user_id)):
            current = await asyncio.to_thread(self._read_document, kind, user_id)
            if not current:
                return 0

            await asyncio.to_thread(self._write_document, kind, user_id, [])
            self._commit(kind, user_id, [])
        return len(current)

    async def drop_user(self, user_id: UUID) -> None:
        await self._ensure_initialized()

        # Fixed kind order so concurrent callers can't deadlock
        locks = [self._lock_for((kind, user_id)) for kind in EntityKind]
        for lock in locks:
            await lock.acquire()
        try:
            user_dir = self._root / str(user_id)
            await asyncio.to_thread(shutil.rmtree, user_dir, True)
            for kind in EntityKind:
                self._cache.pop((kind, user_id), None)
                self._corrupt.pop((kind, user_id), None)
                index = self._index[kind]
                for entity_id in [eid for eid, owner in index.items() if owner == user_id]:
                    del index[entity_id]
        finally:
            for lock in reversed(locks):
                lock.release()

        self._logger.info("user_partition_dropped", user_id=str(user_id))
