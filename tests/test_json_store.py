"""
Tests for the JSON collection store.

Everything runs against a real temporary data directory.
"""

import asyncio
import json
import os

import pytest
from decimal import Decimal
from datetime import date
from uuid import uuid4

from budgetkeeper.models.entities import Category, EntityKind, Transaction, User
from budgetkeeper.models.audit import AuditEventType
from budgetkeeper.services.storage import (
    CorruptStoreError,
    DuplicateIdError,
    InvalidReferenceError,
    JsonCollectionStore,
    NotFoundError,
)
from budgetkeeper.services.storage import json_files

from conftest import event_types


def make_transaction(user_id, category_id, amount="10.00", on=date(2024, 1, 1)):
    return Transaction(
        user_id=user_id,
        category_id=category_id,
        amount=Decimal(amount),
        type="expense",
        date=on,
    )


async def seed_user(store, name="Alice"):
    user = await store.insert(EntityKind.USERS, User(name=name))
    category = await store.insert(
        EntityKind.CATEGORIES,
        Category(user_id=user.id, name="Food", type="expense"),
    )
    return user, category


class TestLifecycle:
    """Tests for init_db/close."""

    def test_init_creates_data_dir(self, store, store_settings):
        """Test init_db creates the root directory."""
        asyncio.run(store.init_db())
        assert store_settings.data_dir.is_dir()

    def test_init_is_idempotent(self, store):
        """Test init_db can be called repeatedly without losing data."""
        async def scenario():
            await store.init_db()
            user, _ = await seed_user(store)
            await store.init_db()
            await store.init_db()
            return user, await store.get_all(EntityKind.USERS)

        user, users = asyncio.run(scenario())
        assert [u.id for u in users] == [user.id]

    def test_data_survives_a_new_store(self, store, store_settings):
        """Test a second store instance reads what the first wrote."""
        async def scenario():
            user, category = await seed_user(store)
            await store.insert(EntityKind.TRANSACTIONS, make_transaction(user.id, category.id, "12.50"))
            await store.close()

            fresh = JsonCollectionStore(store_settings)
            await fresh.init_db()
            return user, await fresh.get_by_user_id(EntityKind.TRANSACTIONS, user.id)

        user, transactions = asyncio.run(scenario())
        assert len(transactions) == 1
        assert transactions[0].amount == Decimal("12.50")

        raw = json.loads((store_settings.data_dir / str(user.id) / "transactions.json").read_text())
        assert raw[0]["amount"] == "12.50"
        assert raw[0]["user_id"] == str(user.id)


class TestReads:
    """Tests for lookups."""

    def test_get_by_id_without_user_hint(self, store):
        """Test the id index finds an entity without its owner."""
        async def scenario():
            user, category = await seed_user(store)
            return category, await store.get_by_id(EntityKind.CATEGORIES, category.id)

        category, found = asyncio.run(scenario())
        assert found == category

    def test_get_by_id_missing(self, store):
        """Test an unknown id returns None."""
        assert asyncio.run(store.get_by_id(EntityKind.CATEGORIES, uuid4())) is None

    def test_get_by_id_with_other_owner(self, store):
        """Test a user hint that doesn't own the entity finds nothing."""
        async def scenario():
            _, category = await seed_user(store, "Alice")
            bob, _ = await seed_user(store, "Bob")
            return await store.get_by_id(EntityKind.CATEGORIES, category.id, bob.id)

        assert asyncio.run(scenario()) is None

    def test_reads_return_copies(self, store):
        """Test mutating a returned entity doesn't change the store."""
        async def scenario():
            _, category = await seed_user(store)
            fetched = await store.get_by_id(EntityKind.CATEGORIES, category.id)
            fetched.name = "Changed"
            return await store.get_by_id(EntityKind.CATEGORIES, category.id)

        assert asyncio.run(scenario()).name == "Food"

    def test_insertion_order_and_get_all(self, store):
        """Test per-user order is insertion order and get_all spans users."""
        async def scenario():
            alice, cat_a = await seed_user(store, "Alice")
            bob, cat_b = await seed_user(store, "Bob")
            first = await store.insert(EntityKind.TRANSACTIONS, make_transaction(alice.id, cat_a.id, "1"))
            second = await store.insert(EntityKind.TRANSACTIONS, make_transaction(alice.id, cat_a.id, "2"))
            await store.insert(EntityKind.TRANSACTIONS, make_transaction(bob.id, cat_b.id, "3"))
            own = await store.get_by_user_id(EntityKind.TRANSACTIONS, alice.id)
            every = await store.get_all(EntityKind.TRANSACTIONS)
            return [first.id, second.id], [t.id for t in own], every

        expected, own, every = asyncio.run(scenario())
        assert own == expected
        assert len(every) == 3

    def test_unknown_user_has_empty_collections(self, store):
        """Test a missing partition reads as empty."""
        async def scenario():
            return (
                await store.get_by_user_id(EntityKind.TRANSACTIONS, uuid4()),
                await store.user_exists(uuid4()),
            )

        transactions, exists = asyncio.run(scenario())
        assert transactions == []
        assert exists is False


class TestWrites:
    """Tests for insert/update/remove."""

    def test_duplicate_id_rejected(self, store):
        """Test inserting an existing id fails."""
        async def scenario():
            user, category = await seed_user(store)
            await store.insert(EntityKind.CATEGORIES, category)

        with pytest.raises(DuplicateIdError):
            asyncio.run(scenario())

    def test_duplicate_id_across_users_rejected(self, store):
        """Test ids are unique per kind across every user."""
        async def scenario():
            alice, category = await seed_user(store, "Alice")
            bob, _ = await seed_user(store, "Bob")
            stolen = category.model_copy(update={"user_id": bob.id})
            await store.insert(EntityKind.CATEGORIES, stolen)

        with pytest.raises(DuplicateIdError):
            asyncio.run(scenario())

    def test_insert_many_is_all_or_nothing(self, store):
        """Test a batch with a duplicate writes nothing."""
        async def scenario():
            user, category = await seed_user(store)
            batch = [make_transaction(user.id, category.id) for _ in range(2)]
            batch.append(batch[0])
            try:
                await store.insert_many(EntityKind.TRANSACTIONS, batch, user.id)
            except DuplicateIdError:
                pass
            return await store.get_by_user_id(EntityKind.TRANSACTIONS, user.id)

        assert asyncio.run(scenario()) == []

    def test_insert_for_wrong_owner(self, store):
        """Test an entity can't be filed under another user."""
        async def scenario():
            user, category = await seed_user(store)
            await store.insert(EntityKind.TRANSACTIONS, make_transaction(user.id, category.id), uuid4())

        with pytest.raises(InvalidReferenceError):
            asyncio.run(scenario())

    def test_insert_wrong_model(self, store):
        """Test an entity of the wrong class is refused."""
        user = User(name="Alice")
        with pytest.raises(TypeError):
            asyncio.run(store.insert(EntityKind.CATEGORIES, user, user.id))

    def test_update_merges_fields(self, store):
        """Test update changes only the given fields and bumps updated_at."""
        async def scenario():
            _, category = await seed_user(store)
            updated = await store.update(EntityKind.CATEGORIES, category.id, {"name": "Groceries"})
            return category, updated, await store.get_by_id(EntityKind.CATEGORIES, category.id)

        original, updated, stored = asyncio.run(scenario())
        assert updated.name == "Groceries"
        assert updated.type == original.type
        assert updated.created_at == original.created_at
        assert updated.updated_at >= original.updated_at
        assert stored == updated

    def test_update_rejects_immutable_fields(self, store):
        """Test id, user_id and created_at cannot change."""
        async def scenario():
            _, category = await seed_user(store)
            await store.update(EntityKind.CATEGORIES, category.id, {"user_id": uuid4()})

        with pytest.raises(ValueError, match="immutable"):
            asyncio.run(scenario())

    def test_update_rejects_unknown_fields(self, store):
        """Test a typo'd field name is an error rather than ignored."""
        async def scenario():
            _, category = await seed_user(store)
            await store.update(EntityKind.CATEGORIES, category.id, {"nmae": "x"})

        with pytest.raises(ValueError, match="Unknown"):
            asyncio.run(scenario())

    def test_update_missing(self, store):
        """Test updating an unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            asyncio.run(store.update(EntityKind.CATEGORIES, uuid4(), {"name": "x"}))

    def test_update_revalidates(self, store):
        """Test an invalid merged entity is rejected and nothing is written."""
        async def scenario():
            _, category = await seed_user(store)
            with pytest.raises(ValueError):
                await store.update(EntityKind.CATEGORIES, category.id, {"type": "transfer"})
            return await store.get_by_id(EntityKind.CATEGORIES, category.id)

        assert asyncio.run(scenario()).type.value == "expense"

    def test_remove(self, store):
        """Test remove reports whether something was deleted."""
        async def scenario():
            _, category = await seed_user(store)
            first = await store.remove(EntityKind.CATEGORIES, category.id)
            second = await store.remove(EntityKind.CATEGORIES, category.id)
            return first, second, await store.get_by_id(EntityKind.CATEGORIES, category.id)

        first, second, found = asyncio.run(scenario())
        assert first is True
        assert second is False
        assert found is None

    def test_remove_by_user_id(self, store):
        """Test removing a whole collection returns the count."""
        async def scenario():
            user, category = await seed_user(store)
            await store.insert_many(
                EntityKind.TRANSACTIONS,
                [make_transaction(user.id, category.id) for _ in range(3)],
                user.id,
            )
            removed = await store.remove_by_user_id(EntityKind.TRANSACTIONS, user.id)
            return removed, await store.get_by_user_id(EntityKind.TRANSACTIONS, user.id)

        removed, remaining = asyncio.run(scenario())
        assert removed == 3
        assert remaining == []

    def test_drop_user(self, store, store_settings):
        """Test dropping a user removes the directory and the index entries."""
        async def scenario():
            user, category = await seed_user(store)
            await store.drop_user(user.id)
            return (
                user,
                await store.get_by_id(EntityKind.CATEGORIES, category.id),
                await store.user_ids(),
            )

        user, category, user_ids = asyncio.run(scenario())
        assert category is None
        assert user.id not in user_ids
        assert not (store_settings.data_dir / str(user.id)).exists()


class TestDurability:
    """Tests for atomic writes, concurrency and corruption isolation."""

    def test_no_temp_files_left_behind(self, store, store_settings):
        """Test every write renames its temporary file away."""
        async def scenario():
            user, category = await seed_user(store)
            for _ in range(3):
                await store.insert(EntityKind.TRANSACTIONS, make_transaction(user.id, category.id))
            return user

        user = asyncio.run(scenario())
        leftovers = list((store_settings.data_dir / str(user.id)).glob("*.tmp"))
        assert leftovers == []

    def test_concurrent_inserts_are_serialized(self, store, store_settings):
        """Test concurrent writers to one partition don't lose updates."""
        async def scenario():
            user, category = await seed_user(store)
            await asyncio.gather(*[
                store.insert(EntityKind.TRANSACTIONS, make_transaction(user.id, category.id))
                for _ in range(20)
            ])
            return user

        user = asyncio.run(scenario())
        raw = json.loads((store_settings.data_dir / str(user.id) / "transactions.json").read_text())
        assert len(raw) == 20

    def test_rename_retried_while_target_locked(self, store, monkeypatch):
        """Test a transient PermissionError on rename is retried."""
        real_replace = os.replace
        attempts = []

        def flaky_replace(source, target):
            attempts.append(target)
            if len(attempts) < 3:
                raise PermissionError("target busy")
            real_replace(source, target)

        monkeypatch.setattr(json_files.os, "replace", flaky_replace)
        user = asyncio.run(store.insert(EntityKind.USERS, User(name="Alice")))

        assert len(attempts) == 3
        assert asyncio.run(store.user_exists(user.id)) is True

    def test_persistent_rename_failure_propagates(self, store, store_settings, monkeypatch):
        """Test the error surfaces after the retries and the temp file is cleaned up."""
        def failing_replace(source, target):
            raise PermissionError("target busy")

        monkeypatch.setattr(json_files.os, "replace", failing_replace)
        user = User(name="Alice")
        with pytest.raises(PermissionError):
            asyncio.run(store.insert(EntityKind.USERS, user))

        user_dir = store_settings.data_dir / str(user.id)
        assert list(user_dir.glob("*.tmp")) == []
        assert not (user_dir / "users.json").exists()

    def test_corrupt_partition_is_isolated(self, store, store_settings, audit_logger):
        """Test one unreadable document doesn't affect other partitions."""
        async def seed():
            alice, cat_a = await seed_user(store, "Alice")
            bob, cat_b = await seed_user(store, "Bob")
            await store.insert(EntityKind.TRANSACTIONS, make_transaction(alice.id, cat_a.id))
            await store.insert(EntityKind.TRANSACTIONS, make_transaction(bob.id, cat_b.id))
            return alice, bob

        alice, bob = asyncio.run(seed())
        path = store_settings.data_dir / str(alice.id) / "transactions.json"
        path.write_text("{not json", encoding="utf-8")

        fresh = JsonCollectionStore(store_settings, audit_logger=audit_logger)

        async def inspect():
            await fresh.init_db()
            bob_transactions = await fresh.get_by_user_id(EntityKind.TRANSACTIONS, bob.id)
            alice_categories = await fresh.get_by_user_id(EntityKind.CATEGORIES, alice.id)
            with pytest.raises(CorruptStoreError) as excinfo:
                await fresh.get_by_user_id(EntityKind.TRANSACTIONS, alice.id)
            return bob_transactions, alice_categories, excinfo.value

        bob_transactions, alice_categories, error = asyncio.run(inspect())
        assert len(bob_transactions) == 1
        assert len(alice_categories) == 1
        assert error.kind == EntityKind.TRANSACTIONS
        assert error.user_id == alice.id
        assert AuditEventType.STORE_PARTITION_CORRUPT in event_types(audit_logger)

    def test_write_to_corrupt_partition_is_refused(self, store, store_settings):
        """Test a corrupt document is never silently overwritten."""
        async def seed():
            return await seed_user(store)

        user, category = asyncio.run(seed())
        path = store_settings.data_dir / str(user.id) / "transactions.json"
        path.write_text('{"not": "a list"}', encoding="utf-8")

        with pytest.raises(CorruptStoreError):
            asyncio.run(store.insert(EntityKind.TRANSACTIONS, make_transaction(user.id, category.id)))
        assert path.read_text(encoding="utf-8") == '{"not": "a list"}'

    def test_lookup_without_hint_reports_unreadable_owner(self, store, store_settings, audit_logger):
        """Test an id held only by an unreadable document is not reported missing."""
        async def seed():
            return await seed_user(store)

        user, category = asyncio.run(seed())
        path = store_settings.data_dir / str(user.id) / "categories.json"
        path.write_text(path.read_text(encoding="utf-8")[:-3], encoding="utf-8")

        fresh = JsonCollectionStore(store_settings, audit_logger=audit_logger)

        async def inspect():
            await fresh.init_db()
            unknown = await fresh.get_by_id(EntityKind.CATEGORIES, uuid4())
            with pytest.raises(CorruptStoreError) as excinfo:
                await fresh.get_by_id(EntityKind.CATEGORIES, category.id)
            return unknown, excinfo.value

        unknown, error = asyncio.run(inspect())
        assert unknown is None
        assert error.kind == EntityKind.CATEGORIES
        assert error.user_id == user.id

    def test_id_in_unreadable_document_is_not_reused(self, store, store_settings, audit_logger):
        """Test an insert can't take an id that lives in another user's unreadable document."""
        async def seed():
            alice, category = await seed_user(store, "Alice")
            bob = await store.insert(EntityKind.USERS, User(name="Bob"))
            return alice, category, bob

        alice, category, bob = asyncio.run(seed())
        path = store_settings.data_dir / str(alice.id) / "categories.json"
        path.write_text(path.read_text(encoding="utf-8")[:-3], encoding="utf-8")

        fresh = JsonCollectionStore(store_settings, audit_logger=audit_logger)
        clash = Category(id=category.id, user_id=bob.id, name="Food", type="expense")

        async def scenario():
            await fresh.init_db()
            with pytest.raises(DuplicateIdError):
                await fresh.insert(EntityKind.CATEGORIES, clash)
            other = await fresh.insert(
                EntityKind.CATEGORIES,
                Category(user_id=bob.id, name="Rent", type="expense"),
            )
            return other, await fresh.get_by_user_id(EntityKind.CATEGORIES, bob.id)

        other, bobs = asyncio.run(scenario())
        assert [c.id for c in bobs] == [other.id]

    def test_get_all_skips_unreadable_partitions(self, store, store_settings, audit_logger):
        """Test a global scan returns every readable partition and reports the rest."""
        async def seed():
            alice = await store.insert(EntityKind.USERS, User(name="Alice"))
            bob = await store.insert(EntityKind.USERS, User(name="Bob"))
            return alice, bob

        alice, bob = asyncio.run(seed())
        path = store_settings.data_dir / str(alice.id) / "users.json"
        path.write_text("[{", encoding="utf-8")

        fresh = JsonCollectionStore(store_settings, audit_logger=audit_logger)

        async def scan():
            await fresh.init_db()
            return await fresh.get_all(EntityKind.USERS)

        users = asyncio.run(scan())
        assert [u.id for u in users] == [bob.id]
        corrupt_events = [
            t for t in event_types(audit_logger)
            if t == AuditEventType.STORE_PARTITION_CORRUPT
        ]
        assert len(corrupt_events) >= 2
