"""
Main Orchestrator for budgetkeeper

This module ties the store, engine and scheduler together and defines
the in-process API the route layer calls:
1. Reference-checked CRUD for users, categories, transactions and rules
2. On-demand processing of a single recurring rule

DESIGN DECISION: The ledger service enforces the cross-entity invariants:
- Every category reference resolves to a category of the same user
- A transaction/rule type matches its category's type (configurable)
- A category cannot be deleted while anything references it
- Deleting a user removes everything the user owns

Components are built once by create_app_components() and passed by
reference; nothing here is a module-level singleton.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union
from uuid import UUID

from budgetkeeper.audit import AuditLogger
from budgetkeeper.config import AppSettings, Settings, get_settings
from budgetkeeper.engine import RecurringEngine
from budgetkeeper.models.entities import (
    DEFAULT_CATEGORIES,
    Category,
    EntityKind,
    Frequency,
    RecurringRule,
    Transaction,
    TransactionType,
    User,
)
from budgetkeeper.scheduler import RecurringScheduler
from budgetkeeper.services.storage import (
    CategoryInUseError,
    CategoryTypeMismatchError,
    CollectionStoreInterface,
    InvalidReferenceError,
    JsonCollectionStore,
    NotFoundError,
)


TRANSACTION_UPDATABLE = frozenset({"amount", "type", "category_id", "date", "notes"})
RULE_UPDATABLE = frozenset({
    "name", "amount", "type", "category_id", "frequency",
    "next_due_date", "notes", "is_active",
})


class LedgerService:
    """
    Reference-checked operations over the collection store.

    Raises NotFoundError for unknown users/entities and
    InvalidReferenceError for references that don't resolve
    to an entity of the same user.
    """

    def __init__(
        self,
        store: CollectionStoreInterface,
        engine: Optional[RecurringEngine] = None,
        settings: Optional[AppSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._engine = engine
        self._settings = settings or get_settings().app
        self._audit_logger = audit_logger or AuditLogger()

    def _today(self) -> date:
        return self._engine.today() if self._engine else date.today()

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    async def _require_user(self, user_id: UUID) -> None:
        if not await self._store.user_exists(user_id):
            raise NotFoundError(f"User not found: {user_id}")

    async def _resolve_category(
        self,
        user_id: UUID,
        category_id: UUID,
        entry_type: Union[TransactionType, str],
    ) -> Category:
        category = await self._store.get_by_id(EntityKind.CATEGORIES, category_id, user_id)
        if category is None or category.user_id != user_id:
            raise InvalidReferenceError(f"Invalid category: {category_id}")

        if self._settings.enforce_category_type and category.type != TransactionType(entry_type):
            raise CategoryTypeMismatchError(
                f"Category '{category.name}' is {category.type.value}, "
                f"entry is {TransactionType(entry_type).value}"
            )
        return category

    def _check_amount(self, amount: Union[Decimal, int, float, str]) -> Decimal:
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            raise ValueError(f"Amount is not a number: {amount!r}")
        if not value.is_finite() or value <= 0:
            raise ValueError("Amount must be a positive number")
        if value > self._settings.max_amount:
            raise ValueError("Amount is too large")
        return value

    @staticmethod
    def _check_fields(changes: dict[str, Any], allowed: frozenset) -> None:
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        if not changes:
            raise ValueError("At least one field must be provided")

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def create_user(self, name: str) -> User:
        """Create a user and seed their default categories."""
        user = User(name=name)
        await self._store.insert(EntityKind.USERS, user)

        categories = [
            Category(user_id=user.id, name=cat_name, type=cat_type, icon=icon)
            for cat_name, cat_type, icon in DEFAULT_CATEGORIES
        ]
        await self._store.insert_many(EntityKind.CATEGORIES, categories, user.id)

        self._audit_logger.log_user_created(user.id, len(categories))
        return user

    async def get_user(self, user_id: UUID) -> User:
        user = await self._store.get_by_id(EntityKind.USERS, user_id, user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    async def list_users(self) -> list[User]:
        users = await self._store.get_all(EntityKind.USERS)
        return sorted(users, key=lambda u: u.created_at)

    async def rename_user(self, user_id: UUID, name: str) -> User:
        async with self._store.reference_lock(user_id):
            await self._require_user(user_id)
            return await self._store.update(EntityKind.USERS, user_id, {"name": name}, user_id)

    async def delete_user(self, user_id: UUID) -> dict[str, int]:
        """
        Delete a user and everything they own.

        Returns:
            Number of removed entities per collection
        """
        async with self._store.reference_lock(user_id):
            await self._require_user(user_id)

            removed = {}
            for kind in (EntityKind.TRANSACTIONS, EntityKind.RECURRING, EntityKind.CATEGORIES):
                removed[kind.value] = await self._store.remove_by_user_id(kind, user_id)
            await self._store.drop_user(user_id)

        self._audit_logger.log_user_deleted(user_id, removed)
        return removed

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    async def create_category(
        self,
        user_id: UUID,
        name: str,
        type: Union[TransactionType, str],
        icon: Optional[str] = None,
    ) -> Category:
        category = Category(user_id=user_id, name=name, type=type, icon=icon or "")
        async with self._store.reference_lock(user_id):
            await self._require_user(user_id)
            return await self._store.insert(EntityKind.CATEGORIES, category, user_id)

    async def list_categories(
        self,
        user_id: UUID,
        type: Optional[Union[TransactionType, str]] = None,
    ) -> list[Category]:
        await self._require_user(user_id)
        categories = await self._store.get_by_user_id(EntityKind.CATEGORIES, user_id)
        if type is not None:
            categories = [c for c in categories if c.type == TransactionType(type)]
        return categories

    async def _category_usage(self, user_id: UUID, category_id: UUID) -> tuple[list, list]:
        transactions = [
            t for t in await self._store.get_by_user_id(EntityKind.TRANSACTIONS, user_id)
            if t.category_id == category_id
        ]
        rules = [
            r for r in await self._store.get_by_user_id(EntityKind.RECURRING, user_id)
            if r.category_id == category_id
        ]
        return transactions, rules

    async def update_category(self, user_id: UUID, category_id: UUID, **changes: Any) -> Category:
        """
        Rename, re-icon or re-type a category.

        Changing the type is rejected while entries of the old type use it.
        """
        self._check_fields(changes, frozenset({"name", "type", "icon"}))

        async with self._store.reference_lock(user_id):
            await self._require_user(user_id)

            category = await self._store.get_by_id(EntityKind.CATEGORIES, category_id, user_id)
            if category is None or category.user_id != user_id:
                raise NotFoundError(f"Category not found: {category_id}")

            new_type = changes.get("type")
            if (
                new_type is not None
                and TransactionType(new_type) != category.type
                and self._settings.enforce_category_type
            ):
                transactions, rules = await self._category_usage(user_id, category_id)
                if transactions or rules:
                    raise CategoryTypeMismatchError(
                        f"Category '{category.name}' is used by {category.type.value} entries"
                    )

            return await self._store.update(EntityKind.CATEGORIES, category_id, changes, user_id)

    async def delete_category(self, user_id: UUID, category_id: UUID) -> None:
        """
        Delete an unreferenced category.

        The usage check and the removal happen under the user's reference
        lock, so no transaction or rule can start using the category between
        the two.

        Raises:
            CategoryInUseError: If any transaction or recurring rule uses it
        """
        async with self._store.reference_lock(user_id):
            await self._require_user(user_id)

            category = await self._store.get_by_id(EntityKind.CATEGORIES, category_id, user_id)
            if category is None or category.user_id != user_id:
                raise NotFoundError(f"Category not found: {category_id}")

            transactions, rules = await self._category_usage(user_id, category_id)
            if transactions or rules:
                self._audit_logger.log_category_delete_rejected(
                    category_id=category_id,
                    user_id=user_id,
                    transactions=len(transactions),
                    rules=len(rules),
                )
                raise CategoryInUseError(
                    "This category is used by existing transactions or recurring items. "
                    "Please reassign them first."
                )

            await self._store.remove(EntityKind.CATEGORIES, category_id, user_id)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def create_transaction(
        self,
        user_id: UUID,
        category_id: UUID,
        amount: Union[Decimal, int, float, str],
        type: Union[TransactionType, str],
        on: Optional[date] = None,
        notes: str = "",
    ) -> Transaction:
        """Record a manual transaction (never linked to a rule)."""
        transaction = Transaction(
            user_id=user_id,
            category_id=category_id,
            amount=self._check_amount(amount),
            type=type,
            date=on or self._today(),
            notes=notes,
        )

        async with self._store.reference_lock(user_id):
            await self._require_user(user_id)
            await self._resolve_category(user_id, category_id, type)
            return await self._store.insert(EntityKind.TRANSACTIONS, transaction, user_id)

    async def get_transaction(self, user_id: UUID, transaction_id: UUID) -> Transaction:
        transaction = await self._store.get_by_id(EntityKind.TRANSACTIONS, transaction_id, user_id)
        if transaction is None or transaction.user_id != user_id:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return transaction

    async def list_transactions(
        self,
        user_id: UUID,
        start: Optional[date] = None,
        end: Optional[date] = None,
        type: Optional[Union[TransactionType, str]] = None,
        category_id: Optional[UUID] = None,
    ) -> list[Transaction]:
        """Transactions matching every given filter, newest first."""
        await self._require_user(user_id)
        transactions = await self._store.get_by_user_id(EntityKind.TRANSACTIONS, user_id)

        if start is not None:
            transactions = [t for t in transactions if t.date >= start]
        if end is not None:
            transactions = [t for t in transactions if t.date <= end]
        if type is not None:
            transactions = [t for t in transactions if t.type == TransactionType(type)]
        if category_id is not None:
            transactions = [t for t in transactions if t.category_id == category_id]

        return sorted(transactions, key=lambda t: t.date, reverse=True)

    async def update_transaction(
        self,
        user_id: UUID,
        transaction_id: UUID,
        **changes: Any,
    ) -> Transaction:
        self._check_fields(changes, TRANSACTION_UPDATABLE)
        if "amount" in changes:
            changes["amount"] = self._check_amount(changes["amount"])

        async with self._store.reference_lock(user_id):
            current = await self.get_transaction(user_id, transaction_id)
            if "category_id" in changes or "type" in changes:
                await self._resolve_category(
                    user_id,
                    changes.get("category_id", current.category_id),
                    changes.get("type", current.type),
                )

            return await self._store.update(EntityKind.TRANSACTIONS, transaction_id, changes, user_id)

    async def delete_transaction(self, user_id: UUID, transaction_id: UUID) -> None:
        async with self._store.reference_lock(user_id):
            await self.get_transaction(user_id, transaction_id)
            await self._store.remove(EntityKind.TRANSACTIONS, transaction_id, user_id)

    # -------------------------------------------------------------------------
    # Recurring rules
    # -------------------------------------------------------------------------

    async def create_recurring_rule(
        self,
        user_id: UUID,
        name: str,
        category_id: UUID,
        amount: Union[Decimal, int, float, str],
        type: Union[TransactionType, str],
        frequency: Union[Frequency, str],
        start_date: Optional[date] = None,
        notes: str = "",
    ) -> RecurringRule:
        """Create an active rule whose first due date is its start date."""
        start = start_date or self._today()
        rule = RecurringRule(
            user_id=user_id,
            name=name,
            category_id=category_id,
            amount=self._check_amount(amount),
            type=type,
            frequency=frequency,
            start_date=start,
            next_due_date=start,
            notes=notes,
        )

        async with self._store.reference_lock(user_id):
            await self._require_user(user_id)
            await self._resolve_category(user_id, category_id, type)
            return await self._store.insert(EntityKind.RECURRING, rule, user_id)

    async def get_recurring_rule(self, user_id: UUID, rule_id: UUID) -> RecurringRule:
        rule = await self._store.get_by_id(EntityKind.RECURRING, rule_id, user_id)
        if rule is None or rule.user_id != user_id:
            raise NotFoundError(f"Recurring rule not found: {rule_id}")
        return rule

    async def list_recurring_rules(
        self,
        user_id: UUID,
        type: Optional[Union[TransactionType, str]] = None,
        is_active: Optional[bool] = None,
    ) -> list[RecurringRule]:
        """Rules matching the filters, soonest due first."""
        await self._require_user(user_id)
        rules = await self._store.get_by_user_id(EntityKind.RECURRING, user_id)

        if type is not None:
            rules = [r for r in rules if r.type == TransactionType(type)]
        if is_active is not None:
            rules = [r for r in rules if r.is_active == is_active]

        return sorted(rules, key=lambda r: r.next_due_date)

    async def update_recurring_rule(
        self,
        user_id: UUID,
        rule_id: UUID,
        **changes: Any,
    ) -> RecurringRule:
        """
        Edit a rule.

        next_due_date is accepted as an explicit user override; it is the
        only way next_due_date moves other than the engine. The edit holds
        the user's reference lock, which the engine also takes while it
        processes a rule, so an override is never overwritten by a run
        that started from an older copy.
        """
        self._check_fields(changes, RULE_UPDATABLE)
        if "amount" in changes:
            changes["amount"] = self._check_amount(changes["amount"])

        async with self._store.reference_lock(user_id):
            current = await self.get_recurring_rule(user_id, rule_id)
            if "category_id" in changes or "type" in changes:
                await self._resolve_category(
                    user_id,
                    changes.get("category_id", current.category_id),
                    changes.get("type", current.type),
                )

            return await self._store.update(EntityKind.RECURRING, rule_id, changes, user_id)

    async def delete_recurring_rule(self, user_id: UUID, rule_id: UUID) -> None:
        """Delete a rule; transactions it already generated are kept."""
        async with self._store.reference_lock(user_id):
            await self.get_recurring_rule(user_id, rule_id)
            await self._store.remove(EntityKind.RECURRING, rule_id, user_id)

    async def process_rule_now(
        self,
        user_id: UUID,
        rule_id: UUID,
        wait: bool = True,
    ) -> list[Transaction]:
        """Manual "process now" for one rule, through the engine's run guard."""
        if self._engine is None:
            raise RuntimeError("LedgerService was built without a recurring engine")
        await self._require_user(user_id)
        return await self._engine.process_rule_now(rule_id, user_id, wait=wait)


def create_app_components(
    settings: Optional[Settings] = None,
) -> tuple[JsonCollectionStore, RecurringEngine, RecurringScheduler, LedgerService]:
    """
    Factory function to create all application components.

    The caller owns the lifecycle: await store.init_db() before use,
    scheduler.start() to begin processing, and scheduler.shutdown()
    plus store.close() at teardown.

    Returns:
        (store, engine, scheduler, ledger)
    """
    settings = settings or get_settings()
    audit_logger = AuditLogger()

    store = JsonCollectionStore(settings.store, audit_logger=audit_logger)
    engine = RecurringEngine(store, audit_logger=audit_logger)
    scheduler = RecurringScheduler(engine, settings.scheduler, audit_logger=audit_logger)
    ledger = LedgerService(store, engine, settings.app, audit_logger=audit_logger)

    return store, engine, scheduler, ledger
