"""
Recurring Transaction Engine

Given "now" and the stored recurring rules, decides which rules are due,
materializes one transaction per missed period, and moves each rule's
next_due_date past "now".

GUARANTEES:
- A rule dormant for N periods yields exactly N transactions in one run,
  each dated at its own historical due date
- next_due_date only moves forward
- Running twice with the same "now" generates nothing the second time
- One failing rule never stops the rest of the batch

Both entry points (the scheduled batch and the on-demand single rule)
share one run guard, so at most one engine run is active at a time.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import date
from typing import Callable, Optional
from uuid import UUID

from budgetkeeper.audit import AuditLogger, create_correlation_id
from budgetkeeper.engine.errors import EngineBusyError, EngineRuleError
from budgetkeeper.engine.schedule import advance_due_date, anchor_day, due_dates_between, is_month_based
from budgetkeeper.models.entities import (
    EntityKind,
    RecurringRule,
    Transaction,
    utc_now,
)
from budgetkeeper.models.processing import ProcessingSummary, RuleFailure
from budgetkeeper.services.storage import (
    CollectionStoreInterface,
    CorruptStoreError,
    NotFoundError,
    StorageError,
)


class RecurringEngine:
    """
    Materializes transactions from recurring rules.

    The engine holds no rule state of its own; everything is read from
    and written back to the collection store.
    """

    def __init__(
        self,
        store: CollectionStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], date]] = None,
    ):
        """
        Args:
            store: Collection store holding rules and transactions
            audit_logger: Where run and rule events go
            clock: Returns today's date; injectable for tests
        """
        self._store = store
        self._audit_logger = audit_logger or AuditLogger()
        self._clock = clock or date.today
        self._run_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        """True while a batch or manual run holds the run guard."""
        return self._run_lock.locked()

    def today(self) -> date:
        return self._clock()

    @asynccontextmanager
    async def _guard(self, wait: bool):
        if not wait and self._run_lock.locked():
            raise EngineBusyError("A recurring engine run is already in progress")
        async with self._run_lock:
            yield

    # -------------------------------------------------------------------------
    # Single rule
    # -------------------------------------------------------------------------

    @staticmethod
    def _materialize(rule: RecurringRule, on: date, manual: bool = False) -> Transaction:
        if manual:
            notes = f"{rule.notes} (Manual)" if rule.notes else "Manual recurring transaction"
        else:
            notes = f"{rule.notes} (Recurring)" if rule.notes else "Recurring transaction"

        now = utc_now()
        return Transaction(
            user_id=rule.user_id,
            category_id=rule.category_id,
            amount=rule.amount,
            type=rule.type,
            date=on,
            notes=notes[:500],
            is_recurring=True,
            recurring_id=rule.id,
            created_at=now,
            updated_at=now,
        )

    async def _check_category(self, rule: RecurringRule) -> None:
        category = await self._store.get_by_id(EntityKind.CATEGORIES, rule.category_id, rule.user_id)
        if category is None or category.user_id != rule.user_id:
            raise EngineRuleError(
                f"Category {rule.category_id} of rule {rule.id} no longer exists",
                rule_id=rule.id,
                user_id=rule.user_id,
            )

    async def _persist(
        self,
        rule: RecurringRule,
        generated: list[Transaction],
        next_due: date,
    ) -> None:
        """Write generated transactions, then advance the rule."""
        try:
            await self._store.insert_many(EntityKind.TRANSACTIONS, generated, rule.user_id)
            await self._store.update(
                EntityKind.RECURRING,
                rule.id,
                {"next_due_date": next_due},
                rule.user_id,
            )
        except StorageError as e:
            raise EngineRuleError(
                f"Could not persist rule {rule.id}: {e}",
                rule_id=rule.id,
                user_id=rule.user_id,
            ) from e
        rule.next_due_date = next_due

    def _anchor(self, rule: RecurringRule) -> Optional[int]:
        if is_month_based(rule.frequency):
            return anchor_day(rule.start_date, rule.next_due_date)
        return None

    async def _catch_up(self, rule: RecurringRule, now: date) -> list[Transaction]:
        """Generate and persist every due period of a freshly read rule (reference lock held)."""
        if not rule.is_active or rule.next_due_date > now:
            return []

        await self._check_category(rule)

        due_dates, next_due = due_dates_between(
            rule.next_due_date,
            now,
            rule.frequency,
            self._anchor(rule),
        )
        generated = [self._materialize(rule, due) for due in due_dates]

        await self._persist(rule, generated, next_due)
        return generated

    async def process_rule(self, rule: RecurringRule, now: date) -> list[Transaction]:
        """
        Catch a single rule up to now.

        Generates one transaction per due date in [next_due_date, now] and
        advances next_due_date past now. The caller is expected to hold the
        run guard (the batch and process_rule_now do).

        The rule is re-read under the user's reference lock, so an edit
        committed after the caller's snapshot (a next_due_date override,
        deactivation, deletion) is what gets processed. The passed rule
        is refreshed with the stored state afterwards.

        Returns:
            The generated transactions, oldest first (empty if inactive,
            not due, or deleted)

        Raises:
            EngineRuleError: If the rule's category is gone or the store write fails
        """
        async with self._store.reference_lock(rule.user_id):
            current = await self._store.get_by_id(EntityKind.RECURRING, rule.id, rule.user_id)
            if current is None or current.user_id != rule.user_id:
                return []
            generated = await self._catch_up(current, now)

        rule.next_due_date = current.next_due_date
        rule.is_active = current.is_active
        return generated

    async def process_rule_now(
        self,
        rule_id: UUID,
        user_id: UUID,
        now: Optional[date] = None,
        wait: bool = True,
    ) -> list[Transaction]:
        """
        Process one rule on demand ("process now").

        A due rule is caught up exactly like the batch would. A rule that is
        not yet due is paid early: one transaction dated today, and the
        upcoming due date is consumed (advanced by one step from its current
        value, so it still only moves forward).

        Raises:
            NotFoundError: If the rule doesn't exist for this user
            EngineRuleError: If the rule is inactive or can't be processed
            EngineBusyError: If wait is False and a run is in progress
        """
        as_of = now or self.today()

        async with self._guard(wait), self._store.reference_lock(user_id):
            rule = await self._store.get_by_id(EntityKind.RECURRING, rule_id, user_id)
            if rule is None or rule.user_id != user_id:
                raise NotFoundError(f"Recurring rule not found: {rule_id}")
            if not rule.is_active:
                raise EngineRuleError(
                    "Recurring transaction is not active",
                    rule_id=rule.id,
                    user_id=user_id,
                )

            early = rule.next_due_date > as_of
            if early:
                await self._check_category(rule)
                next_due = advance_due_date(rule.next_due_date, rule.frequency, self._anchor(rule))
                generated = [self._materialize(rule, as_of, manual=True)]
                await self._persist(rule, generated, next_due)
            else:
                generated = await self._catch_up(rule, as_of)

        self._audit_logger.log_manual_process(rule.id, user_id, len(generated), early)
        return generated

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    async def process_recurring_transactions(
        self,
        now: Optional[date] = None,
        wait: bool = True,
    ) -> ProcessingSummary:
        """
        Process every active rule of every user.

        Args:
            now: Date to process up to (defaults to today)
            wait: Wait for a run in progress instead of raising EngineBusyError

        Returns:
            Counts of processed rules and generated transactions, plus
            every failure that was caught along the way
        """
        as_of = now or self.today()
        async with self._guard(wait):
            return await self._run_batch(as_of)

    async def _run_batch(self, as_of: date) -> ProcessingSummary:
        correlation_id = create_correlation_id()
        summary = ProcessingSummary(run_id=correlation_id, as_of=as_of)
        self._audit_logger.log_run_started(as_of, correlation_id)

        for user_id in await self._store.user_ids():
            try:
                rules = await self._store.get_by_user_id(EntityKind.RECURRING, user_id)
            except CorruptStoreError as e:
                self._record_failure(summary, user_id, None, e)
                continue

            for rule in rules:
                if not rule.is_active:
                    continue
                try:
                    generated = await self.process_rule(rule, as_of)
                except Exception as e:
                    # A single bad rule must not block the batch
                    self._record_failure(summary, user_id, rule.id, e)
                    continue

                if generated:
                    summary.rules_processed += 1
                    summary.transactions_generated += len(generated)
                    self._audit_logger.log_rule_processed(
                        rule_id=rule.id,
                        user_id=user_id,
                        generated=len(generated),
                        next_due_date=rule.next_due_date,
                        correlation_id=correlation_id,
                    )

        summary.finished_at = utc_now()
        self._audit_logger.log_run_completed(
            rules_processed=summary.rules_processed,
            transactions_generated=summary.transactions_generated,
            failure_count=len(summary.failures),
            correlation_id=correlation_id,
        )
        return summary

    def _record_failure(
        self,
        summary: ProcessingSummary,
        user_id: UUID,
        rule_id: Optional[UUID],
        error: Exception,
    ) -> None:
        summary.failures.append(RuleFailure(
            user_id=user_id,
            rule_id=rule_id,
            error_type=type(error).__name__,
            message=str(error),
        ))
        self._audit_logger.log_rule_failed(
            user_id=user_id,
            rule_id=rule_id,
            error=error,
            correlation_id=summary.run_id,
        )
