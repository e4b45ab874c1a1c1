"""Recurring transaction engine package."""

from budgetkeeper.engine.errors import EngineBusyError, EngineError, EngineRuleError
from budgetkeeper.engine.recurring import RecurringEngine
from budgetkeeper.engine.schedule import advance_due_date, anchor_day, due_dates_between

__all__ = [
    "EngineBusyError",
    "EngineError",
    "EngineRuleError",
    "RecurringEngine",
    "advance_due_date",
    "anchor_day",
    "due_dates_between",
]
