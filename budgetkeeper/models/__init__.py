"""
Data Models Package

This package contains all Pydantic models used in budgetkeeper.
All data flowing through the store and the engine conforms to these schemas.
"""

from budgetkeeper.models.entities import (
    DEFAULT_CATEGORIES,
    KIND_MODELS,
    MAX_AMOUNT,
    Category,
    EntityKind,
    Frequency,
    RecurringRule,
    Transaction,
    TransactionType,
    User,
    utc_now,
)
from budgetkeeper.models.processing import (
    ProcessingSummary,
    RuleFailure,
)
from budgetkeeper.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Entities
    "DEFAULT_CATEGORIES",
    "KIND_MODELS",
    "MAX_AMOUNT",
    "Category",
    "EntityKind",
    "Frequency",
    "RecurringRule",
    "Transaction",
    "TransactionType",
    "User",
    "utc_now",
    # Engine results
    "ProcessingSummary",
    "RuleFailure",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
