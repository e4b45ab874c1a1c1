"""
Audit Models for budgetkeeper

Every engine run, scheduler decision and destructive ledger action is
recorded as a typed event. This provides:
1. Traceability of every generated transaction back to a run
2. Debugging information when a rule keeps failing
3. A record of ticks skipped because a run overran the interval

DESIGN DECISION: Events are only emitted, never edited.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from budgetkeeper.models.entities import utc_now


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Engine
    ENGINE_RUN_STARTED = "engine_run_started"
    ENGINE_RUN_COMPLETED = "engine_run_completed"
    RULE_PROCESSED = "rule_processed"
    RULE_FAILED = "rule_failed"
    MANUAL_PROCESS = "manual_process"

    # Scheduler
    SCHEDULER_STARTED = "scheduler_started"
    SCHEDULER_TICK_SKIPPED = "scheduler_tick_skipped"
    SCHEDULER_RUN_FAILED = "scheduler_run_failed"

    # Store
    STORE_PARTITION_CORRUPT = "store_partition_corrupt"

    # Ledger
    USER_CREATED = "user_created"
    USER_DELETED = "user_deleted"
    CATEGORY_DELETE_REJECTED = "category_delete_rejected"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'recurring', 'user', 'category')"
    )
    entity_id: Optional[UUID] = None
    user_id: Optional[UUID] = None

    # Correlation - ties every event of one engine run together
    correlation_id: Optional[UUID] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    error_type: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "user_id": str(self.user_id) if self.user_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_type": self.error_type,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.rule_processed(rule_id, user_id, 3, next_due, run_id)
        event = AuditEventBuilder.tick_skipped()
    """

    @staticmethod
    def engine_run_started(as_of: date, correlation_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ENGINE_RUN_STARTED,
            severity=AuditSeverity.DEBUG,
            correlation_id=correlation_id,
            description=f"Processing recurring transactions as of {as_of.isoformat()}",
            details={"as_of": as_of.isoformat()},
        )

    @staticmethod
    def engine_run_completed(
        rules_processed: int,
        transactions_generated: int,
        failure_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ENGINE_RUN_COMPLETED,
            severity=AuditSeverity.WARNING if failure_count else AuditSeverity.INFO,
            correlation_id=correlation_id,
            description=(
                f"Generated {transactions_generated} transactions "
                f"from {rules_processed} rules"
            ),
            details={
                "rules_processed": rules_processed,
                "transactions_generated": transactions_generated,
                "failures": failure_count,
            },
        )

    @staticmethod
    def rule_processed(
        rule_id: UUID,
        user_id: UUID,
        generated: int,
        next_due_date: date,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULE_PROCESSED,
            entity_type="recurring",
            entity_id=rule_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Recurring rule generated {generated} transactions",
            details={
                "generated": generated,
                "next_due_date": next_due_date.isoformat(),
            },
        )

    @staticmethod
    def rule_failed(
        user_id: UUID,
        rule_id: Optional[UUID],
        error: Exception,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="recurring",
            entity_id=rule_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description="Recurring rule could not be processed",
            error_type=type(error).__name__,
            error_message=str(error),
        )

    @staticmethod
    def manual_process(
        rule_id: UUID,
        user_id: UUID,
        generated: int,
        early: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MANUAL_PROCESS,
            entity_type="recurring",
            entity_id=rule_id,
            user_id=user_id,
            description="Recurring rule processed on demand",
            details={"generated": generated, "early": early},
        )

    @staticmethod
    def scheduler_started(interval_seconds: float) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCHEDULER_STARTED,
            description=f"Scheduler started with a {interval_seconds:g}s interval",
            details={"interval_seconds": interval_seconds},
        )

    @staticmethod
    def tick_skipped() -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCHEDULER_TICK_SKIPPED,
            severity=AuditSeverity.WARNING,
            description="Scheduled tick skipped: previous run still in progress",
        )

    @staticmethod
    def scheduler_run_failed(error: Exception) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCHEDULER_RUN_FAILED,
            severity=AuditSeverity.ERROR,
            description="Scheduled engine run failed",
            error_type=type(error).__name__,
            error_message=str(error),
        )

    @staticmethod
    def partition_corrupt(kind: str, user_id: Optional[UUID], path: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORE_PARTITION_CORRUPT,
            severity=AuditSeverity.ERROR,
            entity_type=kind,
            user_id=user_id,
            description=f"Unreadable collection document: {path}",
            details={"path": path},
        )

    @staticmethod
    def user_created(user_id: UUID, categories_seeded: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.USER_CREATED,
            entity_type="user",
            entity_id=user_id,
            user_id=user_id,
            description="User created",
            details={"categories_seeded": categories_seeded},
        )

    @staticmethod
    def user_deleted(user_id: UUID, removed: dict[str, int]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.USER_DELETED,
            severity=AuditSeverity.WARNING,
            entity_type="user",
            entity_id=user_id,
            user_id=user_id,
            description="User and all associated data deleted",
            details={"removed": removed},
        )

    @staticmethod
    def category_delete_rejected(
        category_id: UUID,
        user_id: UUID,
        transactions: int,
        rules: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CATEGORY_DELETE_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="category",
            entity_id=category_id,
            user_id=user_id,
            description="Category still referenced; delete rejected",
            details={"transactions": transactions, "recurring": rules},
        )
