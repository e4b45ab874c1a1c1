"""
Audit Logger

DESIGN DECISION: Every engine run and scheduler decision is logged.
This provides:
1. Traceability from a generated transaction back to the run that made it
2. Visibility into rules that keep failing
3. Evidence when a run overruns the scheduler interval

The audit logger:
- Never raises (a failing log call must not abort an engine run)
- Keeps a bounded in-memory history of recent events
- Supports correlation IDs to trace the events of one run
"""

import logging
from collections import deque
from typing import Optional
from uuid import UUID, uuid4

import structlog

from budgetkeeper.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity


def configure_logging(level: str = "INFO") -> None:
    """
    Configure stdlib logging and structlog for JSON output.

    Safe to call more than once; the last call wins.
    """
    logging.basicConfig(format="%(message)s", level=level, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class AuditLogger:
    """
    Central audit logging service.

    Logs events to the structured local log and remembers the most
    recent ones for inspection.
    """

    def __init__(self, history_size: int = 500):
        self._logger = structlog.get_logger("budgetkeeper.audit")
        self._history: deque[AuditEvent] = deque(maxlen=history_size)

    def log(self, event: AuditEvent) -> None:
        """Log an audit event at a level matching its severity."""
        self._history.append(event)
        log_dict = event.to_log_dict()

        try:
            if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
                self._logger.error("audit_event", **log_dict)
            elif event.severity == AuditSeverity.WARNING:
                self._logger.warning("audit_event", **log_dict)
            elif event.severity == AuditSeverity.DEBUG:
                self._logger.debug("audit_event", **log_dict)
            else:
                self._logger.info("audit_event", **log_dict)
        except Exception as e:
            # Logging must never break the caller
            logging.getLogger(__name__).warning("audit log write failed: %s", e)

    def recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Most recent events, newest first."""
        return list(reversed(self._history))[:limit]

    def log_run_started(self, as_of, correlation_id: UUID) -> None:
        self.log(AuditEventBuilder.engine_run_started(as_of, correlation_id))

    def log_run_completed(
        self,
        rules_processed: int,
        transactions_generated: int,
        failure_count: int,
        correlation_id: UUID,
    ) -> None:
        self.log(AuditEventBuilder.engine_run_completed(
            rules_processed=rules_processed,
            transactions_generated=transactions_generated,
            failure_count=failure_count,
            correlation_id=correlation_id,
        ))

    def log_rule_processed(
        self,
        rule_id: UUID,
        user_id: UUID,
        generated: int,
        next_due_date,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        self.log(AuditEventBuilder.rule_processed(
            rule_id=rule_id,
            user_id=user_id,
            generated=generated,
            next_due_date=next_due_date,
            correlation_id=correlation_id,
        ))

    def log_rule_failed(
        self,
        user_id: UUID,
        rule_id: Optional[UUID],
        error: Exception,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        self.log(AuditEventBuilder.rule_failed(
            user_id=user_id,
            rule_id=rule_id,
            error=error,
            correlation_id=correlation_id,
        ))

    def log_manual_process(self, rule_id: UUID, user_id: UUID, generated: int, early: bool) -> None:
        self.log(AuditEventBuilder.manual_process(rule_id, user_id, generated, early))

    def log_scheduler_started(self, interval_seconds: float) -> None:
        self.log(AuditEventBuilder.scheduler_started(interval_seconds))

    def log_tick_skipped(self) -> None:
        self.log(AuditEventBuilder.tick_skipped())

    def log_scheduler_run_failed(self, error: Exception) -> None:
        self.log(AuditEventBuilder.scheduler_run_failed(error))

    def log_partition_corrupt(self, kind: str, user_id: Optional[UUID], path: str) -> None:
        self.log(AuditEventBuilder.partition_corrupt(kind, user_id, path))

    def log_user_created(self, user_id: UUID, categories_seeded: int) -> None:
        self.log(AuditEventBuilder.user_created(user_id, categories_seeded))

    def log_user_deleted(self, user_id: UUID, removed: dict[str, int]) -> None:
        self.log(AuditEventBuilder.user_deleted(user_id, removed))

    def log_category_delete_rejected(
        self,
        category_id: UUID,
        user_id: UUID,
        transactions: int,
        rules: int,
    ) -> None:
        self.log(AuditEventBuilder.category_delete_rejected(
            category_id=category_id,
            user_id=user_id,
            transactions=transactions,
            rules=rules,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    One is created per engine run and passed to every event it emits.
    """
    return uuid4()
