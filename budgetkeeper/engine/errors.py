"""Recurring engine exceptions."""

from typing import Optional
from uuid import UUID


class EngineError(Exception):
    """Base exception for the recurring engine."""
    pass


class EngineRuleError(EngineError):
    """A single recurring rule could not be processed."""

    def __init__(self, message: str, rule_id: Optional[UUID] = None, user_id: Optional[UUID] = None):
        self.rule_id = rule_id
        self.user_id = user_id
        super().__init__(message)


class EngineBusyError(EngineError):
    """An engine run is already in progress and the caller asked not to wait."""
    pass
