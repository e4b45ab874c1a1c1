"""
Shared fixtures.

Every test gets its own data directory under pytest's tmp_path, so
nothing is shared between tests and nothing touches the real data dir.
Async code is driven with asyncio.run() from plain sync tests.
"""

from datetime import date

import pytest

from budgetkeeper.audit import AuditLogger
from budgetkeeper.config import AppSettings, StoreSettings
from budgetkeeper.engine import RecurringEngine
from budgetkeeper.orchestrator import LedgerService
from budgetkeeper.services.storage import JsonCollectionStore


TODAY = date(2024, 3, 15)


@pytest.fixture
def audit_logger():
    return AuditLogger()


@pytest.fixture
def store_settings(tmp_path):
    return StoreSettings(data_dir=tmp_path / "data")


@pytest.fixture
def store(store_settings, audit_logger):
    return JsonCollectionStore(store_settings, audit_logger=audit_logger)


@pytest.fixture
def app_settings():
    return AppSettings()


@pytest.fixture
def engine(store, audit_logger):
    return RecurringEngine(store, audit_logger=audit_logger, clock=lambda: TODAY)


@pytest.fixture
def ledger(store, engine, app_settings, audit_logger):
    return LedgerService(store, engine, app_settings, audit_logger=audit_logger)


def event_types(audit_logger):
    """Types of every event logged so far, oldest first."""
    return [event.event_type for event in reversed(audit_logger.recent_events(limit=1000))]
