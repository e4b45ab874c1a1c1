"""
Recurring Transaction Scheduler

Runs the recurring engine once at startup and then on a fixed period
(hourly by default). The scheduler only owns time; it knows nothing
about rules.

State machine: IDLE -> RUNNING -> IDLE

A tick that fires while a run is still in progress (a slow catch-up,
or a manual "process now" holding the engine guard) is skipped, not
queued. Ticks are laid out on a fixed grid measured from start(), so
a slow run never shifts later ticks.
"""

import asyncio
from enum import Enum
from typing import Optional

from budgetkeeper.audit import AuditLogger
from budgetkeeper.config import SchedulerSettings, get_settings
from budgetkeeper.engine import EngineBusyError, RecurringEngine
from budgetkeeper.models.processing import ProcessingSummary


class SchedulerState(str, Enum):
    """Whether the scheduler currently has an engine run in flight."""
    IDLE = "idle"
    RUNNING = "running"


class RecurringScheduler:
    """
    Drives RecurringEngine.process_recurring_transactions on a timer.

    A failed run is logged and the scheduler stays alive for the next tick.
    """

    def __init__(
        self,
        engine: RecurringEngine,
        settings: Optional[SchedulerSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
        interval_seconds: Optional[float] = None,
    ):
        settings = settings or get_settings().scheduler
        self._engine = engine
        self._audit_logger = audit_logger or AuditLogger()
        self._interval = interval_seconds if interval_seconds is not None else settings.interval_seconds
        self._run_on_startup = settings.run_on_startup
        if self._interval <= 0:
            raise ValueError("Scheduler interval must be positive")

        self._state = SchedulerState.IDLE
        self._timer_task: Optional[asyncio.Task] = None
        self._tick_tasks: set[asyncio.Task] = set()

        self.runs_completed = 0
        self.ticks_skipped = 0
        self.last_summary: Optional[ProcessingSummary] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def start(self) -> asyncio.Task:
        """
        Start the timer on the running event loop.

        Calling start() on a scheduler that is already running returns
        the existing timer task.
        """
        if self._timer_task is not None and not self._timer_task.done():
            return self._timer_task

        self._audit_logger.log_scheduler_started(self._interval)
        self._timer_task = asyncio.get_running_loop().create_task(
            self._timer_loop(),
            name="recurring-scheduler",
        )
        return self._timer_task

    async def _timer_loop(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        fired = 0

        if self._run_on_startup:
            self._spawn_tick()

        while True:
            fired += 1
            await asyncio.sleep(max(0.0, started + fired * self._interval - loop.time()))
            self._spawn_tick()

    def _spawn_tick(self) -> None:
        task = asyncio.get_running_loop().create_task(self.tick())
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

    async def tick(self) -> Optional[ProcessingSummary]:
        """
        One scheduled trigger.

        Returns:
            The run's summary, or None if the tick was skipped or failed
        """
        if self._state == SchedulerState.RUNNING or self._engine.is_running:
            self._skip()
            return None

        self._state = SchedulerState.RUNNING
        try:
            summary = await self._engine.process_recurring_transactions(wait=False)
        except EngineBusyError:
            self._skip()
            return None
        except Exception as e:
            self._audit_logger.log_scheduler_run_failed(e)
            return None
        finally:
            self._state = SchedulerState.IDLE

        self.runs_completed += 1
        self.last_summary = summary
        return summary

    def _skip(self) -> None:
        self.ticks_skipped += 1
        self._audit_logger.log_tick_skipped()

    async def shutdown(self) -> None:
        """
        Stop the timer at process teardown.

        Waits for an in-flight run to finish rather than cancelling it,
        so a catch-up is never cut off between its two writes.
        """
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        if self._tick_tasks:
            await asyncio.gather(*self._tick_tasks, return_exceptions=True)
