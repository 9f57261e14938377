"""Sync cycle coordination.

## Cycle

Each calendar moves through:

```
IDLE -> FETCHING -> SUCCEEDED
            |  ^
            v  |
          RETRYING -> FAILED
```

Transient fetch failures are retried with exponential backoff up to the
configured number of attempts. A failed calendar keeps its previous
snapshot; the next cycle starts over from IDLE.

On success the coordinator purges expired rows, builds the snapshot for the
viewing window and hands it to every renderer without waiting for them.

## Usage

```python
coordinator = SyncCoordinator(driver, builder, renderers=[TextRenderer()])
report = await coordinator.run_cycle("primary")
if report.success:
    print(len(report.snapshot))
```
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agenda_sync.config import Settings
from agenda_sync.errors import SyncError, TransientFetchError
from agenda_sync.models.event import CalendarId
from agenda_sync.models.snapshot import Snapshot, TimeWindow
from agenda_sync.sync.fetch import FetchDriver, SyncOutcome
from agenda_sync.sync.render import SnapshotRenderer
from agenda_sync.sync.snapshot import SnapshotBuilder

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff policy for transient fetch failures."""

    max_attempts: int = 4
    multiplier: float = 1.0
    min_wait: float = 2.0
    max_wait: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            multiplier=settings.backoff_multiplier,
            min_wait=settings.backoff_min_seconds,
            max_wait=settings.backoff_max_seconds,
        )

    def wait(self, retry_state: RetryCallState) -> float:
        """Exponential backoff, stretched to honor a server-sent Retry-After."""
        delay = wait_exponential(
            multiplier=self.multiplier, min=self.min_wait, max=self.max_wait
        )(retry_state)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, min(float(retry_after), self.max_wait))
        return delay


@dataclass
class CycleReport:
    """Result of one pull cycle for one calendar."""

    calendar_id: CalendarId
    state: SyncState
    attempts: int = 0
    outcome: SyncOutcome | None = None
    snapshot: Snapshot | None = None
    purged: int = 0
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.state == SyncState.SUCCEEDED


class SyncCoordinator:
    """Drives pull cycles for one or more calendars."""

    def __init__(
        self,
        driver: FetchDriver,
        builder: SnapshotBuilder,
        renderers: Sequence[SnapshotRenderer] = (),
        window_days: int = 7,
        display_zone: tzinfo = timezone.utc,
        retention: timedelta | None = timedelta(days=30),
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the coordinator.

        Args:
            driver: Fetch driver for all calendars
            builder: Snapshot builder sharing the driver's locks
            renderers: Receivers of each successful snapshot
            window_days: Length of the viewing window in local days
            display_zone: Zone whose midnight starts the viewing window
            retention: How long ended events and tombstones are kept, None to never purge
            retry_policy: Backoff policy for transient failures
            clock: Current time source
            sleep: Backoff sleep, replaceable in tests
        """
        self.driver = driver
        self.builder = builder
        self.renderers = list(renderers)
        self.window_days = window_days
        self.display_zone = display_zone
        self.retention = retention
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._states: dict[CalendarId, SyncState] = {}
        self._snapshots: dict[CalendarId, Snapshot] = {}
        self._reports: dict[CalendarId, CycleReport] = {}
        self._render_tasks: set[asyncio.Task] = set()

    def state(self, calendar_id: CalendarId) -> SyncState:
        return self._states.get(calendar_id, SyncState.IDLE)

    def latest_snapshot(self, calendar_id: CalendarId) -> Snapshot | None:
        return self._snapshots.get(calendar_id)

    def last_report(self, calendar_id: CalendarId) -> CycleReport | None:
        return self._reports.get(calendar_id)

    def calendars(self) -> list[CalendarId]:
        return sorted(self._states)

    def viewing_window(self, now: datetime | None = None) -> TimeWindow:
        """Window from local midnight today over `window_days` days."""
        now = now or self._clock()
        today = now.astimezone(self.display_zone).date()
        return TimeWindow.days_from(today, self.window_days, self.display_zone)

    async def run_cycle(self, calendar_id: CalendarId) -> CycleReport:
        """Run one pull cycle. Never raises for sync failures."""
        report = CycleReport(calendar_id=calendar_id, state=SyncState.FETCHING)
        self._states[calendar_id] = SyncState.FETCHING

        try:
            report.outcome = await self._fetch(calendar_id, report)
            report.purged = await self._purge(calendar_id)
            snapshot = await self.builder.build(calendar_id, self.viewing_window())
        except SyncError as e:
            return self._fail(report, e)
        except Exception as e:
            logger.exception(f"Unexpected error syncing {calendar_id}")
            return self._fail(report, e)

        report.snapshot = snapshot
        report.state = SyncState.SUCCEEDED
        self._snapshots[calendar_id] = snapshot
        self._states[calendar_id] = SyncState.SUCCEEDED
        self._reports[calendar_id] = report
        self._hand_off(calendar_id, snapshot)

        logger.info(
            f"Cycle for {calendar_id} succeeded after {report.attempts} attempt(s): "
            f"{len(snapshot)} occurrences"
            f"{'' if report.outcome.changed else ' (no remote changes)'}"
        )
        return report

    async def run_all(self, calendar_ids: Iterable[CalendarId]) -> list[CycleReport]:
        """Run one cycle per calendar concurrently."""
        return list(
            await asyncio.gather(*(self.run_cycle(cid) for cid in calendar_ids))
        )

    async def run_forever(
        self,
        calendar_ids: Sequence[CalendarId],
        interval: float,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run cycles every `interval` seconds until `stop_event` is set."""
        stop_event = stop_event or asyncio.Event()
        while not stop_event.is_set():
            await self.run_all(calendar_ids)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def drain(self) -> None:
        """Wait for pending renderer tasks."""
        if self._render_tasks:
            await asyncio.gather(*self._render_tasks, return_exceptions=True)

    async def _fetch(self, calendar_id: CalendarId, report: CycleReport) -> SyncOutcome:
        policy = self.retry_policy

        def before_sleep(retry_state: RetryCallState) -> None:
            self._states[calendar_id] = SyncState.RETRYING
            logger.warning(
                f"Attempt {retry_state.attempt_number} for {calendar_id} failed: "
                f"{retry_state.outcome.exception()}; retrying in "
                f"{retry_state.next_action.sleep:.1f}s"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=policy.wait,
            retry=retry_if_exception_type(TransientFetchError),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                report.attempts = attempt.retry_state.attempt_number
                self._states[calendar_id] = SyncState.FETCHING
                return await self.driver.sync(calendar_id)

    async def _purge(self, calendar_id: CalendarId) -> int:
        if self.retention is None:
            return 0
        async with self.driver.locks.hold(calendar_id):
            return await self.driver.events.purge_older_than(
                self._clock() - self.retention, calendar_id=calendar_id
            )

    def _fail(self, report: CycleReport, error: Exception) -> CycleReport:
        report.state = SyncState.FAILED
        report.error = error
        self._states[report.calendar_id] = SyncState.FAILED
        self._reports[report.calendar_id] = report
        logger.error(
            f"Cycle for {report.calendar_id} failed after {report.attempts} "
            f"attempt(s): {error}"
        )
        return report

    def _hand_off(self, calendar_id: CalendarId, snapshot: Snapshot) -> None:
        for renderer in self.renderers:
            task = asyncio.create_task(self._present(renderer, calendar_id, snapshot))
            self._render_tasks.add(task)
            task.add_done_callback(self._render_tasks.discard)

    async def _present(
        self,
        renderer: SnapshotRenderer,
        calendar_id: CalendarId,
        snapshot: Snapshot,
    ) -> None:
        try:
            await renderer.present(calendar_id, snapshot)
        except Exception:
            logger.exception(
                f"Renderer {type(renderer).__name__} failed for {calendar_id}"
            )
