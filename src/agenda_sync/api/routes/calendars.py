"""Calendar snapshot routes.

Read-only views of the latest snapshot per calendar, plus a manual sync
trigger.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from agenda_sync.config import get_settings
from agenda_sync.models.snapshot import Occurrence, Snapshot
from agenda_sync.sync import CycleReport, SyncCoordinator

router = APIRouter()


class OccurrenceResponse(BaseModel):
    """One occurrence of an event."""

    event_id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool
    status: str
    series_id: str | None
    location: str | None

    @classmethod
    def from_occurrence(cls, occurrence: Occurrence) -> OccurrenceResponse:
        return cls(
            event_id=occurrence.event_id,
            title=occurrence.title,
            start=occurrence.start,
            end=occurrence.end,
            all_day=occurrence.all_day,
            status=occurrence.status.value,
            series_id=occurrence.series_id,
            location=occurrence.location,
        )


class SnapshotResponse(BaseModel):
    """Snapshot of one calendar."""

    calendar_id: str
    window_start: datetime
    window_end: datetime
    occurrences: list[OccurrenceResponse]

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> SnapshotResponse:
        return cls(
            calendar_id=snapshot.calendar_id,
            window_start=snapshot.window.start,
            window_end=snapshot.window.end,
            occurrences=[
                OccurrenceResponse.from_occurrence(o) for o in snapshot.occurrences
            ],
        )


class CalendarStatusResponse(BaseModel):
    """Sync state of one calendar."""

    calendar_id: str
    state: str
    attempts: int | None
    error: str | None
    occurrences: int | None


class CycleResponse(BaseModel):
    """Result of a manual sync cycle."""

    calendar_id: str
    state: str
    attempts: int
    applied: int
    discarded: int
    malformed: int
    full_sync: bool
    occurrences: int | None
    error: str | None

    @classmethod
    def from_report(cls, report: CycleReport) -> CycleResponse:
        outcome = report.outcome
        return cls(
            calendar_id=report.calendar_id,
            state=report.state.value,
            attempts=report.attempts,
            applied=outcome.applied if outcome else 0,
            discarded=outcome.discarded if outcome else 0,
            malformed=outcome.malformed if outcome else 0,
            full_sync=outcome.full_sync if outcome else False,
            occurrences=len(report.snapshot) if report.snapshot else None,
            error=str(report.error) if report.error else None,
        )


def get_coordinator(request: Request) -> SyncCoordinator:
    coordinator = request.app.state.coordinator
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine is not running",
        )
    return coordinator


def _require_snapshot(coordinator: SyncCoordinator, calendar_id: str) -> Snapshot:
    snapshot = coordinator.latest_snapshot(calendar_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No snapshot for calendar {calendar_id}",
        )
    return snapshot


@router.get("/", response_model=list[CalendarStatusResponse])
async def list_calendars(
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> list[CalendarStatusResponse]:
    """List configured calendars with their sync state."""
    calendar_ids = list(get_settings().calendar_ids)
    for calendar_id in coordinator.calendars():
        if calendar_id not in calendar_ids:
            calendar_ids.append(calendar_id)

    responses = []
    for calendar_id in calendar_ids:
        report = coordinator.last_report(calendar_id)
        snapshot = coordinator.latest_snapshot(calendar_id)
        responses.append(
            CalendarStatusResponse(
                calendar_id=calendar_id,
                state=coordinator.state(calendar_id).value,
                attempts=report.attempts if report else None,
                error=str(report.error) if report and report.error else None,
                occurrences=len(snapshot) if snapshot else None,
            )
        )
    return responses


@router.get("/{calendar_id}/snapshot", response_model=SnapshotResponse)
async def get_snapshot(
    calendar_id: str,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> SnapshotResponse:
    """Get the latest snapshot of a calendar."""
    return SnapshotResponse.from_snapshot(_require_snapshot(coordinator, calendar_id))


@router.get("/{calendar_id}/next", response_model=OccurrenceResponse)
async def get_next_event(
    calendar_id: str,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> OccurrenceResponse:
    """Get the event in progress or the next one to start."""
    snapshot = _require_snapshot(coordinator, calendar_id)
    occurrence = snapshot.next_event(datetime.now(timezone.utc))
    if occurrence is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No upcoming event in the current window",
        )
    return OccurrenceResponse.from_occurrence(occurrence)


@router.post("/{calendar_id}/sync", response_model=CycleResponse)
async def sync_calendar(
    calendar_id: str,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> CycleResponse:
    """Run one sync cycle for a calendar now."""
    report = await coordinator.run_cycle(calendar_id)
    return CycleResponse.from_report(report)
