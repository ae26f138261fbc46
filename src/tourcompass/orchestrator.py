"""Per-tour create / regenerate / rotate decisions and the all-tours batch run.

    manager = AvailabilityManager(store, store, store, store)
    await manager.create_initial_availability(tour)                 # tour just published
    await manager.generate_availability_for_tour(tour_id)           # admin "regenerate"
    await manager.execute_monthly_update()                          # 1st of the month, 22:00 JST
"""
import asyncio
import logging
import time
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from dateutil import tz

from tourcompass.calendar_logic import (
    generate, next_status, regenerate_full, rotate, set_day_status, today_in, window_bounds,
)
from tourcompass.config import DEFAULTS, load_config
from tourcompass.errors import (
    AvailabilityExistsError, AvailabilityNotFoundError, TourNotFoundError,
)
from tourcompass.models import (
    AvailabilityRecord, BatchOutcome, LogEntry, RunContext, SeasonPolicy, Status,
    TourConfig, TourOutcome, Trigger,
)
from tourcompass.policies import resolve_cancellation_policy, resolve_season_windows
from tourcompass.statelog import closed_period_lines, log_system_state, purge_old_logs
from tourcompass.statistics import health_check, performance_trends as trends_from_logs
from tourcompass.stores import AvailabilityStore, LogSink, PolicyStore, TourStore

SUCCESS = "SUCCESS"
FAILED = "FAILED"

CREATE_STATE = "Selected Tour Date Generation"
REGENERATE_STATE = "Selected Tour Date Regeneration"
MONTHLY_STATE = "Monthly Data Update"
TEST_STATE = "System Test"


def _utcnow() -> datetime:
    return datetime.now(tz.UTC)


class AvailabilityManager:
    def __init__(self, tours: TourStore, availability: AvailabilityStore, policies: PolicyStore,
                 log_sink: LogSink, config: dict = None, clock: Callable[[], datetime] = None):
        self.tours = tours
        self.availability = availability
        self.policies = policies
        self.log_sink = log_sink
        self.config = load_config() if config is None else dict(DEFAULTS, **config)
        self.clock = clock or _utcnow

    def today(self) -> date:
        return today_in(self.config['timezone'], self.clock())

    def context(self, trigger: Trigger = Trigger.MANUAL, today: date = None) -> RunContext:
        return RunContext(today=today or self.today(), trigger=trigger)

    async def _log(self, state_type: str, status: str, started: datetime, lines: Sequence[str],
                   names: Sequence[str], count: int, error: str = "", operation: str = ""):
        await log_system_state(self.log_sink, LogEntry(
            state_type=state_type,
            operation_type=operation,
            execution_status=status,
            processing_start=started,
            processing_end=self.clock(),
            log_data="\n".join(lines),
            error_details=error,
            affected_tour_count=count,
            affected_tour_names=list(names),
        ))

    def _elapsed(self, started: datetime) -> str:
        return f"{(self.clock() - started).total_seconds():.2f}s"

    async def _resolve_policies(self, tour: TourConfig, lines: List[str]) -> SeasonPolicy:
        season = await resolve_season_windows(self.policies, tour.high_season_ref)
        cancellation = await resolve_cancellation_policy(self.policies, tour.cancellation_policy_ref)
        lines.append(f"Retrieved {len(season.windows)} high season periods from policy: "
                     f"{season.policy_name or 'None'}")
        lines.append(f"Cancellation Policy: {cancellation.get('policyName') if cancellation else 'None'}")
        return season

    async def create_initial_availability(self, tour: TourConfig, ctx: RunContext = None) -> AvailabilityRecord:
        """First 18-month calendar for a tour; refuses to overwrite an existing record."""
        ctx = ctx or self.context()
        started = self.clock()
        name = tour.display_name
        lines = [
            f"Starting availability generation for tour: {name}",
            f"Tour ID: {tour.tour_code or 'Not set'}",
            f"Database ID: {tour.id}",
        ]
        try:
            if await self.availability.find_availability(tour.id) is not None:
                lines.append(f"Availability already exists for tour: {name}")
                raise AvailabilityExistsError(name)

            start, end = window_bounds(ctx.today, self.config['window_months'])
            lines.append(f"Generating dates from {start.isoformat()} to {end.isoformat()}")
            season = await self._resolve_policies(tour, lines)
            closed = list(tour.closed_periods)
            lines.extend(closed_period_lines(closed))

            days = generate(start, end, tour.run_days, season.windows, closed)
            lines.append(f"Generated {len(days)} availability dates")
            record = AvailabilityRecord(
                tour_ref=tour.id,
                availability_id=f"{tour.url_name} Availability",
                tour_code=tour.tour_code,
                closed_periods=closed,
                days=days,
            )
            saved = await self.availability.insert_availability(record)
        except Exception as e:
            lines.append(f"ERROR: Failed to create availability for tour: {name}. Error: {e}")
            await self._log(CREATE_STATE, "Failed", started, lines, [name], 0, str(e))
            raise

        lines.append(f"Successfully created availability for tour: {name}. Duration: {self._elapsed(started)}")
        await self._log(CREATE_STATE, "Execution Completed", started, lines, [name], 1)
        logging.info(f"Created availability for {name}: {len(saved.days)} dates")
        return saved

    async def generate_availability_for_tour(self, tour_id: str, ctx: RunContext = None) -> TourOutcome:
        """
        Manual trigger: regenerate the whole window, keeping bookings and manual
        sell-outs. Scheduled trigger: rotate by one month. Without a record the
        tour gets its first calendar. Closed periods on the record are never touched.
        """
        ctx = ctx or self.context()
        manual = ctx.trigger is Trigger.MANUAL
        state_type = REGENERATE_STATE if manual else MONTHLY_STATE
        kind = "manual" if manual else "scheduled"
        started = self.clock()
        lines = [f"Starting {kind} regeneration for tour ID: {tour_id}"]
        name = tour_id

        try:
            tour = await self.tours.get_tour(tour_id)
            if tour is None:
                raise TourNotFoundError(tour_id)
            name = tour.display_name
            record = await self.availability.find_availability(tour_id)
        except Exception as e:
            lines.append(f"ERROR: Failed to {'regenerate' if manual else 'update'} availability "
                         f"for tour ID: {tour_id}. Error: {e}")
            await self._log(state_type, "Failed", started, lines, [name], 0, str(e))
            raise

        if record is None:
            logging.info(f"No existing availability for {name}, creating new availability")
            saved = await self.create_initial_availability(tour, ctx)
            return TourOutcome(SUCCESS, tour_id, name, "create",
                               f"Created availability for {name}", len(saved.days))

        try:
            season = await self._resolve_policies(tour, lines)
            closed = list(record.closed_periods)
            lines.extend(closed_period_lines(closed))
            if manual:
                start, end = window_bounds(ctx.today, self.config['window_months'])
                lines.append(f"Manual update: regenerating full period from {start.isoformat()} to {end.isoformat()}")
                days = regenerate_full(start, end, tour.run_days, season.windows, closed, record.days)
            else:
                days = rotate(ctx.today, tour.run_days, season.windows, closed, record.days,
                              self.config['window_months'])
                lines.append(f"Scheduled rotation for {ctx.today.isoformat()}: {len(days)} dates in array")
            record.days = days
            await self.availability.update_availability(record)
        except Exception as e:
            lines.append(f"ERROR: Failed to {'regenerate' if manual else 'update'} availability "
                         f"for tour ID: {tour_id}. Error: {e}")
            await self._log(state_type, "Failed", started, lines, [name], 0, str(e))
            raise

        verb = "regenerated" if manual else "updated"
        lines.append(f"Successfully {verb} availability for tour: {name}. Duration: {self._elapsed(started)}")
        await self._log(state_type, "Execution Completed", started, lines, [name], 1)
        return TourOutcome(SUCCESS, tour_id, name, "regenerate" if manual else "rotate",
                           f"Successfully {verb} availability for tour: {name}", len(days))

    async def run_tour(self, tour_id: str, ctx: RunContext = None) -> TourOutcome:
        """generate_availability_for_tour, with any failure turned into a FAILED outcome."""
        try:
            return await self.generate_availability_for_tour(tour_id, ctx)
        except Exception as e:  # noqa: BLE001
            logging.warning(f"Availability run failed for tour {tour_id}: {e}")
            return TourOutcome(FAILED, tour_id, message=str(e) or type(e).__name__)

    def _collect(self, outcome: BatchOutcome, tours: Sequence[TourConfig], results) -> None:
        for tour, res in zip(tours, results):
            if isinstance(res, BaseException):
                res = TourOutcome(FAILED, tour.id, message=str(res) or type(res).__name__)
            if res.ok:
                outcome.tours_updated += 1
                outcome.successful_tours.append(tour.display_name)
            else:
                outcome.tours_failed += 1
                outcome.failed_tours.append({'tour_id': tour.id, 'message': res.message})
                outcome.errors.append(f"Error updating tour {tour.display_name} (ID: {tour.id}): {res.message}")

    async def execute_monthly_update(self, manual: bool = False, today: date = None) -> BatchOutcome:
        """Rotate every published tour, `chunk_size` tours at a time."""
        started = self.clock()
        t0 = time.monotonic()
        where = ("manual execution triggered from availability manager" if manual
                 else "scheduled automatic execution at 2200 JST")
        ctx = self.context(Trigger.SCHEDULED, today)
        chunk_size = max(1, int(self.config['chunk_size']))
        pause = float(self.config['chunk_pause_seconds'])

        try:
            tours = await self.tours.find_published_tours()
        except Exception as e:
            logging.exception("Monthly availability update could not load tours")
            await self._log(MONTHLY_STATE, "Failed", started,
                            [f"Monthly availability update failed - {where}: {e}"], [], 0, str(e),
                            operation="MONTHLYAVAILABILITYUPDATE")
            return BatchOutcome(success=False, message=str(e), execution_time=time.monotonic() - t0)

        if not tours:
            await self._log(MONTHLY_STATE, "Completed Successfully", started,
                            [f"No active tours found for monthly update - {where}"], [], 0,
                            operation="MONTHLYAVAILABILITYUPDATE")
            return BatchOutcome(success=True, message="No active tours found for update",
                                execution_time=time.monotonic() - t0)

        outcome = BatchOutcome(success=True, tours_processed=len(tours))
        for i in range(0, len(tours), chunk_size):
            chunk = tours[i:i + chunk_size]
            logging.info(f"Monthly update: tours {i + 1}-{i + len(chunk)} of {len(tours)}")
            results = await asyncio.gather(*(self.run_tour(t.id, ctx) for t in chunk),
                                           return_exceptions=True)
            self._collect(outcome, chunk, results)
            if i + chunk_size < len(tours):
                await asyncio.sleep(pause)

        outcome.execution_time = time.monotonic() - t0
        outcome.message = (f"{outcome.tours_updated} tours updated successfully, "
                           f"{outcome.tours_failed} errors.")
        status = "Completed Successfully" if outcome.tours_failed == 0 else "Completed with errors"
        await self._log(MONTHLY_STATE, status, started,
                        [f"Monthly availability update completed in {outcome.execution_time:.2f} seconds"
                         f" - {where}. {outcome.message}"],
                        outcome.successful_tours, outcome.tours_updated, "; ".join(outcome.errors),
                        operation="MONTHLYAVAILABILITYUPDATE")
        return outcome

    async def preview_monthly_update(self, dry_run: bool = True, today: date = None) -> BatchOutcome:
        """Monthly update restricted to a small sample of published tours; dry run only lists them."""
        started = self.clock()
        t0 = time.monotonic()
        await self._log(TEST_STATE, "Completed Successfully", started,
                        [f"Testing monthly update procedure from testing page - dry run: {dry_run}"], [], 0,
                        operation="SYSTEM_TEST")
        tours = await self.tours.find_published_tours(limit=int(self.config['preview_limit']))
        if not tours:
            return BatchOutcome(success=True, message="No active tours found for test", dry_run=dry_run)

        outcome = BatchOutcome(success=True, tours_processed=len(tours), dry_run=dry_run)
        if dry_run:
            outcome.message = f"Would update {len(tours)} tours (dry run)"
            outcome.successful_tours = [t.display_name for t in tours]
            return outcome

        ctx = self.context(Trigger.SCHEDULED, today)
        results = await asyncio.gather(*(self.run_tour(t.id, ctx) for t in tours), return_exceptions=True)
        self._collect(outcome, tours, results)
        outcome.execution_time = time.monotonic() - t0
        outcome.message = f"Updated {outcome.tours_updated} of {len(tours)} tours"
        return outcome

    async def _load_record(self, tour_id: str) -> AvailabilityRecord:
        record = await self.availability.find_availability(tour_id)
        if record is None:
            raise AvailabilityNotFoundError(tour_id)
        return record

    async def _store_status(self, record: AvailabilityRecord, day: date, status) -> AvailabilityRecord:
        record.days = set_day_status(record.days, day, status)
        await self.availability.update_availability(record)
        logging.info(f"Tour {record.tour_ref}: {day.isoformat()} set to {Status(status).value}")
        return record

    async def update_day_status(self, tour_id: str, day: date, status) -> AvailabilityRecord:
        """Manual status edit for one date; closed periods stay as they are."""
        record = await self._load_record(tour_id)
        return await self._store_status(record, day, status)

    async def toggle_day_status(self, tour_id: str, day: date) -> Status:
        record = await self._load_record(tour_id)
        current: Optional[Status] = next((r.status for r in record.days if r.date == day), None)
        new = next_status(current)
        await self._store_status(record, day, new)
        return new

    async def system_health(self) -> Dict:
        """Statistics, indicators and recommendations over the whole audit log."""
        entries = await self.log_sink.load_logs()
        return health_check(entries, self.clock())

    async def performance_trends(self, days: int = 7) -> Dict:
        now = self.clock()
        entries = await self.log_sink.load_logs(since=now - timedelta(days=days))
        return trends_from_logs(entries, days, now)

    async def clean_old_logs(self) -> Dict:
        """Apply the configured log retention period."""
        return await purge_old_logs(self.log_sink, int(self.config['log_retention_days']), self.clock())
