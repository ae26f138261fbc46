import asyncio
import copy
from datetime import date, datetime, timedelta

import pytest
from dateutil import tz

from tourcompass.errors import AvailabilityExistsError, AvailabilityNotFoundError, TourNotFoundError
from tourcompass.models import ClosedPeriod, RunContext, Season, Status, TourConfig, Trigger
from tourcompass.orchestrator import AvailabilityManager

# 2024-03-15 10:00 in Tokyo
NOW = datetime(2024, 3, 15, 1, 0, tzinfo=tz.UTC)


class DummyStore:
    """In-memory stand-in for all four collaborators."""

    def __init__(self):
        self.tours = {}
        self.records = {}
        self.season = {}
        self.cancellation = {}
        self.logs = []
        self.fail_update_for = set()
        self.fail_logs = False
        self.in_flight = 0
        self.max_in_flight = 0
        self._next_id = 1
        self.reads = 0

    def add_tour(self, tid, **kw):
        kw.setdefault('run_days', ["Monday", "Wednesday"])
        kw.setdefault('url_name', tid)
        self.tours[tid] = TourConfig(id=tid, **kw)
        return self.tours[tid]

    async def get_tour(self, tour_id):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            return copy.deepcopy(self.tours.get(tour_id))
        finally:
            self.in_flight -= 1

    async def find_published_tours(self, limit=None):
        tours = sorted((t for t in self.tours.values() if t.publish_status == "PUBLISHED"), key=lambda t: t.id)
        return tours[:limit] if limit is not None else tours

    async def find_availability(self, tour_ref):
        self.reads += 1
        return copy.deepcopy(self.records.get(tour_ref))

    async def insert_availability(self, record):
        record.id = self._next_id
        self._next_id += 1
        self.records[record.tour_ref] = copy.deepcopy(record)
        return record

    async def update_availability(self, record):
        if record.tour_ref in self.fail_update_for:
            raise IOError("disk full")
        self.records[record.tour_ref] = copy.deepcopy(record)
        return record

    async def get_season_policy(self, ref):
        return self.season.get(ref)

    async def get_cancellation_policy(self, ref):
        return self.cancellation.get(ref)

    async def insert_log(self, entry):
        if self.fail_logs:
            raise RuntimeError("log sink down")
        self.logs.append(entry)
        return entry

    async def load_logs(self, since=None, state_type=None, limit=None):
        out = [e for e in reversed(self.logs) if since is None or e.processing_end > since]
        return out[:limit] if limit is not None else out

    async def delete_logs_before(self, cutoff):
        kept = [e for e in self.logs if e.processing_end >= cutoff or e.state_type == "System Configuration"]
        deleted = len(self.logs) - len(kept)
        self.logs = kept
        return deleted


@pytest.fixture
def store():
    return DummyStore()


@pytest.fixture
def manager(store):
    return AvailabilityManager(store, store, store, store,
                               config={'chunk_pause_seconds': 0}, clock=lambda: NOW)


def _day(record, d):
    return next(r for r in record.days if r.date == d)


def test_create_initial_availability(store, manager):
    tour = store.add_tour("t1", tour_code="OM001", title="Osaka Walk", high_season_ref="hs1",
                          closed_periods=[ClosedPeriod(12, 29, 1, 3, "Year end")])
    store.season["hs1"] = {"name": "Peak", "jsonCode": '[{"from": "12-20", "to": "01-10"}]'}

    saved = asyncio.run(manager.create_initial_availability(tour))
    assert saved.availability_id == "t1 Availability"
    assert saved.tour_code == "OM001"
    assert saved.closed_periods == [ClosedPeriod(12, 29, 1, 3, "Year end")]
    assert saved.days[0].date == date(2024, 3, 1)
    assert saved.days[-1].date == date(2025, 8, 31)
    assert len(saved.days) == 549
    # Monday 2024-12-30 is closed, Wednesday 2024-12-25 is high season
    assert _day(saved, date(2024, 12, 30)).status == Status.NOT_OPERATING
    assert _day(saved, date(2024, 12, 25)).season == Season.HIGH

    assert store.logs[-1].execution_status == "Completed Successfully"
    assert store.logs[-1].affected_tour_names == ["Osaka Walk"]
    assert "Retrieved 1 high season periods from policy: Peak" in store.logs[-1].log_data


def test_create_refuses_to_overwrite(store, manager):
    tour = store.add_tour("t1")
    asyncio.run(manager.create_initial_availability(tour))
    with pytest.raises(AvailabilityExistsError):
        asyncio.run(manager.create_initial_availability(tour))
    assert store.logs[-1].execution_status == "Failed"
    assert len(store.records) == 1


def test_unknown_tour(manager, store):
    with pytest.raises(TourNotFoundError):
        asyncio.run(manager.generate_availability_for_tour("ghost"))
    outcome = asyncio.run(manager.run_tour("ghost"))
    assert not outcome.ok
    assert "ghost" in outcome.message
    assert store.logs[-1].execution_status == "Failed"


def test_manual_regeneration_keeps_bookings_and_closed_periods(store, manager):
    tour = store.add_tour("t1", closed_periods=[ClosedPeriod(5, 1, 5, 5, "Golden Week")])
    asyncio.run(manager.create_initial_availability(tour))
    asyncio.run(manager.update_day_status("t1", date(2024, 4, 2), Status.SOLDOUT))
    store.records["t1"].days[0].booked_participants = 4   # 2024-03-01

    # the tour's own closed periods changing later must not reach the record
    store.tours["t1"].closed_periods = [ClosedPeriod(4, 1, 4, 30, "Renovation")]
    outcome = asyncio.run(manager.generate_availability_for_tour("t1", RunContext(date(2024, 3, 20))))
    assert outcome.ok and outcome.operation == "regenerate"
    assert outcome.dates_count == 549

    record = store.records["t1"]
    assert record.closed_periods == [ClosedPeriod(5, 1, 5, 5, "Golden Week")]
    assert _day(record, date(2024, 4, 2)).status == Status.SOLDOUT       # Tuesday, manual
    assert _day(record, date(2024, 3, 1)).booked_participants == 4
    assert _day(record, date(2024, 4, 1)).status == Status.AVAILABLE     # Monday, not closed
    assert _day(record, date(2024, 5, 1)).status == Status.NOT_OPERATING  # Wednesday, Golden Week


def test_scheduled_trigger_rotates(store, manager):
    tour = store.add_tour("t1")
    asyncio.run(manager.create_initial_availability(tour, RunContext(date(2024, 2, 10))))
    assert store.records["t1"].days[0].date == date(2024, 2, 1)

    ctx = RunContext(date(2024, 3, 15), Trigger.SCHEDULED)
    outcome = asyncio.run(manager.generate_availability_for_tour("t1", ctx))
    assert outcome.operation == "rotate"
    days = store.records["t1"].days
    assert days[0].date == date(2024, 3, 1)
    assert days[-1].date == date(2025, 8, 31)
    assert store.logs[-1].state_type == "Monthly Data Update"
    assert store.logs[-1].operation_type == "Scheduled Run"


def test_missing_record_is_created_on_any_trigger(store, manager):
    store.add_tour("t1")
    outcome = asyncio.run(manager.generate_availability_for_tour("t1", manager.context(Trigger.SCHEDULED)))
    assert outcome.ok and outcome.operation == "create"
    assert len(store.records["t1"].days) == 549


def test_monthly_batch_isolates_failures(store):
    for i in range(12):
        store.add_tour(f"t{i:02d}", title=f"Tour {i}")
    store.add_tour("draft", publish_status="DRAFT")
    manager = AvailabilityManager(store, store, store, store,
                                  config={'chunk_size': 5, 'chunk_pause_seconds': 0}, clock=lambda: NOW)
    for t in list(store.tours.values()):
        asyncio.run(manager.create_initial_availability(t, RunContext(date(2024, 2, 1))))
    store.fail_update_for.add("t07")
    store.max_in_flight = 0

    result = asyncio.run(manager.execute_monthly_update())
    assert result.success
    assert result.tours_processed == 12
    assert result.tours_updated == 11
    assert result.tours_failed == 1
    assert result.failed_tours == [{'tour_id': 't07', 'message': 'disk full'}]
    assert "Tour 7" not in result.successful_tours
    assert store.max_in_flight <= 5
    assert store.records["draft"].days[0].date == date(2024, 2, 1)
    assert store.records["t00"].days[0].date == date(2024, 3, 1)
    assert store.logs[-1].execution_status == "Completed with errors"


def test_monthly_batch_without_tours(store, manager):
    result = asyncio.run(manager.execute_monthly_update())
    assert result.success
    assert result.tours_processed == 0
    assert result.message == "No active tours found for update"


def test_broken_log_sink_does_not_stop_generation(store, manager):
    store.fail_logs = True
    tour = store.add_tour("t1")
    saved = asyncio.run(manager.create_initial_availability(tour))
    assert len(saved.days) == 549


def test_malformed_season_policy_means_normal_season(store, manager):
    tour = store.add_tour("t1", high_season_ref="hs9")
    store.season["hs9"] = {"name": "Broken", "jsonCode": "{{{"}
    saved = asyncio.run(manager.create_initial_availability(tour))
    assert all(d.season == Season.NORMAL for d in saved.days)


def test_toggle_and_update_day_status(store, manager):
    tour = store.add_tour("t1")
    asyncio.run(manager.create_initial_availability(tour))
    monday = date(2024, 3, 18)
    reads = store.reads
    assert asyncio.run(manager.toggle_day_status("t1", monday)) == Status.SOLDOUT
    assert store.reads == reads + 1
    assert _day(store.records["t1"], monday).status == Status.SOLDOUT
    assert asyncio.run(manager.toggle_day_status("t1", monday)) == Status.AVAILABLE
    with pytest.raises(AvailabilityNotFoundError):
        asyncio.run(manager.update_day_status("nope", monday, Status.SOLDOUT))


def test_preview_dry_run_lists_sample(store, manager):
    for i in range(7):
        store.add_tour(f"t{i}", title=f"Tour {i}")
    result = asyncio.run(manager.preview_monthly_update())
    assert result.dry_run
    assert result.tours_processed == 5
    assert result.message == "Would update 5 tours (dry run)"
    assert store.records == {}


def test_full_cycle_on_sqlite(tmp_path):
    from tourcompass.data import Database, DatabaseStore

    db = Database(str(tmp_path / "tours.db"))
    db.save_tour(TourConfig(id="t1", title="Kyoto Night", url_name="kyoto-night",
                            run_days=["Friday"], high_season_ref="hs1",
                            closed_periods=[ClosedPeriod(1, 1, 1, 3, "New Year")]))
    db.save_season_policy("hs1", "Autumn", [{"from": "11-01", "to": "11-30"}])
    store = DatabaseStore(db)
    manager = AvailabilityManager(store, store, store, store,
                                  config={'chunk_pause_seconds': 0}, clock=lambda: NOW)

    outcome = asyncio.run(manager.generate_availability_for_tour("t1"))
    assert outcome.operation == "create"
    asyncio.run(manager.update_day_status("t1", date(2024, 3, 22), Status.SOLDOUT))

    result = asyncio.run(manager.execute_monthly_update(today=date(2024, 4, 1)))
    assert result.tours_updated == 1
    record = db.load_availability("t1")
    assert record.days[0].date == date(2024, 4, 1)
    assert record.days[-1].date == date(2025, 9, 30)
    assert _day(record, date(2024, 11, 1)).season == Season.HIGH
    assert _day(record, date(2025, 1, 3)).status == Status.NOT_OPERATING  # Friday, New Year
    assert [e.state_type for e in db.load_logs(limit=1)] == ["Monthly Data Update"]
    db.close()


def test_health_and_trends_read_the_audit_log(store, manager):
    tour = store.add_tour("t1")
    asyncio.run(manager.create_initial_availability(tour))
    with pytest.raises(AvailabilityExistsError):
        asyncio.run(manager.create_initial_availability(tour))

    health = asyncio.run(manager.system_health())
    assert health['total_logs'] == 2
    assert health['error_count'] == 1
    assert health['recent_activity']['last_24_hours'] == 2

    trends = asyncio.run(manager.performance_trends(days=7))
    assert trends['trends'] == [{'date': '2024-03-15', 'total_operations': 2, 'errors': 1, 'success_rate': 50.0}]


def test_clean_old_logs_uses_configured_retention(store):
    from tourcompass.models import LogEntry
    manager = AvailabilityManager(store, store, store, store,
                                  config={'log_retention_days': 10}, clock=lambda: NOW)
    store.logs = [
        LogEntry("Monthly Data Update", "Completed Successfully", processing_end=NOW - timedelta(days=20)),
        LogEntry("System Configuration", "Completed Successfully", processing_end=NOW - timedelta(days=20)),
        LogEntry("Monthly Data Update", "Completed Successfully", processing_end=NOW - timedelta(days=5)),
    ]
    result = asyncio.run(manager.clean_old_logs())
    assert result['success'] and result['deleted_count'] == 1
    assert result['cutoff'] == NOW - timedelta(days=10)
    assert [e.state_type for e in store.logs] == ["System Configuration", "Monthly Data Update", "Log Cleanup"]
