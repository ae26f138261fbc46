import asyncio
from datetime import datetime, timedelta

import pytest
from dateutil import tz

from tourcompass.data import Database, DatabaseStore
from tourcompass.models import ClosedPeriod, LogEntry
from tourcompass.statelog import (
    determine_operation_type, format_closed_periods, format_state_type, log_system_state,
    make_state_id, normalize_execution_status, prepare_entry, purge_old_logs,
)


class BrokenSink:
    async def insert_log(self, entry):
        raise RuntimeError("log collection unavailable")


class ListSink:
    def __init__(self):
        self.entries = []

    async def insert_log(self, entry):
        self.entries.append(entry)
        return entry


@pytest.mark.parametrize("raw,expected", [
    (None, "Completed Successfully"),
    ("Execution Completed", "Completed Successfully"),
    ("SUCCESS", "Completed Successfully"),
    ("Completed with errors", "Completed with errors"),
    ("WARNING", "Completed with errors"),
    ("Failed", "Failed"),
    ("Executed with errors", "Completed with errors"),
    ("EXCEPTION", "Failed"),
    ("Running", None),
    ("in progress", None),
])
def test_normalize_execution_status(raw, expected):
    assert normalize_execution_status(raw) == expected


def test_operation_type():
    scheduled = LogEntry("Monthly Data Update", operation_type="MONTHLYAVAILABILITYUPDATE",
                         log_data="Starting - scheduled automatic execution at 2200 JST")
    manual = LogEntry("Monthly Data Update", operation_type="MONTHLYAVAILABILITYUPDATE",
                      log_data="manual execution triggered from availability manager")
    regen = LogEntry("Selected Tour Date Regeneration", log_data="Starting manual regeneration")
    cleanup = LogEntry("Log Cleanup", operation_type="LOG_CLEANUP_SCHEDULED")
    assert determine_operation_type(scheduled) == "Scheduled Run"
    assert determine_operation_type(manual) == "Manual Run"
    assert determine_operation_type(regen) == "Manual Run"
    assert determine_operation_type(cleanup) == "Scheduled Run"


def test_state_id_uses_jst():
    now = datetime(2024, 3, 31, 15, 30, tzinfo=tz.UTC)
    assert make_state_id(now) == "SYSTEM_LOG_2024.04.01_00.30"


def test_state_type_labels():
    assert format_state_type("UPDATELOG") == "Monthly Data Update"
    assert format_state_type("Something Else") == "Something Else"
    assert format_state_type("") == "System Operation"


def test_format_closed_periods():
    info = format_closed_periods([ClosedPeriod(12, 29, 1, 3, "Year end"), ClosedPeriod(5, 3, 5, 3, "Festival")])
    assert info["count"] == 2
    assert info["details"] == ["12-29 to 01-03 (Year end)", "05-03 (Festival)"]
    assert format_closed_periods([])["summary"] == "None configured"


def test_prepare_entry_fills_defaults():
    now = datetime(2024, 1, 1, tzinfo=tz.UTC)
    entry = prepare_entry(LogEntry("INITLOG", "OK"), now)
    assert entry.state_type == "Initial Tour Setup"
    assert entry.execution_status == "Completed Successfully"
    assert entry.processing_start == entry.processing_end == now
    assert entry.state_id == "SYSTEM_LOG_2024.01.01_09.00"
    assert prepare_entry(LogEntry("X", "STARTING"), now) is None


def test_log_system_state_never_raises():
    assert asyncio.run(log_system_state(BrokenSink(), LogEntry("System Test", "SUCCESS"))) is None


def test_intermediate_entries_are_not_written():
    sink = ListSink()
    assert asyncio.run(log_system_state(sink, LogEntry("System Test", "PROCESSING"))) is None
    assert sink.entries == []
    asyncio.run(log_system_state(sink, LogEntry("System Test", "Failed", error_details="boom")))
    assert sink.entries[0].execution_status == "Failed"


def test_purge_old_logs(tmp_path):
    db = Database(str(tmp_path / "logs.db"))
    now = datetime(2024, 6, 1, tzinfo=tz.UTC)
    old = now - timedelta(days=200)
    db.save_log(LogEntry("Monthly Data Update", "Completed Successfully", processing_end=old))
    db.save_log(LogEntry("Monthly Data Update", "Completed Successfully", processing_end=now))

    result = asyncio.run(purge_old_logs(DatabaseStore(db), retention_days=90, now=now))
    assert result["success"] and result["deleted_count"] == 1
    states = [e.state_type for e in db.load_logs()]
    assert states.count("Log Cleanup") == 1
    assert len(states) == 2
    db.close()
