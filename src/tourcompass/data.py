import json
import logging
import os
import sqlite3
from datetime import date, datetime
from typing import Dict, List, Optional

from dateutil import tz
from dateutil.parser import isoparse

from tourcompass.config import load_config
from tourcompass.models import (
    AvailabilityRecord, DayRecord, LogEntry, Season, Status, TourConfig,
)
from tourcompass.policies import normalize_closed_periods
from tourcompass.statelog import JST


def _stored_date(text: str) -> date:
    # older tooling wrote JST midnight as a UTC timestamp ("2024-02-29T15:00:00.000Z" is 03-01)
    value = isoparse(text)
    if value.tzinfo is not None:
        value = value.astimezone(JST)
    return value.date()


def day_from_dict(raw: Dict) -> DayRecord:
    return DayRecord(
        date=_stored_date(str(raw['date'])),
        status=Status(raw.get('status') or Status.NOT_OPERATING.value),
        booked_participants=int(raw.get('bookedParticipants') or 0),
        season=Season(raw.get('season') or Season.NORMAL.value),
        time_slots=raw.get('timeSlots'),
    )


def _dt_to_text(value: Optional[datetime]) -> Optional[str]:
    # stored as UTC so that text comparison in SQL orders correctly
    if not value:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz.UTC)
    return value.astimezone(tz.UTC).isoformat()


def _dt_from_text(text: Optional[str]) -> Optional[datetime]:
    if not text:
        return None
    value = isoparse(text)
    return value if value.tzinfo else value.replace(tzinfo=tz.UTC)


class Database:
    def __init__(self, db_path: str = None):
        try:
            self.db_path = db_path or load_config()['db_path']
            if self.db_path != ':memory:':
                os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
            self.conn = sqlite3.connect(self.db_path)
            self.conn.row_factory = sqlite3.Row
            self._ensure_tables()
        except Exception as e:
            logging.error(f"Database connection error: {e}")
            raise

    def _ensure_tables(self):
        cur = self.conn.cursor()
        cur.execute("""
        CREATE TABLE IF NOT EXISTS tours (
          id TEXT PRIMARY KEY,
          tour_code TEXT,
          title TEXT NOT NULL DEFAULT '',
          url_name TEXT NOT NULL DEFAULT '',
          run_days TEXT NOT NULL DEFAULT '[]',
          high_season_ref TEXT,
          cancellation_policy_ref TEXT,
          closed_periods TEXT NOT NULL DEFAULT '[]',
          publish_status TEXT NOT NULL DEFAULT 'PUBLISHED'
        )""")

        # one availability record per tour; the day array is stored as JSON
        cur.execute("""
        CREATE TABLE IF NOT EXISTS availability (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          tour_ref TEXT NOT NULL UNIQUE,
          availability_id TEXT NOT NULL DEFAULT '',
          tour_code TEXT,
          notes TEXT NOT NULL DEFAULT '',
          closed_periods TEXT NOT NULL DEFAULT '[]',
          availability_data TEXT NOT NULL DEFAULT '[]'
        )""")

        cur.execute("""
        CREATE TABLE IF NOT EXISTS season_policies (
          id TEXT PRIMARY KEY,
          name TEXT,
          json_code TEXT
        )""")

        cur.execute("""
        CREATE TABLE IF NOT EXISTS cancellation_policies (
          id TEXT PRIMARY KEY,
          policy_name TEXT,
          payload TEXT NOT NULL DEFAULT '{}'
        )""")

        cur.execute("""
        CREATE TABLE IF NOT EXISTS system_state (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          state_id TEXT,
          state_type TEXT NOT NULL,
          operation_type TEXT,
          execution_status TEXT NOT NULL,
          processing_start TEXT,
          processing_end TEXT,
          log_data TEXT,
          error_details TEXT,
          affected_tour_count INTEGER NOT NULL DEFAULT 0,
          affected_tour_names TEXT NOT NULL DEFAULT '[]',
          notes TEXT
        )""")

        self.conn.commit()

    # Tours
    def save_tour(self, tour: TourConfig):
        self.conn.execute(
            "REPLACE INTO tours (id, tour_code, title, url_name, run_days, high_season_ref,"
            " cancellation_policy_ref, closed_periods, publish_status) VALUES (?,?,?,?,?,?,?,?,?)",
            (tour.id, tour.tour_code, tour.title, tour.url_name, json.dumps(list(tour.run_days)),
             tour.high_season_ref, tour.cancellation_policy_ref,
             json.dumps([cp.to_dict() for cp in tour.closed_periods]), tour.publish_status)
        )
        self.conn.commit()

    def _tour_from_row(self, row) -> TourConfig:
        return TourConfig(
            id=row['id'],
            tour_code=row['tour_code'],
            title=row['title'],
            url_name=row['url_name'],
            run_days=json.loads(row['run_days'] or '[]'),
            high_season_ref=row['high_season_ref'],
            cancellation_policy_ref=row['cancellation_policy_ref'],
            closed_periods=normalize_closed_periods(row['closed_periods']),
            publish_status=row['publish_status'],
        )

    def get_tour(self, tour_id: str) -> Optional[TourConfig]:
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM tours WHERE id=?", (tour_id,))
        row = cur.fetchone()
        return self._tour_from_row(row) if row else None

    def load_published_tours(self, limit: int = None) -> List[TourConfig]:
        query = "SELECT * FROM tours WHERE publish_status='PUBLISHED' ORDER BY id"
        params = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        return [self._tour_from_row(row) for row in self.conn.execute(query, params)]

    # Policies
    def save_season_policy(self, ref: str, name: str, json_code):
        """json_code is stored as given: list (encoded here) or an already encoded string."""
        text = json_code if isinstance(json_code, str) else json.dumps(json_code)
        self.conn.execute(
            "REPLACE INTO season_policies (id, name, json_code) VALUES (?,?,?)", (ref, name, text)
        )
        self.conn.commit()

    def get_season_policy(self, ref: str) -> Optional[Dict]:
        row = self.conn.execute("SELECT * FROM season_policies WHERE id=?", (ref,)).fetchone()
        if not row:
            return None
        return {'id': row['id'], 'name': row['name'], 'jsonCode': row['json_code']}

    def save_cancellation_policy(self, ref: str, policy_name: str, payload: Dict = None):
        self.conn.execute(
            "REPLACE INTO cancellation_policies (id, policy_name, payload) VALUES (?,?,?)",
            (ref, policy_name, json.dumps(payload or {}))
        )
        self.conn.commit()

    def get_cancellation_policy(self, ref: str) -> Optional[Dict]:
        row = self.conn.execute("SELECT * FROM cancellation_policies WHERE id=?", (ref,)).fetchone()
        if not row:
            return None
        record = json.loads(row['payload'] or '{}')
        record.update({'id': row['id'], 'policyName': row['policy_name']})
        return record

    # Availability
    def load_availability(self, tour_ref: str) -> Optional[AvailabilityRecord]:
        row = self.conn.execute("SELECT * FROM availability WHERE tour_ref=?", (tour_ref,)).fetchone()
        if not row:
            return None
        return AvailabilityRecord(
            id=row['id'],
            tour_ref=row['tour_ref'],
            availability_id=row['availability_id'],
            tour_code=row['tour_code'],
            notes=row['notes'],
            closed_periods=normalize_closed_periods(row['closed_periods']),
            days=[day_from_dict(d) for d in json.loads(row['availability_data'] or '[]')],
        )

    def _record_columns(self, rec: AvailabilityRecord):
        return (
            rec.availability_id, rec.tour_code, rec.notes,
            json.dumps([cp.to_dict() for cp in rec.closed_periods]),
            json.dumps([d.to_dict() for d in rec.days]),
        )

    def insert_availability(self, rec: AvailabilityRecord) -> AvailabilityRecord:
        cur = self.conn.cursor()
        cur.execute(
            "INSERT INTO availability (tour_ref, availability_id, tour_code, notes, closed_periods,"
            " availability_data) VALUES (?,?,?,?,?,?)",
            (rec.tour_ref,) + self._record_columns(rec)
        )
        self.conn.commit()
        rec.id = cur.lastrowid
        return rec

    def update_availability(self, rec: AvailabilityRecord) -> AvailabilityRecord:
        if rec.id is None:
            raise ValueError("update_availability needs a stored record")
        cur = self.conn.cursor()
        cur.execute(
            "UPDATE availability SET availability_id=?, tour_code=?, notes=?, closed_periods=?,"
            " availability_data=? WHERE id=?",
            self._record_columns(rec) + (rec.id,)
        )
        if cur.rowcount == 0:
            raise LookupError(f"No availability record with id={rec.id}")
        self.conn.commit()
        return rec

    # SystemState
    def save_log(self, entry: LogEntry) -> LogEntry:
        cur = self.conn.cursor()
        cur.execute(
            "INSERT INTO system_state (state_id, state_type, operation_type, execution_status,"
            " processing_start, processing_end, log_data, error_details, affected_tour_count,"
            " affected_tour_names, notes) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
            (entry.state_id, entry.state_type, entry.operation_type, entry.execution_status,
             _dt_to_text(entry.processing_start), _dt_to_text(entry.processing_end),
             entry.log_data, entry.error_details, entry.affected_tour_count,
             json.dumps(entry.affected_tour_names), entry.notes)
        )
        self.conn.commit()
        entry.id = cur.lastrowid
        return entry

    def load_logs(self, since: datetime = None, state_type: str = None, limit: int = None) -> List[LogEntry]:
        """Newest first."""
        query = "SELECT * FROM system_state WHERE 1=1"
        params = []
        if since is not None:
            query += " AND processing_end > ?"
            params.append(_dt_to_text(since))
        if state_type:
            query += " AND state_type = ?"
            params.append(state_type)
        query += " ORDER BY processing_end DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        out = []
        for row in self.conn.execute(query, params):
            out.append(LogEntry(
                id=row['id'],
                state_id=row['state_id'],
                state_type=row['state_type'],
                operation_type=row['operation_type'] or '',
                execution_status=row['execution_status'],
                processing_start=_dt_from_text(row['processing_start']),
                processing_end=_dt_from_text(row['processing_end']),
                log_data=row['log_data'] or '',
                error_details=row['error_details'] or '',
                affected_tour_count=row['affected_tour_count'],
                affected_tour_names=json.loads(row['affected_tour_names'] or '[]'),
                notes=row['notes'] or '',
            ))
        return out

    def clean_old_logs(self, cutoff: datetime) -> int:
        """Delete entries that ended before cutoff; configuration entries are kept."""
        cur = self.conn.cursor()
        cur.execute(
            "DELETE FROM system_state WHERE processing_end < ? AND state_type != 'System Configuration'",
            (_dt_to_text(cutoff),)
        )
        self.conn.commit()
        return cur.rowcount

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None


class DatabaseStore:
    """
    Async face of a Database for the engine's collaborator contracts.

    Single-connection adapter: every call runs the blocking sqlite query on the
    event loop, so the tours of a chunk reach the database one after another.
    """

    def __init__(self, db: Database):
        self.db = db

    async def get_tour(self, tour_id):
        return self.db.get_tour(tour_id)

    async def find_published_tours(self, limit=None):
        return self.db.load_published_tours(limit)

    async def find_availability(self, tour_ref):
        return self.db.load_availability(tour_ref)

    async def insert_availability(self, record):
        return self.db.insert_availability(record)

    async def update_availability(self, record):
        return self.db.update_availability(record)

    async def get_season_policy(self, ref):
        return self.db.get_season_policy(ref)

    async def get_cancellation_policy(self, ref):
        return self.db.get_cancellation_policy(ref)

    async def insert_log(self, entry):
        return self.db.save_log(entry)

    async def load_logs(self, since=None, state_type=None, limit=None):
        return self.db.load_logs(since, state_type, limit)

    async def delete_logs_before(self, cutoff):
        return self.db.clean_old_logs(cutoff)
