import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from dateutil import tz

from tourcompass.models import ClosedPeriod, LogEntry

JST = tz.gettz('Asia/Tokyo')

COMPLETED = 'Completed Successfully'
COMPLETED_WITH_ERRORS = 'Completed with errors'
FAILED = 'Failed'

_STATE_TYPE_LABELS = {
    'INITLOG': 'Initial Tour Setup',
    'UPDATELOG': 'Monthly Data Update',
    'INFOLOG': 'System Information',
    'ERRORLOG': 'System Error',
    'SYSTEMCONFIG': 'System Configuration',
    'SYSTEMMAINTENANCE': 'System Maintenance',
    'SYSTEMMONITORING': 'System Monitoring',
    'SYSTEMTESTING': 'System Test',
}

_INTERMEDIATE = ('PROGRESS', 'RUNNING', 'STARTING', 'PENDING', 'PROCESSING')
_MANUAL_MARKERS = ('testing page', 'availability manager', 'manual execution', 'button')
_SCHEDULED_MARKERS = ('scheduled', 'automatic', 'automated', '2200 jst', 'cron', 'background')


def _now() -> datetime:
    return datetime.now(tz.UTC)


def make_state_id(now: Optional[datetime] = None) -> str:
    """SYSTEM_LOG_YYYY.MM.DD_HH.MM, wall clock in JST."""
    now = now or _now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=tz.UTC)
    return now.astimezone(JST).strftime('SYSTEM_LOG_%Y.%m.%d_%H.%M')


def normalize_execution_status(raw: Optional[str]) -> Optional[str]:
    """Map a free-form status onto the three final states; None for in-flight states."""
    if not raw:
        return COMPLETED
    s = raw.upper()
    if any(k in s for k in _INTERMEDIATE):
        return None
    # "Completed with errors" / "Executed with errors" must not read as plain success
    if 'WITH ERRORS' in s or any(k in s for k in ('ALERT', 'WARNING', 'PARTIAL')):
        return COMPLETED_WITH_ERRORS
    if any(k in s for k in ('FAILED', 'ERROR', 'EXCEPTION')):
        return FAILED
    return COMPLETED


def determine_operation_type(entry: LogEntry) -> str:
    op = (entry.operation_type or '').upper()
    text = (entry.log_data or '').lower()
    state = (entry.state_type or '').lower()

    if any(m in text for m in _MANUAL_MARKERS):
        return 'Manual Run'
    if 'SCHEDULED' in op or op.startswith('LOG_CLEANUP'):
        return 'Scheduled Run'
    if 'MONTHLY' in op or 'monthly data update' in state:
        # monthly updates without a manual marker come from the scheduler
        return 'Scheduled Run'
    if any(m in text for m in _SCHEDULED_MARKERS):
        return 'Scheduled Run'
    if 'MAINTENANCE' in op or 'CLEANUP' in op or 'maintenance' in state or 'cleanup' in state:
        return 'Scheduled Run'
    return 'Manual Run'


def format_state_type(raw: Optional[str]) -> str:
    if not raw:
        return 'System Operation'
    return _STATE_TYPE_LABELS.get(raw, raw)


def format_closed_periods(periods: Sequence[ClosedPeriod]) -> Dict:
    """Human readable summary of a tour's closed periods for log text."""
    if not periods:
        return {'count': 0, 'summary': 'None configured', 'details': []}
    details = []
    for p in periods:
        start = f"{p.start_month:02d}-{p.start_day:02d}"
        end = f"{p.end_month:02d}-{p.end_day:02d}"
        if start == end:
            details.append(f"{start} ({p.reason})")
        else:
            details.append(f"{start} to {end} ({p.reason})")
    return {
        'count': len(periods),
        'summary': f"{len(periods)} periods configured",
        'details': details,
    }


def closed_period_lines(periods: Sequence[ClosedPeriod]) -> List[str]:
    info = format_closed_periods(periods)
    return [f"Closed Periods: {info['summary']}"] + [f"  - {d}" for d in info['details']]


def prepare_entry(entry: LogEntry, now: Optional[datetime] = None) -> Optional[LogEntry]:
    """Normalized copy ready for storage, or None when the entry should not be written."""
    status = normalize_execution_status(entry.execution_status)
    if status is None:
        return None
    now = now or _now()
    return replace(
        entry,
        state_id=entry.state_id or make_state_id(now),
        state_type=format_state_type(entry.state_type),
        operation_type=determine_operation_type(entry),
        execution_status=status,
        processing_start=entry.processing_start or now,
        processing_end=entry.processing_end or now,
        affected_tour_names=list(entry.affected_tour_names or []),
    )


async def log_system_state(sink, entry: LogEntry) -> Optional[LogEntry]:
    """Write one audit entry. Never raises: a broken sink must not stop availability work."""
    try:
        clean = prepare_entry(entry)
        if clean is None:
            return None
        saved = await sink.insert_log(clean)
        if clean.execution_status == FAILED:
            logging.error(f"SYSTEM ERROR: {clean.state_type}: {clean.error_details}")
        return saved
    except Exception:  # noqa: BLE001
        logging.exception("Error logging system state")
        return None


async def purge_old_logs(sink, retention_days: int = 90, now: Optional[datetime] = None) -> Dict:
    """Drop audit entries older than the retention period and record the cleanup itself."""
    now = now or _now()
    cutoff = now - timedelta(days=retention_days)
    try:
        deleted = await sink.delete_logs_before(cutoff)
    except Exception as e:
        logging.exception("Log cleanup failed")
        await log_system_state(sink, LogEntry(
            state_type='Log Cleanup', operation_type='LOG_CLEANUP_SCHEDULED',
            execution_status='FAILED', processing_start=now, processing_end=now,
            log_data=f"Log cleanup operation failed. Retention period: {retention_days} days.",
            error_details=str(e),
        ))
        return {'success': False, 'deleted_count': 0, 'error': str(e)}

    await log_system_state(sink, LogEntry(
        state_type='Log Cleanup', operation_type='LOG_CLEANUP_SCHEDULED',
        execution_status='SUCCESS', processing_start=now, processing_end=now,
        log_data=(f"Log cleanup operation completed. Deleted {deleted} old log entries "
                  f"(retention period: {retention_days} days). Cutoff date: {cutoff.isoformat()}."),
    ))
    return {'success': True, 'deleted_count': deleted, 'cutoff': cutoff}
