import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from tourcompass.models import ClosedPeriod, SeasonPolicy, SeasonWindow


def _ensure_list(payload: Any) -> List:
    """Stored payloads arrive either already decoded or as a JSON string."""
    if not payload:
        return []
    if isinstance(payload, list):
        return payload
    if isinstance(payload, str):
        try:
            decoded = json.loads(payload)
        except ValueError as e:
            logging.warning(f"Unparseable policy payload ignored: {e}")
            return []
        return decoded if isinstance(decoded, list) else []
    return []


def _valid_month_day(month: Any, day: Any) -> bool:
    return isinstance(month, int) and isinstance(day, int) and 1 <= month <= 12 and 1 <= day <= 31


def parse_month_day(text: str) -> Tuple[int, int]:
    """'12-24' -> (12, 24)"""
    month, day = (int(x) for x in text.strip().split('-', 1))
    if not _valid_month_day(month, day):
        raise ValueError(f"Not a month-day: {text!r}")
    return month, day


def _season_window(item: Any) -> Optional[SeasonWindow]:
    if not isinstance(item, dict):
        return None
    try:
        if 'from' in item and 'to' in item:
            fm, fd = parse_month_day(str(item['from']))
            tm, td = parse_month_day(str(item['to']))
        else:
            fm, fd = int(item['fromMonth']), int(item['fromDay'])
            tm, td = int(item['toMonth']), int(item['toDay'])
    except (KeyError, TypeError, ValueError):
        return None
    if not (_valid_month_day(fm, fd) and _valid_month_day(tm, td)):
        return None
    return SeasonWindow(fm, fd, tm, td)


def normalize_season_windows(payload: Any) -> List[SeasonWindow]:
    """
    Canonical window list from a stored season payload. Accepts a list or a
    JSON string holding one; entries either as {"from": "MM-DD", "to": "MM-DD"}
    or {"fromMonth", "fromDay", "toMonth", "toDay"}. Broken entries are skipped.
    """
    windows = []
    for item in _ensure_list(payload):
        w = _season_window(item)
        if w is None:
            logging.warning(f"Skipping malformed season window: {item!r}")
            continue
        windows.append(w)
    return windows


def normalize_closed_periods(payload: Any) -> List[ClosedPeriod]:
    out = []
    for item in _ensure_list(payload):
        if isinstance(item, ClosedPeriod):
            out.append(item)
            continue
        try:
            cp = ClosedPeriod(
                int(item['startMonth']), int(item['startDay']),
                int(item['endMonth']), int(item['endDay']),
                str(item.get('reason') or ''),
            )
        except (KeyError, TypeError, ValueError, AttributeError):
            logging.warning(f"Skipping malformed closed period: {item!r}")
            continue
        if not (_valid_month_day(cp.start_month, cp.start_day) and _valid_month_day(cp.end_month, cp.end_day)):
            logging.warning(f"Skipping closed period out of range: {item!r}")
            continue
        out.append(cp)
    return out


async def resolve_season_windows(store, season_policy_ref: Optional[str]) -> SeasonPolicy:
    """Season windows + policy name for a tour; empty when unset, missing or unreadable."""
    if not season_policy_ref:
        return SeasonPolicy()
    record = await store.get_season_policy(season_policy_ref)
    if not record:
        logging.info(f"Season policy {season_policy_ref} not found, normal season only")
        return SeasonPolicy()
    return SeasonPolicy(
        windows=normalize_season_windows(record.get('jsonCode')),
        policy_name=record.get('name'),
    )


async def resolve_cancellation_policy(store, policy_ref: Optional[str]) -> Optional[Dict]:
    """Pass-through lookup; the engine only reports the policy name."""
    if not policy_ref:
        return None
    record = await store.get_cancellation_policy(policy_ref)
    if not record:
        logging.info(f"No cancellation policy found for ID: {policy_ref}")
        return None
    return record
