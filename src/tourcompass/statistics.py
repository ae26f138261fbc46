from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Sequence

from tourcompass.models import LogEntry


def _is_error(entry: LogEntry) -> bool:
    status = entry.execution_status or ''
    return 'Failed' in status or 'errors' in status


def system_statistics(entries: Sequence[LogEntry], now: datetime) -> Dict:
    """
    Figures over all SystemState entries:
      total_logs, error_count, successful_operations, success_rate (%),
      recent_activity (last 24h) and a health verdict.
    """
    total = len(entries)
    errors = sum(1 for e in entries if _is_error(e))
    since = now - timedelta(hours=24)
    recent = [e for e in entries if e.processing_end and e.processing_end > since]
    recent_errors = sum(1 for e in recent if _is_error(e))

    successful = total - errors
    success_rate = round(successful / total * 100, 2) if total else 100.0

    health = 'HEALTHY'
    if recent_errors > 5:
        health = 'CRITICAL'
    elif recent_errors > 2 or errors > total * 0.1:
        health = 'WARNING'

    return {
        'total_logs': total,
        'error_count': errors,
        'successful_operations': successful,
        'success_rate': success_rate,
        'recent_activity': {'last_24_hours': len(recent), 'recent_errors': recent_errors},
        'system_health': health,
        'last_updated': now,
    }


def health_check(entries: Sequence[LogEntry], now: datetime) -> Dict:
    stats = system_statistics(entries, now)
    total = stats['total_logs']
    error_rate = round(stats['error_count'] / total * 100, 2) if total else 0.0

    recommendations: List[str] = []
    if stats['system_health'] == 'CRITICAL':
        recommendations.append('Immediate attention required - high error rate detected')
    elif stats['system_health'] == 'WARNING':
        recommendations.append('Monitor system closely - elevated error rate')
    else:
        recommendations.append('System operating normally')
    if stats['recent_activity']['last_24_hours'] == 0:
        recommendations.append('No recent activity detected - system may be idle')

    return dict(
        stats,
        overall_health=stats['system_health'],
        indicators={
            'error_rate': error_rate,
            'recent_activity_level': 'ACTIVE' if stats['recent_activity']['last_24_hours'] else 'QUIET',
        },
        recommendations=recommendations,
    )


def performance_trends(entries: Sequence[LogEntry], days: int, now: datetime) -> Dict:
    """Operations, errors and success rate per day over the last `days` days."""
    since = now - timedelta(days=days)
    per_day = defaultdict(lambda: {'operations': 0, 'errors': 0})
    for e in entries:
        if not e.processing_end or e.processing_end <= since:
            continue
        bucket = per_day[e.processing_end.date().isoformat()]
        bucket['operations'] += 1
        if _is_error(e):
            bucket['errors'] += 1

    trends = []
    for day in sorted(per_day):
        ops, errs = per_day[day]['operations'], per_day[day]['errors']
        trends.append({
            'date': day,
            'total_operations': ops,
            'errors': errs,
            'success_rate': round((ops - errs) / ops * 100, 2),
        })

    avg_ops = round(sum(t['total_operations'] for t in trends) / len(trends), 2) if trends else 0.0
    avg_rate = round(sum(t['success_rate'] for t in trends) / len(trends), 2) if trends else 100.0
    return {
        'trends': trends,
        'summary': {
            'total_days': days,
            'average_operations_per_day': avg_ops,
            'average_success_rate': avg_rate,
        },
    }
