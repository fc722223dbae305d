"""Helpers for turning Azure DevOps payloads into tool output."""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Azure DevOps emits up to seven fractional digits, which datetime cannot parse
_ADO_DATETIME = re.compile(
    r'^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(?P<frac>\d+))?(?P<tz>Z|[+-]\d{2}:\d{2})?$'
)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp or plain date into an aware datetime.

    Naive values are taken as UTC.

    Raises:
        ValueError: If the string is not a recognisable date or timestamp
    """
    if not value:
        return None

    value = value.strip()
    match = _ADO_DATETIME.match(value)
    if match:
        fraction = (match.group('frac') or '')[:6].ljust(6, '0')
        tz = match.group('tz') or '+00:00'
        if tz == 'Z':
            tz = '+00:00'
        return datetime.fromisoformat(f'{match.group("base")}.{fraction}{tz}')

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_duration(start_time: Optional[str], finish_time: Optional[str]) -> str:
    start = parse_datetime(start_time)
    if start is None:
        return 'Not started'
    finish = parse_datetime(finish_time)
    if finish is None:
        return 'In progress'

    seconds = int((finish - start).total_seconds())
    minutes, seconds = divmod(seconds, 60)
    if minutes > 60:
        hours, minutes = divmod(minutes, 60)
        return f'{hours}h {minutes}m'
    return f'{minutes}m {seconds}s'


def pascal_case(value: Optional[str]) -> str:
    """Map REST enum strings such as ``inProgress`` onto ``InProgress``."""
    if not value:
        return 'Unknown'
    return value[:1].upper() + value[1:]


def log_reference(record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    log = record.get('log')
    if not log:
        return None
    return {'id': log.get('id'), 'type': log.get('type'), 'url': log.get('url')}
