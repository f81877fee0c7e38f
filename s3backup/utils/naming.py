"""
Naming helpers shared by every backup stage.

Archive names follow {name}_{YYYY-MM-DD_HH-MM-SS}{ext}; restore tooling
depends on this exact layout.
"""

import logging
import re
from datetime import datetime
from typing import Iterable, List, Optional


logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'

_TIMESTAMP_RE = re.compile(r'_(\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2})')

# Characters with a meaning to a shell or a glob bracket expression
_UNSAFE_CHARS_RE = re.compile(r'[;&|`$(){}\[\]<>"\'\\]')


def generate_timestamp(dt: Optional[datetime] = None) -> str:
    """
    Format a run timestamp.

    Args:
        dt: Moment to format (default: now, local time)

    Returns:
        Timestamp string, e.g. 2024-01-15_02-00-00
    """
    if dt is None:
        dt = datetime.now()
    return dt.strftime(TIMESTAMP_FORMAT)


def timestamped_filename(base_name: str, extension: str, timestamp: str) -> str:
    """Build {base_name}_{timestamp}{extension}. The extension keeps its dot."""
    return f"{base_name}_{timestamp}{extension}"


def parse_timestamp_from_filename(filename: str) -> Optional[datetime]:
    """
    Recover the run timestamp embedded in an archive name.

    Returns:
        Parsed datetime, or None if the name carries no timestamp
    """
    match = _TIMESTAMP_RE.search(filename)
    if not match:
        return None

    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None


def sanitize_string(value):
    """Strip shell metacharacters. Non-string values pass through untouched."""
    if not isinstance(value, str):
        return value
    return _UNSAFE_CHARS_RE.sub('', value)


def sanitize_exclude_patterns(patterns: Iterable) -> List[str]:
    """
    Clean exclusion patterns before they reach the archiver.

    Unsafe characters are removed rather than the pattern being rejected,
    so "logs/[0-9]*" becomes "logs/0-9*". Non-strings and patterns left
    empty are dropped.
    """
    cleaned = []
    for pattern in patterns or []:
        if not isinstance(pattern, str):
            logger.warning(f"Invalid exclusion pattern type: {type(pattern).__name__}")
            continue
        safe = sanitize_string(pattern)
        if safe:
            cleaned.append(safe)
    return cleaned
