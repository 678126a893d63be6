"""
Utility functions for formatting, hashing, and date handling.
"""

import hashlib
from datetime import datetime, date
from typing import List, Optional, Any


def parse_date(value: Any) -> Optional[date]:
    """
    Parse a date from a date/datetime object or an ISO / DD.MM.YYYY string.

    Returns None when the value cannot be parsed.
    """
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        return value.date()

    if isinstance(value, date):
        return value

    str_value = str(value).strip()

    try:
        return datetime.fromisoformat(str_value.replace('Z', '+00:00')).date()
    except ValueError:
        pass

    for fmt in ('%Y-%m-%d', '%d.%m.%Y'):
        try:
            return datetime.strptime(str_value, fmt).date()
        except ValueError:
            continue

    return None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO datetime (or date) string into a naive UTC datetime."""
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        return value.replace(tzinfo=None)

    try:
        parsed = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
        return parsed.replace(tzinfo=None)
    except ValueError:
        parsed_date = parse_date(value)
        if parsed_date is None:
            return None
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day)


def format_date(date_value: Any) -> str:
    """
    Format a date value as DD.MM.YYYY, the form used in SK/CZ legal documents.

    Unparseable values are returned unchanged as strings.
    """
    if date_value is None:
        return ''

    parsed = parse_date(date_value)
    if parsed is None:
        return str(date_value)

    return parsed.strftime('%d.%m.%Y')


def age_on(birth_date: Any, reference: Optional[date] = None) -> Optional[int]:
    """Age in whole years on the reference date (today by default)."""
    born = parse_date(birth_date)
    if born is None:
        return None

    reference = reference or datetime.utcnow().date()
    years = reference.year - born.year
    if (reference.month, reference.day) < (born.month, born.day):
        years -= 1
    return years


def is_minor(birth_date: Any, reference: Optional[date] = None) -> bool:
    age = age_on(birth_date, reference)
    return age is not None and age < 18


def calculate_sha256(data: bytes) -> str:
    """
    Calculate SHA256 hash of data.

    Args:
        data: Bytes to hash

    Returns:
        Hexadecimal hash string
    """
    return hashlib.sha256(data).hexdigest()


def short_hash(full_hash: str, length: int = 16) -> str:
    """Shortened hash for display."""
    if not full_hash:
        return ''
    return full_hash[:length]


def format_file_size(size: int) -> str:
    """Human readable file size (e.g. '1.5 MB')."""
    value = float(size or 0)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if value < 1024 or unit == 'GB':
            if unit == 'B':
                return f'{int(value)} B'
            return f'{value:.1f} {unit}'
        value /= 1024
    return f'{value:.1f} GB'


def chunk_list(lst: List[Any], chunk_size: int) -> List[List[Any]]:
    """
    Split a list into chunks of specified size.

    Args:
        lst: List to chunk
        chunk_size: Size of each chunk

    Returns:
        List of chunks
    """
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def mask_email(email: str) -> str:
    """Mask an email address for public output (j***@example.com)."""
    if not email or '@' not in email:
        return ''
    local, domain = email.split('@', 1)
    return f'{local[:1]}***@{domain}'
