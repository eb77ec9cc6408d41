"""Human-readable sizes and durations for reports and CLI output."""

from typing import Optional


SIZE_UNITS = ['B', 'KB', 'MB', 'GB', 'TB', 'PB']


def format_bytes(value: Optional[float]) -> str:
    """
    Format a byte count (1024-based).

    Args:
        value: Number of bytes, or None

    Returns:
        String like '1.5 GB', or '' for None
    """
    if value is None:
        return ''

    size = float(value)
    sign = '-' if size < 0 else ''
    size = abs(size)

    for unit in SIZE_UNITS:
        if size < 1024 or unit == SIZE_UNITS[-1]:
            break
        size /= 1024

    if unit == 'B':
        return f"{sign}{int(size)} B"
    return f"{sign}{size:.1f} {unit}"


def format_duration(seconds: Optional[float]) -> str:
    """
    Format a duration using its two largest units.

    Args:
        seconds: Duration in seconds, or None

    Returns:
        String like '2h 5m' or '45s', or '' for None
    """
    if seconds is None:
        return ''

    remaining = max(0, int(round(seconds)))
    if remaining == 0:
        return '0s'

    parts = []
    for unit, size in (('d', 86400), ('h', 3600), ('m', 60), ('s', 1)):
        amount, remaining = divmod(remaining, size)
        if amount:
            parts.append(f"{amount}{unit}")
        if len(parts) == 2:
            break

    return ' '.join(parts)


def format_days(days: float) -> str:
    """Format a fractional number of days ('under 1 day', '1 day', '3.5 days')."""
    if days < 1:
        return 'under 1 day'
    if days < 2:
        return '1 day'
    return f"{days:.1f} days"
