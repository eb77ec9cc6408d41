"""
Retention selection for remote backups.

Pure functions only: given a listing, decide which archives fall outside the
retention policy. Deleting them is the caller's job.
"""

from typing import List, Sequence

from .types import RemoteObject


SECONDS_PER_DAY = 86400


def select_for_deletion(objects: Sequence[RemoteObject], retain_by_number: int,
                        retain_by_age_days: int, now: int) -> List[RemoteObject]:
    """
    Select remote archives that should be deleted.

    Objects are ordered newest first (ties keep their listing order). The
    newest `retain_by_number` are kept; of the rest, anything no older than
    `retain_by_age_days` days is kept as well. A value of 0 keeps nothing
    under that rule.

    Args:
        objects: Remote listing
        retain_by_number: Number of newest archives to always keep
        retain_by_age_days: Keep archives younger than this many days
        now: Current epoch seconds

    Returns:
        Archives to delete, newest first
    """
    retain_by_number = max(0, int(retain_by_number or 0))
    retain_by_age_days = max(0, int(retain_by_age_days or 0))

    # sorted() is stable, so equal timestamps keep listing order
    ordered = sorted(objects, key=lambda obj: obj.modified_at, reverse=True)

    to_delete = []
    for position, obj in enumerate(ordered):
        if position < retain_by_number:
            continue
        if retain_by_age_days > 0 and (now - obj.modified_at) <= retain_by_age_days * SECONDS_PER_DAY:
            continue
        to_delete.append(obj)

    return to_delete
