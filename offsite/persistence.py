"""
Persistence contract used by the purge queue and storage metrics.

- OptionStore: named JSON documents (get_json / set_json / delete)
- TaskLockManager: expiring lock records so only one pass runs at a time

Both use the Flask-SQLAlchemy session and must run inside an app context.
"""

import json
import logging
import time
import uuid
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from offsite import db
from offsite.models import Option, TaskLock


logger = logging.getLogger(__name__)


def now() -> int:
    """Current epoch seconds."""
    return int(time.time())


class OptionStore:
    """Named JSON documents stored in the options table."""

    def get_json(self, name: str, default: Any = None) -> Any:
        """
        Load a JSON document.

        Args:
            name: Option name
            default: Returned when the option is missing or unreadable

        Returns:
            Decoded value or default
        """
        option = Option.query.filter_by(name=name).first()
        if option is None:
            return default
        try:
            return json.loads(option.value)
        except ValueError as e:
            logger.error(f"Option {name} holds invalid JSON, using default: {e}")
            return default

    def set_json(self, name: str, value: Any) -> bool:
        """
        Store a JSON document.

        Returns:
            True if the value was committed
        """
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error(f"Option {name} is not JSON serializable: {e}")
            return False

        try:
            option = Option.query.filter_by(name=name).first()
            if option is None:
                db.session.add(Option(name=name, value=payload))
            else:
                option.value = payload
            db.session.commit()
            return True
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to save option {name}: {e}")
            return False

    def delete(self, name: str) -> bool:
        deleted = Option.query.filter_by(name=name).delete()
        db.session.commit()
        return deleted > 0


class TaskLockManager:
    """
    Expiring named locks.

    A lock whose TTL has passed can be taken over, so a crashed holder never
    blocks later passes for longer than the TTL.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self.clock = clock or now

    def acquire(self, name: str, ttl: int) -> Optional[str]:
        """
        Try to take a lock.

        Returns:
            Lock token, or None if another holder owns a live lock
        """
        current = int(self.clock())
        token = uuid.uuid4().hex

        # Take over an expired lock atomically
        updated = TaskLock.query.filter(
            TaskLock.name == name,
            TaskLock.expires_at <= current
        ).update({'token': token, 'expires_at': current + ttl}, synchronize_session=False)
        if updated:
            db.session.commit()
            return token

        if TaskLock.query.filter_by(name=name).first() is not None:
            db.session.rollback()
            return None

        try:
            db.session.add(TaskLock(name=name, token=token, expires_at=current + ttl))
            db.session.commit()
        except IntegrityError:
            # Another process created the lock first
            db.session.rollback()
            return None
        return token

    def renew(self, name: str, token: str, ttl: int) -> bool:
        """
        Extend a lock the token still owns.

        Returns:
            False if the lock expired and was taken over (or released)
        """
        renewed = TaskLock.query.filter_by(name=name, token=token).update(
            {'expires_at': int(self.clock()) + ttl}, synchronize_session=False
        )
        db.session.commit()
        return renewed > 0

    def release(self, name: str, token: str) -> bool:
        """Release a lock if the token still owns it."""
        deleted = TaskLock.query.filter_by(name=name, token=token).delete()
        db.session.commit()
        return deleted > 0
