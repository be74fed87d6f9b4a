import functools
import logging
import time

from flask import current_app
from sqlalchemy.exc import OperationalError

from errors import TransientStoreError
from models import db

logger = logging.getLogger(__name__)


def retry_db_operation(max_attempts=None, delay=None):
    """Run the wrapped function as one transaction.

    Commits on success and rolls back on any error. OperationalError is
    retried up to ``max_attempts`` times; once exhausted it surfaces as
    TransientStoreError. Business errors propagate untouched.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            limit = max_attempts or current_app.config.get('TX_MAX_ATTEMPTS', 3)
            pause = delay if delay is not None else current_app.config.get('TX_RETRY_DELAY', 1)
            attempts = 0
            while True:
                try:
                    result = func(*args, **kwargs)
                    db.session.commit()
                    return result
                except OperationalError as e:
                    db.session.rollback()
                    attempts += 1
                    logger.error(f"Database operation {func.__name__} failed: {str(e)}")
                    if attempts >= limit:
                        raise TransientStoreError() from e
                    time.sleep(pause)
                    logger.debug(f"Retrying database operation ({attempts}/{limit})")
                except Exception:
                    db.session.rollback()
                    raise
        return wrapper
    return decorator
