from contextlib import contextmanager
from pathlib import Path

import psycopg
from loguru import logger
from psycopg import errors

from config import get_settings
from errors import ConcurrentBalanceUpdateConflict

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# failures that mean "another transaction got there first"; safe to retry whole
RETRYABLE_ERRORS = (errors.SerializationFailure, errors.DeadlockDetected)


@contextmanager
def get_conn():
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    """
    with psycopg.connect(get_settings().database_url) as conn:
        conn.autocommit = False
        yield conn


def init_schema() -> None:
    with get_conn() as conn:
        conn.execute(SCHEMA_PATH.read_text())
        conn.commit()


def run_in_transaction(work, *args, **kwargs):
    """
    run work(conn, *args, **kwargs) in a single transaction.

    commits on success, rolls back on any error. serialization failures and
    deadlocks are retried up to balance_update_max_retries times, then
    surfaced as ConcurrentBalanceUpdateConflict.
    """
    max_retries = get_settings().balance_update_max_retries
    last_error = None

    for attempt in range(1, max_retries + 1):
        with get_conn() as conn:
            try:
                result = work(conn, *args, **kwargs)
                conn.commit()
                return result
            except RETRYABLE_ERRORS as e:
                conn.rollback()
                last_error = e
                logger.warning(
                    "{} failed on attempt {}/{}: {}",
                    work.__name__, attempt, max_retries, e,
                )
            except Exception:
                conn.rollback()
                raise

    raise ConcurrentBalanceUpdateConflict(
        f"{work.__name__} gave up after {max_retries} attempts"
    ) from last_error
