"""Server clock shared by every worker.

Deadlines written by one worker are compared against ``now_ms()`` in
another, possibly on a different host, so by default the database answers
"what time is it". Local wall clock is the fallback.
"""

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from wagerplay import db


_STORE_TIME_SQL = {
    'postgresql': "SELECT CAST(EXTRACT(EPOCH FROM clock_timestamp()) * 1000 AS BIGINT)",
    'sqlite': "SELECT CAST((julianday('now') - 2440587.5) * 86400000.0 AS INTEGER)",
}


def _local_now_ms() -> int:
    return int(time.time() * 1000)


def _store_now_ms():
    sql = _STORE_TIME_SQL.get(db.engine.dialect.name)
    if sql is None:
        return None
    value = db.session.execute(text(sql)).scalar()
    return int(value) if value is not None else None


def now_ms() -> int:
    """Milliseconds since the epoch, from the store when configured."""
    if current_app.config.get('CLOCK_SOURCE', 'store') == 'store':
        try:
            value = _store_now_ms()
        except SQLAlchemyError as exc:
            current_app.logger.warning(f"[clock-fallback] store time unavailable: {exc}")
            value = None
        if value:
            return value
    return _local_now_ms()
