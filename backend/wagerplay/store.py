"""Coordination primitives on top of the shared database.

Workers share nothing in memory. Anything that must be exclusive goes
through ``set_if_absent``: an expired row is taken over with a conditional
UPDATE, otherwise a plain INSERT relies on the primary key to let exactly
one worker win.
"""

import secrets

from flask import current_app
from sqlalchemy import delete, inspect, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from wagerplay import db
from wagerplay.errors import MatchNotFound
from wagerplay.models import CoordinationLock, Match, PlayerSession, UsedPayment


class ConcurrentUpdate(Exception):
    """The match row changed between our read and our write."""

    def __init__(self, match_id):
        super().__init__(f"match {match_id} was modified concurrently")
        self.match_id = match_id


def set_if_absent(model, key, now_ms, ttl_ms, commit=True, **values) -> bool:
    """Atomically create ``key`` with an expiry unless a live row exists.

    With ``commit=False`` the row joins the caller's unit of work and a lost
    race surfaces as ``IntegrityError`` when that unit is flushed. A live row
    that is already visible returns False without touching the caller's work.
    """
    key_column = inspect(model).primary_key[0]
    expires_at = now_ms + ttl_ms
    taken = db.session.execute(
        update(model)
        .where(key_column == key, model.expires_at <= now_ms)
        .values(expires_at=expires_at, **values)
    ).rowcount
    if not taken:
        if db.session.get(model, key) is not None:
            if commit:
                db.session.rollback()
            return False
        db.session.add(model(**{key_column.key: key}, expires_at=expires_at, **values))
    if not commit:
        db.session.flush()
        return True
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def lock_key(purpose, match_id):
    return f"{purpose}:{match_id}"


def acquire_lock(purpose, match_id, ttl_sec, now_ms):
    """Return an owner token if the lock was taken, else None."""
    owner = secrets.token_hex(8)
    key = lock_key(purpose, match_id)
    if set_if_absent(CoordinationLock, key, now_ms, ttl_sec * 1000, owner=owner):
        return owner
    current_app.logger.info(f"[lock-busy] key={key}")
    return None


def refresh_lock(purpose, match_id, owner, ttl_sec, now_ms):
    """Push a held lock's expiry out. False if it lapsed or changed hands."""
    refreshed = db.session.execute(
        update(CoordinationLock)
        .where(
            CoordinationLock.key == lock_key(purpose, match_id),
            CoordinationLock.owner == owner,
            CoordinationLock.expires_at > now_ms,
        )
        .values(expires_at=now_ms + ttl_sec * 1000)
    ).rowcount
    db.session.commit()
    return bool(refreshed)


def release_lock(purpose, match_id, owner):
    db.session.execute(
        delete(CoordinationLock).where(
            CoordinationLock.key == lock_key(purpose, match_id),
            CoordinationLock.owner == owner,
        )
    )
    db.session.commit()


def load_match(match_id, fresh=False):
    """Fetch a match; ``fresh`` bypasses the identity map and re-reads the row."""
    if fresh:
        match = db.session.get(Match, match_id, populate_existing=True)
    else:
        match = db.session.get(Match, match_id)
    if match is None:
        raise MatchNotFound()
    return match


def save_match(match, now_ms):
    match_id = match.id
    match.updated_at = now_ms
    db.session.add(match)
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise ConcurrentUpdate(match_id)


def prune_expired(now_ms):
    removed = 0
    for model in (PlayerSession, UsedPayment, CoordinationLock):
        removed += db.session.execute(
            delete(model).where(model.expires_at <= now_ms)
        ).rowcount
    db.session.commit()
    return removed
