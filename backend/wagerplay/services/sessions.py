"""Short-lived session tokens binding a wallet to one match.

A session is issued after a verified deposit and is the only thing a player
presents to move, claim or cancel.
"""

import secrets

from flask import current_app

from wagerplay import db
from wagerplay.errors import SessionInvalid, SessionWrongMatch
from wagerplay.models import PlayerSession


def _ttl_ms():
    return int(current_app.config.get('SESSION_TTL_SEC', 1800)) * 1000


def create_session(pubkey, now_ms, match_id=None):
    token = f"st_{secrets.token_urlsafe(24)}"
    db.session.add(PlayerSession(
        token=token,
        pubkey=pubkey,
        match_id=match_id,
        created_at=now_ms,
        expires_at=now_ms + _ttl_ms(),
    ))
    db.session.commit()
    return token


def get_session(token, now_ms):
    if not token:
        return None
    session = db.session.get(PlayerSession, token)
    if session is None or session.expires_at <= now_ms:
        return None
    return session


def bind_session_to_match(token, match_id, now_ms):
    session = get_session(token, now_ms)
    if session is None:
        raise SessionInvalid()
    if session.match_id == match_id:
        return session
    if session.match_id:
        raise SessionWrongMatch()
    session.match_id = match_id
    session.expires_at = now_ms + _ttl_ms()
    db.session.commit()
    return session


def require_session(token, match_id, now_ms):
    session = get_session(token, now_ms)
    if session is None:
        raise SessionInvalid()
    if match_id and session.match_id and session.match_id != match_id:
        raise SessionWrongMatch()
    return session
