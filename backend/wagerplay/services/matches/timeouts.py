"""Turn clock enforcement.

There is no timer thread. Whichever request next touches a PLAYING match
past its deadline resolves it: the player whose turn it is forfeits.
"""

from dataclasses import dataclass

from flask import current_app

from wagerplay import clock, db
from wagerplay.models import FINISHED, PLAYING, TIMEOUT, Match
from wagerplay.services.matches.engine import other_mark, start_turn
from wagerplay.services.matches.settlement import settle, settlement_kind
from wagerplay.store import (
    ConcurrentUpdate, acquire_lock, load_match, release_lock, save_match,
)


TIMEOUT_LOCK = 'timeout'


@dataclass
class TimeoutResult:
    expired: bool
    match: Match


def _move_ms():
    return int(current_app.config.get('MOVE_MS', 20000))


def ensure_deadline(match: Match, now_ms: int) -> bool:
    """Start the clock on a record that never had one. Returns True if it did."""
    deadline = match.deadline_at
    if deadline is None or int(deadline) <= 0:
        start_turn(match, now_ms, _move_ms())
        return True
    return False


def _save_or_reload(match, now_ms):
    match_id = match.id
    try:
        save_match(match, now_ms)
    except ConcurrentUpdate:
        return load_match(match_id, fresh=True)
    return match


def resolve_timeout(match: Match, now_ms: int) -> TimeoutResult:
    """Forfeit the player to move if the deadline has passed.

    ``expired`` is True when the deadline has passed, whether this call
    resolved it or another worker holds the timeout lock. The returned match
    is the freshest record seen.
    """
    if match.status != PLAYING:
        return TimeoutResult(expired=False, match=match)
    if ensure_deadline(match, now_ms):
        return TimeoutResult(expired=False, match=_save_or_reload(match, now_ms))
    if now_ms <= match.deadline_at:
        return TimeoutResult(expired=False, match=match)

    match_id = match.id
    ttl = int(current_app.config.get('TIMEOUT_LOCK_TTL_SEC', 15))
    owner = acquire_lock(TIMEOUT_LOCK, match_id, ttl, now_ms)
    if owner is None:
        return TimeoutResult(expired=True, match=load_match(match_id, fresh=True))
    try:
        result = _forfeit_locked(match_id, now_ms)
    except Exception:
        db.session.rollback()
        release_lock(TIMEOUT_LOCK, match_id, owner)
        raise
    release_lock(TIMEOUT_LOCK, match_id, owner)
    return result


def _forfeit_locked(match_id, now_ms):
    match = load_match(match_id, fresh=True)
    if match.status != PLAYING:
        return TimeoutResult(expired=match.status == FINISHED, match=match)
    if ensure_deadline(match, now_ms):
        return TimeoutResult(expired=False, match=_save_or_reload(match, now_ms))
    if now_ms <= match.deadline_at:
        return TimeoutResult(expired=False, match=match)

    winner = other_mark(match.turn)
    winner_pubkey = match.player_for(winner)
    if not winner_pubkey:
        current_app.logger.warning(f"[timeout-skip] match={match_id} has no player for {winner}")
        return TimeoutResult(expired=False, match=match)

    loser = match.turn
    match.status = FINISHED
    match.winner = winner
    match.winner_pubkey = winner_pubkey
    match.ended_reason = TIMEOUT
    try:
        save_match(match, now_ms)
    except ConcurrentUpdate:
        match = load_match(match_id, fresh=True)
        return TimeoutResult(expired=match.status == FINISHED, match=match)
    current_app.logger.info(f"[timeout] match={match_id} loser={loser} winner={winner} deadline={match.deadline_at} now={now_ms}")
    return TimeoutResult(expired=True, match=match)


def evaluate_match(match_id, now_ms=None):
    """Bring a match up to date on access: resolve an expired turn, then
    settle a finished match that has not been paid yet.

    Returns ``(match, settlement)``; ``settlement`` is None when nothing was
    attempted.
    """
    if now_ms is None:
        now_ms = clock.now_ms()
    match = load_match(match_id)
    if match.status == PLAYING:
        match = resolve_timeout(match, now_ms).match
    settlement = None
    if settlement_kind(match) and not match.is_settled:
        settlement = settle(match_id)
        match = load_match(match_id, fresh=True)
    return match, settlement
