from wagerplay import db
from wagerplay.models import LOBBY, LobbyEntry, Match


def add_to_lobby(match: Match) -> None:
    """Stage a lobby entry; committed with the caller's unit of work."""
    db.session.merge(LobbyEntry(match_id=match.id, score=match.created_at))


def remove_from_lobby(match_id: str) -> None:
    entry = db.session.get(LobbyEntry, match_id)
    if entry is not None:
        db.session.delete(entry)


def list_open_matches(limit: int = 50):
    """Open matches, newest first.

    The index is only a cache: an entry whose match is gone or no longer in
    the lobby is dropped here.
    """
    entries = LobbyEntry.query.order_by(LobbyEntry.score.desc()).limit(limit).all()
    open_matches = []
    stale_ids = []
    for entry in entries:
        match = db.session.get(Match, entry.match_id)
        if match is None or match.status != LOBBY:
            stale_ids.append(entry.match_id)
            continue
        open_matches.append(match)
    if stale_ids:
        LobbyEntry.query.filter(LobbyEntry.match_id.in_(stale_ids)).delete(synchronize_session=False)
        db.session.commit()
    return open_matches
