from wagerplay import db
from wagerplay.models import HistoryEntry, Match


def append_history(match: Match, signature: str, now_ms: int, limit: int = 10) -> None:
    """Record a settled match and keep only the newest ``limit`` entries."""
    winner = match.payee_pubkey
    if winner == match.created_by:
        loser = match.joined_by
    else:
        loser = match.created_by
    db.session.add(HistoryEntry(
        at=now_ms,
        match_id=match.id,
        bet_lamports=match.bet_lamports,
        pot_lamports=match.pot_lamports,
        winner=winner,
        loser=loser,
        payout_sig=signature,
        ended_reason=match.ended_reason,
    ))
    db.session.flush()
    keep = [row.id for row in HistoryEntry.query.order_by(HistoryEntry.at.desc(), HistoryEntry.id.desc()).limit(limit)]
    if keep:
        HistoryEntry.query.filter(~HistoryEntry.id.in_(keep)).delete(synchronize_session=False)
    db.session.commit()


def list_history(limit: int = 10):
    return HistoryEntry.query.order_by(HistoryEntry.at.desc(), HistoryEntry.id.desc()).limit(limit).all()
