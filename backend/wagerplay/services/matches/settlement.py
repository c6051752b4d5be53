"""Pay the winner (or refund the creator) exactly once.

``settle`` may be called by any number of workers for the same match, in
any order, and again after a crash. The stored transfer signature is the
only "settled" marker; the lock merely keeps two workers from transferring
at the same time, which is why the match is re-read after taking it.

The lock has a TTL, so everything between taking it and storing the
signature must fit inside it: the lock is refreshed right before the
transfer, the ledger gets a sending budget shorter than the TTL, and
confirmation only starts once the signature is on record.
"""

from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from wagerplay import clock, db
from wagerplay.errors import CorruptMatchError, LedgerError
from wagerplay.models import CANCELLED, FINISHED, WIN, Match
from wagerplay.services.matches.history import append_history
from wagerplay.services.payments import net_after_fee
from wagerplay.store import (
    ConcurrentUpdate, acquire_lock, load_match, refresh_lock, release_lock, save_match,
)


PAYOUT = 'payout'
REFUND = 'refund'

# Seconds of lock TTL kept back for storing the signature after the send
TRANSFER_MARGIN_SEC = 5


@dataclass
class SettlementResult:
    kind: Optional[str]
    completed: bool
    signature: Optional[str] = None


def settlement_kind(match: Match) -> Optional[str]:
    if match.status != FINISHED:
        return None
    if match.winner:
        return PAYOUT
    if match.ended_reason == CANCELLED:
        return REFUND
    return None


def _recorded_signature(match: Match, kind: str) -> Optional[str]:
    return match.payout_sig if kind == PAYOUT else match.refund_sig


def _lock_ttl():
    return int(current_app.config.get('SETTLEMENT_LOCK_TTL_SEC', 20))


def settle(match_id: str, ledger=None) -> SettlementResult:
    """Settle a finished match; idempotent and safe to call concurrently.

    Returns ``completed=False`` when there is nothing to settle or another
    worker holds the settlement lock. Ledger failures propagate.
    """
    ledger = ledger or current_app.extensions['ledger']
    match = load_match(match_id)
    kind = settlement_kind(match)
    if kind is None:
        return SettlementResult(kind=None, completed=False)
    signature = _recorded_signature(match, kind)
    if signature:
        return SettlementResult(kind=kind, completed=True, signature=signature)

    owner = acquire_lock(kind, match_id, _lock_ttl(), clock.now_ms())
    if owner is None:
        return SettlementResult(kind=kind, completed=False)
    try:
        result = _settle_locked(match_id, kind, ledger, owner)
    except Exception:
        db.session.rollback()
        release_lock(kind, match_id, owner)
        raise
    release_lock(kind, match_id, owner)
    if result.completed and result.signature:
        _confirm(ledger, kind, match_id, result.signature)
    return result


def _settle_locked(match_id, kind, ledger, owner):
    match = load_match(match_id, fresh=True)
    if settlement_kind(match) != kind:
        return SettlementResult(kind=kind, completed=False)
    signature = _recorded_signature(match, kind)
    if signature:
        return SettlementResult(kind=kind, completed=True, signature=signature)
    if match.is_settled:
        current_app.logger.warning(f"[settle-skip] match={match_id} already carries a transfer signature")
        return SettlementResult(kind=kind, completed=False)

    bet = int(match.bet_lamports or 0)
    if bet <= 0:
        raise CorruptMatchError('Corrupt match: bad betLamports')
    if kind == PAYOUT:
        payee = match.winner_pubkey or match.player_for(match.winner)
        amount = int(match.pot_lamports or 0)
    else:
        payee = match.created_by
        amount = net_after_fee(bet, match.fee_bps)
    if not payee:
        raise CorruptMatchError('Corrupt match: no payee')
    if amount <= 0:
        raise CorruptMatchError('Corrupt match: bad amount')

    # Who is owed is on record before any money moves
    match.payee_pubkey = payee
    if kind == PAYOUT:
        match.winner_pubkey = payee
        match.ended_reason = match.ended_reason or WIN
    try:
        save_match(match, clock.now_ms())
    except ConcurrentUpdate:
        current_app.logger.info(f"[settle-abort] match={match_id} changed before transfer")
        return SettlementResult(kind=kind, completed=False)

    ttl = _lock_ttl()
    if not refresh_lock(kind, match_id, owner, ttl, clock.now_ms()):
        current_app.logger.warning(f"[settle-abort] match={match_id} lost the {kind} lock before transfer")
        return SettlementResult(kind=kind, completed=False)

    current_app.logger.info(f"[{kind}-start] match={match_id} payee={payee} amount={amount}")
    try:
        signature = ledger.transfer(payee, amount, budget_sec=max(ttl - TRANSFER_MARGIN_SEC, 1))
    except LedgerError as exc:
        current_app.logger.error(f"[{kind}-failed] match={match_id} payee={payee} amount={amount} err={exc.message}")
        raise

    match = _record_signature(match_id, kind, signature)
    current_app.logger.info(f"[{kind}-done] match={match_id} sig={signature}")

    if kind == PAYOUT:
        try:
            append_history(match, signature, clock.now_ms(), int(current_app.config.get('HISTORY_LIMIT', 10)))
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.warning(f"[history-skip] match={match_id} err={exc}")
    return SettlementResult(kind=kind, completed=True, signature=signature)


def _record_signature(match_id, kind, signature):
    """Persist the transfer signature; money has already moved."""
    attempts = 2
    for attempt in range(attempts):
        try:
            match = load_match(match_id, fresh=True)
            if kind == PAYOUT:
                match.payout_sig = signature
            else:
                match.refund_sig = signature
            save_match(match, clock.now_ms())
            return match
        except (ConcurrentUpdate, SQLAlchemyError):
            db.session.rollback()
            if attempt == attempts - 1:
                current_app.logger.error(
                    f"[{kind}-unrecorded] match={match_id} sig={signature} transfer sent but not stored",
                    exc_info=True,
                )
                raise


def _confirm(ledger, kind, match_id, signature):
    """Check the recorded transfer landed; the outcome is only logged."""
    try:
        confirmed = ledger.confirm(signature)
    except LedgerError as exc:
        current_app.logger.warning(f"[{kind}-unconfirmed] match={match_id} sig={signature} err={exc.message}")
        return
    if not confirmed:
        current_app.logger.warning(f"[{kind}-unconfirmed] match={match_id} sig={signature} not visible yet")
