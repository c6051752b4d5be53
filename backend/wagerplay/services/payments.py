"""Deposit verification and anti-replay for proofs of deposit.

A deposit is accepted only when the ledger shows the house receiving
exactly the stake from the claimed sender, recently. Accepted signatures are
marked used in the same commit as the match change they pay for.
"""

from flask import current_app

from wagerplay import db
from wagerplay.errors import PaymentAlreadyUsed, PaymentVerificationError
from wagerplay.models import UsedPayment
from wagerplay.store import set_if_absent


def net_after_fee(lamports, fee_bps):
    return (int(lamports) * (10_000 - int(fee_bps))) // 10_000


def is_payment_used(signature, now_ms):
    marker = db.session.get(UsedPayment, signature)
    return marker is not None and marker.expires_at > now_ms


def ensure_payment_unused(signature, now_ms):
    if is_payment_used(signature, now_ms):
        raise PaymentAlreadyUsed()


def claim_payment(signature, pubkey, used_for, now_ms):
    """Stage the used-marker in the current unit of work.

    The caller commits it together with the match change; a concurrent claim
    of the same signature makes that commit fail with IntegrityError.
    """
    ttl_ms = int(current_app.config.get('USED_PAYMENT_TTL_SEC', 3600)) * 1000
    claimed = set_if_absent(
        UsedPayment, signature, now_ms, ttl_ms, commit=False,
        pubkey=pubkey, used_for=used_for, created_at=now_ms,
    )
    if not claimed:
        db.session.rollback()
        raise PaymentAlreadyUsed()


def verify_deposit(ledger, signature, sender, house, lamports, now_ms, max_age_ms):
    """Raise PaymentVerificationError unless ``signature`` is an exact deposit."""
    if not signature:
        raise PaymentVerificationError('Missing paymentSig')
    if not sender or not house:
        raise PaymentVerificationError('Missing sender or house address')
    if int(lamports) <= 0:
        raise PaymentVerificationError('Bad lamports')

    tx = ledger.get_transaction(signature)
    if tx is None:
        raise PaymentVerificationError('Payment tx not found/confirmed yet')
    if tx.failed:
        raise PaymentVerificationError('Payment tx failed')
    if not tx.block_time_ms:
        raise PaymentVerificationError('Payment tx missing blockTime')
    if now_ms - tx.block_time_ms > max_age_ms:
        raise PaymentVerificationError('Payment tx too old')

    delta_from = tx.delta(sender)
    delta_to = tx.delta(house)
    if delta_from is None:
        raise PaymentVerificationError('Payment tx missing from account')
    if delta_to is None:
        raise PaymentVerificationError('Payment tx missing to account')
    if delta_to != int(lamports):
        raise PaymentVerificationError('Payment tx does not match required transfer (to delta mismatch)')
    # The sender also pays the network fee, so it may have spent more
    if delta_from > -int(lamports):
        raise PaymentVerificationError('Payment tx does not match required transfer (from delta too small)')


def find_recent_payment(ledger, sender, house, lamports, now_ms, max_age_ms, limit):
    """Scan recent house transactions for an unused deposit from ``sender``."""
    for signature in ledger.recent_signatures(house, limit):
        if is_payment_used(signature, now_ms):
            continue
        try:
            verify_deposit(ledger, signature, sender, house, lamports, now_ms, max_age_ms)
        except PaymentVerificationError:
            continue
        current_app.logger.info(f"[payment-discovered] sender={sender} sig={signature}")
        return signature
    return None
