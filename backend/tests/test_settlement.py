import pytest
from sqlalchemy.exc import OperationalError

from wagerplay import db
from wagerplay.errors import CorruptMatchError, InsufficientHouseFunds, LedgerError
from wagerplay.models import CoordinationLock, FINISHED, WIN, X
from wagerplay.services.matches import settlement
from wagerplay.services.matches.settlement import PAYOUT, REFUND, settle
from wagerplay.store import acquire_lock, load_match


def finish_with_x_win(match_id):
    match = load_match(match_id)
    match.status = FINISHED
    match.winner = X
    match.ended_reason = WIN
    db.session.commit()
    return match


def test_settle_ignores_live_match(flask_app, driver, creator, joiner, ledger):
    match_id, _ = driver.start(creator, joiner)
    result = settle(match_id)
    assert result.kind is None
    assert not result.completed
    assert ledger.transfers == []


def test_sequential_settles_pay_once(flask_app, driver, creator, joiner, ledger):
    match_id, _ = driver.start(creator, joiner)
    finish_with_x_win(match_id)

    first = settle(match_id)
    second = settle(match_id)
    assert first.kind == PAYOUT
    assert first.completed and second.completed
    assert first.signature == second.signature
    assert len(ledger.transfers) == 1

    match = load_match(match_id, fresh=True)
    assert match.payout_sig == first.signature
    assert match.payee_pubkey == match.x_player
    assert match.winner_pubkey == match.x_player


def test_settle_during_transfer_does_not_pay_twice(flask_app, driver, creator, joiner, ledger):
    match_id, _ = driver.start(creator, joiner)
    finish_with_x_win(match_id)
    inner = []
    ledger.on_transfer = lambda: inner.append(settle(match_id))

    outer = settle(match_id)
    assert outer.completed
    assert inner[0].kind == PAYOUT
    assert not inner[0].completed
    assert len(ledger.transfers) == 1


def test_settle_while_locked_reports_incomplete(flask_app, driver, creator, joiner, ledger, clock):
    match_id, _ = driver.start(creator, joiner)
    finish_with_x_win(match_id)
    db.session.add(CoordinationLock(key=f"payout:{match_id}", owner='other', expires_at=clock.now + 20_000))
    db.session.commit()

    data = driver.get(match_id).get_json()
    assert data['settled'] is False
    assert ledger.transfers == []

    clock.advance(20_000)
    data = driver.get(match_id).get_json()
    assert data['settled'] is True
    assert len(ledger.transfers) == 1


def test_insufficient_funds_then_retry(driver, creator, joiner, ledger, clock):
    match_id, tokens = driver.start(creator, joiner)
    ledger.house_balance = 1000
    clock.advance(20_001)

    res = driver.get(match_id)
    assert res.status_code == 503
    body = res.get_json()
    assert body['retryable'] is True
    assert 'insufficient funds' in body['error']
    assert ledger.transfers == []

    match = load_match(match_id, fresh=True)
    assert match.status == FINISHED
    assert match.payout_sig is None
    # The payee is on record even though nothing was sent
    assert match.payee_pubkey == match.o_player
    assert db.session.get(CoordinationLock, f"payout:{match_id}") is None

    ledger.house_balance = 10 ** 12
    data = driver.get(match_id).get_json()
    assert data['settled'] is True
    assert ledger.transfers == [(match.o_player, 194_000_000)]


def test_ledger_outage_is_retryable(driver, creator, joiner, ledger, clock):
    match_id, _ = driver.start(creator, joiner)
    ledger.fail_transfers = True
    clock.advance(20_001)

    res = driver.get(match_id)
    assert res.status_code == 502
    assert res.get_json()['retryable'] is True

    ledger.fail_transfers = False
    assert driver.get(match_id).get_json()['settled'] is True


def test_corrupt_stake_is_never_paid(flask_app, driver, creator, joiner, ledger):
    match_id, _ = driver.start(creator, joiner)
    match = finish_with_x_win(match_id)
    match.bet_lamports = 0
    db.session.commit()

    with pytest.raises(CorruptMatchError):
        settle(match_id)
    assert ledger.transfers == []
    assert db.session.get(CoordinationLock, f"payout:{match_id}") is None


def test_refund_amount_is_creator_net_stake(flask_app, driver, creator, ledger):
    created = driver.create(creator).get_json()
    match = load_match(created['matchId'])
    match.status = FINISHED
    match.ended_reason = 'CANCELLED'
    db.session.commit()

    result = settle(created['matchId'])
    assert result.kind == REFUND
    assert ledger.transfers == [(creator, 97_000_000)]


def test_history_failure_does_not_undo_payout(flask_app, driver, creator, joiner, ledger, monkeypatch):
    match_id, _ = driver.start(creator, joiner)
    finish_with_x_win(match_id)

    def broken_history(*args, **kwargs):
        raise OperationalError('INSERT INTO match_history', {}, Exception('disk full'))

    monkeypatch.setattr(settlement, 'append_history', broken_history)
    result = settle(match_id)
    assert result.completed
    assert load_match(match_id, fresh=True).payout_sig == result.signature


def test_insufficient_funds_error_type(flask_app, driver, creator, joiner, ledger):
    match_id, _ = driver.start(creator, joiner)
    finish_with_x_win(match_id)
    ledger.house_balance = 0
    with pytest.raises(InsufficientHouseFunds):
        settle(match_id)


def test_slow_confirmation_does_not_pay_twice(flask_app, driver, creator, joiner, ledger, clock):
    match_id, _ = driver.start(creator, joiner)
    finish_with_x_win(match_id)
    polls = []

    def poll_while_confirming():
        # The settlement lock has long expired when the next request arrives
        clock.advance(21_000)
        polls.append(settle(match_id))

    ledger.on_confirm = poll_while_confirming
    first = settle(match_id)
    assert first.completed
    assert polls[0].completed
    assert polls[0].signature == first.signature
    assert ledger.confirmed == [first.signature]
    assert len(ledger.transfers) == 1


def test_stall_before_send_gives_up(flask_app, driver, creator, joiner, ledger, clock):
    match_id, _ = driver.start(creator, joiner)
    finish_with_x_win(match_id)
    polls = []

    def stall_then_poll():
        clock.advance(21_000)
        polls.append(settle(match_id))

    ledger.on_transfer = stall_then_poll
    with pytest.raises(LedgerError):
        settle(match_id)
    # Only the worker that took over the expired lock paid
    assert polls[0].completed
    assert len(ledger.transfers) == 1
    assert load_match(match_id, fresh=True).payout_sig == polls[0].signature


def test_transfer_budget_fits_inside_lock(flask_app, driver, creator, joiner, ledger):
    match_id, _ = driver.start(creator, joiner)
    finish_with_x_win(match_id)
    settle(match_id)
    assert ledger.budgets == [20 - settlement.TRANSFER_MARGIN_SEC]


def test_lock_lost_before_transfer_aborts(flask_app, driver, creator, joiner, ledger, clock, monkeypatch):
    match_id, _ = driver.start(creator, joiner)
    finish_with_x_win(match_id)
    real_save = settlement.save_match
    calls = []

    def save_then_lose_lock(match, now_ms):
        real_save(match, now_ms)
        if not calls:
            calls.append(match_id)
            clock.advance(20_001)
            assert acquire_lock(PAYOUT, match_id, 20, clock.now)

    monkeypatch.setattr(settlement, 'save_match', save_then_lose_lock)
    result = settle(match_id)
    assert not result.completed
    assert ledger.transfers == []
    assert load_match(match_id, fresh=True).payout_sig is None
