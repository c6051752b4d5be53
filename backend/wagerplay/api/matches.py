from flask import Blueprint, jsonify, request, current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from wagerplay import clock, db, socketio
from wagerplay.errors import (
    ApiError, CorruptMatchError, MatchStateError, PaymentAlreadyUsed, PaymentVerificationError,
)
from wagerplay.models import CANCELLED, FINISHED, LOBBY, PLAYING, X, Match, empty_board
from wagerplay.schemas import (
    CancelMatchRequest, ClaimTimeoutRequest, CreateMatchRequest, JoinMatchRequest, MoveRequest,
    parse_request,
)
from wagerplay.services.matches.engine import MoveRejected, apply_move, assign_marks, start_turn
from wagerplay.services.matches.history import list_history
from wagerplay.services.matches.lobby import add_to_lobby, list_open_matches, remove_from_lobby
from wagerplay.services.matches.timeouts import evaluate_match, resolve_timeout
from wagerplay.services.payments import (
    claim_payment, ensure_payment_unused, find_recent_payment, net_after_fee, verify_deposit,
)
from wagerplay.services.sessions import bind_session_to_match, create_session, require_session
from wagerplay.store import ConcurrentUpdate, load_match, save_match


matches = Blueprint('matches', __name__)


@matches.errorhandler(ApiError)
def handle_api_error(exc):
    payload = exc.to_dict()
    payload['serverNowMs'] = clock.now_ms()
    return jsonify(payload), exc.status_code


def _ledger():
    return current_app.extensions['ledger']


def _move_ms():
    return int(current_app.config.get('MOVE_MS', 20000))


def _notify(match):
    socketio.emit(
        'match_update',
        {'match_id': match.id, 'status': match.status, 'serverNowMs': clock.now_ms()},
        to=f"match:{match.id}",
        namespace='/ws',
    )


def _notify_lobby():
    socketio.emit('lobby_update', {'serverNowMs': clock.now_ms()}, namespace='/ws')


def _match_response(match, now_ms, status_code=200, **extra):
    payload = {
        'ok': True,
        'match': match.to_dict(),
        'payoutSig': match.payout_sig,
        'refundSig': match.refund_sig,
        'settled': match.is_settled,
        'serverNowMs': now_ms,
    }
    payload.update(extra)
    return jsonify(payload), status_code


def _verify_deposit(signature, sender, lamports, now_ms):
    ledger = _ledger()
    max_age_ms = int(current_app.config.get('PAYMENT_MAX_AGE_SEC', 120)) * 1000
    try:
        verify_deposit(ledger, signature, sender, ledger.house_address, lamports, now_ms, max_age_ms)
    except PaymentVerificationError as exc:
        current_app.logger.warning(f"[payment-reject] sender={sender} sig={signature} reason={exc.message}")
        raise


@matches.route('/create', methods=['POST'])
def create_match():
    req = parse_request(CreateMatchRequest, request.get_json(silent=True))
    cfg = current_app.config
    now = clock.now_ms()
    ledger = _ledger()

    payment_sig = req.payment_sig
    if not payment_sig:
        payment_sig = find_recent_payment(
            ledger,
            req.creator_pubkey,
            ledger.house_address,
            req.bet_lamports,
            now,
            int(cfg.get('PAYMENT_MAX_AGE_SEC', 120)) * 1000,
            int(cfg.get('PAYMENT_SCAN_LIMIT', 25)),
        )
        if not payment_sig:
            raise PaymentVerificationError('Missing paymentSig and no matching recent transfer found')

    ensure_payment_unused(payment_sig, now)
    _verify_deposit(payment_sig, req.creator_pubkey, req.bet_lamports, now)

    fee_bps = int(cfg.get('FEE_BPS', 300))
    match = Match(
        bet_lamports=req.bet_lamports,
        pot_lamports=net_after_fee(req.bet_lamports, fee_bps),
        fee_bps=fee_bps,
        created_by=req.creator_pubkey,
        status=LOBBY,
        turn=X,
        moves=0,
        draws=0,
        create_payment_sig=payment_sig,
        created_at=now,
        updated_at=now,
    )
    db.session.add(match)
    try:
        claim_payment(payment_sig, req.creator_pubkey, f"create:{match.id}", now)
        add_to_lobby(match)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise PaymentAlreadyUsed()

    token = create_session(req.creator_pubkey, now)
    bind_session_to_match(token, match.id, now)
    current_app.logger.info(f"[match-create] match={match.id} creator={req.creator_pubkey} bet={req.bet_lamports} sig={payment_sig}")
    _notify_lobby()
    return _match_response(match, now, 201, matchId=match.id, sessionToken=token)


@matches.route('/<string:match_id>/join', methods=['POST'])
def join_match(match_id):
    req = parse_request(JoinMatchRequest, request.get_json(silent=True))
    now = clock.now_ms()
    joiner = req.joiner_pubkey

    match = load_match(match_id)
    if match.status != LOBBY:
        raise MatchStateError('Not joinable')
    if match.created_by == joiner:
        raise MatchStateError('Same wallet')
    bet = int(match.bet_lamports or 0)
    if bet <= 0:
        raise CorruptMatchError('Corrupt match: bad betLamports')

    ensure_payment_unused(req.payment_sig, now)
    _verify_deposit(req.payment_sig, joiner, bet, now)

    match.joined_by = joiner
    match.pot_lamports = int(match.pot_lamports or 0) + net_after_fee(bet, match.fee_bps)
    assign_marks(match, joiner)
    match.cells = empty_board()
    match.turn = X
    match.moves = 0
    match.status = PLAYING
    start_turn(match, now, _move_ms())
    match.join_payment_sig = req.payment_sig
    match.updated_at = now
    try:
        remove_from_lobby(match_id)
        claim_payment(req.payment_sig, joiner, f"join:{match_id}", now)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise PaymentAlreadyUsed()
    except StaleDataError:
        # Someone else joined or the creator cancelled first; the deposit stays unclaimed
        db.session.rollback()
        current_app.logger.info(f"[join-race] match={match_id} joiner={joiner} lost the race")
        raise MatchStateError('Not joinable')

    token = create_session(joiner, now)
    bind_session_to_match(token, match_id, now)
    current_app.logger.info(f"[join] match={match_id} joiner={joiner} x={match.x_player} o={match.o_player} pot={match.pot_lamports}")
    _notify(match)
    _notify_lobby()
    return _match_response(match, now, sessionToken=token)


@matches.route('/<string:match_id>/move', methods=['POST'])
def submit_move(match_id):
    req = parse_request(MoveRequest, request.get_json(silent=True))
    now = clock.now_ms()
    player = require_session(req.session_token, match_id, now).pubkey

    match = load_match(match_id)
    if match.status == FINISHED:
        match, _ = evaluate_match(match_id, now)
        return _match_response(match, now)
    if match.status != PLAYING:
        raise MatchStateError('Not playing')

    # An expired turn is resolved before any move is considered
    timeout = resolve_timeout(match, now)
    if timeout.expired:
        match, _ = evaluate_match(match_id, now)
        _notify(match)
        return _match_response(match, now)
    match = timeout.match

    attempts = 2
    for attempt in range(attempts):
        if match.status != PLAYING:
            raise MatchStateError('Not playing')
        if match.player_for(match.turn) != player:
            raise MatchStateError('Not your turn')
        try:
            result = apply_move(match, req.index, now, _move_ms())
        except MoveRejected as exc:
            raise MatchStateError(exc.reason)
        try:
            save_match(match, now)
            break
        except ConcurrentUpdate:
            if attempt == attempts - 1:
                raise MatchStateError('Match changed, try again')
            # Another move landed first; judge ours against the new state
            match = load_match(match_id, fresh=True)

    current_app.logger.info(
        f"[move] match={match_id} player={player} index={req.index} moves={match.moves} draw_reset={result.draw_reset} finished={result.finished}"
    )
    if result.finished:
        match, _ = evaluate_match(match_id, now)
    _notify(match)
    return _match_response(match, now)


@matches.route('/<string:match_id>/claim', methods=['POST'])
def claim_timeout(match_id):
    req = parse_request(ClaimTimeoutRequest, request.get_json(silent=True))
    now = clock.now_ms()
    require_session(req.session_token, match_id, now)

    match = load_match(match_id)
    if match.status == FINISHED:
        match, _ = evaluate_match(match_id, now)
        return _match_response(match, now)
    if match.status != PLAYING:
        raise MatchStateError('Not playing')
    if not resolve_timeout(match, now).expired:
        raise MatchStateError('Not timed out yet')

    match, _ = evaluate_match(match_id, now)
    _notify(match)
    return _match_response(match, now)


@matches.route('/<string:match_id>/cancel', methods=['POST'])
def cancel_match(match_id):
    req = parse_request(CancelMatchRequest, request.get_json(silent=True))
    now = clock.now_ms()
    player = require_session(req.session_token, match_id, now).pubkey

    match = load_match(match_id)
    if match.created_by != player:
        raise MatchStateError('Leave not allowed here')

    if match.status == LOBBY:
        remove_from_lobby(match_id)
        match.status = FINISHED
        match.ended_reason = CANCELLED
        try:
            save_match(match, now)
        except ConcurrentUpdate:
            match = load_match(match_id, fresh=True)
        else:
            current_app.logger.info(f"[cancel] match={match_id} creator={player}")
            _notify_lobby()

    if match.status == FINISHED and match.ended_reason == CANCELLED:
        match, _ = evaluate_match(match_id, now)
        _notify(match)
        return _match_response(match, now)
    raise MatchStateError('Leave not allowed here')


@matches.route('/<string:match_id>', methods=['GET'])
def get_match(match_id):
    now = clock.now_ms()
    match, _ = evaluate_match(match_id, now)
    return _match_response(match, now)


@matches.route('/open', methods=['GET'])
def open_matches():
    now = clock.now_ms()
    limit = int(current_app.config.get('LOBBY_LIST_LIMIT', 50))
    return jsonify({
        'matches': [m.to_dict() for m in list_open_matches(limit)],
        'serverNowMs': now,
    })


@matches.route('/history', methods=['GET'])
def history():
    now = clock.now_ms()
    limit = int(current_app.config.get('HISTORY_LIMIT', 10))
    return jsonify({
        'history': [h.to_dict() for h in list_history(limit)],
        'serverNowMs': now,
    })
