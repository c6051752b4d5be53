from wagerplay import db
import json
import secrets

# Match status
LOBBY = 'LOBBY'
PLAYING = 'PLAYING'
FINISHED = 'FINISHED'

# Marks
X = 'X'
O = 'O'

# Ended reasons
WIN = 'WIN'
TIMEOUT = 'TIMEOUT'
CANCELLED = 'CANCELLED'
LEAVE = 'LEAVE'


def empty_board():
    return [None] * 9


def generate_match_id():
    """Generate a unique, opaque match id."""
    while True:
        match_id = f"m_{secrets.token_hex(6)}"
        if not db.session.get(Match, match_id):
            return match_id


class Match(db.Model):
    __tablename__ = 'wager_match'
    id = db.Column(db.String(32), primary_key=True)
    version = db.Column(db.Integer, nullable=False)

    bet_lamports = db.Column(db.BigInteger, nullable=False)
    pot_lamports = db.Column(db.BigInteger, nullable=False, default=0)
    fee_bps = db.Column(db.Integer, nullable=False)

    created_by = db.Column(db.String(64), nullable=False, index=True)
    joined_by = db.Column(db.String(64), nullable=True)
    x_player = db.Column(db.String(64), nullable=True)
    o_player = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=LOBBY, index=True)
    board = db.Column(db.Text, nullable=False)  # JSON-encoded list of 9 cells
    turn = db.Column(db.String(1), nullable=False, default=X)
    moves = db.Column(db.Integer, nullable=False, default=0)
    draws = db.Column(db.Integer, nullable=False, default=0)

    # Turn clock (server ms)
    turn_started_at = db.Column(db.BigInteger, nullable=True)
    deadline_at = db.Column(db.BigInteger, nullable=True)
    move_ms = db.Column(db.Integer, nullable=True)

    winner = db.Column(db.String(1), nullable=True)
    winner_pubkey = db.Column(db.String(64), nullable=True)
    ended_reason = db.Column(db.String(16), nullable=True)
    # Recorded before a transfer is issued so an interrupted settlement shows who was due
    payee_pubkey = db.Column(db.String(64), nullable=True)
    payout_sig = db.Column(db.String(128), nullable=True)
    refund_sig = db.Column(db.String(128), nullable=True)

    create_payment_sig = db.Column(db.String(128), nullable=True)
    join_payment_sig = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.BigInteger, nullable=False)
    updated_at = db.Column(db.BigInteger, nullable=False)

    __mapper_args__ = {'version_id_col': version}

    def __init__(self, **kwargs):
        super(Match, self).__init__(**kwargs)
        if not self.id:
            self.id = generate_match_id()
        if self.board is None:
            self.cells = empty_board()

    @property
    def cells(self):
        try:
            cells = json.loads(self.board) if self.board else None
        except ValueError:
            cells = None
        if not isinstance(cells, list) or len(cells) != 9:
            return empty_board()
        return cells

    @cells.setter
    def cells(self, value):
        self.board = json.dumps(list(value))

    def player_for(self, mark):
        return self.x_player if mark == X else self.o_player

    @property
    def is_settled(self):
        return bool(self.payout_sig or self.refund_sig)

    def to_dict(self):
        return {
            'id': self.id,
            'betLamports': self.bet_lamports,
            'potLamports': self.pot_lamports,
            'feeBps': self.fee_bps,
            'createdBy': self.created_by,
            'joinedBy': self.joined_by,
            'xPlayer': self.x_player,
            'oPlayer': self.o_player,
            'status': self.status,
            'board': self.cells,
            'turn': self.turn,
            'moves': self.moves,
            'draws': self.draws,
            'turnStartedAt': self.turn_started_at,
            'deadlineAt': self.deadline_at,
            'moveMs': self.move_ms,
            'winner': self.winner,
            'winnerPubkey': self.winner_pubkey,
            'endedReason': self.ended_reason,
            'payoutSig': self.payout_sig,
            'refundSig': self.refund_sig,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
        }


class PlayerSession(db.Model):
    __tablename__ = 'player_session'
    token = db.Column(db.String(64), primary_key=True)
    pubkey = db.Column(db.String(64), nullable=False)
    match_id = db.Column(db.String(32), nullable=True)
    created_at = db.Column(db.BigInteger, nullable=False)
    expires_at = db.Column(db.BigInteger, nullable=False, index=True)


class UsedPayment(db.Model):
    __tablename__ = 'used_payment'
    signature = db.Column(db.String(128), primary_key=True)
    pubkey = db.Column(db.String(64), nullable=True)
    used_for = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.BigInteger, nullable=True)
    expires_at = db.Column(db.BigInteger, nullable=False, index=True)


class CoordinationLock(db.Model):
    __tablename__ = 'coordination_lock'
    key = db.Column(db.String(96), primary_key=True)
    owner = db.Column(db.String(64), nullable=False)
    expires_at = db.Column(db.BigInteger, nullable=False)


class LobbyEntry(db.Model):
    __tablename__ = 'lobby_entry'
    match_id = db.Column(db.String(32), primary_key=True)
    score = db.Column(db.BigInteger, nullable=False, index=True)


class HistoryEntry(db.Model):
    __tablename__ = 'match_history'
    id = db.Column(db.Integer, primary_key=True)
    at = db.Column(db.BigInteger, nullable=False, index=True)
    match_id = db.Column(db.String(32), nullable=False)
    bet_lamports = db.Column(db.BigInteger, nullable=True)
    pot_lamports = db.Column(db.BigInteger, nullable=True)
    winner = db.Column(db.String(64), nullable=True)
    loser = db.Column(db.String(64), nullable=True)
    payout_sig = db.Column(db.String(128), nullable=True)
    ended_reason = db.Column(db.String(16), nullable=True)

    def to_dict(self):
        return {
            'at': self.at,
            'matchId': self.match_id,
            'betLamports': self.bet_lamports,
            'potLamports': self.pot_lamports,
            'winner': self.winner,
            'loser': self.loser,
            'payoutSig': self.payout_sig,
            'endedReason': self.ended_reason,
        }
