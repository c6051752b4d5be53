import os
import sys
import itertools
import pytest

# Ensure the backend root (containing the `wagerplay` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from solders.pubkey import Pubkey

from wagerplay import create_app, db, socketio
from wagerplay.errors import InsufficientHouseFunds, LedgerError
from wagerplay.ledger import Ledger, LedgerTransaction


START_MS = 1_700_000_000_000
BET = 100_000_000


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CLOCK_SOURCE = 'local'
    FEE_BPS = 300
    MOVE_MS = 20_000
    SESSION_TTL_SEC = 30 * 60
    USED_PAYMENT_TTL_SEC = 60 * 60
    TIMEOUT_LOCK_TTL_SEC = 15
    SETTLEMENT_LOCK_TTL_SEC = 20
    PAYMENT_MAX_AGE_SEC = 120
    PAYMENT_SCAN_LIMIT = 25
    HISTORY_LIMIT = 10
    LOBBY_LIST_LIMIT = 50


def new_pubkey():
    return str(Pubkey.new_unique())


class FakeClock:
    def __init__(self, now=START_MS):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeLedger(Ledger):
    """In-memory ledger: deposits are registered by tests, payouts recorded."""

    def __init__(self, house_address, house_balance=10 ** 12, clock=None):
        self.house_address = house_address
        self.clock = clock
        self.house_balance = house_balance
        self.transactions = {}
        self.recent = []
        self.transfers = []
        self.lookups = []
        self.on_transfer = None
        self.on_confirm = None
        self.budgets = []
        self.confirmed = []
        self.fail_transfers = False
        self._ids = itertools.count(1)

    def add_deposit(self, sender, lamports, block_time_ms, network_fee=5000, to=None, failed=False):
        signature = f"dep{next(self._ids)}"
        to = to or self.house_address
        balances = {
            sender: (10 ** 12, 10 ** 12 - lamports - network_fee),
            to: (5 * 10 ** 11, 5 * 10 ** 11 + lamports),
        }
        self.transactions[signature] = LedgerTransaction(signature, block_time_ms, failed, balances)
        self.recent.insert(0, signature)
        return signature

    def get_transaction(self, signature):
        self.lookups.append(signature)
        return self.transactions.get(signature)

    def recent_signatures(self, address, limit):
        return self.recent[:limit]

    def balance(self, address):
        return self.house_balance if address == self.house_address else 0

    def transfer(self, to_address, lamports, budget_sec=None):
        self.budgets.append(budget_sec)
        started = self.clock() if self.clock else None
        if self.fail_transfers:
            raise LedgerError('Transfer failed: node unreachable')
        if self.house_balance < lamports:
            raise InsufficientHouseFunds(
                f"House insufficient funds. Balance={self.house_balance} lamports, need={lamports}"
            )
        if self.on_transfer is not None:
            hook, self.on_transfer = self.on_transfer, None
            hook()
        # A stall before the send that eats the budget aborts without paying
        if budget_sec is not None and started is not None and self.clock() - started > budget_sec * 1000:
            raise LedgerError(f"Transfer aborted before send: ledger too slow for a {budget_sec}s budget")
        self.house_balance -= lamports
        self.transfers.append((to_address, lamports))
        return f"payout{next(self._ids)}"

    def confirm(self, signature):
        if self.on_confirm is not None:
            hook, self.on_confirm = self.on_confirm, None
            hook()
        self.confirmed.append(signature)
        return True


class MatchDriver:
    """Drives matches through the HTTP API the way a client would."""

    def __init__(self, client, ledger, clock):
        self.client = client
        self.ledger = ledger
        self.clock = clock

    def deposit(self, sender, lamports=BET):
        return self.ledger.add_deposit(sender, lamports, self.clock.now)

    def create(self, creator, bet=BET, payment_sig=None):
        if payment_sig is None:
            payment_sig = self.deposit(creator, bet)
        return self.client.post('/api/matches/create', json={
            'creatorPubkey': creator, 'betLamports': bet, 'paymentSig': payment_sig,
        })

    def join(self, match_id, joiner, bet=BET, payment_sig=None):
        if payment_sig is None:
            payment_sig = self.deposit(joiner, bet)
        return self.client.post(f'/api/matches/{match_id}/join', json={
            'joinerPubkey': joiner, 'paymentSig': payment_sig,
        })

    def start(self, creator, joiner, bet=BET):
        """Create and join a match; return its id and session tokens by mark."""
        created = self.create(creator, bet).get_json()
        joined = self.join(created['matchId'], joiner, bet).get_json()
        match = joined['match']
        tokens = {creator: created['sessionToken'], joiner: joined['sessionToken']}
        return match['id'], {'X': tokens[match['xPlayer']], 'O': tokens[match['oPlayer']]}

    def move(self, match_id, token, index):
        return self.client.post(f'/api/matches/{match_id}/move', json={'sessionToken': token, 'index': index})

    def claim(self, match_id, token):
        return self.client.post(f'/api/matches/{match_id}/claim', json={'sessionToken': token})

    def cancel(self, match_id, token):
        return self.client.post(f'/api/matches/{match_id}/cancel', json={'sessionToken': token})

    def get(self, match_id):
        return self.client.get(f'/api/matches/{match_id}')


@pytest.fixture()
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr('wagerplay.clock._local_now_ms', fake)
    return fake


@pytest.fixture()
def house():
    return new_pubkey()


@pytest.fixture()
def ledger(house, clock):
    return FakeLedger(house, clock=clock)


@pytest.fixture()
def flask_app(ledger, clock):
    application = create_app(TestConfig, ledger=ledger)
    with application.app_context():
        # Ensure models are imported so tables are created
        import wagerplay.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def driver(client, ledger, clock):
    return MatchDriver(client, ledger, clock)


@pytest.fixture()
def creator():
    return new_pubkey()


@pytest.fixture()
def joiner():
    return new_pubkey()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')
