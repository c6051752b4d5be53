"""Ledger collaborator: deposit lookups and payouts from the house address."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import json
import time

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from wagerplay.errors import InsufficientHouseFunds, LedgerError


@dataclass
class LedgerTransaction:
    signature: str
    block_time_ms: Optional[int]
    failed: bool
    # address -> (pre balance, post balance)
    balances: Dict[str, Tuple[int, int]] = field(default_factory=dict)

    def delta(self, address: str) -> Optional[int]:
        if address not in self.balances:
            return None
        pre, post = self.balances[address]
        return post - pre


class Ledger:
    """Interface the match server relies on."""

    house_address = ''

    def get_transaction(self, signature: str) -> Optional[LedgerTransaction]:
        raise NotImplementedError

    def recent_signatures(self, address: str, limit: int) -> List[str]:
        raise NotImplementedError

    def balance(self, address: str) -> int:
        raise NotImplementedError

    def transfer(self, to_address: str, lamports: int, budget_sec: Optional[int] = None) -> str:
        raise NotImplementedError

    def confirm(self, signature: str) -> bool:
        raise NotImplementedError


def is_valid_address(value) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        Pubkey.from_string(value)
    except ValueError:
        return False
    return True


def parse_secret_key(raw: str) -> Keypair:
    """Accept a JSON byte array ("[1,2,...]") or a base58 string."""
    raw = raw.strip().strip('"')
    if raw.startswith('[') and raw.endswith(']'):
        try:
            values = json.loads(raw)
        except ValueError:
            raise LedgerError('HOUSE_SECRET_KEY looks like JSON but failed to parse', status_code=500)
        if not isinstance(values, list) or not all(isinstance(n, int) for n in values):
            raise LedgerError('HOUSE_SECRET_KEY JSON must be an array of integers', status_code=500)
        return Keypair.from_bytes(bytes(values))
    try:
        return Keypair.from_base58_string(raw)
    except ValueError:
        raise LedgerError('HOUSE_SECRET_KEY is not valid base58 (and not a JSON array)', status_code=500)


def _key_str(key) -> str:
    # jsonParsed messages wrap keys in ParsedAccount objects
    if hasattr(key, 'pubkey'):
        return str(key.pubkey)
    return str(key)


class SolanaLedger(Ledger):
    def __init__(self, rpc_url, house_address, secret_key='', timeout=10, fee_buffer=10_000):
        self.rpc_url = rpc_url
        self.house_address = house_address
        self.timeout = timeout
        self.fee_buffer = fee_buffer
        self._secret_key = secret_key
        self._keypair_cache = None
        self._client = Client(rpc_url, commitment=Confirmed, timeout=timeout)

    @classmethod
    def from_config(cls, config):
        return cls(
            rpc_url=config['SOLANA_RPC_URL'],
            house_address=config.get('HOUSE_PUBKEY', ''),
            secret_key=config.get('HOUSE_SECRET_KEY', ''),
            timeout=int(config.get('LEDGER_TIMEOUT_SEC', 10)),
            fee_buffer=int(config.get('HOUSE_FEE_BUFFER_LAMPORTS', 10_000)),
        )

    def _keypair(self) -> Keypair:
        if self._keypair_cache is None:
            if not self._secret_key:
                raise LedgerError('Missing HOUSE_SECRET_KEY', status_code=500)
            self._keypair_cache = parse_secret_key(self._secret_key)
        return self._keypair_cache

    def get_transaction(self, signature):
        try:
            sig = Signature.from_string(signature)
        except ValueError:
            return None
        try:
            resp = self._client.get_transaction(
                sig, commitment=Confirmed, max_supported_transaction_version=0
            )
        except (SolanaRpcException, RPCException) as exc:
            raise LedgerError(f"Ledger lookup failed: {exc}")
        tx = resp.value
        if tx is None:
            return None

        meta = tx.transaction.meta
        if meta is None:
            return LedgerTransaction(signature, None, False)
        keys = [_key_str(k) for k in tx.transaction.transaction.message.account_keys]
        loaded = meta.loaded_addresses
        if loaded:
            keys += [str(k) for k in loaded.writable] + [str(k) for k in loaded.readonly]
        pre, post = meta.pre_balances, meta.post_balances
        balances = {}
        for idx, key in enumerate(keys):
            if idx < len(pre) and idx < len(post):
                balances[key] = (pre[idx], post[idx])
        return LedgerTransaction(
            signature=signature,
            block_time_ms=tx.block_time * 1000 if tx.block_time else None,
            failed=meta.err is not None,
            balances=balances,
        )

    def recent_signatures(self, address, limit):
        try:
            resp = self._client.get_signatures_for_address(Pubkey.from_string(address), limit=limit)
        except (SolanaRpcException, RPCException) as exc:
            raise LedgerError(f"Ledger signature scan failed: {exc}")
        return [str(s.signature) for s in resp.value]

    def balance(self, address):
        try:
            return self._client.get_balance(Pubkey.from_string(address), commitment=Confirmed).value
        except (SolanaRpcException, RPCException) as exc:
            raise LedgerError(f"Ledger balance lookup failed: {exc}")

    def _check_budget(self, started, budget_sec, step):
        # Raised before anything is sent
        if budget_sec is None:
            return
        if time.monotonic() - started + self.timeout > budget_sec:
            raise LedgerError(f"Transfer aborted before {step}: ledger too slow for a {budget_sec}s budget")

    def transfer(self, to_address, lamports, budget_sec=None):
        """Send ``lamports`` from the house and return the signature.

        Does not wait for confirmation. With ``budget_sec`` the send is only
        attempted while a full RPC timeout still fits inside the budget.
        """
        started = time.monotonic()
        keypair = self._keypair()
        house = keypair.pubkey()
        needed = lamports + self.fee_buffer
        available = self.balance(str(house))
        if available < needed:
            raise InsufficientHouseFunds(
                f"House insufficient funds. Balance={available} lamports, need={needed}"
            )
        try:
            self._check_budget(started, budget_sec, 'blockhash')
            blockhash = self._client.get_latest_blockhash(Confirmed).value.blockhash
            ix = transfer(TransferParams(
                from_pubkey=house,
                to_pubkey=Pubkey.from_string(to_address),
                lamports=lamports,
            ))
            message = Message.new_with_blockhash([ix], house, blockhash)
            self._check_budget(started, budget_sec, 'send')
            sig = self._client.send_transaction(
                Transaction([keypair], message, blockhash),
                opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed),
            ).value
        except (SolanaRpcException, RPCException) as exc:
            raise LedgerError(f"Transfer failed: {exc}")
        return str(sig)

    def confirm(self, signature):
        """One status lookup; True once the transfer is confirmed without error."""
        try:
            resp = self._client.get_signature_statuses([Signature.from_string(signature)])
        except (SolanaRpcException, RPCException) as exc:
            raise LedgerError(f"Ledger status lookup failed: {exc}")
        status = resp.value[0] if resp.value else None
        if status is None or status.err is not None:
            return False
        return status.confirmation_status in (
            TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized,
        )
