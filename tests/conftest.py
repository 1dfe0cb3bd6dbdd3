"""
Shared fixtures: an in-process token ledger so no test needs a network.
"""

import threading

import pytest

from emergencycash.errors import LedgerError, TransferError
from emergencycash.ledger import ChainClient, TokenLedger, TransferReceipt

MASTER_SECRET = "test-master-secret-do-not-use"
OTHER_SECRET = "another-deployment-secret"

MERCHANT = "0x1111111111111111111111111111111111111111"
TOKEN = "0x2222222222222222222222222222222222222222"

UID = "CA0F79B4"


class ManualClock:
    """Clock whose time only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTokenLedger(TokenLedger):
    """
    ERC-20 stand-in.

    fail_mode controls the next transfer: None succeeds; "unsubmitted",
    "reverted" and "timeout" raise TransferError the way the web3 client does.
    A timed-out transfer stays pending until mine() decides its fate.
    """

    def __init__(self, address: str, decimals: int = 6, symbol: str = "USDC"):
        self.address = address
        self._decimals = decimals
        self._symbol = symbol
        self.balances = {}
        self.transfers = []
        self.pending = {}
        self.statuses = {}
        self.fail_mode = None
        self.unavailable = False
        self._lock = threading.Lock()
        self._tx_counter = 0

    def credit(self, owner: str, amount: int) -> None:
        self.balances[owner.lower()] = self.balances.get(owner.lower(), 0) + amount

    def balance_of(self, owner: str) -> int:
        if self.unavailable:
            raise LedgerError("RPC endpoint unreachable")
        return self.balances.get(owner.lower(), 0)

    def decimals(self) -> int:
        return self._decimals

    def symbol(self) -> str:
        return self._symbol

    def _next_hash(self) -> str:
        self._tx_counter += 1
        return f"0x{self._tx_counter:064x}"

    def transfer(self, sender, to, amount):
        with self._lock:
            if self.fail_mode == "unsubmitted":
                raise TransferError("Transfer submission failed: connection refused")
            tx_hash = self._next_hash()
            if self.fail_mode == "reverted":
                self.statuses[tx_hash] = False
                raise TransferError(f"Transfer {tx_hash} reverted", tx_hash=tx_hash, reverted=True)
            if self.fail_mode == "timeout":
                self.pending[tx_hash] = (sender.address, to, amount)
                raise TransferError(f"Transfer {tx_hash} not confirmed in time", tx_hash=tx_hash)
            if not self._apply(tx_hash, sender.address, to, amount):
                raise TransferError(f"Transfer {tx_hash} reverted", tx_hash=tx_hash, reverted=True)
            return TransferReceipt(tx_hash=tx_hash, block_number=len(self.transfers), gas_used=51000)

    def mine(self, tx_hash: str, revert: bool = False) -> None:
        """Confirm (or revert) a transfer left pending by a timeout."""
        with self._lock:
            sender, to, amount = self.pending.pop(tx_hash)
            if revert:
                self.statuses[tx_hash] = False
            else:
                self._apply(tx_hash, sender, to, amount)

    def _apply(self, tx_hash, sender, to, amount) -> bool:
        source = sender.lower()
        if self.balances.get(source, 0) < amount:
            self.statuses[tx_hash] = False
            return False
        self.balances[source] -= amount
        self.credit(to, amount)
        self.transfers.append((sender, to, amount, tx_hash))
        self.statuses[tx_hash] = True
        return True


class FakeChainClient(ChainClient):
    """Chain with one token and a fixed transfer fee."""

    def __init__(self, token_address: str = TOKEN, fee: int = 21000 * 10 ** 9):
        self.ledger = FakeTokenLedger(token_address)
        self.native = {}
        self.fee = fee

    def token(self, address: str) -> TokenLedger:
        if address.lower() != self.ledger.address.lower():
            raise LedgerError(f"No contract at {address}")
        return self.ledger

    def native_balance(self, address: str) -> int:
        return self.native.get(address.lower(), 0)

    def transfer_fee(self) -> int:
        return self.fee

    def transfer_status(self, tx_hash: str):
        return self.ledger.statuses.get(tx_hash)

    def fund(self, address: str, tokens: int = 10_000_000, native: int = 10 ** 18) -> None:
        self.ledger.credit(address, tokens)
        self.native[address.lower()] = native


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def db_file(tmp_path):
    return tmp_path / "emergencycash.db"
