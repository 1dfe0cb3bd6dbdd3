"""
EmergencyCash Token Ledger Client

The token ledger is an external ERC-20 contract reached over JSON-RPC.
The engine depends only on the abstract interfaces here; Web3ChainClient is
the production implementation.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
)

from .errors import LedgerError, TransferError
from .identity import CardIdentity

logger = logging.getLogger(__name__)

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [{"name": "to", "type": "address"}, {"name": "value", "type": "uint256"}],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]

# Failures of an RPC round trip. requests' errors are OSError subclasses.
RPC_ERRORS = (Web3Exception, OSError, ValueError)


@dataclass(frozen=True)
class TransferReceipt:
    """Confirmed token transfer."""
    tx_hash: str
    block_number: Optional[int] = None
    gas_used: Optional[int] = None


class TokenLedger(ABC):
    """One ERC-20-like token contract."""

    address: str

    @abstractmethod
    def balance_of(self, owner: str) -> int:
        pass

    @abstractmethod
    def decimals(self) -> int:
        pass

    @abstractmethod
    def symbol(self) -> str:
        pass

    @abstractmethod
    def transfer(self, sender: CardIdentity, to: str, amount: int) -> TransferReceipt:
        """
        Transfer from the sender card and wait for confirmation.

        Raises:
            TransferError: not confirmed; tx_hash set if it was submitted
        """


class ChainClient(ABC):
    """Network access: token contracts and native-currency gas funds."""

    @abstractmethod
    def token(self, address: str) -> TokenLedger:
        pass

    @abstractmethod
    def native_balance(self, address: str) -> int:
        pass

    @abstractmethod
    def transfer_fee(self) -> int:
        """Native units needed to submit one token transfer."""

    @abstractmethod
    def transfer_status(self, tx_hash: str) -> Optional[bool]:
        """
        Look up an earlier transfer.

        Returns:
            True if mined and successful, False if mined and reverted,
            None if no receipt exists yet
        """


class Erc20TokenLedger(TokenLedger):
    """
    ERC-20 contract over web3.

    decimals() and symbol() are optional in ERC-20. When the contract does
    not implement them the configured defaults are returned and a warning
    is logged.
    """

    def __init__(self, client: 'Web3ChainClient', address: str):
        self.client = client
        self.address = Web3.to_checksum_address(address)
        self._contract = client.w3.eth.contract(address=self.address, abi=ERC20_ABI)

    def balance_of(self, owner: str) -> int:
        try:
            return int(self._contract.functions.balanceOf(Web3.to_checksum_address(owner)).call())
        except RPC_ERRORS as e:
            raise LedgerError(f"balanceOf failed for {owner}: {e}") from e

    def decimals(self) -> int:
        try:
            return int(self._contract.functions.decimals().call())
        except (ContractLogicError, BadFunctionCallOutput):
            logger.warning("Token %s has no decimals(); using default %d",
                           self.address, self.client.default_decimals)
            return self.client.default_decimals
        except RPC_ERRORS as e:
            raise LedgerError(f"decimals failed for {self.address}: {e}") from e

    def symbol(self) -> str:
        try:
            return str(self._contract.functions.symbol().call())
        except (ContractLogicError, BadFunctionCallOutput):
            logger.warning("Token %s has no symbol(); using default %s",
                           self.address, self.client.default_symbol)
            return self.client.default_symbol
        except RPC_ERRORS as e:
            raise LedgerError(f"symbol failed for {self.address}: {e}") from e

    def transfer(self, sender: CardIdentity, to: str, amount: int) -> TransferReceipt:
        w3 = self.client.w3
        account = Account.from_key(sender.private_key)
        try:
            tx = self._contract.functions.transfer(Web3.to_checksum_address(to), amount).build_transaction({
                "from": account.address,
                "chainId": self.client.chain_id(),
                "gas": self.client.gas_limit,
                "gasPrice": w3.eth.gas_price,
                "nonce": w3.eth.get_transaction_count(account.address, "pending"),
            })
            signed = account.sign_transaction(tx)
        except RPC_ERRORS as e:
            raise TransferError(f"Transfer preparation failed: {e}") from e

        # Known before sending; a send that errors may still have reached the node
        tx_hash = Web3.to_hex(signed.hash)
        try:
            w3.eth.send_raw_transaction(signed.raw_transaction)
        except RPC_ERRORS as e:
            raise TransferError(f"Transfer {tx_hash} submission failed: {e}", tx_hash=tx_hash) from e

        logger.info("Transfer submitted %s from %s", tx_hash, account.address)

        try:
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.client.receipt_timeout)
        except TimeExhausted as e:
            raise TransferError(f"Transfer {tx_hash} not confirmed in time", tx_hash=tx_hash) from e
        except RPC_ERRORS as e:
            raise TransferError(f"Transfer {tx_hash} receipt lookup failed: {e}", tx_hash=tx_hash) from e

        if receipt.get("status") != 1:
            raise TransferError(f"Transfer {tx_hash} reverted", tx_hash=tx_hash, reverted=True)

        return TransferReceipt(
            tx_hash=tx_hash,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )


class Web3ChainClient(ChainClient):
    """
    JSON-RPC chain access.

    The transfer fee is gas_limit * current gas price; no per-call
    estimation, so the preflight and the submitted transaction agree.
    """

    def __init__(
        self,
        rpc_url: str,
        chain_id: Optional[int] = None,
        gas_limit: int = 100000,
        receipt_timeout: int = 120,
        default_decimals: int = 6,
        default_symbol: str = "TOKEN",
        w3: Optional[Web3] = None
    ):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))
        self._chain_id = chain_id
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout
        self.default_decimals = default_decimals
        self.default_symbol = default_symbol

    def chain_id(self) -> int:
        if self._chain_id is None:
            try:
                self._chain_id = int(self.w3.eth.chain_id)
            except RPC_ERRORS as e:
                raise LedgerError(f"Cannot read chain id: {e}") from e
        return self._chain_id

    def token(self, address: str) -> TokenLedger:
        return Erc20TokenLedger(self, address)

    def native_balance(self, address: str) -> int:
        try:
            return int(self.w3.eth.get_balance(Web3.to_checksum_address(address)))
        except RPC_ERRORS as e:
            raise LedgerError(f"Cannot read native balance of {address}: {e}") from e

    def transfer_fee(self) -> int:
        try:
            return self.gas_limit * int(self.w3.eth.gas_price)
        except RPC_ERRORS as e:
            raise LedgerError(f"Cannot read gas price: {e}") from e

    def transfer_status(self, tx_hash: str) -> Optional[bool]:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except RPC_ERRORS as e:
            raise LedgerError(f"Cannot read receipt of {tx_hash}: {e}") from e
        return receipt.get("status") == 1
