"""In-memory chain: blocks, event logs, ERC-20 and ERC-721 balances.

LocalChain is the execution environment for the verifier models in
dropkit.chain.verifier. It also implements the same async read surface as
dropkit.clients.evm.EvmClient, so the scanner and the statistics collector
can run against it unchanged.

Every top-level state-changing call runs inside chain.transaction(), which
mines exactly one block. Nested calls (a drop paying out through the token)
share the outer block. A body that raises leaves no trace beyond
the mined block: balances, claim state and logs are rolled back.
"""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from typing import Any, Iterator

from eth_utils import keccak, to_checksum_address

from dropkit.chain.events import (
    TRANSFER_TOPIC,
    LogEvent,
    LogFilter,
    address_topic,
)
from dropkit.errors import InsufficientBalanceError, LogQueryError, NotOwnerError

log = logging.getLogger("chain.ledger")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _word(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


class LocalChain:
    """Block counter + log store + contract registry."""

    def __init__(
        self,
        chain_id: int = 31337,
        start_block: int = 0,
        start_time: int = 1_700_000_000,
        block_time: int = 12,
        max_block_range: int | None = None,
    ):
        self.chain_id = chain_id
        self.block_time = block_time
        self.max_block_range = max_block_range
        self._block = start_block
        self._timestamps: dict[int, int] = {start_block: start_time}
        self._logs: list[LogEvent] = []
        self._contracts: dict[str, Contract] = {}
        self._nonce = 0
        self._depth = 0
        self._log_index = 0
        self.log_queries = 0

    # --- blocks -----------------------------------------------------------

    @property
    def block_number(self) -> int:
        return self._block

    def mine(self, blocks: int = 1) -> int:
        """Advance the chain by `blocks` empty blocks."""
        for _ in range(blocks):
            prev = self._timestamps[self._block]
            self._block += 1
            self._timestamps[self._block] = prev + self.block_time
        self._log_index = 0
        return self._block

    def timestamp(self, block: int) -> int:
        if block not in self._timestamps:
            raise ValueError(f"Block {block} has not been mined")
        return self._timestamps[block]

    @contextmanager
    def transaction(self) -> Iterator[int]:
        """Run the body in a freshly mined block (or the enclosing one).

        If the outermost body raises, every contract and the log store are
        restored to their state before it ran. The block stays mined.
        """
        outermost = self._depth == 0
        if outermost:
            self.mine()
            checkpoint = self._checkpoint()
        self._depth += 1
        try:
            yield self._block
        except Exception:
            if outermost:
                self._revert(checkpoint)
            raise
        finally:
            self._depth -= 1

    def _checkpoint(self) -> tuple[int, int, dict[str, Contract], dict[str, dict[str, Any]]]:
        states = {address: contract._snapshot() for address, contract in self._contracts.items()}
        return len(self._logs), self._log_index, dict(self._contracts), states

    def _revert(self, checkpoint: tuple[int, int, dict[str, Contract], dict[str, dict[str, Any]]]) -> None:
        log_count, log_index, contracts, states = checkpoint
        del self._logs[log_count:]
        self._log_index = log_index
        self._contracts = contracts
        for address, state in states.items():
            contracts[address]._restore(state)
        log.debug("Reverted transaction in block %s", self._block)

    # --- contracts --------------------------------------------------------

    def allocate_address(self) -> str:
        self._nonce += 1
        seed = b"dropkit.local" + self.chain_id.to_bytes(8, "big") + self._nonce.to_bytes(8, "big")
        return to_checksum_address(keccak(seed)[-20:])

    def register(self, contract: Contract) -> None:
        self._contracts[contract.address] = contract

    def contract(self, address: str) -> Contract:
        try:
            return self._contracts[to_checksum_address(address)]
        except KeyError:
            raise ValueError(f"No contract at {address}") from None

    # --- logs -------------------------------------------------------------

    def emit(self, address: str, topics: list[str], data: str = "0x") -> LogEvent:
        event = LogEvent(
            address=address,
            topics=tuple(t.lower() for t in topics),
            data=data,
            block_number=self._block,
            log_index=self._log_index,
        )
        self._log_index += 1
        self._logs.append(event)
        return event

    def logs(self, log_filter: LogFilter | None = None) -> list[LogEvent]:
        if log_filter is None:
            return list(self._logs)
        return [e for e in self._logs if log_filter.matches(e)]

    async def get_logs(self, log_filter: LogFilter, from_block: int, to_block: int) -> list[LogEvent]:
        """eth_getLogs over [from_block, to_block], inclusive."""
        self.log_queries += 1
        span = to_block - from_block + 1
        if self.max_block_range is not None and span > self.max_block_range:
            log.debug("Rejecting log query %s-%s (%s blocks)", from_block, to_block, span)
            raise LogQueryError(
                f"Block range {span} exceeds limit {self.max_block_range}",
                from_block=from_block,
                to_block=to_block,
            )
        return [
            e for e in self._logs
            if from_block <= e.block_number <= to_block and log_filter.matches(e)
        ]

    # --- async read surface (mirrors EvmClient) ---------------------------

    async def get_block_number(self) -> int:
        return self._block

    async def get_block_timestamp(self, block: int) -> int:
        return self.timestamp(block)

    async def get_owner(self, address: str) -> str:
        return self.contract(address).owner

    async def get_decimals(self, token: str) -> int:
        return self._token(token).decimals

    async def get_symbol(self, token: str) -> str:
        return self._token(token).symbol

    async def get_balance(self, token: str, account: str) -> int:
        return self._token(token).balance_of(account)

    def _token(self, address: str) -> TokenLedger:
        contract = self.contract(address)
        if not isinstance(contract, TokenLedger):
            raise ValueError(f"{address} is not an ERC-20 token")
        return contract


class Contract:
    """Deployed contract with an owner."""

    def __init__(self, chain: LocalChain, owner: str):
        self.chain = chain
        self.address = chain.allocate_address()
        self.owner = to_checksum_address(owner)
        chain.register(self)

    def _snapshot(self) -> dict[str, Any]:
        # containers are copied, references to the chain and other contracts are kept
        return {
            name: copy.copy(value) if isinstance(value, (dict, set, list)) else value
            for name, value in vars(self).items()
        }

    def _restore(self, state: dict[str, Any]) -> None:
        vars(self).clear()
        vars(self).update(state)

    def _only_owner(self, caller: str) -> None:
        if to_checksum_address(caller) != self.owner:
            raise NotOwnerError(caller, self.owner)

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        self._only_owner(caller)
        self.owner = to_checksum_address(new_owner)


class TokenLedger(Contract):
    """ERC-20 balances with Transfer logs."""

    def __init__(
        self,
        chain: LocalChain,
        owner: str,
        symbol: str = "TKN",
        decimals: int = 18,
    ):
        super().__init__(chain, owner)
        self.symbol = symbol
        self.decimals = decimals
        self.total_supply = 0
        self._balances: dict[str, int] = {}

    def balance_of(self, account: str) -> int:
        return self._balances.get(to_checksum_address(account), 0)

    def mint(self, to: str, amount: int) -> None:
        with self.chain.transaction():
            to = to_checksum_address(to)
            self._balances[to] = self._balances.get(to, 0) + amount
            self.total_supply += amount
            self._emit_transfer(ZERO_ADDRESS, to, amount)

    def transfer(self, sender: str, to: str, amount: int) -> None:
        with self.chain.transaction():
            sender = to_checksum_address(sender)
            to = to_checksum_address(to)
            balance = self._balances.get(sender, 0)
            if amount > balance:
                raise InsufficientBalanceError(sender, balance, amount)
            self._balances[sender] = balance - amount
            self._balances[to] = self._balances.get(to, 0) + amount
            self._emit_transfer(sender, to, amount)

    def _emit_transfer(self, sender: str, to: str, amount: int) -> None:
        self.chain.emit(
            self.address,
            [TRANSFER_TOPIC, address_topic(sender), address_topic(to)],
            _word(amount),
        )


class NFTLedger(Contract):
    """ERC-721 ownership with operator approvals and Transfer logs."""

    def __init__(self, chain: LocalChain, owner: str, symbol: str = "NFT"):
        super().__init__(chain, owner)
        self.symbol = symbol
        self._owners: dict[int, str] = {}
        self._operators: set[tuple[str, str]] = set()

    def owner_of(self, token_id: int) -> str:
        try:
            return self._owners[token_id]
        except KeyError:
            raise ValueError(f"Token {token_id} does not exist") from None

    def balance_of(self, account: str) -> int:
        account = to_checksum_address(account)
        return sum(1 for holder in self._owners.values() if holder == account)

    def mint(self, caller: str, to: str, token_id: int) -> None:
        self._only_owner(caller)
        if token_id in self._owners:
            raise ValueError(f"Token {token_id} already minted")
        with self.chain.transaction():
            to = to_checksum_address(to)
            self._owners[token_id] = to
            self._emit_transfer(ZERO_ADDRESS, to, token_id)

    def set_approval_for_all(self, holder: str, operator: str, approved: bool) -> None:
        with self.chain.transaction():
            key = (to_checksum_address(holder), to_checksum_address(operator))
            if approved:
                self._operators.add(key)
            else:
                self._operators.discard(key)

    def is_approved_for_all(self, holder: str, operator: str) -> bool:
        return (to_checksum_address(holder), to_checksum_address(operator)) in self._operators

    def transfer_from(self, caller: str, sender: str, to: str, token_id: int) -> None:
        with self.chain.transaction():
            caller = to_checksum_address(caller)
            sender = to_checksum_address(sender)
            holder = self.owner_of(token_id)
            if holder != sender:
                raise ValueError(f"Token {token_id} is owned by {holder}, not {sender}")
            if caller != holder and not self.is_approved_for_all(holder, caller):
                raise NotOwnerError(caller, holder)
            self._owners[token_id] = to_checksum_address(to)
            self._emit_transfer(sender, to, token_id)

    def _emit_transfer(self, sender: str, to: str, token_id: int) -> None:
        self.chain.emit(
            self.address,
            [TRANSFER_TOPIC, address_topic(sender), address_topic(to), _word(token_id)],
        )
