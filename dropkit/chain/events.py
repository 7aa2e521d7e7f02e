"""Event log types shared by the local ledger, the RPC client and the scanner."""

from __future__ import annotations

from typing import Any

from eth_utils import keccak, to_checksum_address
from pydantic import BaseModel, ConfigDict, Field

TRANSFER_SIGNATURE = "Transfer(address,address,uint256)"
TRANSFER_TOPIC = "0x" + keccak(text=TRANSFER_SIGNATURE).hex()
CLAIMED_TOPIC = "0x" + keccak(text="Claimed(address,uint256)").hex()
ROOT_UPDATED_TOPIC = "0x" + keccak(text="MerkelRootUpdated(bytes32,bytes32)").hex()


def address_topic(account: str) -> str:
    """32-byte, left-padded topic form of an address."""
    return "0x" + "0" * 24 + account.lower().removeprefix("0x")


def topic_address(topic: str) -> str:
    return to_checksum_address("0x" + topic[-40:])


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


class LogEvent(BaseModel):
    """One log entry, as returned by eth_getLogs."""

    model_config = ConfigDict(frozen=True)

    address: str
    topics: tuple[str, ...] = ()
    data: str = "0x"
    block_number: int
    log_index: int
    transaction_hash: str = ""

    @classmethod
    def from_rpc(cls, raw: dict[str, Any]) -> LogEvent:
        return cls(
            address=to_checksum_address(raw["address"]),
            topics=tuple(t.lower() for t in raw.get("topics", [])),
            data=raw.get("data", "0x"),
            block_number=_to_int(raw["blockNumber"]),
            log_index=_to_int(raw["logIndex"]),
            transaction_hash=raw.get("transactionHash", "") or "",
        )

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


class LogFilter(BaseModel):
    """Address + positional topic filter; None matches any topic."""

    model_config = ConfigDict(frozen=True)

    address: str | None = None
    topics: tuple[str | None, ...] = Field(default_factory=tuple)

    def matches(self, log: LogEvent) -> bool:
        if self.address and log.address.lower() != self.address.lower():
            return False
        for i, wanted in enumerate(self.topics):
            if wanted is None:
                continue
            if i >= len(log.topics) or log.topics[i].lower() != wanted.lower():
                return False
        return True

    def to_rpc(self, from_block: int, to_block: int) -> dict[str, Any]:
        params: dict[str, Any] = {
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "topics": list(self.topics),
        }
        if self.address:
            params["address"] = self.address
        return params


def transfer_filter(token: str, from_address: str | None = None, to_address: str | None = None) -> LogFilter:
    return LogFilter(
        address=token,
        topics=(
            TRANSFER_TOPIC,
            address_topic(from_address) if from_address else None,
            address_topic(to_address) if to_address else None,
        ),
    )


class TransferEvent(BaseModel):
    """Decoded ERC-20 / ERC-721 Transfer."""

    model_config = ConfigDict(frozen=True)

    token: str
    from_address: str
    to_address: str
    value: int
    block_number: int
    log_index: int

    @classmethod
    def from_log(cls, log: LogEvent) -> TransferEvent:
        if len(log.topics) < 3 or log.topics[0] != TRANSFER_TOPIC:
            raise ValueError(f"Not a Transfer log: {log.topics[:1]}")
        if len(log.topics) == 4:
            # ERC-721: tokenId is indexed
            value = int(log.topics[3], 16)
        else:
            value = int(log.data, 16) if log.data not in ("", "0x") else 0
        return cls(
            token=log.address,
            from_address=topic_address(log.topics[1]),
            to_address=topic_address(log.topics[2]),
            value=value,
            block_number=log.block_number,
            log_index=log.log_index,
        )
