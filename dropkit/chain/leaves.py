"""Leaf encoding: deterministic byte layout of one entitlement.

Mirrors Solidity abi.encodePacked:
  account drop:   address(20) | uint256 amount
  salted drop:    bytes16 salt | address(20) | uint256 amount
  NFT drop:       address(20) | uint256 tokenId | uint256 tokenId | ...
"""

from __future__ import annotations

from typing import Iterable

from eth_utils import is_address, to_canonical_address, to_checksum_address
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from dropkit.chain.hashing import FULL_WIDTH, Hasher

UINT256_MAX = 2**256 - 1
SALT_SIZE = 16


def encode_uint256(value: int) -> bytes:
    if value < 0 or value > UINT256_MAX:
        raise ValueError(f"uint256 out of range: {value}")
    return value.to_bytes(32, "big")


def address_bytes(account: str | bytes) -> bytes:
    """20-byte canonical form of a hex address."""
    if isinstance(account, bytes):
        if len(account) != 20:
            raise ValueError(f"Address must be 20 bytes, got {len(account)}")
        return account
    if not is_address(account):
        raise ValueError(f"Invalid address: {account}")
    return to_canonical_address(account)


def encode_account_amount(account: str | bytes, amount: int) -> bytes:
    return address_bytes(account) + encode_uint256(amount)


def encode_salted(salt: bytes, account: str | bytes, amount: int) -> bytes:
    if len(salt) != SALT_SIZE:
        raise ValueError(f"Salt must be {SALT_SIZE} bytes, got {len(salt)}")
    return salt + address_bytes(account) + encode_uint256(amount)


def encode_token_ids(account: str | bytes, token_ids: Iterable[int]) -> bytes:
    """Encode in the given order; the verifier hashes what the caller sends."""
    return address_bytes(account) + b"".join(encode_uint256(t) for t in token_ids)


class Entitlement(BaseModel):
    """One recipient's cumulative entitlement. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    account: str
    amount: int = 0
    salt: bytes | None = None
    token_ids: tuple[int, ...] | None = None

    @field_validator("account")
    @classmethod
    def _checksum(cls, v: str) -> str:
        if not is_address(v):
            raise ValueError(f"Invalid address: {v}")
        return to_checksum_address(v)

    @field_validator("amount")
    @classmethod
    def _amount_range(cls, v: int) -> int:
        if v < 0 or v > UINT256_MAX:
            raise ValueError(f"Amount out of uint256 range: {v}")
        return v

    @field_validator("salt")
    @classmethod
    def _salt_size(cls, v: bytes | None) -> bytes | None:
        if v is not None and len(v) != SALT_SIZE:
            raise ValueError(f"Salt must be {SALT_SIZE} bytes, got {len(v)}")
        return v

    @field_validator("token_ids")
    @classmethod
    def _sort_ids(cls, v: tuple[int, ...] | None) -> tuple[int, ...] | None:
        if v is None:
            return None
        for token_id in v:
            if token_id < 0 or token_id > UINT256_MAX:
                raise ValueError(f"Token id out of uint256 range: {token_id}")
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate token ids: {sorted(v)}")
        return tuple(sorted(v))

    @model_validator(mode="after")
    def _one_variant(self) -> "Entitlement":
        if self.salt is not None and self.token_ids is not None:
            raise ValueError("An entitlement is either salted or an NFT set, not both")
        return self

    def encode(self) -> bytes:
        if self.token_ids is not None:
            return encode_token_ids(self.account, self.token_ids)
        if self.salt is not None:
            return encode_salted(self.salt, self.account, self.amount)
        return encode_account_amount(self.account, self.amount)

    def leaf(self, hasher: Hasher = FULL_WIDTH) -> bytes:
        return hasher.digest(self.encode())
