"""Claim verifiers: executable models of the drop contracts.

Each drop holds a published root and a claimed-state map, and pays out
through a TokenLedger / NFTLedger on the same LocalChain.

Reject order for cumulative claims (checked before any state changes):
  1. expected root != current root   -> StaleRootError
  2. proof does not reach the root   -> InvalidProofError
  3. cumulative <= already claimed   -> NothingToClaimError

Root replacement is owner-only and unchecked: the owner is trusted to
publish a root whose amounts are >= every previously committed amount for
the same identity.
"""

from __future__ import annotations

import logging
from typing import Sequence

from eth_utils import to_checksum_address

from dropkit.chain.events import CLAIMED_TOPIC, ROOT_UPDATED_TOPIC, address_topic
from dropkit.chain.hashing import FULL_WIDTH, HALF_WIDTH
from dropkit.chain.leaves import Entitlement, encode_token_ids
from dropkit.chain.ledger import Contract, LocalChain, NFTLedger, TokenLedger
from dropkit.chain.merkle import verify_packed, verify_proof
from dropkit.errors import (
    DropAlreadyClaimedError,
    InvalidProofError,
    NothingToClaimError,
    StaleRootError,
)
from dropkit.tickets.wallet import recover_claimer

log = logging.getLogger("chain.verifier")


def _word(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


def _pad32(value: bytes) -> str:
    return "0x" + value.ljust(32, b"\x00").hex()


class _RootedDrop(Contract):
    """Owner-managed root with history and Claimed/MerkelRootUpdated logs."""

    root_size = 32

    def __init__(self, chain: LocalChain, owner: str, merkle_root: bytes | None = None):
        super().__init__(chain, owner)
        self.merkle_root = b"\x00" * self.root_size
        self.root_history: list[bytes] = []
        if merkle_root is not None:
            self._replace_root(merkle_root)

    def set_merkle_root(self, caller: str, merkle_root: bytes) -> None:
        self._only_owner(caller)
        with self.chain.transaction():
            self._replace_root(merkle_root)

    def _replace_root(self, merkle_root: bytes) -> None:
        if len(merkle_root) != self.root_size:
            raise ValueError(f"Root must be {self.root_size} bytes, got {len(merkle_root)}")
        old = self.merkle_root
        self.merkle_root = merkle_root
        self.root_history.append(merkle_root)
        self.chain.emit(self.address, [ROOT_UPDATED_TOPIC], _pad32(old) + _pad32(merkle_root)[2:])
        log.debug("Root updated on %s: 0x%s -> 0x%s", self.address, old.hex(), merkle_root.hex())

    def _check_root(self, expected_root: bytes) -> None:
        if expected_root != self.merkle_root:
            raise StaleRootError(expected_root, self.merkle_root)

    def _emit_claimed(self, account: str, value: int) -> None:
        self.chain.emit(self.address, [CLAIMED_TOPIC], "0x" + address_topic(account)[2:] + _word(value)[2:])


class _CumulativeDrop(_RootedDrop):
    """Shared cumulative-claim state machine over an ERC-20."""

    def __init__(self, chain: LocalChain, token: TokenLedger, owner: str, merkle_root: bytes | None = None):
        self.token = token
        self._claimed: dict[str, int] = {}
        super().__init__(chain, owner, merkle_root)

    def cumulative_claimed(self, account: str) -> int:
        return self._claimed.get(to_checksum_address(account), 0)

    def _settle(self, account: str, cumulative_amount: int) -> int:
        account = to_checksum_address(account)
        claimed = self._claimed.get(account, 0)
        if cumulative_amount <= claimed:
            raise NothingToClaimError(claimed=claimed, requested=cumulative_amount)

        payout = cumulative_amount - claimed
        self.token.transfer(self.address, account, payout)
        self._claimed[account] = cumulative_amount
        self._emit_claimed(account, payout)
        return payout

    def rescue_funds(self, caller: str, amount: int) -> None:
        """Owner pulls `amount` of the drop's tokens back to the owner."""
        self._only_owner(caller)
        with self.chain.transaction():
            self.token.transfer(self.address, self.owner, amount)


class CumulativeMerkleDrop(_CumulativeDrop):
    """Account-gated cumulative drop over full-width leaves."""

    def claim(
        self,
        account: str,
        cumulative_amount: int,
        expected_root: bytes,
        proof: Sequence[bytes],
    ) -> int:
        with self.chain.transaction():
            self._check_root(expected_root)
            leaf = Entitlement(account=account, amount=cumulative_amount).leaf(FULL_WIDTH)
            if not verify_proof(leaf, proof, self.merkle_root, FULL_WIDTH):
                raise InvalidProofError("Invalid proof")
            return self._settle(account, cumulative_amount)


class CumulativeMerkleDrop128(_CumulativeDrop):
    """Salted cumulative drop over half-width leaves and packed proofs."""

    root_size = 16

    def claim(
        self,
        salt: bytes,
        account: str,
        cumulative_amount: int,
        expected_root: bytes,
        packed_proof: bytes,
    ) -> int:
        with self.chain.transaction():
            self._check_root(expected_root)
            leaf = Entitlement(account=account, amount=cumulative_amount, salt=salt).leaf(HALF_WIDTH)
            valid, _ = verify_packed(leaf, packed_proof, self.merkle_root)
            if not valid:
                raise InvalidProofError("Invalid proof")
            return self._settle(account, cumulative_amount)


class SignatureMerkleDrop128(Contract):
    """Fixed-root bearer drop; one redemption per leaf.

    The claimer is whoever signed keccak256(receiver) with the ticket key.
    A wrong signature recovers a different address, which yields a leaf
    that is not in the tree.
    """

    def __init__(
        self,
        chain: LocalChain,
        token: TokenLedger,
        merkle_root: bytes,
        depth: int,
        owner: str,
    ):
        if len(merkle_root) != 16:
            raise ValueError(f"Root must be 16 bytes, got {len(merkle_root)}")
        super().__init__(chain, owner)
        self.token = token
        self.merkle_root = merkle_root
        self.depth = depth
        self._claimed: set[bytes] = set()

    def verify(self, packed_proof: bytes, leaf: bytes) -> tuple[bool, int]:
        return verify_packed(leaf, packed_proof, self.merkle_root)

    def is_claimed(self, leaf: bytes) -> bool:
        return leaf in self._claimed

    def claim(self, receiver: str, amount: int, packed_proof: bytes, signature: bytes) -> None:
        with self.chain.transaction():
            claimer = recover_claimer(receiver, signature)
            leaf = Entitlement(account=claimer, amount=amount).leaf(HALF_WIDTH)

            valid, _ = self.verify(packed_proof, leaf)
            if not valid:
                raise InvalidProofError("Invalid proof")
            if leaf in self._claimed:
                raise DropAlreadyClaimedError()

            self.token.transfer(self.address, receiver, amount)
            self._claimed.add(leaf)

    def rescue_funds(self, caller: str, amount: int) -> None:
        self._only_owner(caller)
        with self.chain.transaction():
            self.token.transfer(self.address, self.owner, amount)


class NFTMerkleDrop(_RootedDrop):
    """ERC-721 drop: each leaf releases a fixed token id set, once.

    Tokens are pulled from the drop owner, who must approve the drop as an
    operator on the NFT contract.
    """

    def __init__(self, chain: LocalChain, nft: NFTLedger, merkle_root: bytes, owner: str):
        self.nft = nft
        self._claimed: set[bytes] = set()
        super().__init__(chain, owner, merkle_root)

    def is_claimed(self, leaf: bytes) -> bool:
        return leaf in self._claimed

    def claim(
        self,
        account: str,
        token_ids: Sequence[int],
        expected_root: bytes,
        proof: Sequence[bytes],
    ) -> int:
        with self.chain.transaction():
            self._check_root(expected_root)
            leaf = FULL_WIDTH.digest(encode_token_ids(account, token_ids))
            if not verify_proof(leaf, proof, self.merkle_root, FULL_WIDTH):
                raise InvalidProofError("Invalid proof")
            if leaf in self._claimed:
                raise NothingToClaimError(requested=len(token_ids))
            for token_id in token_ids:
                if self.nft.owner_of(token_id) != self.owner:
                    raise ValueError(f"Token {token_id} is not held by the drop owner")

            for token_id in token_ids:
                self.nft.transfer_from(self.address, self.owner, account, token_id)
            self._claimed.add(leaf)
            self._emit_claimed(account, len(token_ids))
            return len(token_ids)
