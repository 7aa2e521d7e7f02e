"""Error taxonomy for dropkit.

Claim failures are split so a client can tell what to do next:
  - StaleRootError       -> re-fetch the current root and proof, then retry
  - InvalidProofError    -> ticket/proof is dead for this root, never retry
  - NothingToClaimError  -> ticket may be valid but is exhausted
  - MalformedTicketError -> payload could not be decoded at all

Scanner failures (LogQueryError) are transient and retried; ranges that
stay broken are reported by the scanner, not raised.
"""

from __future__ import annotations


class DropError(Exception):
    """Base class for all dropkit errors."""


class MalformedTicketError(DropError):
    """Ticket URL or payload could not be decoded. Fails closed."""

    def __init__(self, message: str, length: int | None = None):
        super().__init__(message)
        self.length = length


class ClaimError(DropError):
    """A claim call was rejected by the verifier."""


class StaleRootError(ClaimError):
    """The root the caller proved against is no longer the published root."""

    def __init__(self, expected: bytes, current: bytes):
        super().__init__(
            f"Merkle root was updated: expected 0x{expected.hex()}, current 0x{current.hex()}"
        )
        self.expected = expected
        self.current = current


class InvalidProofError(ClaimError):
    """Leaf and siblings do not hash to the expected root."""


class NothingToClaimError(ClaimError):
    """Requested cumulative amount is not above what was already claimed."""

    def __init__(self, message: str = "Nothing to claim", claimed: int = 0, requested: int = 0):
        super().__init__(message)
        self.claimed = claimed
        self.requested = requested


class DropAlreadyClaimedError(NothingToClaimError):
    """One-shot bearer drop was already redeemed."""

    def __init__(self, message: str = "Drop already claimed"):
        super().__init__(message)


class NotOwnerError(ClaimError):
    """Caller is not the owner of the drop."""

    def __init__(self, caller: str, owner: str):
        super().__init__(f"Caller {caller} is not the owner ({owner})")
        self.caller = caller
        self.owner = owner


class InsufficientBalanceError(DropError):
    """Ledger transfer exceeds the sender's balance."""

    def __init__(self, account: str, balance: int, amount: int):
        super().__init__(f"{account} has {balance}, cannot transfer {amount}")
        self.account = account
        self.balance = balance
        self.amount = amount


class LogQueryError(DropError):
    """A log range query was rejected or failed."""

    def __init__(self, message: str, from_block: int = 0, to_block: int = 0):
        super().__init__(message)
        self.from_block = from_block
        self.to_block = to_block


class VersionConflictError(DropError):
    """A drop version was not greater than the latest recorded version."""

    def __init__(self, version: int, latest: int):
        super().__init__(f"Version should be greater than {latest} (got {version})")
        self.version = version
        self.latest = latest


class VersionStoreCorruptedError(DropError):
    """The latest-version marker could not be parsed."""
