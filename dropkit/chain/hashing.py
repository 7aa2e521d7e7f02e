"""Hash primitives: pure functions, no I/O.

Keccak-256 from eth-utils, optionally truncated to a 16-byte digest for
the gas-optimised "128" drops. Every tree operation goes through a Hasher
so the full-width and half-width variants share one code path.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from eth_utils import keccak


def keccak256(data: bytes) -> bytes:
    """32-byte Keccak-256 digest."""
    return keccak(data)


def keccak128(data: bytes) -> bytes:
    """Keccak-256 truncated to its first 16 bytes."""
    return keccak(data)[:16]


@dataclass(frozen=True)
class Hasher:
    """A 256-bit hash function plus an output width."""

    name: str
    digest_size: int
    base: Callable[[bytes], bytes] = keccak256

    def digest(self, data: bytes) -> bytes:
        return self.base(data)[: self.digest_size]

    def hash_pair(self, a: bytes, b: bytes) -> bytes:
        """Hash two nodes, smaller operand first (raw byte comparison)."""
        if b < a:
            a, b = b, a
        return self.digest(a + b)


FULL_WIDTH = Hasher(name="keccak256", digest_size=32)
HALF_WIDTH = Hasher(name="keccak128", digest_size=16)
