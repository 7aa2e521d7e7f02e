"""Merkle tree computation: pure functions, no I/O.

Sorted-pair binary Merkle tree for drop commitments:
  - leaves are sorted by byte value before layering, so the root does not
    depend on input order
  - each parent is hash(min(a, b) || max(a, b))
  - an odd trailing node is promoted to the next layer unchanged

The same pairing rule is used by the on-chain verifiers in
dropkit.chain.verifier; a proof that verifies here verifies there.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from dropkit.chain.hashing import FULL_WIDTH, HALF_WIDTH, Hasher
from dropkit.chain.leaves import Entitlement


def build_layers(leaves: Sequence[bytes], hasher: Hasher = FULL_WIDTH) -> list[list[bytes]]:
    """Build all tree layers from already-ordered leaves.

    Returns layers from leaves (index 0) to root (last index).
    """
    if not leaves:
        raise ValueError("Cannot build a Merkle tree without leaves")

    layers: list[list[bytes]] = [list(leaves)]

    while len(layers[-1]) > 1:
        prev = layers[-1]
        next_layer: list[bytes] = []
        for i in range(0, len(prev), 2):
            if i + 1 < len(prev):
                next_layer.append(hasher.hash_pair(prev[i], prev[i + 1]))
            else:
                # Odd node: promote
                next_layer.append(prev[i])
        layers.append(next_layer)

    return layers


def proof_from_layers(layers: list[list[bytes]], position: int) -> list[bytes]:
    """Sibling digests for the leaf at `position` of the bottom layer."""
    proof: list[bytes] = []
    idx = position
    for layer in layers[:-1]:
        sibling = idx ^ 1
        if sibling < len(layer):
            proof.append(layer[sibling])
        idx //= 2
    return proof


def compute_merkle_root(leaves: Sequence[bytes], hasher: Hasher = FULL_WIDTH) -> bytes:
    """Root over leaves in any order."""
    return build_layers(sorted(leaves), hasher)[-1][0]


def process_proof(leaf: bytes, proof: Sequence[bytes], hasher: Hasher = FULL_WIDTH) -> bytes:
    computed = leaf
    for sibling in proof:
        computed = hasher.hash_pair(computed, sibling)
    return computed


def verify_proof(
    leaf: bytes,
    proof: Sequence[bytes],
    root: bytes,
    hasher: Hasher = FULL_WIDTH,
) -> bool:
    """True iff folding `proof` into `leaf` reproduces `root`."""
    return process_proof(leaf, proof, hasher) == root


def split_packed_proof(packed: bytes, stride: int = 16) -> list[bytes]:
    if len(packed) % stride:
        raise ValueError(f"Packed proof length {len(packed)} is not a multiple of {stride}")
    return [packed[i:i + stride] for i in range(0, len(packed), stride)]


def pack_proof(proof: Sequence[bytes]) -> bytes:
    return b"".join(proof)


def verify_packed(leaf: bytes, packed_proof: bytes, root: bytes) -> tuple[bool, int]:
    """Half-width verifier over a packed 16-byte-stride proof.

    Also returns the leaf index implied by the path: bit i is set when the
    sibling at step i sorted before the running node.
    """
    if len(packed_proof) % 16 or len(root) != 16:
        return False, 0

    computed = leaf[:16]
    index = 0
    mask = 1
    for offset in range(0, len(packed_proof), 16):
        node = packed_proof[offset:offset + 16]
        if computed < node:
            computed = HALF_WIDTH.digest(computed + node)
        else:
            computed = HALF_WIDTH.digest(node + computed)
            index |= mask
        mask <<= 1

    return computed == root, index


@dataclass
class MerkleTree:
    """Built tree with a proof per input position."""

    hasher: Hasher
    layers: list[list[bytes]]
    leaves: list[bytes]
    proofs: list[list[bytes]] = field(repr=False)

    @classmethod
    def from_leaves(cls, leaves: Sequence[bytes], hasher: Hasher = FULL_WIDTH) -> MerkleTree:
        """Build over leaves given in input order.

        Proofs line up with the input order; duplicate leaves each get
        their own (equally valid) proof.
        """
        if not leaves:
            raise ValueError("Cannot build a Merkle tree without leaves")

        order = sorted(range(len(leaves)), key=lambda i: leaves[i])
        layers = build_layers([leaves[i] for i in order], hasher)

        proofs: list[list[bytes]] = [[] for _ in leaves]
        for position, original in enumerate(order):
            proofs[original] = proof_from_layers(layers, position)

        return cls(hasher=hasher, layers=layers, leaves=list(leaves), proofs=proofs)

    @classmethod
    def from_entitlements(
        cls,
        entitlements: Sequence[Entitlement],
        hasher: Hasher = FULL_WIDTH,
    ) -> MerkleTree:
        return cls.from_leaves([e.leaf(hasher) for e in entitlements], hasher)

    @property
    def root(self) -> bytes:
        return self.layers[-1][0]

    @property
    def hex_root(self) -> str:
        return "0x" + self.root.hex()

    @property
    def depth(self) -> int:
        return len(self.layers) - 1

    def proof(self, index: int) -> list[bytes]:
        return self.proofs[index]

    def hex_proof(self, index: int) -> list[str]:
        return ["0x" + p.hex() for p in self.proofs[index]]

    def packed_proof(self, index: int) -> bytes:
        return pack_proof(self.proofs[index])

    def verify(self, index: int) -> bool:
        return verify_proof(self.leaves[index], self.proofs[index], self.root, self.hasher)


def build_tree(leaves: Sequence[bytes], hasher: Hasher = FULL_WIDTH) -> MerkleTree:
    return MerkleTree.from_leaves(leaves, hasher)
