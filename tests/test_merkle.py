"""Tests for hashing, leaf encoding and the sorted-pair Merkle tree."""

from __future__ import annotations

import random

import pytest

from dropkit.chain.hashing import FULL_WIDTH, HALF_WIDTH, keccak128, keccak256
from dropkit.chain.leaves import (
    UINT256_MAX,
    Entitlement,
    encode_account_amount,
    encode_salted,
    encode_token_ids,
)
from dropkit.chain.merkle import (
    MerkleTree,
    build_layers,
    build_tree,
    compute_merkle_root,
    pack_proof,
    split_packed_proof,
    verify_packed,
    verify_proof,
)

A = "0x1111111111111111111111111111111111111111"
B = "0x2222222222222222222222222222222222222222"
C = "0x3333333333333333333333333333333333333333"
D = "0x4444444444444444444444444444444444444444"


def _leaves(n: int, hasher=FULL_WIDTH) -> list[bytes]:
    return [hasher.digest(f"leaf_{i}".encode()) for i in range(n)]


# --- Hashing ---


class TestHashing:
    def test_keccak256_empty_vector(self):
        assert keccak256(b"").hex() == "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"

    def test_keccak128_is_prefix(self):
        assert keccak128(b"drop") == keccak256(b"drop")[:16]
        assert len(HALF_WIDTH.digest(b"drop")) == 16

    def test_hash_pair_is_order_independent(self):
        a, b = _leaves(2)
        assert FULL_WIDTH.hash_pair(a, b) == FULL_WIDTH.hash_pair(b, a)
        assert FULL_WIDTH.hash_pair(a, b) == keccak256(min(a, b) + max(a, b))


# --- Leaf encoding ---


class TestLeafEncoding:
    def test_account_amount_layout(self):
        encoded = encode_account_amount(A, 1)
        assert len(encoded) == 52
        assert encoded == bytes.fromhex("11" * 20) + (1).to_bytes(32, "big")

    def test_salted_layout(self):
        salt = b"\x07" * 16
        encoded = encode_salted(salt, A, 5)
        assert len(encoded) == 68
        assert encoded[:16] == salt

    def test_salt_size_enforced(self):
        with pytest.raises(ValueError):
            encode_salted(b"\x07" * 15, A, 5)

    def test_token_ids_layout(self):
        encoded = encode_token_ids(A, [3, 1])
        assert len(encoded) == 20 + 64
        assert encoded[20:52] == (3).to_bytes(32, "big")

    def test_amount_out_of_range(self):
        with pytest.raises(ValueError):
            encode_account_amount(A, UINT256_MAX + 1)
        with pytest.raises(ValueError):
            encode_account_amount(A, -1)

    def test_invalid_address(self):
        with pytest.raises(ValueError):
            encode_account_amount("0x1234", 1)


class TestEntitlement:
    def test_account_is_checksummed(self):
        ent = Entitlement(account="0x7e5f4552091a69125d5dfcb7b8c2659029395bdf", amount=1)
        assert ent.account == "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"

    def test_token_ids_sorted_numerically(self):
        ent = Entitlement(account=A, token_ids=(10, 2, 1))
        assert ent.token_ids == (1, 2, 10)
        assert ent.encode() == encode_token_ids(A, [1, 2, 10])

    def test_duplicate_token_ids_rejected(self):
        with pytest.raises(ValueError):
            Entitlement(account=A, token_ids=(7, 7))

    def test_salt_and_token_ids_rejected(self):
        with pytest.raises(ValueError):
            Entitlement(account=A, salt=b"\x01" * 16, token_ids=(1,))

    def test_leaf_widths(self):
        ent = Entitlement(account=A, amount=1)
        assert ent.leaf(FULL_WIDTH) == keccak256(ent.encode())
        assert ent.leaf(HALF_WIDTH) == keccak256(ent.encode())[:16]

    def test_frozen(self):
        ent = Entitlement(account=A, amount=1)
        with pytest.raises(ValueError):
            ent.amount = 2


# --- Tree ---


class TestMerkleRoot:
    def test_single_leaf_is_root(self):
        (leaf,) = _leaves(1)
        assert compute_merkle_root([leaf]) == leaf

    def test_two_leaves(self):
        a, b = _leaves(2)
        assert compute_merkle_root([a, b]) == keccak256(min(a, b) + max(a, b))

    def test_odd_leaf_promoted(self):
        a, b, c = sorted(_leaves(3))
        expected = FULL_WIDTH.hash_pair(FULL_WIDTH.hash_pair(a, b), c)
        assert compute_merkle_root([c, a, b]) == expected

    def test_root_independent_of_input_order(self):
        leaves = _leaves(9)
        shuffled = leaves[:]
        random.Random(7).shuffle(shuffled)
        assert compute_merkle_root(leaves) == compute_merkle_root(shuffled)

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            build_layers([])
        with pytest.raises(ValueError):
            MerkleTree.from_leaves([])

    def test_rebuild_is_deterministic(self):
        leaves = _leaves(6)
        assert build_tree(leaves).root == build_tree(list(reversed(leaves))).root
        assert build_tree(leaves).layers == build_tree(leaves).layers


class TestMerkleTree:
    @pytest.mark.parametrize("n", [1, 2, 3, 4, 5, 8, 13])
    def test_every_proof_verifies(self, n):
        tree = MerkleTree.from_leaves(_leaves(n))
        for i in range(n):
            assert tree.verify(i)
            assert verify_proof(tree.leaves[i], tree.proof(i), tree.root)

    def test_proofs_follow_input_order(self):
        ents = [Entitlement(account=acct, amount=amt) for acct, amt in [(A, 1), (B, 2), (C, 3), (D, 4)]]
        tree = MerkleTree.from_entitlements(ents)
        assert tree.leaves == [e.leaf() for e in ents]
        for i, ent in enumerate(ents):
            assert verify_proof(ent.leaf(), tree.proof(i), tree.root)

    def test_proof_for_wrong_leaf_fails(self):
        tree = MerkleTree.from_leaves(_leaves(4))
        assert not verify_proof(tree.leaves[1], tree.proof(0), tree.root)

    def test_depth(self):
        assert MerkleTree.from_leaves(_leaves(1)).depth == 0
        assert MerkleTree.from_leaves(_leaves(4)).depth == 2
        assert MerkleTree.from_leaves(_leaves(5)).depth == 3

    def test_duplicate_leaves_get_proofs(self):
        leaf = _leaves(1)[0]
        tree = MerkleTree.from_leaves([leaf, leaf, _leaves(2)[1]])
        assert tree.verify(0)
        assert tree.verify(1)

    def test_hex_forms(self):
        tree = MerkleTree.from_leaves(_leaves(3))
        assert tree.hex_root == "0x" + tree.root.hex()
        assert tree.hex_proof(0) == ["0x" + p.hex() for p in tree.proof(0)]


# --- Packed half-width proofs ---


class TestPackedProof:
    def test_half_width_tree_verifies_packed(self):
        tree = MerkleTree.from_leaves(_leaves(11, HALF_WIDTH), HALF_WIDTH)
        assert len(tree.root) == 16
        for i in range(11):
            valid, _ = verify_packed(tree.leaves[i], tree.packed_proof(i), tree.root)
            assert valid

    def test_index_matches_sorted_position_for_pair(self):
        leaves = _leaves(2, HALF_WIDTH)
        tree = MerkleTree.from_leaves(leaves, HALF_WIDTH)
        for i, leaf in enumerate(leaves):
            valid, index = verify_packed(leaf, tree.packed_proof(i), tree.root)
            assert valid
            assert index == sorted(leaves).index(leaf)

    def test_tampered_proof_fails(self):
        tree = MerkleTree.from_leaves(_leaves(6, HALF_WIDTH), HALF_WIDTH)
        packed = tree.packed_proof(2)
        for pos in range(len(packed)):
            tampered = packed[:pos] + bytes([packed[pos] ^ 0x01]) + packed[pos + 1:]
            valid, _ = verify_packed(tree.leaves[2], tampered, tree.root)
            assert not valid

    def test_bad_lengths_fail_closed(self):
        tree = MerkleTree.from_leaves(_leaves(4, HALF_WIDTH), HALF_WIDTH)
        assert verify_packed(tree.leaves[0], tree.packed_proof(0) + b"\x00", tree.root) == (False, 0)
        assert verify_packed(tree.leaves[0], tree.packed_proof(0), tree.root + b"\x00") == (False, 0)

    def test_split_and_pack(self):
        parts = [b"\x01" * 16, b"\x02" * 16]
        assert split_packed_proof(pack_proof(parts)) == parts
        assert split_packed_proof(b"\x03" * 64, stride=32) == [b"\x03" * 32, b"\x03" * 32]

    def test_split_rejects_partial_node(self):
        with pytest.raises(ValueError):
            split_packed_proof(b"\x00" * 17)
