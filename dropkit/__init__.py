"""dropkit: Merkle-committed token and NFT distributions.

Chain:   dropkit/chain/   (hashing, leaf encoding, tree, ledger + claim verifiers)
Tickets: dropkit/tickets/ (bearer keys, QR link codec)
Audit:   dropkit/audit/   (resilient log scanner, drop statistics)
Drops:   dropkit/drops/   (generation flows, manifests, version store)
"""

__version__ = "0.1.0"
