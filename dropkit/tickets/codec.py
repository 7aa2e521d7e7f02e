"""Ticket codec: QR-sized claim links.

Bearer ticket payload (fixed layout, no length prefixes):

    version(1) | secret(16) | amount(12, big-endian) | proof(N x 16)

NFT ticket payload:

    version(1) | leaf(32) | proof(N x 32)

The payload is base64 with '+' -> '-', '/' -> '_', '=' -> '!' and then
URL-quoted, and appended to a prefix as `d=<payload>`. Decoding fails
closed: anything that does not fit the layout is a MalformedTicketError.
"""

from __future__ import annotations

import base64
import binascii
from typing import Sequence
from urllib.parse import quote, unquote

from pydantic import BaseModel, ConfigDict

from dropkit.chain.hashing import FULL_WIDTH, HALF_WIDTH
from dropkit.chain.leaves import Entitlement
from dropkit.chain.merkle import pack_proof, split_packed_proof, verify_packed, verify_proof
from dropkit.errors import InvalidProofError, MalformedTicketError
from dropkit.tickets.wallet import SECRET_SIZE, address_from_secret, private_key_from_secret

AMOUNT_SIZE = 12
MAX_TICKET_AMOUNT = 2 ** (8 * AMOUNT_SIZE) - 1
BEARER_HEADER = 1 + SECRET_SIZE + AMOUNT_SIZE
NFT_HEADER = 1 + 32

_ENCODE = str.maketrans("+/=", "-_!")
_DECODE = str.maketrans("-_!", "+/=")


def uri_encode(data: bytes) -> str:
    # '!' stays literal, as with encodeURIComponent
    return quote(base64.b64encode(data).decode("ascii").translate(_ENCODE), safe="!")


def uri_decode(encoded: str) -> bytes:
    text = unquote(encoded).translate(_DECODE)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedTicketError(f"Invalid ticket encoding: {e}") from e


def encode_bearer_payload(version: int, secret: bytes, amount: int, proof: bytes | Sequence[bytes]) -> bytes:
    if not 0 <= version <= 255:
        raise ValueError(f"Version must fit one byte, got {version}")
    if len(secret) != SECRET_SIZE:
        raise ValueError(f"Secret must be {SECRET_SIZE} bytes, got {len(secret)}")
    if amount < 0 or amount > MAX_TICKET_AMOUNT:
        raise ValueError(f"Amount does not fit {AMOUNT_SIZE} bytes: {amount}")
    packed = proof if isinstance(proof, bytes) else pack_proof(proof)
    if len(packed) % 16:
        raise ValueError(f"Proof length {len(packed)} is not a multiple of 16")
    return bytes([version]) + secret + amount.to_bytes(AMOUNT_SIZE, "big") + packed


def decode_bearer_payload(data: bytes) -> tuple[int, bytes, int, bytes]:
    """Split a bearer payload into (version, secret, amount, packed_proof)."""
    if len(data) < BEARER_HEADER:
        raise MalformedTicketError(f"Ticket too short: {len(data)} bytes", length=len(data))
    proof = data[BEARER_HEADER:]
    if len(proof) % 16:
        raise MalformedTicketError(
            f"Proof length {len(proof)} is not a multiple of 16", length=len(data)
        )
    version = data[0]
    secret = data[1:1 + SECRET_SIZE]
    amount = int.from_bytes(data[1 + SECRET_SIZE:BEARER_HEADER], "big")
    return version, secret, amount, proof


class BearerTicket(BaseModel):
    """Decoded bearer ticket: everything needed to sign a claim."""

    model_config = ConfigDict(frozen=True)

    version: int
    secret: bytes
    private_key: bytes
    wallet: str
    amount: int
    proof: bytes

    @property
    def leaf(self) -> bytes:
        return Entitlement(account=self.wallet, amount=self.amount).leaf(HALF_WIDTH)


class TicketVerification(BaseModel):
    model_config = ConfigDict(frozen=True)

    root: bytes
    proof: bytes
    leaf: bytes
    is_valid: bool
    wallet: str
    amount: int


class TicketCodec:
    """Builds and opens bearer claim links for one URL prefix."""

    def __init__(self, prefix: str):
        self.prefix = prefix

    def build_url(self, secret: bytes, amount: int, proof: bytes | Sequence[bytes], version: int) -> str:
        return f"{self.prefix}d={uri_encode(encode_bearer_payload(version, secret, amount, proof))}"

    def _payload(self, url: str) -> bytes:
        marker = self.prefix + "d="
        if not url.startswith(marker):
            raise MalformedTicketError(f"URL does not start with {marker}")
        return uri_decode(url[len(marker):])

    def parse_url(self, url: str) -> BearerTicket:
        version, secret, amount, proof = decode_bearer_payload(self._payload(url))
        if not any(secret):
            raise MalformedTicketError("Ticket secret is empty", length=BEARER_HEADER + len(proof))
        return BearerTicket(
            version=version,
            secret=secret,
            private_key=private_key_from_secret(secret),
            wallet=address_from_secret(secret),
            amount=amount,
            proof=proof,
        )

    def verify(self, url: str, root: bytes) -> TicketVerification:
        ticket = self.parse_url(url)
        leaf = ticket.leaf
        is_valid, _ = verify_packed(leaf, ticket.proof, root)
        return TicketVerification(
            root=root,
            proof=ticket.proof,
            leaf=leaf,
            is_valid=is_valid,
            wallet=ticket.wallet,
            amount=ticket.amount,
        )

    def open(self, url: str, root: bytes) -> BearerTicket:
        """Parse and verify; raises InvalidProofError if the ticket is not in `root`."""
        ticket = self.parse_url(url)
        valid, _ = verify_packed(ticket.leaf, ticket.proof, root)
        if not valid:
            raise InvalidProofError(f"Ticket for {ticket.wallet} is not part of root 0x{root.hex()}")
        return ticket


class NFTTicket(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: int
    leaf: bytes
    proof: tuple[bytes, ...]


class NFTTicketCodec:
    """NFT drop links carry the full-width leaf itself instead of a secret."""

    def __init__(self, prefix: str):
        self.prefix = prefix

    def build_url(self, leaf: bytes, proof: Sequence[bytes], version: int) -> str:
        if len(leaf) != 32:
            raise ValueError(f"Leaf must be 32 bytes, got {len(leaf)}")
        payload = bytes([version]) + leaf + pack_proof(proof)
        return f"{self.prefix}d={uri_encode(payload)}"

    def parse_url(self, url: str, expected_version: int | None = None) -> NFTTicket:
        marker = self.prefix + "d="
        if not url.startswith(marker):
            raise MalformedTicketError(f"URL does not start with {marker}")
        data = uri_decode(url[len(marker):])
        if len(data) < NFT_HEADER:
            raise MalformedTicketError(f"Ticket too short: {len(data)} bytes", length=len(data))

        version = data[0]
        if expected_version is not None and version != expected_version:
            raise MalformedTicketError(
                f"Version mismatch: expected {expected_version}, got {version}", length=len(data)
            )
        try:
            proof = split_packed_proof(data[NFT_HEADER:], stride=32)
        except ValueError as e:
            raise MalformedTicketError(str(e), length=len(data)) from e
        return NFTTicket(version=version, leaf=data[1:NFT_HEADER], proof=tuple(proof))

    def verify(self, url: str, root: bytes, expected_version: int | None = None) -> bool:
        ticket = self.parse_url(url, expected_version)
        return verify_proof(ticket.leaf, ticket.proof, root, FULL_WIDTH)
