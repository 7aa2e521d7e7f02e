"""Bearer ticket keys.

A ticket secret is 16 random bytes. The signing key is the secret
left-padded with 16 zero bytes to a 32-byte secp256k1 private key, so the
QR payload carries only half a key's worth of data.
"""

from __future__ import annotations

import secrets

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from dropkit.chain.leaves import address_bytes

SECRET_SIZE = 16


def generate_secret() -> bytes:
    while True:
        secret = secrets.token_bytes(SECRET_SIZE)
        if any(secret):
            return secret


def generate_secrets(count: int) -> list[bytes]:
    return [generate_secret() for _ in range(count)]


def private_key_from_secret(secret: bytes) -> bytes:
    if len(secret) != SECRET_SIZE:
        raise ValueError(f"Secret must be {SECRET_SIZE} bytes, got {len(secret)}")
    return b"\x00" * (32 - SECRET_SIZE) + secret


def address_from_secret(secret: bytes) -> str:
    """Checksummed address controlled by the ticket."""
    return Account.from_key(private_key_from_secret(secret)).address


def claim_digest(receiver: str) -> bytes:
    return keccak(address_bytes(receiver))


def sign_claim(secret: bytes, receiver: str) -> bytes:
    """Authorise a payout to `receiver` (EIP-191 personal_sign of keccak256(receiver))."""
    message = encode_defunct(primitive=claim_digest(receiver))
    signed = Account.sign_message(message, private_key=private_key_from_secret(secret))
    return bytes(signed.signature)


def recover_claimer(receiver: str, signature: bytes) -> str:
    return Account.recover_message(encode_defunct(primitive=claim_digest(receiver)), signature=signature)
