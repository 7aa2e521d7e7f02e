"""Bearer tickets: secret-derived claim keys packed into QR-sized links.

Wallet: dropkit/tickets/wallet.py (secret -> key -> address, claim signatures)
Codec:  dropkit/tickets/codec.py  (payload layout, URL wrapping, verification)
"""

from dropkit.tickets.codec import (
    BearerTicket,
    NFTTicket,
    NFTTicketCodec,
    TicketCodec,
    TicketVerification,
    decode_bearer_payload,
    encode_bearer_payload,
    uri_decode,
    uri_encode,
)
from dropkit.tickets.wallet import (
    address_from_secret,
    generate_secret,
    generate_secrets,
    private_key_from_secret,
    recover_claimer,
    sign_claim,
)

__all__ = [
    "BearerTicket",
    "NFTTicket",
    "NFTTicketCodec",
    "TicketCodec",
    "TicketVerification",
    "decode_bearer_payload",
    "encode_bearer_payload",
    "uri_decode",
    "uri_encode",
    "address_from_secret",
    "generate_secret",
    "generate_secrets",
    "private_key_from_secret",
    "recover_claimer",
    "sign_claim",
]
