"""Manifest models: what a generation run writes to disk.

Amounts are serialized as decimal strings (JSON numbers lose precision
past 2**53); token totals in the cumulative distribution are hex, as the
claim UI expects.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class GeneratedLink(BaseModel):
    url: str
    enc_url: str | None = None
    amount: int
    index: int

    @field_serializer("amount")
    def _amount_str(self, v: int) -> str:
        return str(v)


class LinkManifest(BaseModel):
    """One manifest file (production or test codes of one drop version)."""

    count: int
    root: str
    amount: int
    version: int
    codes: list[GeneratedLink] = []

    @field_serializer("amount")
    def _amount_str(self, v: int) -> str:
        return str(v)

    @classmethod
    def from_links(cls, links: list[GeneratedLink], root: str, version: int) -> LinkManifest:
        return cls(
            count=len(links),
            root=root,
            amount=sum(link.amount for link in links),
            version=version,
            codes=links,
        )


class GeneratedDrop(BaseModel):
    """Result of a bearer drop generation."""

    root: str
    height: int
    version: int
    total_amount: int
    urls: list[str]
    manifest: LinkManifest | None = None
    test_manifest: LinkManifest | None = None


class CumulativeClaim(BaseModel):
    amount: str
    proof: list[str]


class CumulativeDistribution(BaseModel):
    """Account-gated distribution file: root, total and per-wallet proofs."""

    model_config = ConfigDict(populate_by_name=True)

    merkle_root: str = Field(alias="merkleRoot")
    token_total: str = Field(alias="tokenTotal")
    claims: dict[str, CumulativeClaim]


class NFTRecipient(BaseModel):
    url: str
    token_ids: list[int]
    account: str
    proof: list[str]


class NFTDropResult(BaseModel):
    root: str
    version: int
    total_recipients: int
    recipients: list[NFTRecipient]
