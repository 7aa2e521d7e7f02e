"""Drop generation flows.

Three kinds of drop:
  - bearer (QR) drop: random secrets, half-width tree, one link per code
  - cumulative account drop: full-width tree over (account, amount)
  - NFT drop: full-width tree over (account, token ids), one link per recipient

Settings are built once per run and passed explicitly. Nothing here reads
global state; the version bookkeeping goes through a VersionStore.
"""

from __future__ import annotations

import json
import logging
import random
import re
from pathlib import Path
from typing import Mapping, Sequence
from urllib.parse import quote

from eth_utils import is_address, to_checksum_address
from pydantic import BaseModel, ConfigDict, model_validator

from dropkit.chain.hashing import FULL_WIDTH, HALF_WIDTH
from dropkit.chain.leaves import Entitlement
from dropkit.chain.merkle import MerkleTree
from dropkit.config import DropConfig, format_base_url, load_config
from dropkit.drops.models import (
    CumulativeClaim,
    CumulativeDistribution,
    GeneratedDrop,
    GeneratedLink,
    LinkManifest,
    NFTDropResult,
    NFTRecipient,
)
from dropkit.drops.store import VersionStore
from dropkit.errors import DropError
from dropkit.tickets.codec import MAX_TICKET_AMOUNT, NFTTicketCodec, TicketCodec
from dropkit.tickets.wallet import address_from_secret, generate_secrets
from dropkit.utils.file_lock import safe_read_json, safe_write_json

log = logging.getLogger("drops.service")

# commas inside [...] belong to an id list
_PAIR_SEPARATOR = re.compile(r",(?![^\[]*\])")


class DropSettings(BaseModel):
    """Everything one bearer drop generation needs."""

    model_config = ConfigDict(frozen=True)

    version: int
    chain_id: int
    code_counts: tuple[int, ...]
    code_amounts: tuple[int, ...]
    test_count: int = 0
    prefix: str
    encoded_prefix: str | None = None
    output_dir: Path = Path("drops/gendata")
    save_links: bool = True

    @model_validator(mode="after")
    def _check(self) -> "DropSettings":
        if not self.code_counts or len(self.code_counts) != len(self.code_amounts):
            raise ValueError("code_counts and code_amounts must be non-empty and the same length")
        if any(c < 0 for c in self.code_counts):
            raise ValueError(f"Negative code count in {self.code_counts}")
        if any(a <= 0 or a > MAX_TICKET_AMOUNT for a in self.code_amounts):
            raise ValueError(f"Code amounts must be in 1..{MAX_TICKET_AMOUNT}")
        if self.total_codes == 0:
            raise ValueError("A drop needs at least one code")
        if not 0 <= self.test_count <= self.total_codes:
            raise ValueError(f"test_count {self.test_count} outside 0..{self.total_codes}")
        return self

    @property
    def total_codes(self) -> int:
        return sum(self.code_counts)

    @property
    def file_links(self) -> Path:
        return self.output_dir / f"{self.version}-qr-links.json"

    @property
    def test_links(self) -> Path:
        return self.output_dir / f"{self.version}-qr-links-test.json"

    @classmethod
    def from_config(
        cls,
        version: int,
        chain_id: int,
        counts: Sequence[int],
        amounts: Sequence[int],
        config: DropConfig | None = None,
        decimals: int = 18,
        with_test_codes: bool = True,
    ) -> DropSettings:
        """Settings from whole-token amounts, prepending the configured test codes."""
        config = config or load_config()
        counts = list(counts)
        amounts = list(amounts)
        test_count = 0
        if with_test_codes:
            counts.insert(0, config.defaults.test_code_count)
            amounts.insert(0, config.defaults.test_code_amount)
            test_count = config.defaults.test_code_count
        return cls(
            version=version,
            chain_id=chain_id,
            code_counts=tuple(counts),
            code_amounts=tuple(a * 10 ** decimals for a in amounts),
            test_count=test_count,
            prefix=format_base_url(chain_id, config),
            encoded_prefix=config.urls.encoded_prefix or None,
            output_dir=config.paths.generated_data,
        )


def expand_amounts(counts: Sequence[int], amounts: Sequence[int]) -> list[int]:
    """[2, 1], [5, 7] -> [5, 5, 7]"""
    expanded: list[int] = []
    for count, amount in zip(counts, amounts):
        expanded.extend([amount] * count)
    return expanded


def save_manifest(path: Path, manifest: BaseModel) -> None:
    safe_write_json(path, manifest.model_dump(mode="json", by_alias=True))


def load_manifest(path: Path, model: type[BaseModel] = LinkManifest) -> BaseModel:
    return model.model_validate(safe_read_json(path))


def generate_bearer_drop(
    settings: DropSettings,
    store: VersionStore,
    *,
    persist: bool = True,
    rng: random.Random | None = None,
) -> GeneratedDrop:
    """Generate secrets, tree, links and manifests for one bearer drop.

    Every link is decoded and verified against the new root before anything
    is written. The first `test_count` codes go to the test manifest.
    """
    store.validate(settings.version)

    amounts = expand_amounts(settings.code_counts, settings.code_amounts)
    secrets_ = generate_secrets(len(amounts))
    entitlements = [
        Entitlement(account=address_from_secret(secret), amount=amount)
        for secret, amount in zip(secrets_, amounts)
    ]
    tree = MerkleTree.from_entitlements(entitlements, HALF_WIDTH)
    total = sum(amounts)
    log.info("Bearer drop v%s: %s codes, root %s, total %s", settings.version, len(amounts), tree.hex_root, total)

    indices = list(range(len(amounts)))
    (rng or random.SystemRandom()).shuffle(indices)

    codec = TicketCodec(settings.prefix)
    urls: list[str] = []
    for i, (secret, amount) in enumerate(zip(secrets_, amounts)):
        url = codec.build_url(secret, amount, tree.packed_proof(i), settings.version)
        check = codec.verify(url, tree.root)
        if not check.is_valid or check.amount != amount or check.wallet != entitlements[i].account:
            raise DropError(f"Generated link {i} does not verify against root {tree.hex_root}")
        urls.append(url)

    links = [
        GeneratedLink(
            url=url,
            enc_url=settings.encoded_prefix + quote(url, safe="!~*'()") if settings.encoded_prefix else None,
            amount=amount,
            index=indices[i],
        )
        for i, (url, amount) in enumerate(zip(urls, amounts))
    ]
    test_links = links[:settings.test_count]
    prod_links = links[settings.test_count:]

    manifest = LinkManifest.from_links(prod_links, tree.hex_root, settings.version) if prod_links else None
    test_manifest = LinkManifest.from_links(test_links, tree.hex_root, settings.version) if test_links else None

    if settings.save_links:
        if manifest:
            save_manifest(settings.file_links, manifest)
        if test_manifest:
            save_manifest(settings.test_links, test_manifest)

    if persist:
        store.write_next(settings.version)

    return GeneratedDrop(
        root=tree.hex_root,
        height=tree.depth,
        version=settings.version,
        total_amount=total,
        urls=urls,
        manifest=manifest,
        test_manifest=test_manifest,
    )


def build_cumulative_drop(mapping: Mapping[str, int]) -> CumulativeDistribution:
    """Account-gated distribution: root, hex total and a proof per wallet."""
    if not mapping:
        raise ValueError("Cannot build a drop without recipients")

    entitlements = [Entitlement(account=account, amount=int(amount)) for account, amount in mapping.items()]
    accounts = [e.account for e in entitlements]
    if len(set(accounts)) != len(accounts):
        raise ValueError("Duplicate wallet in distribution")

    tree = MerkleTree.from_entitlements(entitlements, FULL_WIDTH)
    total = sum(e.amount for e in entitlements)
    log.info("Cumulative drop: %s wallets, root %s, total %s", len(entitlements), tree.hex_root, total)

    return CumulativeDistribution(
        merkle_root=tree.hex_root,
        token_total=hex(total),
        claims={
            e.account: CumulativeClaim(amount=hex(e.amount), proof=tree.hex_proof(i))
            for i, e in enumerate(entitlements)
        },
    )


def _account(value: str) -> str:
    value = value.strip()
    if not is_address(value):
        raise ValueError(f"Invalid account in mapping: {value!r}")
    return to_checksum_address(value)


def _token_id(value: object) -> int:
    try:
        token_id = int(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid token id in mapping: {value!r}") from None
    if token_id < 0:
        raise ValueError(f"Invalid token id in mapping: {value!r}")
    return token_id


def parse_nft_mapping(text: str) -> dict[str, list[int]]:
    """Parse an account -> token ids mapping.

    Accepted forms:
      {"0xabc...": [1, 2]}                 account -> ids
      {"1": "0xabc...", "2": "0xabc..."}   id -> account
      {"0xabc...": 1}                      account -> id
      0xabc...=[1,2],3=0xdef...,0xabc...=4 comma-separated pairs
    """
    result: dict[str, list[int]] = {}
    assigned: dict[int, str] = {}

    def add(account: str, ids: Sequence[object]) -> None:
        account = _account(account)
        for value in ids:
            token_id = _token_id(value)
            if token_id in assigned:
                raise ValueError(f"Token id {token_id} assigned twice ({assigned[token_id]}, {account})")
            assigned[token_id] = account
            result.setdefault(account, []).append(token_id)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None

    if parsed is not None:
        if not isinstance(parsed, dict):
            raise ValueError("JSON mapping must be an object")
        values = list(parsed.values())
        if all(isinstance(v, list) for v in values):
            for account, ids in parsed.items():
                add(account, ids)
        elif values and isinstance(values[0], str):
            for token_id, account in parsed.items():
                add(account, [token_id])
        else:
            for account, token_id in parsed.items():
                add(account, [token_id])
        return result

    for pair in _PAIR_SEPARATOR.split(text):
        key, sep, value = pair.partition("=")
        key, value = key.strip(), value.strip()
        if not sep or not key or not value:
            raise ValueError(f"Invalid mapping pair: {pair!r}")
        if value.startswith("[") and value.endswith("]"):
            add(key, json.loads(value))
        elif is_address(key):
            add(key, [value])
        else:
            add(value, [key])
    return result


class NFTDropSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: int | None = None
    chain_id: int = 1
    prefix: str
    output_dir: Path = Path("drops/gendata")
    save_links: bool = True

    def links_file(self, version: int) -> Path:
        return self.output_dir / f"{version}-nft-drop.json"


def generate_nft_drop(
    mapping: Mapping[str, Sequence[int]],
    settings: NFTDropSettings,
    store: VersionStore,
    *,
    persist: bool = True,
) -> NFTDropResult:
    """Tree, links and recipient list for an NFT drop.

    Without an explicit version the next one after the store's latest is used.
    """
    if not mapping:
        raise ValueError("Cannot build a drop without recipients")

    version = settings.version if settings.version is not None else store.current() + 1
    store.validate(version)

    entitlements = [Entitlement(account=account, token_ids=tuple(ids)) for account, ids in mapping.items()]
    tree = MerkleTree.from_entitlements(entitlements, FULL_WIDTH)
    codec = NFTTicketCodec(settings.prefix)

    recipients: list[NFTRecipient] = []
    for i, e in enumerate(entitlements):
        url = codec.build_url(tree.leaves[i], tree.proof(i), version)
        if not codec.verify(url, tree.root, expected_version=version):
            raise DropError(f"Generated NFT link for {e.account} does not verify against {tree.hex_root}")
        recipients.append(NFTRecipient(
            url=url,
            token_ids=list(e.token_ids or ()),
            account=e.account,
            proof=tree.hex_proof(i),
        ))

    log.info("NFT drop v%s: %s recipients, root %s", version, len(recipients), tree.hex_root)
    result = NFTDropResult(
        root=tree.hex_root,
        version=version,
        total_recipients=len(recipients),
        recipients=recipients,
    )

    if settings.save_links:
        save_manifest(settings.links_file(version), result)
    if persist:
        store.write_next(version)
    return result
