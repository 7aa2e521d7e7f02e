"""Configuration loader for dropkit.

Loads config/dropkit.yaml into an immutable DropConfig. A missing file
yields the built-in defaults. The RPC endpoint is a secret and comes from
the environment (DROPKIT_RPC_URL, .env supported), never from YAML.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from dropkit.audit.scanner import ScanConfig
from dropkit.audit.statistics import TestDetectionConfig

WORKSPACE = Path(__file__).resolve().parent.parent
CONFIG_DIR = WORKSPACE / "config"
CONFIG_FILE = CONFIG_DIR / "dropkit.yaml"

RPC_URL_ENV = "DROPKIT_RPC_URL"


class ChainConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    token_address: str


class PathConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    latest_version: Path = Path("drops/.latest")
    qr_codes: Path = Path("drops/qr")
    test_qr_codes: Path = Path("drops/test_qr")
    generated_data: Path = Path("drops/gendata")


class UrlConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_url: str = "https://app.1inch.io/#/{chain_id}/qr?"
    encoded_prefix: str = "https://wallet.1inch.io/app/w3browser?link="


class DefaultsConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    test_code_count: int = 10
    test_code_amount: int = 1


class TestDetectionSection(BaseModel):
    __test__ = False

    model_config = ConfigDict(frozen=True)

    default: TestDetectionConfig = Field(default_factory=TestDetectionConfig)
    networks: dict[str, TestDetectionConfig] = Field(default_factory=dict)


DEFAULT_CHAINS = {
    "mainnet": ChainConfig(id=1, token_address="0x111111111117dC0aa78b770fA6A738034120C302"),
    "base": ChainConfig(id=8453, token_address="0xc5fecC3a29Fb57B5024eEc8a2239d4621e111CBE"),
    "hardhat": ChainConfig(id=31337, token_address="0x111111111117dC0aa78b770fA6A738034120C302"),
    "bsc": ChainConfig(id=56, token_address="0x111111111117dC0aa78b770fA6A738034120C302"),
}


class DropConfig(BaseModel):
    """Whole-file settings; sections default independently."""

    model_config = ConfigDict(frozen=True)

    chains: dict[str, ChainConfig] = Field(default_factory=lambda: dict(DEFAULT_CHAINS))
    paths: PathConfig = Field(default_factory=PathConfig)
    urls: UrlConfig = Field(default_factory=UrlConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    scanner: dict[str, Any] = Field(default_factory=dict)
    test_detection: TestDetectionSection = Field(default_factory=TestDetectionSection)

    @property
    def scan_config(self) -> ScanConfig:
        return ScanConfig.from_dict(self.scanner)


def load_config(path: Path | None = None) -> DropConfig:
    """Load config/dropkit.yaml (or `path`)."""
    path = path or CONFIG_FILE
    if not path.exists():
        return DropConfig()
    return DropConfig.model_validate(yaml.safe_load(path.read_text()) or {})


def get_rpc_url() -> str:
    load_dotenv()
    return os.environ.get(RPC_URL_ENV, "")


def format_base_url(chain_id: int, config: DropConfig | None = None) -> str:
    """Ticket URL prefix for a chain, e.g. https://app.1inch.io/#/1/qr?"""
    config = config or load_config()
    return config.urls.base_url.replace("{chain_id}", str(chain_id))


def get_chain_config(chain_id: int, config: DropConfig | None = None) -> tuple[str, ChainConfig] | None:
    config = config or load_config()
    for name, chain in config.chains.items():
        if chain.id == chain_id:
            return name, chain
    return None


def get_token_address(chain_id: int, config: DropConfig | None = None) -> str | None:
    entry = get_chain_config(chain_id, config)
    return entry[1].token_address if entry else None


def get_test_detection_config(network: str | None = None, config: DropConfig | None = None) -> TestDetectionConfig:
    section = (config or load_config()).test_detection
    if network and network in section.networks:
        return section.networks[network]
    return section.default
