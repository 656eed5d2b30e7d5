"""
Solana network resolution and asset scales.

Network identifiers, RPC endpoints and USDC mints come from the x402 SDK's
SVM constants so offers written against either the legacy name-based ids
or CAIP-2 ids resolve to the same network.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from x402.mechanisms.svm.constants import (
    DEFAULT_DECIMALS,
    DEVNET_RPC_URL,
    MAINNET_RPC_URL,
    NETWORK_CONFIGS,
    SOLANA_DEVNET_CAIP2,
    SOLANA_MAINNET_CAIP2,
    SOLANA_TESTNET_CAIP2,
    TESTNET_RPC_URL,
    USDC_DEVNET_ADDRESS,
    USDC_MAINNET_ADDRESS,
    USDC_TESTNET_ADDRESS,
)

NATIVE_ASSET = "SOL"
NATIVE_DECIMALS = 9
LAMPORTS_PER_SOL = 10**NATIVE_DECIMALS
ESTIMATED_FEE_LAMPORTS = 5000

_NATIVE_ALIASES = {"sol", "native"}


@dataclass(frozen=True)
class SolanaNetwork:
    name: str
    caip2: str
    rpc_url: str
    usdc_mint: str
    aliases: tuple[str, ...] = ()

    def matches(self, value: Optional[str]) -> bool:
        if not value:
            return False
        try:
            return resolve_network(value) == self
        except ValueError:
            return False


MAINNET = SolanaNetwork(
    name="solana",
    caip2=SOLANA_MAINNET_CAIP2,
    rpc_url=MAINNET_RPC_URL,
    usdc_mint=USDC_MAINNET_ADDRESS,
    aliases=("solana", "mainnet", "mainnet-beta", "solana-mainnet"),
)
DEVNET = SolanaNetwork(
    name="solana-devnet",
    caip2=SOLANA_DEVNET_CAIP2,
    rpc_url=DEVNET_RPC_URL,
    usdc_mint=USDC_DEVNET_ADDRESS,
    aliases=("devnet", "solana-devnet"),
)
TESTNET = SolanaNetwork(
    name="solana-testnet",
    caip2=SOLANA_TESTNET_CAIP2,
    rpc_url=TESTNET_RPC_URL,
    usdc_mint=USDC_TESTNET_ADDRESS,
    aliases=("testnet", "solana-testnet"),
)

NETWORKS = (MAINNET, DEVNET, TESTNET)


def resolve_network(value: str | SolanaNetwork) -> SolanaNetwork:
    """Resolve a CAIP-2 id or alias to a known network."""
    if isinstance(value, SolanaNetwork):
        return value
    key = value.strip()
    for network in NETWORKS:
        if key == network.caip2 or key.lower() in network.aliases:
            return network
    raise ValueError(f"Unknown Solana network: {value}")


def is_native_asset(asset: Optional[str]) -> bool:
    return bool(asset) and asset.strip().lower() in _NATIVE_ALIASES


def asset_decimals(network: SolanaNetwork, asset: str) -> int:
    """Decimal scale for an asset id; unknown mints use the SDK default."""
    if is_native_asset(asset):
        return NATIVE_DECIMALS
    default_asset = NETWORK_CONFIGS[network.caip2]["default_asset"]
    if asset == default_asset["address"]:
        return default_asset["decimals"]
    return DEFAULT_DECIMALS
