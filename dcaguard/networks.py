"""Supported networks and unit conversions.

Gas prices are configured in Gwei and compared in wei (the smallest
denomination). Native-token amounts are converted to wei when a transaction
intent carries value.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Literal

Network = Literal["ethereum", "polygon", "arbitrum", "optimism", "base"]

WEI_PER_GWEI = Decimal("1000000000")
WEI_PER_ETHER = Decimal("1000000000000000000")

UNISWAP_V3_ROUTER = "0x68b3465833fb72A70ecDF485E0e4C7bD8665Fc45"


@dataclass(frozen=True)
class NetworkConfig:
    code: str
    name: str
    blockchain: str  # identifier used by the custody policy engine
    native_token: str
    dex_router: str
    explorer: str


NETWORKS: dict[str, NetworkConfig] = {
    "ethereum": NetworkConfig(
        code="ethereum",
        name="Ethereum",
        blockchain="BLOCKCHAIN_ETHEREUM",
        native_token="ETH",
        dex_router=UNISWAP_V3_ROUTER,
        explorer="https://etherscan.io",
    ),
    "polygon": NetworkConfig(
        code="polygon",
        name="Polygon",
        blockchain="BLOCKCHAIN_POLYGON",
        native_token="MATIC",
        dex_router=UNISWAP_V3_ROUTER,
        explorer="https://polygonscan.com",
    ),
    "arbitrum": NetworkConfig(
        code="arbitrum",
        name="Arbitrum",
        blockchain="BLOCKCHAIN_ARBITRUM",
        native_token="ETH",
        dex_router=UNISWAP_V3_ROUTER,
        explorer="https://arbiscan.io",
    ),
    "optimism": NetworkConfig(
        code="optimism",
        name="Optimism",
        blockchain="BLOCKCHAIN_OPTIMISM",
        native_token="ETH",
        dex_router=UNISWAP_V3_ROUTER,
        explorer="https://optimistic.etherscan.io",
    ),
    "base": NetworkConfig(
        code="base",
        name="Base",
        blockchain="BLOCKCHAIN_BASE",
        native_token="ETH",
        dex_router="0x2626664c2603336E57B271c5C0b26F421741e481",
        explorer="https://basescan.org",
    ),
}


def get_network(code: str) -> NetworkConfig:
    """Return the config for a network code, raising KeyError if unsupported."""
    return NETWORKS[code]


def is_supported_network(code: str) -> bool:
    return code in NETWORKS


def is_native_token(network: str, token: str) -> bool:
    """True when `token` is the gas token of `network`."""
    config = NETWORKS.get(network)
    return config is not None and config.native_token == token


def gwei_to_wei(gwei: Decimal) -> int:
    """Convert a Gwei amount to integer wei (truncating sub-wei fractions)."""
    return int(gwei * WEI_PER_GWEI)


def wei_to_gwei(wei: int) -> Decimal:
    return Decimal(wei) / WEI_PER_GWEI


def ether_to_wei(amount: Decimal) -> int:
    return int(amount * WEI_PER_ETHER)
