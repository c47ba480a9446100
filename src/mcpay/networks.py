"""Static catalog of supported EVM networks.

Networks are keyed by their x402 slug (``base-sepolia``, ``sei-testnet``...)
and reverse-indexed by numeric chain id. Pure data, no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from mcpay.errors import UnsupportedNetwork


@dataclass(frozen=True)
class NativeCurrency:
    name: str
    symbol: str
    decimals: int = 18


@dataclass(frozen=True)
class Network:
    """An EVM network the wallet can be on."""

    id: str
    name: str
    chain_id: int
    native_currency: NativeCurrency
    rpc_urls: tuple[str, ...]
    explorer_urls: tuple[str, ...]
    is_testnet: bool = False

    @property
    def rpc_url(self) -> str:
        return self.rpc_urls[0]


_ETH = NativeCurrency("Ethereum", "ETH")

NETWORKS: dict[str, Network] = {
    "base": Network(
        id="base",
        name="Base",
        chain_id=8453,
        native_currency=_ETH,
        rpc_urls=("https://mainnet.base.org",),
        explorer_urls=("https://basescan.org",),
    ),
    "base-sepolia": Network(
        id="base-sepolia",
        name="Base Sepolia",
        chain_id=84532,
        native_currency=_ETH,
        rpc_urls=("https://sepolia.base.org",),
        explorer_urls=("https://sepolia.basescan.org",),
        is_testnet=True,
    ),
    "ethereum": Network(
        id="ethereum",
        name="Ethereum",
        chain_id=1,
        native_currency=_ETH,
        rpc_urls=("https://eth.llamarpc.com",),
        explorer_urls=("https://etherscan.io",),
    ),
    "arbitrum": Network(
        id="arbitrum",
        name="Arbitrum One",
        chain_id=42161,
        native_currency=_ETH,
        rpc_urls=("https://arb1.arbitrum.io/rpc",),
        explorer_urls=("https://arbiscan.io",),
    ),
    "optimism": Network(
        id="optimism",
        name="Optimism",
        chain_id=10,
        native_currency=_ETH,
        rpc_urls=("https://mainnet.optimism.io",),
        explorer_urls=("https://optimistic.etherscan.io",),
    ),
    "polygon": Network(
        id="polygon",
        name="Polygon",
        chain_id=137,
        native_currency=NativeCurrency("MATIC", "MATIC"),
        rpc_urls=("https://polygon-rpc.com",),
        explorer_urls=("https://polygonscan.com",),
    ),
    "avalanche": Network(
        id="avalanche",
        name="Avalanche",
        chain_id=43114,
        native_currency=NativeCurrency("Avalanche", "AVAX"),
        rpc_urls=("https://api.avax.network/ext/bc/C/rpc",),
        explorer_urls=("https://snowtrace.io",),
    ),
    "avalanche-fuji": Network(
        id="avalanche-fuji",
        name="Avalanche Fuji",
        chain_id=43113,
        native_currency=NativeCurrency("Avalanche", "AVAX"),
        rpc_urls=("https://api.avax-test.network/ext/bc/C/rpc",),
        explorer_urls=("https://testnet.snowtrace.io",),
        is_testnet=True,
    ),
    "iotex": Network(
        id="iotex",
        name="IoTeX",
        chain_id=4689,
        native_currency=NativeCurrency("IoTeX", "IOTX"),
        rpc_urls=("https://babel-api.mainnet.iotex.io",),
        explorer_urls=("https://iotexscan.io",),
    ),
    "sei-testnet": Network(
        id="sei-testnet",
        name="Sei Testnet",
        chain_id=1328,
        native_currency=NativeCurrency("Sei", "SEI"),
        rpc_urls=("https://evm-rpc-testnet.sei-apis.com",),
        explorer_urls=("https://seitrace.com/?chain=atlantic-2",),
        is_testnet=True,
    ),
}

# Reverse index; one network per chain id.
_BY_CHAIN_ID: dict[int, Network] = {n.chain_id: n for n in NETWORKS.values()}
if len(_BY_CHAIN_ID) != len(NETWORKS):
    raise ValueError("duplicate chain id in NETWORKS")


def get_network(network_id: str) -> Network:
    """Return the network for an id, raising ``UnsupportedNetwork`` if unknown."""
    network = NETWORKS.get(network_id.lower())
    if network is None:
        supported = ", ".join(NETWORKS)
        raise UnsupportedNetwork(f"Unknown network: {network_id}. Supported: {supported}")
    return network


def by_chain_id(chain_id: int | None) -> Network | None:
    """Reverse lookup from numeric chain id."""
    if chain_id is None:
        return None
    return _BY_CHAIN_ID.get(chain_id)


def list_networks(include_testnets: bool = True) -> list[Network]:
    if include_testnets:
        return list(NETWORKS.values())
    return mainnet_networks()


def mainnet_networks() -> list[Network]:
    return [n for n in NETWORKS.values() if not n.is_testnet]


def testnet_networks() -> list[Network]:
    return [n for n in NETWORKS.values() if n.is_testnet]


def hex_chain_id(chain_id: int) -> str:
    return hex(chain_id)


def parse_chain_id(value: Any) -> int:
    """Accept ``0x14a34``, ``"84532"`` or ``84532``."""
    if isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text, 16) if text.lower().startswith("0x") else int(text)


def add_chain_params(network: Network) -> dict[str, Any]:
    """EIP-3085 ``wallet_addEthereumChain`` payload for a network."""
    currency = network.native_currency
    return {
        "chainId": hex_chain_id(network.chain_id),
        "chainName": network.name,
        "nativeCurrency": {
            "name": currency.name,
            "symbol": currency.symbol,
            "decimals": currency.decimals,
        },
        "rpcUrls": list(network.rpc_urls),
        "blockExplorerUrls": list(network.explorer_urls),
    }
