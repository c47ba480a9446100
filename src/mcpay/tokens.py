"""Token registry: flat lookup table keyed by (network, lower-cased address).

Data verified from official sources (Circle USDC contract list, BaseScan,
Etherscan, Arbitrum docs). Pure data plus lookup, search and amount
formatting helpers. No I/O.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from mcpay.constants import COMPACT_THRESHOLD, NATIVE_TOKEN_ADDRESS, SEARCH_RESULT_LIMIT

Amount = Union[int, float, str, Decimal]

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_COMPACT_SUFFIXES = ("", "K", "M", "B", "T")


# ---------------------------------------------------------------------------
# Token
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Token:
    """Metadata for one token contract on one network."""

    network: str
    address: str
    symbol: str
    name: str
    decimals: int
    category: str = "utility"  # stablecoin | utility | defi | wrapped | ...
    is_stablecoin: bool = False
    is_native: bool = False
    popularity_score: int = 50  # 1-100, higher = more popular for payments
    liquidity_tier: str = "medium"  # high | medium | low
    recommended_for_payments: bool = False
    verified: bool = False
    verification_source: str | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)
    # EIP-712 domain used by transferWithAuthorization (USDC-style tokens)
    eip712_name: str | None = None
    eip712_version: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", self.address.lower())

    @property
    def key(self) -> tuple[str, str]:
        return (self.network, self.address)


def _native(network: str, symbol: str, name: str, source: str, score: int = 100) -> Token:
    return Token(
        network=network,
        address=NATIVE_TOKEN_ADDRESS,
        symbol=symbol,
        name=name,
        decimals=18,
        is_native=True,
        popularity_score=score,
        liquidity_tier="high",
        recommended_for_payments=True,
        verified=True,
        verification_source=source,
        tags=("native", "gas"),
    )


def _usdc(
    network: str,
    address: str,
    *,
    score: int = 95,
    name: str = "USD Coin",
    eip712_name: str = "USDC",
    source: str = "Circle Official Documentation",
    testnet: bool = False,
) -> Token:
    tags = ("stablecoin", "testnet" if testnet else "popular", "payments", "usd", "circle")
    return Token(
        network=network,
        address=address,
        symbol="USDC",
        name=name,
        decimals=6,
        category="stablecoin",
        is_stablecoin=True,
        popularity_score=score,
        liquidity_tier="high",
        recommended_for_payments=True,
        verified=True,
        verification_source=source,
        tags=tags,
        eip712_name=eip712_name,
        eip712_version="2",
    )


def _stable(
    network: str, address: str, symbol: str, name: str, decimals: int,
    score: int, source: str, tags: tuple[str, ...],
) -> Token:
    return Token(
        network=network,
        address=address,
        symbol=symbol,
        name=name,
        decimals=decimals,
        category="stablecoin",
        is_stablecoin=True,
        popularity_score=score,
        liquidity_tier="high",
        recommended_for_payments=symbol != "DAI",
        verified=True,
        verification_source=source,
        tags=tags,
    )


def _weth(network: str, address: str, score: int, source: str) -> Token:
    return Token(
        network=network,
        address=address,
        symbol="WETH",
        name="Wrapped Ether",
        decimals=18,
        category="wrapped",
        popularity_score=score,
        liquidity_tier="high",
        verified=True,
        verification_source=source,
        tags=("wrapped", "eth", "defi"),
    )


_TOKENS: list[Token] = [
    # Base mainnet
    _native("base", "ETH", "Ethereum", "Base Network Official"),
    _usdc("base", "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913", eip712_name="USD Coin"),
    _stable("base", "0x50c5725949a6f0c72e6c4a641f24049a917db0cb", "DAI", "Dai Stablecoin", 18,
            85, "BaseScan Explorer", ("stablecoin", "defi", "decentralized", "usd", "makerdao")),
    _stable("base", "0xfde4c96c8593536e31f229ea441f690d1d5ca8b7", "USDT", "Tether USD", 6,
            90, "BaseScan Explorer", ("stablecoin", "popular", "tether", "usd")),
    _weth("base", "0x4200000000000000000000000000000000000006", 88, "BaseScan Explorer"),
    # Base Sepolia
    _native("base-sepolia", "ETH", "Ethereum", "Base Network Official"),
    _usdc("base-sepolia", "0x036cbd53842c5426634e7929541ec2318f3dcf7e", testnet=True),
    _stable("base-sepolia", "0x036cec1a199234fc02f72d29e596a58034100694", "USDT", "Tether USD", 6,
            90, "Community Verified", ("stablecoin", "testnet", "tether", "usd")),
    _stable("base-sepolia", "0xf59d77573c53e81809c7d9eb7d83be9f4f412c4c", "DAI", "Dai Stablecoin", 18,
            85, "Community Verified", ("stablecoin", "testnet", "defi", "usd")),
    # Ethereum mainnet
    _native("ethereum", "ETH", "Ethereum", "Ethereum Foundation"),
    _usdc("ethereum", "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", eip712_name="USD Coin"),
    _weth("ethereum", "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2", 92, "Etherscan Verified"),
    _stable("ethereum", "0x6b175474e89094c44da98b954eedeac495271d0f", "DAI", "Dai Stablecoin", 18,
            85, "Etherscan Verified", ("stablecoin", "defi", "decentralized", "usd", "makerdao")),
    # Arbitrum One
    _native("arbitrum", "ETH", "Ethereum", "Arbitrum Documentation"),
    _usdc("arbitrum", "0xaf88d065e77c8cc2239327c5edb3a432268e5831", eip712_name="USD Coin"),
    _weth("arbitrum", "0x82af49447d8a07e3bd95bd0d56f35241523fbab1", 88, "Arbitrum Documentation"),
    # Optimism
    _native("optimism", "ETH", "Ethereum", "Optimism Foundation"),
    _usdc("optimism", "0x0b2c639c533813f4aa9d7837caf62653d097ff85", eip712_name="USD Coin"),
    # Polygon
    _native("polygon", "MATIC", "Polygon", "Polygon Labs", score=90),
    _usdc("polygon", "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359", eip712_name="USD Coin"),
    # Avalanche
    _native("avalanche", "AVAX", "Avalanche", "Avalanche Documentation", score=90),
    _usdc("avalanche", "0xb97ef9ef8734c71904d8002f8b6bc66dd9c48a6e"),
    _native("avalanche-fuji", "AVAX", "Avalanche", "Avalanche Documentation", score=90),
    _usdc("avalanche-fuji", "0x5425890298aed601595a70ab815c96711a31bc65",
          eip712_name="USD Coin", testnet=True),
    # IoTeX
    _native("iotex", "IOTX", "IoTeX", "IoTeX Documentation", score=80),
    _usdc("iotex", "0xcdf79194c6c285077a58da47641d4dbe51f63542",
          name="Bridged USDC", eip712_name="Bridged USDC", score=85),
    # Sei testnet: two USDC deployments are in circulation
    _native("sei-testnet", "SEI", "Sei", "Sei Protocol Official"),
    _usdc("sei-testnet", "0x4fcf1784b31630811181f670aea7a7bef803eaed", testnet=True),
    _usdc("sei-testnet", "0xeacd10aaa6f362a94823df6bbc3c536841870772",
          score=90, source="User Verified", testnet=True),
]

TOKEN_REGISTRY: dict[tuple[str, str], Token] = {t.key: t for t in _TOKENS}


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


def lookup(address: str, network: str) -> Token | None:
    """Return the token at ``address`` on ``network``; address is case-insensitive."""
    return TOKEN_REGISTRY.get((network, address.lower()))


def _by_popularity(tokens: list[Token]) -> list[Token]:
    return sorted(tokens, key=lambda t: t.popularity_score, reverse=True)


def lookup_by_symbol(symbol: str) -> list[Token]:
    """All tokens with ``symbol`` across every network, most popular first."""
    upper = symbol.upper()
    return _by_popularity([t for t in TOKEN_REGISTRY.values() if t.symbol.upper() == upper])


def search_by_name(query: str, limit: int = SEARCH_RESULT_LIMIT) -> list[Token]:
    """Substring search over name, symbol and tags, most popular first."""
    needle = query.lower()
    matches = [
        t for t in TOKEN_REGISTRY.values()
        if needle in t.name.lower()
        or needle in t.symbol.lower()
        or any(needle in tag.lower() for tag in t.tags)
    ]
    return _by_popularity(matches)[:limit]


def tokens_for_network(network: str) -> list[Token]:
    return [t for t in TOKEN_REGISTRY.values() if t.network == network]


def stablecoins_for_network(network: str) -> list[Token]:
    return _by_popularity([t for t in tokens_for_network(network) if t.is_stablecoin])


def verified_tokens() -> list[Token]:
    return [t for t in TOKEN_REGISTRY.values() if t.verified]


def popular_tokens(limit: int = 10) -> list[Token]:
    candidates = [t for t in TOKEN_REGISTRY.values() if t.recommended_for_payments]
    return _by_popularity(candidates)[:limit]


def usdc_address(network: str) -> str | None:
    """Preferred USDC contract for payments on ``network``."""
    for token in stablecoins_for_network(network):
        if token.symbol == "USDC":
            return token.address
    return None


def verification(address: str, network: str) -> tuple[bool, str | None]:
    token = lookup(address, network)
    if token is None:
        return False, None
    return token.verified, token.verification_source


def is_valid_token_address(address: str) -> bool:
    return bool(_ADDRESS_RE.match(address))


def is_native_token(address: str) -> bool:
    return address.lower() == NATIVE_TOKEN_ADDRESS


# ---------------------------------------------------------------------------
# Amounts & formatting
# ---------------------------------------------------------------------------


def abbreviate_address(address: str) -> str:
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def to_base_units(amount: Amount, decimals: int) -> int:
    """Convert a human amount to integer base units. Raises on excess precision."""
    try:
        value = Decimal(str(amount)).scaleb(decimals)
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    if value != value.to_integral_value():
        raise ValueError(f"{amount} has more than {decimals} decimal places")
    return int(value)


def from_base_units(value: int, decimals: int) -> Decimal:
    return Decimal(value).scaleb(-decimals)


def _strip_zeros(text: str) -> str:
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _compact(value: Decimal) -> str:
    tier = min(abs(value).adjusted() // 3, len(_COMPACT_SUFFIXES) - 1)
    scaled = value.scaleb(-3 * tier).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    if abs(scaled) >= 1000 and tier < len(_COMPACT_SUFFIXES) - 1:
        # 999.95K rounds to 1000.0K; carry into the next suffix
        tier += 1
        scaled = value.scaleb(-3 * tier).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return _strip_zeros(f"{scaled:f}") + _COMPACT_SUFFIXES[tier]


def format_amount(
    amount: Amount,
    address: str,
    network: str,
    *,
    precision: int | None = None,
    compact: bool = False,
    show_symbol: bool = False,
    base_units: bool = False,
    compact_threshold: int = COMPACT_THRESHOLD,
) -> str:
    """Render an amount of a registered token.

    Precision defaults to 2 places for stablecoins and 4 otherwise; trailing
    zeros are always stripped. ``compact`` switches to K/M/B/T suffixes from
    ``compact_threshold`` up. ``base_units`` treats an integer ``amount`` as
    atomic units.
    Unknown tokens render as the raw amount plus an abbreviated address.
    """
    token = lookup(address, network)
    if token is None:
        return f"{amount} {abbreviate_address(address)}"

    if base_units:
        value = from_base_units(int(amount), token.decimals)
    else:
        value = Decimal(str(amount))

    if compact and abs(value) >= compact_threshold:
        formatted = _compact(value)
    else:
        places = precision if precision is not None else (2 if token.is_stablecoin else 4)
        quantum = Decimal(1).scaleb(-places)
        formatted = _strip_zeros(f"{value.quantize(quantum, rounding=ROUND_HALF_UP):f}")

    return f"{formatted} {token.symbol}" if show_symbol else formatted
