"""Wallet connectors and the provider interface they wrap.

Defines the ``WalletProvider`` Protocol the rest of the package depends on.
Concrete providers (browser bridges, ``LocalAccountProvider``) live
elsewhere. A connector's capability tag is resolved once, at connect time,
from its id, name and the provider's self-reported flags.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from mcpay.constants import ConnectorKind


@runtime_checkable
class WalletProvider(Protocol):
    """EIP-1193 style provider.

    ``request`` raises ``mcpay.errors.ProviderRpcError`` on failure.
    """

    async def request(self, method: str, params: list[Any] | None = None) -> Any: ...


# Provider flags as injected providers report them (``window.ethereum.isX``).
_FLAG_KINDS: dict[str, ConnectorKind] = {
    "isPorto": ConnectorKind.PORTO,
    "isCoinbaseWallet": ConnectorKind.COINBASE,
    "isMetaMask": ConnectorKind.METAMASK,
}

# Highest precedence first. Coinbase and Porto set ``isMetaMask`` for
# compatibility; MetaMask never sets theirs.
PRECEDENCE: tuple[ConnectorKind, ...] = (
    ConnectorKind.PORTO,
    ConnectorKind.COINBASE,
    ConnectorKind.METAMASK,
    ConnectorKind.INJECTED,
)

_ID_KINDS: dict[str, ConnectorKind] = {
    "porto": ConnectorKind.PORTO,
    "coinbasewallet": ConnectorKind.COINBASE,
    "coinbase": ConnectorKind.COINBASE,
    "metamask": ConnectorKind.METAMASK,
}


@dataclass
class Connector:
    """Adapter exposing a uniform interface over one wallet provider."""

    id: str
    name: str
    provider: WalletProvider
    flags: frozenset[str] = field(default_factory=frozenset)

    @property
    def kind(self) -> ConnectorKind:
        return classify_connector(self.id, self.name, self.flags)


def detected_kinds(connector_id: str, name: str, flags: frozenset[str] | set[str]) -> set[ConnectorKind]:
    """Every capability tag the connector matches; may be more than one."""
    kinds = {kind for flag, kind in _FLAG_KINDS.items() if flag in flags}
    key = connector_id.lower()
    lowered = name.lower()
    for token, kind in _ID_KINDS.items():
        if key == token or token in lowered.replace(" ", ""):
            kinds.add(kind)
    kinds.add(ConnectorKind.INJECTED)
    return kinds


def classify_connector(connector_id: str, name: str, flags: frozenset[str] | set[str]) -> ConnectorKind:
    """Resolve one capability tag, breaking ties by ``PRECEDENCE``."""
    kinds = detected_kinds(connector_id, name, flags)
    for kind in PRECEDENCE:
        if kind in kinds:
            return kind
    return ConnectorKind.INJECTED
