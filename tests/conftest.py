"""Shared fakes for wallet-provider driven tests."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from mcpay.authorization import reset_nonce_store
from mcpay.connectors import Connector
from mcpay.errors import ProviderRpcError
from mcpay.networks import parse_chain_id
from mcpay.wallet import WalletConnectionManager

PAYER = "0x1111111111111111111111111111111111111111"
PAYEE = "0x2222222222222222222222222222222222222222"


class FakeProvider:
    """Scriptable EIP-1193 provider that records every request.

    ``errors`` maps a method to the ``ProviderRpcError`` it raises;
    ``gates`` maps a method to an ``asyncio.Event`` it waits on first.
    """

    def __init__(
        self,
        accounts: list[str] | None = None,
        chain_id: int = 84532,
        known_chains: set[int] | None = None,
        signature: str = "0xsig",
    ) -> None:
        self.accounts = accounts if accounts is not None else [PAYER]
        self.chain_id = chain_id
        self.known_chains = known_chains if known_chains is not None else {chain_id}
        self.signature = signature
        self.calls: list[tuple[str, list[Any]]] = []
        self.errors: dict[str, ProviderRpcError] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.listeners: dict[str, list[Callable[..., Any]]] = {}
        self.disconnected = False

    def methods(self, name: str | None = None) -> list[str]:
        return [m for m, _ in self.calls if name is None or m == name]

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.listeners.setdefault(event, []).append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self.listeners.get(event, [])):
            handler(*args)

    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        self.calls.append((method, params or []))
        gate = self.gates.get(method)
        if gate is not None:
            await gate.wait()
        if method in self.errors:
            raise self.errors[method]
        if method == "eth_requestAccounts":
            return list(self.accounts)
        if method == "eth_chainId":
            return hex(self.chain_id)
        if method == "wallet_switchEthereumChain":
            target = parse_chain_id(params[0]["chainId"])
            if target not in self.known_chains:
                raise ProviderRpcError(4902, "Unrecognized chain ID")
            self.chain_id = target
            return None
        if method == "wallet_addEthereumChain":
            self.known_chains.add(parse_chain_id(params[0]["chainId"]))
            return None
        if method == "eth_signTypedData_v4":
            return self.signature
        raise ProviderRpcError(4200, f"Unsupported method: {method}")

    async def disconnect(self) -> None:
        self.disconnected = True


def make_connector(provider: Any, connector_id: str = "io.metamask", name: str = "MetaMask",
                   flags: frozenset[str] = frozenset({"isMetaMask"})) -> Connector:
    return Connector(id=connector_id, name=name, provider=provider, flags=flags)


async def connected_manager(provider: Any, config: Any = None, **connector_kwargs: Any) -> WalletConnectionManager:
    manager = WalletConnectionManager(config)
    await manager.connect(make_connector(provider, **connector_kwargs))
    return manager


async def settle(rounds: int = 10) -> None:
    """Let pending tasks run a few scheduling rounds."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def _fresh_nonce_store():
    reset_nonce_store()
    yield
    reset_nonce_store()
