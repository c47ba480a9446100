"""In-process wallet provider backed by a local eth-account key.

Speaks the same ``request(method, params)`` interface as a browser wallet,
so agents and tests can drive the manager, switcher and transport without
an extension. Chain reads are proxied to the active chain's RPC endpoint.
"""

from __future__ import annotations

import itertools
import json
import logging
from typing import Any, Callable, Iterable

import httpx
from eth_account import Account
from eth_account.messages import encode_typed_data

from mcpay.constants import (
    ERROR_CHAIN_NOT_ADDED,
    ERROR_UNAUTHORIZED,
    ERROR_UNSUPPORTED_METHOD,
)
from mcpay.errors import ProviderRpcError
from mcpay.networks import Network, add_chain_params, get_network, hex_chain_id, parse_chain_id

logger = logging.getLogger(__name__)

# Read-only methods forwarded to the chain's RPC endpoint.
_PROXIED = frozenset({"eth_call", "eth_getBalance", "eth_blockNumber", "eth_getCode"})


class LocalAccountProvider:
    """EIP-1193 style provider holding one private key.

    Only chains passed in ``networks`` (default: the starting chain) are
    known; switching to any other raises 4902 until it is added.
    """

    def __init__(
        self,
        private_key: str,
        *,
        chain: Network | str = "base-sepolia",
        networks: Iterable[Network] | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._account = Account.from_key(private_key)
        start = get_network(chain) if isinstance(chain, str) else chain
        self._chains: dict[int, dict[str, Any]] = {}
        for network in networks or (start,):
            self._chains[network.chain_id] = add_chain_params(network)
        self._chains.setdefault(start.chain_id, add_chain_params(start))
        self._chain_id = start.chain_id
        self._listeners: dict[str, list[Callable[..., Any]]] = {}
        self._ids = itertools.count(1)
        self._client = httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def chain_id(self) -> int:
        return self._chain_id

    # -- events ---------------------------------------------------------------

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable[..., Any]) -> None:
        handlers = self._listeners.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._listeners.get(event, [])):
            handler(*args)

    # -- requests -------------------------------------------------------------

    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        params = params or []
        if method in ("eth_requestAccounts", "eth_accounts"):
            return [self.address]
        if method == "eth_chainId":
            return hex_chain_id(self._chain_id)
        if method == "wallet_switchEthereumChain":
            return self._switch_chain(params)
        if method == "wallet_addEthereumChain":
            return self._add_chain(params)
        if method == "eth_signTypedData_v4":
            return self._sign_typed_data(params)
        if method in _PROXIED:
            return await self._proxy(method, params)
        raise ProviderRpcError(ERROR_UNSUPPORTED_METHOD, f"Unsupported method: {method}")

    def _switch_chain(self, params: list[Any]) -> None:
        try:
            chain_id = parse_chain_id(params[0]["chainId"])
        except (IndexError, KeyError, TypeError, ValueError) as e:
            raise ProviderRpcError(-32602, f"Invalid chain switch params: {params!r}") from e
        if chain_id not in self._chains:
            raise ProviderRpcError(
                ERROR_CHAIN_NOT_ADDED,
                f'Unrecognized chain ID "{hex_chain_id(chain_id)}". '
                "Try adding the chain using wallet_addEthereumChain first.",
            )
        if chain_id != self._chain_id:
            self._chain_id = chain_id
            logger.info("Local provider switched to chain %d.", chain_id)
            self._emit("chainChanged", hex_chain_id(chain_id))
        return None

    def _add_chain(self, params: list[Any]) -> None:
        try:
            descriptor = dict(params[0])
            chain_id = parse_chain_id(descriptor["chainId"])
            rpc_urls = list(descriptor["rpcUrls"])
        except (IndexError, KeyError, TypeError, ValueError) as e:
            raise ProviderRpcError(-32602, f"Invalid chain descriptor: {params!r}") from e
        if not rpc_urls:
            raise ProviderRpcError(-32602, "Chain descriptor has no RPC URLs")
        self._chains[chain_id] = descriptor
        logger.info("Local provider registered chain %d (%s).", chain_id, descriptor.get("chainName"))
        return None

    def _sign_typed_data(self, params: list[Any]) -> str:
        if len(params) < 2:
            raise ProviderRpcError(-32602, "eth_signTypedData_v4 expects [address, typedData]")
        signer, payload = params[0], params[1]
        if str(signer).lower() != self.address.lower():
            raise ProviderRpcError(ERROR_UNAUTHORIZED, f"Account {signer} is not available")
        typed_data = json.loads(payload) if isinstance(payload, str) else payload
        signable = encode_typed_data(full_message=typed_data)
        signed = self._account.sign_message(signable)
        return "0x" + bytes(signed.signature).hex()

    async def _proxy(self, method: str, params: list[Any]) -> Any:
        urls = self._chains[self._chain_id].get("rpcUrls") or []
        if not urls:
            raise ProviderRpcError(-32603, f"No RPC URL for chain {self._chain_id}")
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post(urls[0], json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderRpcError(-32603, f"RPC request failed: {e}") from e
        if body.get("error"):
            error = body["error"]
            raise ProviderRpcError(int(error.get("code", -32603)), str(error.get("message", error)))
        return body.get("result")

    async def disconnect(self) -> None:
        self._emit("disconnect")
        await self._client.aclose()
