"""Multi-chain stablecoin balance aggregation.

One query per (network, tracked asset), all concurrent. A failing or slow
network yields a zero entry plus a ``PartialDataError``; it never fails the
aggregate. Results are grouped by (network, symbol), dust chains are
dropped, and everything is ranked by fiat value.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Iterable, Protocol, runtime_checkable

import httpx

from mcpay.config import McpayConfig
from mcpay.errors import PartialDataError, UpstreamError
from mcpay.networks import Network, list_networks
from mcpay.tokens import Token, from_base_units, lookup, stablecoins_for_network

if TYPE_CHECKING:
    from mcpay.collaborators import LinkedWalletStore
    from mcpay.wallet import WalletConnectionManager

logger = logging.getLogger(__name__)

_BALANCE_OF_SELECTOR = "0x70a08231"


# ---------------------------------------------------------------------------
# Balance & price sources
# ---------------------------------------------------------------------------


@runtime_checkable
class BalanceSource(Protocol):
    """Reads a raw (base-unit) balance of one token for one address."""

    async def get_balance(self, address: str, token: Token, network: Network) -> int: ...


@runtime_checkable
class PriceProvider(Protocol):
    async def get_price(self, token: Token) -> Decimal: ...


class PeggedPriceProvider:
    """Stablecoins at their $1 peg; everything else is not priced."""

    async def get_price(self, token: Token) -> Decimal:
        return Decimal(1) if token.is_stablecoin else Decimal(0)


class RpcBalanceSource:
    """Balance reads over each network's public JSON-RPC endpoint."""

    def __init__(self, timeout: float = 10.0, rpc_overrides: dict[str, str] | None = None) -> None:
        self._rpc_overrides = rpc_overrides or {}
        self._ids = itertools.count(1)
        self._client = httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    async def _rpc(self, url: str, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"RPC request to {url} failed: {exc}") from exc
        if response.status_code >= 400:
            raise UpstreamError(response.text, status_code=response.status_code)
        body = response.json()
        if body.get("error"):
            raise UpstreamError(str(body["error"].get("message", body["error"])))
        return body.get("result")

    async def get_balance(self, address: str, token: Token, network: Network) -> int:
        url = self._rpc_overrides.get(network.id, network.rpc_url)
        if token.is_native:
            result = await self._rpc(url, "eth_getBalance", [address, "latest"])
        else:
            data = _BALANCE_OF_SELECTOR + address.lower().removeprefix("0x").rjust(64, "0")
            result = await self._rpc(
                url, "eth_call", [{"to": token.address, "data": data}, "latest"]
            )
        if not result or result == "0x":
            return 0
        return int(result, 16)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> RpcBalanceSource:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class RawBalance:
    """One query's outcome. Failed queries carry ``error`` and a zero balance."""

    wallet: str
    network: Network
    token: Token
    balance: Decimal = Decimal(0)
    fiat_value: Decimal = Decimal(0)
    error: str | None = None


@dataclass
class TokenBalance:
    symbol: str
    balance: Decimal
    fiat_value: Decimal
    address: str  # first contract seen for the symbol


@dataclass
class ChainBalance:
    network: Network
    fiat_value: Decimal
    tokens: list[TokenBalance] = field(default_factory=list)


@dataclass
class BalanceSummary:
    mainnet_chains: list[ChainBalance] = field(default_factory=list)
    testnet_chains: list[ChainBalance] = field(default_factory=list)
    errors: list[PartialDataError] = field(default_factory=list)

    @property
    def has_mainnet_balances(self) -> bool:
        return bool(self.mainnet_chains)

    @property
    def has_testnet_balances(self) -> bool:
        return bool(self.testnet_chains)

    @property
    def mainnet_value(self) -> Decimal:
        return sum((c.fiat_value for c in self.mainnet_chains), Decimal(0))

    @property
    def testnet_value(self) -> Decimal:
        return sum((c.fiat_value for c in self.testnet_chains), Decimal(0))

    @property
    def is_partial(self) -> bool:
        return bool(self.errors)

    def chain(self, network_id: str) -> ChainBalance | None:
        for chain in itertools.chain(self.mainnet_chains, self.testnet_chains):
            if chain.network.id == network_id:
                return chain
        return None


def _rank_chains(results: Iterable[RawBalance], threshold: Decimal) -> list[ChainBalance]:
    # network id -> symbol -> [balance, fiat, first address]
    grouped: dict[str, dict[str, list[Any]]] = {}
    networks: dict[str, Network] = {}
    for r in results:
        networks[r.network.id] = r.network
        by_symbol = grouped.setdefault(r.network.id, {})
        entry = by_symbol.setdefault(r.token.symbol, [Decimal(0), Decimal(0), r.token.address])
        entry[0] += r.balance
        entry[1] += r.fiat_value

    chains: list[ChainBalance] = []
    for network_id, by_symbol in grouped.items():
        total = sum((e[1] for e in by_symbol.values()), Decimal(0))
        if total <= threshold:
            continue
        tokens = [
            TokenBalance(symbol=symbol, balance=e[0], fiat_value=e[1], address=e[2])
            for symbol, e in by_symbol.items()
            if e[1] > threshold
        ]
        tokens.sort(key=lambda t: t.fiat_value, reverse=True)
        chains.append(ChainBalance(network=networks[network_id], fiat_value=total, tokens=tokens))

    chains.sort(key=lambda c: c.fiat_value, reverse=True)
    return chains


def summarize(results: Iterable[RawBalance], threshold: float | Decimal) -> BalanceSummary:
    """Bucket, group by (network, symbol), drop dust chains and rank."""
    results = list(results)
    limit = Decimal(str(threshold))
    return BalanceSummary(
        mainnet_chains=_rank_chains((r for r in results if not r.network.is_testnet), limit),
        testnet_chains=_rank_chains((r for r in results if r.network.is_testnet), limit),
        errors=[
            PartialDataError(r.network.id, r.token.symbol, r.error)
            for r in results
            if r.error is not None
        ],
    )


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class BalanceAggregator:
    """Concurrent multi-network balance queries with coalesced polling.

    ``tracked_assets`` maps network id to the contract addresses to query;
    by default every stablecoin the token registry knows on each network.
    """

    def __init__(
        self,
        source: BalanceSource,
        *,
        prices: PriceProvider | None = None,
        networks: Iterable[Network] | None = None,
        tracked_assets: dict[str, list[str]] | None = None,
        config: McpayConfig | None = None,
    ) -> None:
        self._source = source
        self._prices = prices or PeggedPriceProvider()
        self._config = config or McpayConfig()
        self._networks = list(networks) if networks is not None else list_networks()
        self._tracked = self._resolve_tracked(tracked_assets)
        self._latest: dict[str, BalanceSummary] = {}
        self._stored_generation: dict[str, int] = {}
        self._started_generation: dict[str, int] = {}
        self._in_flight: dict[str, asyncio.Task[BalanceSummary]] = {}
        self._generations = itertools.count(1)
        self._listeners: list[Callable[[str, BalanceSummary], None]] = []
        self._poll_task: asyncio.Task[None] | None = None

    def _resolve_tracked(self, tracked_assets: dict[str, list[str]] | None) -> list[tuple[Network, Token]]:
        pairs: list[tuple[Network, Token]] = []
        for network in self._networks:
            if tracked_assets is None:
                tokens = stablecoins_for_network(network.id)
            else:
                tokens = []
                for address in tracked_assets.get(network.id, []):
                    token = lookup(address, network.id)
                    if token is None:
                        logger.warning("Untracked asset %s on %s: not in registry.", address, network.id)
                        continue
                    tokens.append(token)
            pairs.extend((network, token) for token in tokens)
        return pairs

    @property
    def tracked(self) -> list[tuple[Network, Token]]:
        return list(self._tracked)

    # -- one-shot aggregation -------------------------------------------------

    async def _query(self, wallet: str, network: Network, token: Token) -> RawBalance:
        result = RawBalance(wallet=wallet, network=network, token=token)
        try:
            raw = await asyncio.wait_for(
                self._source.get_balance(wallet, token, network),
                timeout=self._config.balance_query_timeout,
            )
            price = await self._prices.get_price(token)
        except asyncio.TimeoutError:
            result.error = f"timed out after {self._config.balance_query_timeout}s"
        except Exception as e:
            result.error = str(e) or type(e).__name__
        else:
            result.balance = from_base_units(raw, token.decimals)
            result.fiat_value = result.balance * Decimal(price)
            return result
        logger.warning(
            "Balance query failed for %s on %s (%s): %s",
            wallet, network.id, token.symbol, result.error,
        )
        return result

    def _queries(self, wallets: Iterable[str]) -> list[Any]:
        return [
            self._query(wallet, network, token)
            for wallet in wallets
            for network, token in self._tracked
        ]

    async def stream(self, address: str) -> AsyncIterator[RawBalance]:
        """Yield per-query results in completion order."""
        for next_result in asyncio.as_completed(self._queries([address])):
            yield await next_result

    async def aggregate(self, address: str) -> BalanceSummary:
        return await self.aggregate_many([address])

    async def aggregate_many(self, addresses: Iterable[str]) -> BalanceSummary:
        """Aggregate across several wallets (e.g. every wallet a user linked)."""
        addresses = list(addresses)
        if not addresses:
            return BalanceSummary()
        results = await asyncio.gather(*self._queries(addresses))
        summary = summarize(results, self._config.materiality_threshold)
        if summary.errors:
            logger.warning(
                "Balance summary is partial: %d of %d queries failed.",
                len(summary.errors), len(results),
            )
        return summary

    async def aggregate_for_user(self, user_id: str, store: LinkedWalletStore) -> BalanceSummary:
        addresses = await store.fetch_linked_wallets(user_id)
        return await self.aggregate_many(addresses)

    async def persisted_summary(self, user_id: str, store: LinkedWalletStore) -> BalanceSummary:
        """Summarize the last snapshot the store persisted, without any RPC.

        Rows look like ``{"wallet", "network", "asset", "balance", "fiat_value"}``;
        rows for unknown networks or assets are skipped.
        """
        results: list[RawBalance] = []
        for row in await store.fetch_persisted_balances(user_id):
            network = next((n for n in self._networks if n.id == row.get("network")), None)
            token = lookup(str(row.get("asset", "")), network.id) if network else None
            if network is None or token is None:
                logger.debug("Skipping persisted balance row: %s", row)
                continue
            results.append(RawBalance(
                wallet=str(row.get("wallet", "")),
                network=network,
                token=token,
                balance=Decimal(str(row.get("balance", 0))),
                fiat_value=Decimal(str(row.get("fiat_value", 0))),
            ))
        return summarize(results, self._config.materiality_threshold)

    # -- coalesced refresh ----------------------------------------------------

    def latest(self, address: str) -> BalanceSummary | None:
        return self._latest.get(address.lower())

    def subscribe(self, listener: Callable[[str, BalanceSummary], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def refresh(self, address: str) -> BalanceSummary | None:
        """Recompute balances for ``address``, superseding any cycle in flight.

        Returns ``None`` if a newer refresh for the same address superseded
        this one; only the newest result is kept.
        """
        key = address.lower()
        previous = self._in_flight.get(key)
        if previous is not None and not previous.done():
            previous.cancel()

        generation = next(self._generations)
        self._started_generation[key] = generation
        task = asyncio.ensure_future(self.aggregate(address))
        self._in_flight[key] = task
        try:
            summary = await task
        except asyncio.CancelledError:
            if task.cancelled() and self._started_generation[key] != generation:
                return None
            raise
        finally:
            if self._in_flight.get(key) is task:
                del self._in_flight[key]

        if generation < self._stored_generation.get(key, 0):
            return None
        self._stored_generation[key] = generation
        self._latest[key] = summary
        for listener in list(self._listeners):
            try:
                listener(address, summary)
            except Exception:
                logger.warning("Balance listener failed for %s.", address, exc_info=True)
        return summary

    # -- polling --------------------------------------------------------------

    def start_polling(self, manager: WalletConnectionManager) -> asyncio.Task[None]:
        """Poll the connected address until the connection goes away."""
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        connection = manager.require_connection()
        self._poll_task = manager.spawn_bound(self._poll_loop(connection.address))
        return self._poll_task

    async def _poll_loop(self, address: str) -> None:
        interval = self._config.poll_interval_secs
        logger.info("Balance polling started for %s (interval=%ss).", address, interval)
        cycles = 0
        try:
            while True:
                await self.refresh(address)
                cycles += 1
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Balance polling stopped for %s after %d cycle(s).", address, cycles)
            raise

    async def stop_polling(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass
        self._poll_task = None
