"""Tests for multi-chain balance aggregation."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import PAYER, FakeProvider, connected_manager
from mcpay.balances import (
    BalanceAggregator,
    PeggedPriceProvider,
    RawBalance,
    RpcBalanceSource,
    summarize,
)
from mcpay.config import McpayConfig
from mcpay.errors import UpstreamError
from mcpay.networks import get_network
from mcpay.tokens import lookup

BASE_USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
BASE_USDT = "0xfde4c96c8593536e31f229ea441f690d1d5ca8b7"
ARB_USDC = "0xaf88d065e77c8cc2239327c5edb3a432268e5831"
OP_USDC = "0x0b2c639c533813f4aa9d7837caf62653d097ff85"
SEI_USDC_A = "0x4fcf1784b31630811181f670aea7a7bef803eaed"
SEI_USDC_B = "0xeacd10aaa6f362a94823df6bbc3c536841870772"
SECOND_WALLET = "0x4444444444444444444444444444444444444444"


class FakeSource:
    """Balances keyed by (wallet, network, token address), in base units."""

    def __init__(self, balances=None, failing=(), slow=()):
        self.balances = balances or {}
        self.failing = set(failing)
        self.slow = set(slow)
        self.calls = []

    async def get_balance(self, address, token, network):
        self.calls.append((address, network.id, token.address))
        if network.id in self.failing:
            raise RuntimeError("rpc down")
        if network.id in self.slow:
            await asyncio.sleep(10)
        return self.balances.get((address, network.id, token.address), 0)


def _aggregator(source, *network_ids, config=None, tracked=None) -> BalanceAggregator:
    return BalanceAggregator(
        source,
        networks=[get_network(n) for n in network_ids],
        tracked_assets=tracked,
        config=config,
    )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


class TestAggregate:
    @pytest.mark.asyncio
    async def test_failed_network_is_absorbed(self) -> None:
        source = FakeSource({(PAYER, "arbitrum", ARB_USDC): 5_000_000}, failing={"base"})
        summary = await _aggregator(source, "base", "arbitrum").aggregate(PAYER)

        assert [c.network.id for c in summary.mainnet_chains] == ["arbitrum"]
        assert summary.mainnet_chains[0].fiat_value == Decimal(5)
        assert summary.has_mainnet_balances
        assert not summary.has_testnet_balances
        assert summary.is_partial
        assert {e.network for e in summary.errors} == {"base"}
        assert all("rpc down" in e.message for e in summary.errors)

    @pytest.mark.asyncio
    async def test_every_network_failing_is_still_a_summary(self) -> None:
        source = FakeSource(failing={"base", "arbitrum"})
        summary = await _aggregator(source, "base", "arbitrum").aggregate(PAYER)
        assert not summary.has_mainnet_balances
        assert summary.mainnet_value == 0
        assert len(summary.errors) == len(source.calls)

    @pytest.mark.asyncio
    async def test_timeout_becomes_partial_data(self) -> None:
        source = FakeSource({(PAYER, "arbitrum", ARB_USDC): 1_000_000}, slow={"base"})
        config = McpayConfig(balance_query_timeout=0.05)
        summary = await _aggregator(source, "base", "arbitrum", config=config).aggregate(PAYER)

        assert summary.chain("arbitrum") is not None
        assert summary.errors
        assert all("timed out" in e.reason for e in summary.errors)

    @pytest.mark.asyncio
    async def test_dust_chains_dropped(self) -> None:
        source = FakeSource({
            (PAYER, "arbitrum", ARB_USDC): 500,  # $0.0005
            (PAYER, "sei-testnet", SEI_USDC_A): 900,
        })
        summary = await _aggregator(source, "arbitrum", "sei-testnet").aggregate(PAYER)

        assert summary.mainnet_chains == []
        assert summary.testnet_chains == []
        assert not summary.has_mainnet_balances
        assert not summary.has_testnet_balances

    @pytest.mark.asyncio
    async def test_groups_same_symbol_on_one_chain(self) -> None:
        source = FakeSource({
            (PAYER, "sei-testnet", SEI_USDC_A): 1_000_000,
            (PAYER, "sei-testnet", SEI_USDC_B): 2_500_000,
        })
        summary = await _aggregator(source, "sei-testnet").aggregate(PAYER)

        chain = summary.chain("sei-testnet")
        assert len(chain.tokens) == 1
        usdc = chain.tokens[0]
        assert usdc.symbol == "USDC"
        assert usdc.balance == Decimal("3.5")
        assert usdc.fiat_value == Decimal("3.5")
        assert usdc.address == SEI_USDC_A
        assert summary.testnet_value == Decimal("3.5")
        assert summary.has_testnet_balances

    @pytest.mark.asyncio
    async def test_chains_ranked_by_value(self) -> None:
        source = FakeSource({
            (PAYER, "base", BASE_USDC): 1_000_000,
            (PAYER, "arbitrum", ARB_USDC): 10_000_000,
            (PAYER, "optimism", OP_USDC): 5_000_000,
        })
        summary = await _aggregator(source, "base", "arbitrum", "optimism").aggregate(PAYER)

        assert [c.network.id for c in summary.mainnet_chains] == ["arbitrum", "optimism", "base"]
        assert summary.mainnet_value == Decimal(16)

    @pytest.mark.asyncio
    async def test_tokens_ranked_within_chain(self) -> None:
        source = FakeSource({
            (PAYER, "base", BASE_USDC): 1_000_000,
            (PAYER, "base", BASE_USDT): 3_000_000,
        })
        summary = await _aggregator(source, "base").aggregate(PAYER)
        assert [t.symbol for t in summary.chain("base").tokens] == ["USDT", "USDC"]

    @pytest.mark.asyncio
    async def test_buckets_by_testnet_flag(self) -> None:
        source = FakeSource({
            (PAYER, "base", BASE_USDC): 2_000_000,
            (PAYER, "sei-testnet", SEI_USDC_A): 7_000_000,
        })
        summary = await _aggregator(source, "base", "sei-testnet").aggregate(PAYER)
        assert [c.network.id for c in summary.mainnet_chains] == ["base"]
        assert [c.network.id for c in summary.testnet_chains] == ["sei-testnet"]

    @pytest.mark.asyncio
    async def test_tracked_assets_override(self) -> None:
        source = FakeSource()
        aggregator = _aggregator(source, "base", tracked={"base": [BASE_USDC.upper().replace("0X", "0x")]})
        await aggregator.aggregate(PAYER)
        assert source.calls == [(PAYER, "base", BASE_USDC)]

    @pytest.mark.asyncio
    async def test_aggregate_many_sums_wallets(self) -> None:
        source = FakeSource({
            (PAYER, "base", BASE_USDC): 1_000_000,
            (SECOND_WALLET, "base", BASE_USDC): 2_000_000,
        })
        summary = await _aggregator(source, "base").aggregate_many([PAYER, SECOND_WALLET])
        assert summary.chain("base").tokens[0].balance == Decimal(3)

    @pytest.mark.asyncio
    async def test_aggregate_for_user(self) -> None:
        source = FakeSource({(SECOND_WALLET, "base", BASE_USDC): 4_000_000})
        store = AsyncMock()
        store.fetch_linked_wallets.return_value = [SECOND_WALLET]

        summary = await _aggregator(source, "base").aggregate_for_user("user-1", store)

        store.fetch_linked_wallets.assert_awaited_once_with("user-1")
        assert summary.mainnet_value == Decimal(4)

    @pytest.mark.asyncio
    async def test_no_linked_wallets(self) -> None:
        store = AsyncMock()
        store.fetch_linked_wallets.return_value = []
        summary = await _aggregator(FakeSource(), "base").aggregate_for_user("user-1", store)
        assert summary.mainnet_chains == [] and summary.errors == []

    @pytest.mark.asyncio
    async def test_persisted_summary(self) -> None:
        store = AsyncMock()
        store.fetch_persisted_balances.return_value = [
            {"wallet": PAYER, "network": "base", "asset": BASE_USDC, "balance": "12.5", "fiat_value": "12.5"},
            {"wallet": PAYER, "network": "solana", "asset": "So111", "balance": "1", "fiat_value": "150"},
        ]
        source = FakeSource()

        summary = await _aggregator(source, "base").persisted_summary("user-1", store)

        assert summary.mainnet_value == Decimal("12.5")
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_stream_yields_every_query(self) -> None:
        source = FakeSource({(PAYER, "base", BASE_USDC): 1_000_000}, failing={"arbitrum"})
        aggregator = _aggregator(source, "base", "arbitrum")

        results = [r async for r in aggregator.stream(PAYER)]

        assert len(results) == len(aggregator.tracked)
        assert any(r.error for r in results)
        assert any(r.balance == 1 for r in results)


class TestSummarize:
    def test_threshold_is_exclusive(self) -> None:
        network = get_network("base")
        token = lookup(BASE_USDC, "base")
        at_threshold = RawBalance(PAYER, network, token, Decimal("0.001"), Decimal("0.001"))
        assert summarize([at_threshold], 0.001).mainnet_chains == []

        above = RawBalance(PAYER, network, token, Decimal("0.002"), Decimal("0.002"))
        assert summarize([above], 0.001).has_mainnet_balances


class TestPricing:
    @pytest.mark.asyncio
    async def test_pegged_prices(self) -> None:
        prices = PeggedPriceProvider()
        assert await prices.get_price(lookup(BASE_USDC, "base")) == 1
        weth = lookup("0x4200000000000000000000000000000000000006", "base")
        assert await prices.get_price(weth) == 0


# ---------------------------------------------------------------------------
# Coalesced refresh & polling
# ---------------------------------------------------------------------------


class _GatedSource(FakeSource):
    """Blocks the first query until ``gate`` is set."""

    def __init__(self, balances=None):
        super().__init__(balances)
        self.gate = asyncio.Event()

    async def get_balance(self, address, token, network):
        if not self.calls:
            self.calls.append((address, network.id, token.address))
            await self.gate.wait()
            return 999_000_000
        return await super().get_balance(address, token, network)


class TestRefresh:
    @pytest.mark.asyncio
    async def test_newer_refresh_supersedes(self) -> None:
        source = _GatedSource({(PAYER, "base", BASE_USDC): 2_000_000})
        aggregator = _aggregator(source, "base", tracked={"base": [BASE_USDC]})

        first = asyncio.ensure_future(aggregator.refresh(PAYER))
        for _ in range(5):
            await asyncio.sleep(0)
        second = await aggregator.refresh(PAYER)

        assert await first is None
        assert second.mainnet_value == Decimal(2)
        assert aggregator.latest(PAYER) is second
        assert aggregator.latest(PAYER.upper().replace("0X", "0x")) is second

    @pytest.mark.asyncio
    async def test_subscribers_get_kept_results(self) -> None:
        source = FakeSource({(PAYER, "base", BASE_USDC): 1_000_000})
        aggregator = _aggregator(source, "base")
        seen = []
        unsubscribe = aggregator.subscribe(lambda address, summary: seen.append(summary))

        await aggregator.refresh(PAYER)
        unsubscribe()
        await aggregator.refresh(PAYER)

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_polling_bound_to_connection(self) -> None:
        manager = await connected_manager(FakeProvider())
        source = FakeSource({(PAYER, "base", BASE_USDC): 1_000_000})
        config = McpayConfig(poll_interval_secs=0.01)
        aggregator = _aggregator(source, "base", config=config)
        seen = []
        aggregator.subscribe(lambda address, summary: seen.append(address))

        task = aggregator.start_polling(manager)
        await asyncio.sleep(0.1)
        manager.disconnect()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(seen) >= 2
        assert set(seen) == {PAYER}

    @pytest.mark.asyncio
    async def test_stop_polling(self) -> None:
        manager = await connected_manager(FakeProvider())
        aggregator = _aggregator(FakeSource(), "base", config=McpayConfig(poll_interval_secs=0.01))

        task = aggregator.start_polling(manager)
        await aggregator.stop_polling()

        assert task.done()
        assert manager.connection is not None


# ---------------------------------------------------------------------------
# JSON-RPC balance source
# ---------------------------------------------------------------------------


def _rpc_response(result=None, error=None) -> httpx.Response:
    body = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    return httpx.Response(200, json=body, request=httpx.Request("POST", "https://rpc.example"))


class TestRpcBalanceSource:
    @pytest.mark.asyncio
    async def test_erc20_balance_of(self) -> None:
        source = RpcBalanceSource()
        source._client.post = AsyncMock(return_value=_rpc_response(hex(1_500_000)))

        balance = await source.get_balance(PAYER, lookup(BASE_USDC, "base"), get_network("base"))

        assert balance == 1_500_000
        url = source._client.post.call_args[0][0]
        payload = source._client.post.call_args[1]["json"]
        assert url == "https://mainnet.base.org"
        assert payload["method"] == "eth_call"
        call = payload["params"][0]
        assert call["to"] == BASE_USDC
        assert call["data"] == "0x70a08231" + "0" * 24 + PAYER[2:]

    @pytest.mark.asyncio
    async def test_native_balance(self) -> None:
        source = RpcBalanceSource(rpc_overrides={"base": "https://my-node.example"})
        source._client.post = AsyncMock(return_value=_rpc_response("0x0"))

        native = lookup("0x0000000000000000000000000000000000000000", "base")
        assert await source.get_balance(PAYER, native, get_network("base")) == 0

        assert source._client.post.call_args[0][0] == "https://my-node.example"
        assert source._client.post.call_args[1]["json"]["method"] == "eth_getBalance"

    @pytest.mark.asyncio
    async def test_empty_result_is_zero(self) -> None:
        source = RpcBalanceSource()
        source._client.post = AsyncMock(return_value=_rpc_response("0x"))
        assert await source.get_balance(PAYER, lookup(BASE_USDC, "base"), get_network("base")) == 0

    @pytest.mark.asyncio
    async def test_rpc_error(self) -> None:
        source = RpcBalanceSource()
        source._client.post = AsyncMock(return_value=_rpc_response(error={"code": -32000, "message": "header not found"}))
        with pytest.raises(UpstreamError, match="header not found"):
            await source.get_balance(PAYER, lookup(BASE_USDC, "base"), get_network("base"))

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        source = RpcBalanceSource()
        source._client.post = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
        with pytest.raises(UpstreamError, match="connection refused"):
            await source.get_balance(PAYER, lookup(BASE_USDC, "base"), get_network("base"))
