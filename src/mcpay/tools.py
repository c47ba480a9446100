"""Tool discovery, network gating and tracked pay-and-call execution."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any

from mcpay.errors import (
    GENERIC_FAILURE_MESSAGE,
    McpayError,
    NetworkMismatch,
    UnsupportedNetwork,
    UpstreamError,
    user_message,
)
from mcpay.networks import Network, get_network
from mcpay.switcher import NetworkSwitcher, SwitchResult
from mcpay.tokens import from_base_units, is_valid_token_address, lookup, to_base_units, tokens_for_network
from mcpay.transport import PaidCallResult, PaymentTransportClient
from mcpay.wallet import WalletConnectionManager

logger = logging.getLogger(__name__)

_DEFAULT_PRICE_DECIMALS = 6


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PricingEntry:
    """Advertised price of a tool on one network.

    ``price`` is in human units of ``currency`` (address or symbol). When the
    listing carries ``priceRaw`` the exact base-unit amount is kept in
    ``price_raw`` and used as is.
    """

    price: Decimal
    currency: str
    network: str
    decimals: int | None = None
    price_raw: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PricingEntry:
        currency = str(data.get("currency") or data.get("asset") or "USDC")
        network = str(data.get("network", ""))
        decimals = data.get("tokenDecimals", data.get("decimals"))
        decimals = int(decimals) if decimals is not None else None
        try:
            if data.get("priceRaw") is not None:
                price_raw = int(str(data["priceRaw"]))
                if price_raw < 0:
                    raise ValueError(f"negative price {price_raw}")
                return cls(
                    price=from_base_units(price_raw, decimals if decimals is not None else _DEFAULT_PRICE_DECIMALS),
                    currency=currency,
                    network=network,
                    decimals=decimals,
                    price_raw=price_raw,
                )
            raw_price = data.get("price", data.get("amount"))
            if raw_price is None:
                raise ValueError("no price field")
            return cls(price=Decimal(str(raw_price)), currency=currency, network=network, decimals=decimals)
        except (ArithmeticError, TypeError, ValueError) as e:
            raise UpstreamError(f"Malformed pricing entry for {currency} on {network}: {e}") from e

    def _decimals(self) -> int:
        if is_valid_token_address(self.currency):
            token = lookup(self.currency, self.network)
        else:
            token = next(
                (t for t in tokens_for_network(self.network) if t.symbol.upper() == self.currency.upper()),
                None,
            )
        if token is not None:
            return token.decimals
        return self.decimals if self.decimals is not None else _DEFAULT_PRICE_DECIMALS

    def base_units(self) -> int:
        """Price in base units of the payment asset, rounded down."""
        if self.price_raw is not None:
            return self.price_raw
        decimals = self._decimals()
        return to_base_units(self.price.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN), decimals)


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)
    pricing: tuple[PricingEntry, ...] = ()
    monetized: bool | None = None  # explicit ``isMonetized`` from the listing

    @property
    def is_monetized(self) -> bool:
        if self.monetized is not None:
            return self.monetized
        return bool(self.pricing)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolDescriptor:
        raw = data.get("pricing") or (data.get("_meta") or {}).get("pricing") or []
        if isinstance(raw, dict):
            raw = [raw]
        flag = data.get("isMonetized")
        return cls(
            name=str(data["name"]),
            description=str(data.get("description") or ""),
            input_schema=dict(data.get("inputSchema") or {}),
            pricing=tuple(
                PricingEntry.from_dict(entry) for entry in raw if entry.get("active", True) is not False
            ),
            monetized=bool(flag) if flag is not None else None,
        )

    def price_for(self, network: str) -> PricingEntry | None:
        return next((p for p in self.pricing if p.network == network), None)


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ExecutionRecord:
    """One invocation's lifecycle, as the UI layer renders it."""

    tool: str
    params: dict[str, Any]
    status: ExecutionStatus = ExecutionStatus.IDLE
    result: Any = None
    error: str | None = None
    exception: McpayError | None = None
    outcome: PaidCallResult | None = None
    started_at: float | None = None
    finished_at: float | None = None
    transitions: list[ExecutionStatus] = field(default_factory=list)

    @property
    def is_done(self) -> bool:
        return self.status in (ExecutionStatus.SUCCESS, ExecutionStatus.ERROR)

    def advance(self, status: ExecutionStatus) -> None:
        if status is ExecutionStatus.INITIALIZING:
            self.started_at = time.time()
        self.status = status
        self.transitions.append(status)
        if self.is_done:
            self.finished_at = time.time()

    def succeed(self, outcome: PaidCallResult) -> None:
        self.outcome = outcome
        self.result = outcome.result
        self.advance(ExecutionStatus.SUCCESS)

    def fail(self, exc: McpayError) -> None:
        self.exception = exc
        self.error = user_message(exc)
        self.advance(ExecutionStatus.ERROR)


def _tool_error_text(result: dict[str, Any]) -> str | None:
    for item in result.get("content") or []:
        if isinstance(item, dict) and item.get("type") == "text" and item.get("text"):
            return str(item["text"])
    return None


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class ToolInvocationController:
    """Gates monetized tools on the wallet's network and tracks each call."""

    def __init__(
        self,
        transport: PaymentTransportClient,
        manager: WalletConnectionManager,
        switcher: NetworkSwitcher | None = None,
    ) -> None:
        self._transport = transport
        self._manager = manager
        self._switcher = switcher or NetworkSwitcher(manager)
        self._tools: dict[str, ToolDescriptor] = {}
        self._executions: dict[str, list[ExecutionRecord]] = {}

    @property
    def tools(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    async def discover(self) -> list[ToolDescriptor]:
        descriptors = [ToolDescriptor.from_dict(raw) for raw in await self._transport.list_tools()]
        self._tools = {d.name: d for d in descriptors}
        logger.info(
            "Discovered %d tool(s), %d monetized.",
            len(descriptors), sum(d.is_monetized for d in descriptors),
        )
        return descriptors

    def _resolve(self, tool: ToolDescriptor | str) -> ToolDescriptor:
        if isinstance(tool, ToolDescriptor):
            return tool
        if tool not in self._tools:
            raise McpayError(f"Unknown tool: {tool}")
        return self._tools[tool]

    # -- compatibility --------------------------------------------------------

    def is_compatible(self, tool: ToolDescriptor | str) -> bool:
        tool = self._resolve(tool)
        if not tool.is_monetized:
            return True
        current = self._manager.current_network()
        return current is not None and tool.price_for(current.id) is not None

    def required_network(self, tool: ToolDescriptor | str) -> Network | None:
        """Network the tool must be paid on; ``None`` for free tools."""
        tool = self._resolve(tool)
        if not tool.is_monetized:
            return None
        current = self._manager.current_network()
        if current is not None and tool.price_for(current.id) is not None:
            return current
        for entry in tool.pricing:
            try:
                return get_network(entry.network)
            except UnsupportedNetwork:
                continue
        return None

    def remedy(self, tool: ToolDescriptor | str) -> str | None:
        """Remedial action to show next to an incompatible tool."""
        if self.is_compatible(tool):
            return None
        if self._manager.connection is None:
            return "Connect your wallet to continue"
        required = self.required_network(tool)
        if required is None:
            return "This tool is priced on an unsupported network"
        return f"Switch to {required.name} network"

    async def switch_to_required_network(self, tool: ToolDescriptor | str) -> SwitchResult:
        required = self.required_network(tool)
        if required is None:
            raise UnsupportedNetwork(f"No supported network to switch to for {self._resolve(tool).name}")
        return await self._switcher.switch_to(required)

    # -- invocation -----------------------------------------------------------

    def executions(self, tool: str | None = None) -> list[ExecutionRecord]:
        if tool is not None:
            return list(self._executions.get(tool, []))
        return [r for records in self._executions.values() for r in records]

    async def invoke(self, tool: ToolDescriptor | str, params: dict[str, Any] | None = None) -> ExecutionRecord:
        """Call ``tool``; the returned record ends in ``SUCCESS`` or ``ERROR``.

        A monetized tool on the wrong network fails with ``NetworkMismatch``
        without any request to the endpoint.
        """
        tool = self._resolve(tool)
        record = ExecutionRecord(tool=tool.name, params=dict(params or {}))
        self._executions.setdefault(tool.name, []).append(record)
        record.advance(ExecutionStatus.INITIALIZING)

        listed_price: int | None = None
        if tool.is_monetized:
            current = self._manager.current_network()
            entry = tool.price_for(current.id) if current is not None else None
            if entry is None:
                required = self.required_network(tool)
                if required is None:
                    record.fail(UnsupportedNetwork(f"{tool.name} has no price on a supported network"))
                else:
                    record.fail(NetworkMismatch(required.name, current.name if current else None))
                logger.warning("Not invoking %s: %s", tool.name, record.error)
                return record
            listed_price = entry.base_units()

        record.advance(ExecutionStatus.EXECUTING)
        try:
            outcome = await self._transport.call_tool(tool.name, record.params, listed_price=listed_price)
        except McpayError as e:
            record.fail(e)
            logger.warning("Invocation of %s failed: %s", tool.name, e)
            return record

        result = outcome.result
        if isinstance(result, dict) and result.get("isError"):
            record.outcome = outcome
            record.fail(UpstreamError(_tool_error_text(result) or GENERIC_FAILURE_MESSAGE))
            logger.warning("Tool %s reported an error: %s", tool.name, record.error)
            return record

        record.succeed(outcome)
        logger.info("Invoked %s%s.", tool.name, " (paid)" if outcome.paid else "")
        return record
