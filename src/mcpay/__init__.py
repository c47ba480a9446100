"""mcpay — wallet-connected client for pay-per-call MCP tools.

Multi-chain wallet connection, network switching, stablecoin balances and
x402 payment settlement for monetized tool endpoints.
"""

__version__ = "0.1.0"

from mcpay.config import McpayConfig
from mcpay.constants import ConnectorKind, DEFAULT_MAX_PAYMENT_VALUE
from mcpay.errors import (
    McpayError,
    ProviderRpcError,
    ProviderUnavailable,
    UserRejected,
    UnsupportedNetwork,
    NetworkMismatch,
    PaymentCeilingExceeded,
    PaymentAuthorizationFailed,
    UpstreamError,
    PartialDataError,
    ConnectionReplaced,
    SwitchInProgress,
    PaymentInProgress,
)
from mcpay.networks import Network, by_chain_id, get_network
from mcpay.tokens import Token, lookup, format_amount
from mcpay.connectors import Connector, WalletProvider
from mcpay.wallet import WalletConnection, WalletConnectionManager, ConnectionStatus
from mcpay.switcher import NetworkSwitcher, SwitchResult, SwitchState
from mcpay.balances import BalanceAggregator, BalanceSummary, ChainBalance, RpcBalanceSource
from mcpay.authorization import PaymentAuthorization, PaymentRequirements
from mcpay.transport import PaymentTransportClient, PaidCallResult
from mcpay.tools import ToolInvocationController, ToolDescriptor, ExecutionRecord, ExecutionStatus
from mcpay.collaborators import LinkedWalletStore
from mcpay.providers import LocalAccountProvider

__all__ = [
    "McpayConfig",
    "ConnectorKind",
    "DEFAULT_MAX_PAYMENT_VALUE",
    "McpayError",
    "ProviderRpcError",
    "ProviderUnavailable",
    "UserRejected",
    "UnsupportedNetwork",
    "NetworkMismatch",
    "PaymentCeilingExceeded",
    "PaymentAuthorizationFailed",
    "UpstreamError",
    "PartialDataError",
    "ConnectionReplaced",
    "SwitchInProgress",
    "PaymentInProgress",
    "Network",
    "by_chain_id",
    "get_network",
    "Token",
    "lookup",
    "format_amount",
    "Connector",
    "WalletProvider",
    "WalletConnection",
    "WalletConnectionManager",
    "ConnectionStatus",
    "NetworkSwitcher",
    "SwitchResult",
    "SwitchState",
    "BalanceAggregator",
    "BalanceSummary",
    "ChainBalance",
    "RpcBalanceSource",
    "PaymentAuthorization",
    "PaymentRequirements",
    "PaymentTransportClient",
    "PaidCallResult",
    "ToolInvocationController",
    "ToolDescriptor",
    "ExecutionRecord",
    "ExecutionStatus",
    "LinkedWalletStore",
    "LocalAccountProvider",
]
