"""Constants for wallet providers, the x402 payment protocol and balances."""

from enum import Enum


# EIP-1193 / EIP-3085 provider error codes
ERROR_USER_REJECTED = 4001
ERROR_UNAUTHORIZED = 4100
ERROR_DISCONNECTED = 4900
ERROR_UNSUPPORTED_METHOD = 4200
ERROR_CHAIN_NOT_ADDED = 4902

X402_VERSION = 1
X402_SCHEME = "exact"
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
MCP_SESSION_HEADER = "Mcp-Session-Id"
MCP_PROTOCOL_VERSION = "2025-03-26"

NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"

DEFAULT_MAX_PAYMENT_VALUE = 100_000  # 0.10 USDC in base units
DEFAULT_PAYMENT_TIMEOUT_SECS = 60
VALID_AFTER_SKEW_SECS = 600  # authorizations valid from 10 minutes ago
MATERIALITY_THRESHOLD_USD = 0.001
POLL_INTERVAL_SECS = 30
SEARCH_RESULT_LIMIT = 20
COMPACT_THRESHOLD = 1_000


class ConnectorKind(str, Enum):
    """Capability tag of a wallet connector, resolved once at connect time."""

    INJECTED = "injected-generic"
    METAMASK = "metamask"
    COINBASE = "coinbase"
    PORTO = "porto"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    ConnectorKind.INJECTED: "Browser Wallet",
    ConnectorKind.METAMASK: "MetaMask",
    ConnectorKind.COINBASE: "Coinbase Wallet",
    ConnectorKind.PORTO: "Porto",
}

CLIENT_NAME = "mcpay"
CLIENT_VERSION = "0.1.0"
