"""Client configuration: plain frozen dataclass, no env loading.

The host application constructs this from its own settings (env vars,
pydantic-settings, etc.) and passes it to the manager, aggregator and
transport.
"""

from dataclasses import dataclass

from mcpay.constants import (
    DEFAULT_MAX_PAYMENT_VALUE,
    DEFAULT_PAYMENT_TIMEOUT_SECS,
    MATERIALITY_THRESHOLD_USD,
    POLL_INTERVAL_SECS,
    ConnectorKind,
)


@dataclass(frozen=True)
class McpayConfig:
    max_payment_value: int = DEFAULT_MAX_PAYMENT_VALUE  # base units of the payment asset
    payment_timeout_secs: int = DEFAULT_PAYMENT_TIMEOUT_SECS  # when a challenge omits maxTimeoutSeconds
    poll_interval_secs: float = POLL_INTERVAL_SECS
    materiality_threshold: float = MATERIALITY_THRESHOLD_USD
    balance_query_timeout: float = 10.0
    http_timeout: float = 30.0
    preferred_connector: ConnectorKind = ConnectorKind.METAMASK
    default_network: str = "base-sepolia"
