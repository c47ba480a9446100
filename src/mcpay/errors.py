"""Error taxonomy for wallet, network and paid tool-call operations."""

from __future__ import annotations

from mcpay.constants import (
    ERROR_CHAIN_NOT_ADDED,
    ERROR_DISCONNECTED,
    ERROR_USER_REJECTED,
)


# ---------------------------------------------------------------------------
# Raw provider errors
# ---------------------------------------------------------------------------


class ProviderRpcError(Exception):
    """Error raised by a wallet provider's ``request`` (EIP-1193 shape)."""

    def __init__(self, code: int, message: str, data: object = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    @property
    def is_user_rejection(self) -> bool:
        return self.code == ERROR_USER_REJECTED

    @property
    def is_unrecognized_chain(self) -> bool:
        return self.code == ERROR_CHAIN_NOT_ADDED


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class McpayError(Exception):
    """Base exception for every typed failure surfaced by this package."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ProviderUnavailable(McpayError):
    """No wallet provider, or the provider failed outside the user's control."""


class UserRejected(McpayError):
    """The user declined a connect, switch or signing prompt."""


class UnsupportedNetwork(McpayError):
    """Network id or chain id not present in the registry."""


class NetworkMismatch(McpayError):
    """Wallet is on a different network than the operation requires."""

    def __init__(self, required: str, current: str | None) -> None:
        current_label = current or "unknown network"
        super().__init__(
            f"This tool requires {required} network, "
            f"but you're connected to {current_label}."
        )
        self.required = required
        self.current = current


class PaymentCeilingExceeded(McpayError):
    """Requested payment is above the caller's ceiling or the listed price."""

    def __init__(self, amount: int, limit: int, limit_name: str = "maximum allowed") -> None:
        super().__init__(f"Payment amount {amount} exceeds {limit_name} {limit}")
        self.amount = amount
        self.limit = limit


class PaymentAuthorizationFailed(McpayError):
    """The payment authorization could not be built, signed or presented."""


class UpstreamError(McpayError):
    """The tool endpoint or the transport to it failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, code=status_code)
        self.status_code = status_code


class PartialDataError(McpayError):
    """Non-fatal: one network's balance query failed during aggregation."""

    def __init__(self, network: str, asset: str, message: str) -> None:
        super().__init__(f"{network}/{asset}: {message}")
        self.network = network
        self.asset = asset
        self.reason = message


class ConnectionReplaced(McpayError):
    """The wallet connection an operation was bound to is gone."""


class SwitchInProgress(McpayError):
    """A network switch is already in flight for this connection."""

    def __init__(self) -> None:
        super().__init__("already switching")


class PaymentInProgress(McpayError):
    """A payment authorization is already being built for this connection."""

    def __init__(self) -> None:
        super().__init__("payment authorization already in progress")


# ---------------------------------------------------------------------------
# Provider error → typed error mapping
# ---------------------------------------------------------------------------


def from_provider_error(
    exc: ProviderRpcError,
    default: type[McpayError] = ProviderUnavailable,
) -> McpayError:
    """Map a raw provider error onto the package hierarchy."""
    if exc.is_user_rejection:
        return UserRejected(exc.message, code=exc.code)
    if exc.code == ERROR_DISCONNECTED:
        return ProviderUnavailable(exc.message, code=exc.code)
    return default(exc.message, code=exc.code)


GENERIC_FAILURE_MESSAGE = "Tool execution failed. Please try again."


def user_message(exc: BaseException | None) -> str:
    """Inline text for a failure: the upstream message when there is one."""
    if isinstance(exc, McpayError) and exc.message:
        return exc.message
    if exc is not None and str(exc):
        return str(exc)
    return GENERIC_FAILURE_MESSAGE
