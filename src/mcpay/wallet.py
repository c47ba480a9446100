"""Wallet connection manager. Owns the single authoritative connection.

- ``connect()`` asks the provider for accounts and the active chain, then
  replaces whatever connection existed before.
- Operations that must not outlive their connection (switches, balance
  polls, payments) run through ``run_bound()`` / ``spawn_bound()``.
- Replacing or dropping the connection cancels every bound task; awaiting
  callers get ``ConnectionReplaced``.
- Provider notifications arrive via ``handle_*`` methods and are fanned out
  to subscribers in order. ``latest_event`` always holds the newest one.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from mcpay.config import McpayConfig
from mcpay.connectors import Connector, WalletProvider
from mcpay.constants import ConnectorKind
from mcpay.errors import (
    ConnectionReplaced,
    ProviderRpcError,
    ProviderUnavailable,
    UserRejected,
    from_provider_error,
)
from mcpay.networks import Network, by_chain_id, get_network, parse_chain_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

_connection_ids = itertools.count(1)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class WalletConnection:
    """One live link between an address and a wallet provider."""

    address: str
    connector: ConnectorKind
    connector_name: str
    chain_id: int | None
    provider: WalletProvider = field(repr=False)
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    id: int = field(default_factory=lambda: next(_connection_ids))
    _tasks: set[asyncio.Task[Any]] = field(default_factory=set, repr=False)

    @property
    def network(self) -> Network | None:
        return by_chain_id(self.chain_id)

    @property
    def is_active(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED


@dataclass(frozen=True)
class WalletEvent:
    sequence: int
    kind: str  # connect | accountsChanged | chainChanged | disconnect
    connection: WalletConnection | None


@dataclass
class StatusReport:
    """Connection status plus inline warnings for the UI."""

    status: ConnectionStatus
    address: str | None = None
    connector: ConnectorKind | None = None
    connector_name: str | None = None
    chain_id: int | None = None
    network: Network | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED and self.error is None


class WalletConnectionManager:
    """Tracks the active connector and the connection established through it."""

    def __init__(self, config: McpayConfig | None = None) -> None:
        self._config = config or McpayConfig()
        self._connection: WalletConnection | None = None
        self._pending_connects = 0
        self._connect_generation = 0
        self._last_error: str | None = None
        self._listeners: list[Callable[[WalletEvent], None]] = []
        self._sequence = 0
        self._background: set[asyncio.Task[Any]] = set()
        self.latest_event: WalletEvent | None = None

    # -- state ----------------------------------------------------------------

    @property
    def config(self) -> McpayConfig:
        return self._config

    @property
    def connection(self) -> WalletConnection | None:
        return self._connection

    @property
    def status(self) -> ConnectionStatus:
        if self._pending_connects:
            return ConnectionStatus.CONNECTING
        if self._connection is not None:
            return ConnectionStatus.CONNECTED
        if self._last_error is not None:
            return ConnectionStatus.ERROR
        return ConnectionStatus.DISCONNECTED

    def require_connection(self) -> WalletConnection:
        if self._connection is None:
            raise ProviderUnavailable("Wallet not connected")
        return self._connection

    def current_network(self) -> Network | None:
        if self._connection is None:
            return None
        return self._connection.network

    # -- connect / disconnect -------------------------------------------------

    async def connect(self, connector: Connector) -> WalletConnection:
        """Request accounts from ``connector`` and make it the active connection.

        Raises ``UserRejected`` if the user declines and ``ProviderUnavailable``
        on any other provider failure. A connect superseded by a later one
        raises ``ConnectionReplaced``.
        """
        self._connect_generation += 1
        generation = self._connect_generation
        kind = connector.kind
        self._pending_connects += 1
        try:
            accounts = await connector.provider.request("eth_requestAccounts")
            chain_raw = await connector.provider.request("eth_chainId")
        except ProviderRpcError as e:
            error = from_provider_error(e)
            self._record_failure(error)
            raise error from e
        except Exception as e:
            error = ProviderUnavailable(f"Failed to connect: {e}")
            self._record_failure(error)
            raise error from e
        finally:
            self._pending_connects -= 1

        if generation != self._connect_generation:
            raise ConnectionReplaced("A newer connection request superseded this one.")
        if not accounts:
            error = ProviderUnavailable("No wallet address found")
            self._record_failure(error)
            raise error

        self._teardown()
        connection = WalletConnection(
            address=str(accounts[0]),
            connector=kind,
            connector_name=connector.name,
            chain_id=parse_chain_id(chain_raw),
            provider=connector.provider,
        )
        self._connection = connection
        self._last_error = None
        self._listen_to_provider(connection)
        logger.info(
            "Connected %s via %s (%s) on chain %s.",
            connection.address, connector.name, kind.value, connection.chain_id,
        )
        self._emit("connect")
        return connection

    def disconnect(self) -> None:
        """Drop the active connection now; the provider is told in the background."""
        connection = self._connection
        if connection is None:
            return
        self._teardown()
        self._emit("disconnect")

        close = getattr(connection.provider, "disconnect", None)
        if close is None:
            return
        try:
            task = asyncio.get_running_loop().create_task(self._close_provider(close))
        except RuntimeError:
            logger.warning("No running event loop; provider disconnect skipped.")
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _close_provider(self, close: Callable[[], Awaitable[Any]]) -> None:
        try:
            await close()
        except Exception:
            logger.warning("Provider disconnect failed.", exc_info=True)

    def _record_failure(self, error: Exception) -> None:
        if self._connection is None and not isinstance(error, UserRejected):
            self._last_error = str(error)
        logger.warning("Wallet connect failed: %s", error)

    def _teardown(self) -> None:
        """Invalidate the current connection and cancel everything bound to it."""
        connection = self._connection
        if connection is None:
            return
        connection.status = ConnectionStatus.DISCONNECTED
        self._connection = None
        pending = [t for t in connection._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            logger.info(
                "Cancelled %d operation(s) bound to connection %d.",
                len(pending), connection.id,
            )

    # -- bound operations -----------------------------------------------------

    def spawn_bound(self, coro: Awaitable[T]) -> asyncio.Task[T]:
        """Start ``coro`` as a task that dies with the current connection."""
        try:
            connection = self.require_connection()
        except ProviderUnavailable:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise
        task = asyncio.ensure_future(coro)
        connection._tasks.add(task)
        task.add_done_callback(connection._tasks.discard)
        return task

    async def run_bound(self, coro: Awaitable[T]) -> T:
        """Await ``coro`` bound to the current connection.

        Raises ``ConnectionReplaced`` if the connection is replaced or dropped
        while the operation is pending.
        """
        task = self.spawn_bound(coro)
        connection = self._connection
        try:
            return await task
        except asyncio.CancelledError:
            if self._connection is not connection and task.cancelled():
                raise ConnectionReplaced(
                    "Wallet connection changed; the pending operation was cancelled."
                ) from None
            raise

    async def refresh_chain(self) -> int | None:
        """Re-read the provider's active chain and record it."""
        connection = self.require_connection()
        try:
            raw = await self.run_bound(connection.provider.request("eth_chainId"))
        except ProviderRpcError as e:
            raise from_provider_error(e) from e
        self.handle_chain_changed(raw, connection=connection)
        return connection.chain_id

    # -- provider notifications -----------------------------------------------

    def subscribe(self, listener: Callable[[WalletEvent], None]) -> Callable[[], None]:
        """Register ``listener`` for wallet events; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def handle_accounts_changed(
        self, accounts: list[str], *, connection: WalletConnection | None = None,
    ) -> None:
        current = self._connection
        if current is None or (connection is not None and connection is not current):
            return
        if not accounts:
            self.handle_disconnect(connection=current)
            return
        address = str(accounts[0])
        if address.lower() == current.address.lower():
            return
        # New account: operations bound to the old address must not continue.
        self._teardown()
        replacement = WalletConnection(
            address=address,
            connector=current.connector,
            connector_name=current.connector_name,
            chain_id=current.chain_id,
            provider=current.provider,
        )
        self._connection = replacement
        self._listen_to_provider(replacement)
        logger.info("Account changed to %s.", address)
        self._emit("accountsChanged")

    def handle_chain_changed(
        self, chain_id: int | str, *, connection: WalletConnection | None = None,
    ) -> None:
        current = self._connection
        if current is None or (connection is not None and connection is not current):
            return
        new_chain = parse_chain_id(chain_id)
        if new_chain == current.chain_id:
            return
        current.chain_id = new_chain
        logger.info("Chain changed to %s.", new_chain)
        self._emit("chainChanged")

    def handle_disconnect(self, *, connection: WalletConnection | None = None) -> None:
        current = self._connection
        if current is None or (connection is not None and connection is not current):
            return
        self._teardown()
        logger.info("Provider disconnected %s.", current.address)
        self._emit("disconnect")

    def _listen_to_provider(self, connection: WalletConnection) -> None:
        on = getattr(connection.provider, "on", None)
        if on is None:
            return
        on("accountsChanged", lambda accounts: self.handle_accounts_changed(accounts, connection=connection))
        on("chainChanged", lambda chain: self.handle_chain_changed(chain, connection=connection))
        on("disconnect", lambda *_: self.handle_disconnect(connection=connection))

    def _emit(self, kind: str) -> None:
        self._sequence += 1
        event = WalletEvent(sequence=self._sequence, kind=kind, connection=self._connection)
        self.latest_event = event
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning("Wallet event listener failed for %s.", kind, exc_info=True)

    # -- status ---------------------------------------------------------------

    def status_report(self, available: Iterable[Connector] = ()) -> StatusReport:
        """Status with warnings such as a preferred wallet going unused."""
        connection = self._connection
        if connection is None:
            return StatusReport(
                status=self.status,
                error=self._last_error or "Wallet not connected",
                recommendations=["Connect your wallet to continue"],
            )

        report = StatusReport(
            status=ConnectionStatus.CONNECTED,
            address=connection.address,
            connector=connection.connector,
            connector_name=connection.connector_name,
            chain_id=connection.chain_id,
            network=connection.network,
        )

        preferred = self._config.preferred_connector
        available_kinds = {c.kind for c in available}
        if connection.connector is not preferred:
            report.warnings.append(
                f"Connected via {connection.connector_name} instead of {preferred.display_name}"
            )
            if preferred in available_kinds:
                report.warnings.append(
                    f"{preferred.display_name} is available but not being used"
                )

        if report.network is None:
            report.warnings.append(
                f"Connected to an unsupported network (chain id {connection.chain_id})"
            )
        default = get_network(self._config.default_network)
        if connection.chain_id != default.chain_id:
            report.recommendations.append(
                f"Switch to {default.name} network for full functionality"
            )
        return report
