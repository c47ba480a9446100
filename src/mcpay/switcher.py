"""Network switching: switch, or register the chain then switch.

State machine::

    IDLE → REQUESTING → SWITCHED
                      → NEEDS_REGISTRATION → ADDING → SWITCHED | FAILED
                      → FAILED

Only one switch may be in flight per wallet connection; a second call is
rejected with ``SwitchInProgress``. There are no automatic retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from mcpay.constants import ERROR_USER_REJECTED
from mcpay.errors import (
    ConnectionReplaced,
    McpayError,
    ProviderRpcError,
    SwitchInProgress,
)
from mcpay.networks import Network, add_chain_params, get_network, hex_chain_id
from mcpay.wallet import WalletConnection, WalletConnectionManager

logger = logging.getLogger(__name__)


class SwitchState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    NEEDS_REGISTRATION = "needs_registration"
    ADDING = "adding"
    SWITCHED = "switched"
    FAILED = "failed"


@dataclass
class SwitchResult:
    state: SwitchState
    network: Network
    transitions: list[SwitchState] = field(default_factory=list)
    error: str | None = None  # provider message, verbatim
    error_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.state is SwitchState.SWITCHED

    @property
    def user_rejected(self) -> bool:
        return self.error_code == ERROR_USER_REJECTED


class NetworkSwitcher:
    """Drives the active provider onto a target network."""

    def __init__(self, manager: WalletConnectionManager) -> None:
        self._manager = manager
        self._in_flight: set[int] = set()  # connection ids
        self.state = SwitchState.IDLE

    def is_switching(self) -> bool:
        connection = self._manager.connection
        return connection is not None and connection.id in self._in_flight

    async def switch_to(self, network: Network | str) -> SwitchResult:
        """Switch the wallet to ``network``.

        Returns a ``SwitchResult`` ending in ``SWITCHED`` or ``FAILED``.
        Raises ``SwitchInProgress`` for a concurrent call on the same
        connection and ``ConnectionReplaced`` if the connection goes away.
        """
        target = get_network(network) if isinstance(network, str) else network
        connection = self._manager.require_connection()
        if connection.id in self._in_flight:
            raise SwitchInProgress()

        self._in_flight.add(connection.id)
        try:
            return await self._run(connection, target)
        finally:
            self._in_flight.discard(connection.id)

    async def _run(self, connection: WalletConnection, target: Network) -> SwitchResult:
        result = SwitchResult(state=SwitchState.IDLE, network=target)
        self._advance(result, SwitchState.REQUESTING)
        try:
            await self._request_switch(connection, target)
        except ProviderRpcError as e:
            if not e.is_unrecognized_chain:
                return self._fail(result, e.message, e.code)
            self._advance(result, SwitchState.NEEDS_REGISTRATION)
            self._advance(result, SwitchState.ADDING)
            try:
                await self._manager.run_bound(
                    connection.provider.request(
                        "wallet_addEthereumChain", [add_chain_params(target)]
                    )
                )
                await self._request_switch(connection, target)
            except ProviderRpcError as add_error:
                return self._fail(result, add_error.message, add_error.code)
            except ConnectionReplaced:
                raise
            except Exception as add_error:
                return self._fail(result, str(add_error), None)
        except ConnectionReplaced:
            raise
        except Exception as e:
            return self._fail(result, str(e), None)

        self._advance(result, SwitchState.SWITCHED)
        logger.info("Switched to %s (chain %d).", target.name, target.chain_id)
        try:
            await self._manager.refresh_chain()
        except ConnectionReplaced:
            raise
        except McpayError as e:
            logger.warning("Could not confirm chain after switch: %s", e)
        return result

    async def _request_switch(self, connection: WalletConnection, target: Network) -> None:
        await self._manager.run_bound(
            connection.provider.request(
                "wallet_switchEthereumChain", [{"chainId": hex_chain_id(target.chain_id)}]
            )
        )

    def _advance(self, result: SwitchResult, state: SwitchState) -> None:
        result.state = state
        result.transitions.append(state)
        self.state = state

    def _fail(self, result: SwitchResult, message: str, code: int | None) -> SwitchResult:
        self._advance(result, SwitchState.FAILED)
        result.error = message
        result.error_code = code
        logger.warning("Failed to switch to %s: %s", result.network.name, message)
        return result
