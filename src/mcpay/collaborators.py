"""Interfaces to collaborators outside the core (session/auth layer).

Defines the Protocols the core consumes. Concrete implementations (an API
client for the host application's wallet store, a database, ...) live in
the host application.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class LinkedWalletStore(Protocol):
    """Wallets and balance snapshots a signed-in user has on record."""

    async def fetch_linked_wallets(self, user_id: str) -> list[str]: ...

    async def fetch_persisted_balances(self, user_id: str) -> list[dict[str, Any]]: ...
