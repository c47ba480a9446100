"""Wallet provider implementations."""

from mcpay.providers.local import LocalAccountProvider

__all__ = ["LocalAccountProvider"]
