"""x402 payment challenges and single-use transfer authorizations.

A challenge (HTTP 402 body or JSON-RPC error data) lists acceptable
``PaymentRequirements``. The client picks one, mints a fresh
``PaymentAuthorization`` (EIP-3009 ``TransferWithAuthorization``), has the
wallet sign its EIP-712 form and presents it once in the ``X-PAYMENT``
header.

Amounts are always integer base units of the payment asset.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from mcpay.constants import (
    DEFAULT_PAYMENT_TIMEOUT_SECS,
    VALID_AFTER_SKEW_SECS,
    X402_SCHEME,
    X402_VERSION,
)
from mcpay.errors import PaymentAuthorizationFailed, PaymentCeilingExceeded
from mcpay.networks import get_network
from mcpay.tokens import lookup, usdc_address

logger = logging.getLogger(__name__)

_TRANSFER_WITH_AUTHORIZATION = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]

_EIP712_DOMAIN = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentRequirements:
    """One acceptable way to pay, as listed in a challenge's ``accepts``."""

    scheme: str
    network: str
    max_amount_required: int
    pay_to: str
    asset: str
    resource: str = ""
    description: str = ""
    mime_type: str = ""
    max_timeout_seconds: int = DEFAULT_PAYMENT_TIMEOUT_SECS
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], default_timeout: int = DEFAULT_PAYMENT_TIMEOUT_SECS
    ) -> PaymentRequirements:
        try:
            return cls(
                scheme=str(data.get("scheme", X402_SCHEME)),
                network=str(data["network"]),
                max_amount_required=int(data["maxAmountRequired"]),
                pay_to=str(data["payTo"]),
                asset=str(data["asset"]),
                resource=str(data.get("resource", "")),
                description=str(data.get("description", "")),
                mime_type=str(data.get("mimeType", "")),
                max_timeout_seconds=int(data.get("maxTimeoutSeconds") or default_timeout),
                extra=dict(data.get("extra") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PaymentAuthorizationFailed(f"Malformed payment requirements: {e}") from e

    @property
    def amount(self) -> int:
        return self.max_amount_required


def parse_challenge(body: Any, default_timeout: int = DEFAULT_PAYMENT_TIMEOUT_SECS) -> list[PaymentRequirements]:
    """Extract the ``accepts`` list from a 402 body or JSON-RPC error data."""
    if not isinstance(body, dict) or not isinstance(body.get("accepts"), list):
        raise PaymentAuthorizationFailed("Payment challenge carries no accepted payment requirements")
    accepts = [PaymentRequirements.from_dict(entry, default_timeout) for entry in body["accepts"]]
    if not accepts:
        raise PaymentAuthorizationFailed(body.get("error") or "Payment challenge lists no requirements")
    return accepts


def is_challenge(body: Any) -> bool:
    return isinstance(body, dict) and "x402Version" in body and isinstance(body.get("accepts"), list)


def select_payment_requirements(
    accepts: list[PaymentRequirements],
    network: str | None = None,
) -> PaymentRequirements:
    """Pick the requirement to pay: ``exact`` scheme, wallet's network, USDC first.

    Falls back to the first listed requirement when none is on ``network``;
    the caller then reports the mismatch.
    """
    exact = [r for r in accepts if r.scheme == X402_SCHEME]
    if not exact:
        raise PaymentAuthorizationFailed(
            f"No supported payment scheme offered: {sorted({r.scheme for r in accepts})}"
        )
    pool = [r for r in exact if r.network == network] or exact
    for requirement in pool:
        preferred = usdc_address(requirement.network)
        if preferred is not None and requirement.asset.lower() == preferred:
            return requirement
    return pool[0]


def check_amount(amount: int, ceiling: int, listed_price: int | None = None) -> int:
    """Return the effective maximum, or raise if ``amount`` is above it."""
    if amount > ceiling:
        raise PaymentCeilingExceeded(amount, ceiling)
    if listed_price is not None and amount > listed_price:
        raise PaymentCeilingExceeded(amount, listed_price, "listed price")
    return ceiling if listed_price is None else min(ceiling, listed_price)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentAuthorization:
    """A bounded, single-use transfer authorization.

    Cannot be constructed with ``amount`` above ``max_value`` (the caller's
    ceiling) or above ``listed_price`` when one is given.
    """

    payer: str
    payee: str
    asset: str
    amount: int
    network: str
    nonce: str  # 0x-prefixed 32 bytes
    valid_after: int
    valid_before: int
    max_value: int
    listed_price: int | None = None
    signature: str | None = None
    domain_name: str | None = None
    domain_version: str | None = None

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise PaymentAuthorizationFailed(f"Negative payment amount {self.amount}")
        check_amount(self.amount, self.max_value, self.listed_price)

    @classmethod
    def build(
        cls,
        requirements: PaymentRequirements,
        payer: str,
        *,
        ceiling: int,
        listed_price: int | None = None,
        now: float | None = None,
    ) -> PaymentAuthorization:
        """Mint a fresh, unsigned authorization for ``requirements``."""
        issued = int(now if now is not None else time.time())
        token = lookup(requirements.asset, requirements.network)
        return cls(
            payer=payer,
            payee=requirements.pay_to,
            asset=requirements.asset,
            amount=requirements.max_amount_required,
            network=requirements.network,
            nonce="0x" + secrets.token_hex(32),
            valid_after=issued - VALID_AFTER_SKEW_SECS,
            valid_before=issued + requirements.max_timeout_seconds,
            max_value=ceiling,
            listed_price=listed_price,
            domain_name=requirements.extra.get("name") or (token.eip712_name if token else None),
            domain_version=requirements.extra.get("version") or (token.eip712_version if token else None),
        )

    def with_signature(self, signature: str) -> PaymentAuthorization:
        return dataclasses.replace(self, signature=signature)

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.valid_before

    def authorization(self) -> dict[str, str]:
        """The ``authorization`` object of the x402 exact-scheme payload."""
        return {
            "from": self.payer,
            "to": self.payee,
            "value": str(self.amount),
            "validAfter": str(self.valid_after),
            "validBefore": str(self.valid_before),
            "nonce": self.nonce,
        }

    def typed_data(self) -> dict[str, Any]:
        """EIP-712 ``TransferWithAuthorization`` message for ``eth_signTypedData_v4``."""
        return {
            "types": {
                "EIP712Domain": _EIP712_DOMAIN,
                "TransferWithAuthorization": _TRANSFER_WITH_AUTHORIZATION,
            },
            "primaryType": "TransferWithAuthorization",
            "domain": {
                "name": self.domain_name or "USD Coin",
                "version": self.domain_version or "2",
                "chainId": get_network(self.network).chain_id,
                "verifyingContract": self.asset,
            },
            "message": {
                "from": self.payer,
                "to": self.payee,
                "value": self.amount,
                "validAfter": self.valid_after,
                "validBefore": self.valid_before,
                "nonce": self.nonce,
            },
        }


# ---------------------------------------------------------------------------
# Wire encoding
# ---------------------------------------------------------------------------


def encode_payment_header(auth: PaymentAuthorization) -> str:
    """Base64 JSON ``X-PAYMENT`` value for a signed authorization."""
    if not auth.signature:
        raise PaymentAuthorizationFailed("Cannot present an unsigned payment authorization")
    envelope = {
        "x402Version": X402_VERSION,
        "scheme": X402_SCHEME,
        "network": auth.network,
        "payload": {
            "signature": auth.signature,
            "authorization": auth.authorization(),
        },
    }
    encoded = json.dumps(envelope, separators=(",", ":"))
    return base64.b64encode(encoded.encode("utf-8")).decode("utf-8")


def decode_settlement(header: str | None) -> dict[str, Any] | None:
    """Decode an ``X-PAYMENT-RESPONSE`` header; ``None`` if absent or garbled."""
    if not header:
        return None
    try:
        decoded = json.loads(base64.b64decode(header))
    except (binascii.Error, ValueError) as e:
        logger.warning("Undecodable payment settlement header: %s", e)
        return None
    return decoded if isinstance(decoded, dict) else None


# ---------------------------------------------------------------------------
# Single-use enforcement
# ---------------------------------------------------------------------------


class _NonceStore:
    """Thread-safe record of presented authorization nonces."""

    def __init__(self) -> None:
        self._seen: dict[str, float] = {}  # nonce -> valid_before
        self._lock = threading.Lock()

    def check_and_record(self, nonce: str, expires: float) -> bool:
        """Record a nonce. Returns True if new, False if already presented."""
        self._cleanup()
        with self._lock:
            if nonce in self._seen:
                return False
            self._seen[nonce] = expires
            return True

    def _cleanup(self) -> None:
        now = time.time()
        with self._lock:
            self._seen = {n: e for n, e in self._seen.items() if e > now}


# Shared across all clients within one process.
_nonce_store = _NonceStore()


def mark_presented(auth: PaymentAuthorization) -> None:
    """Consume ``auth``. Raises if it expired or was already presented."""
    if auth.is_expired():
        raise PaymentAuthorizationFailed("Payment authorization has expired")
    if not _nonce_store.check_and_record(auth.nonce, auth.valid_before):
        raise PaymentAuthorizationFailed("Payment authorization was already presented")


def reset_nonce_store() -> None:
    """Clear presented nonces (for testing)."""
    global _nonce_store
    _nonce_store = _NonceStore()
