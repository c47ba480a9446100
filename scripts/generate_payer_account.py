#!/usr/bin/env python3
"""Generate a throwaway payer account for paid tool calls.

Outputs an address and its private key. Fund the address with testnet USDC
(Base Sepolia, Sei testnet, ...) and hand the key to LocalAccountProvider:

  provider = LocalAccountProvider(os.environ["MCPAY_PAYER_KEY"], chain="base-sepolia")

Never reuse this key for real funds.
"""

from __future__ import annotations

from eth_account import Account


def main() -> None:
    account = Account.create()

    print("=== Payer Account ===")
    print()
    print("address (fund this with testnet USDC):")
    print(f"  {account.address}")
    print()
    print("private key (never commit to git):")
    print(f"  0x{bytes(account.key).hex()}")
    print()
    print("--- Environment variable usage ---")
    print()
    print(f"  MCPAY_PAYER_KEY=0x{bytes(account.key).hex()}")


if __name__ == "__main__":
    main()
