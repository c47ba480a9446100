"""Tests for the token registry and amount formatting."""

import re
from decimal import Decimal

import pytest

from mcpay.tokens import (
    TOKEN_REGISTRY,
    abbreviate_address,
    format_amount,
    from_base_units,
    is_native_token,
    is_valid_token_address,
    lookup,
    lookup_by_symbol,
    popular_tokens,
    search_by_name,
    stablecoins_for_network,
    to_base_units,
    usdc_address,
    verification,
)

BASE_USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
BASE_WETH = "0x4200000000000000000000000000000000000006"
UNKNOWN = "0x1234567890abcdef1234567890abcdef12345678"


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


class TestLookup:
    def test_case_insensitive_for_every_token(self) -> None:
        for (network, address), token in TOKEN_REGISTRY.items():
            assert lookup(address, network) is token
            assert lookup("0x" + address[2:].upper(), network) is token

    def test_addresses_stored_lower_case(self) -> None:
        assert all(address == address.lower() for _, address in TOKEN_REGISTRY)

    def test_keyed_by_network(self) -> None:
        assert lookup(BASE_USDC, "base").symbol == "USDC"
        assert lookup(BASE_USDC, "polygon") is None

    def test_unknown_address(self) -> None:
        assert lookup(UNKNOWN, "base") is None

    def test_lookup_by_symbol_spans_networks(self) -> None:
        results = lookup_by_symbol("usdc")
        assert {t.network for t in results} >= {"base", "ethereum", "sei-testnet"}
        assert all(t.symbol == "USDC" for t in results)

    def test_lookup_by_symbol_most_popular_first(self) -> None:
        scores = [t.popularity_score for t in lookup_by_symbol("USDC")]
        assert scores == sorted(scores, reverse=True)


class TestSearch:
    def test_matches_tags(self) -> None:
        results = search_by_name("circle")
        assert results
        assert all(t.symbol == "USDC" for t in results)

    def test_matches_name_case_insensitively(self) -> None:
        assert any(t.symbol == "DAI" for t in search_by_name("DAI"))

    def test_capped_at_twenty(self) -> None:
        assert len(TOKEN_REGISTRY) > 20
        assert len(search_by_name("e")) == 20

    def test_custom_limit(self) -> None:
        assert len(search_by_name("usd", limit=3)) == 3

    def test_ordered_by_popularity(self) -> None:
        scores = [t.popularity_score for t in search_by_name("stablecoin")]
        assert scores == sorted(scores, reverse=True)


class TestRegistryHelpers:
    def test_stablecoins_for_network(self) -> None:
        symbols = {t.symbol for t in stablecoins_for_network("base")}
        assert symbols == {"USDC", "USDT", "DAI"}

    def test_usdc_address_prefers_most_popular_deployment(self) -> None:
        assert usdc_address("sei-testnet") == "0x4fcf1784b31630811181f670aea7a7bef803eaed"

    def test_usdc_address_missing(self) -> None:
        assert usdc_address("nowhere") is None

    def test_verification(self) -> None:
        assert verification(BASE_USDC.upper().replace("0X", "0x"), "base") == (
            True, "Circle Official Documentation",
        )
        assert verification(UNKNOWN, "base") == (False, None)

    def test_popular_tokens(self) -> None:
        tokens = popular_tokens(5)
        assert len(tokens) == 5
        assert all(t.recommended_for_payments for t in tokens)

    def test_address_validation(self) -> None:
        assert is_valid_token_address(BASE_USDC)
        assert not is_valid_token_address("0x123")
        assert not is_valid_token_address("833589fcd6edb6e08f4c7c32d4f71b54bda02913")

    def test_native_token(self) -> None:
        assert is_native_token("0x0000000000000000000000000000000000000000")
        assert not is_native_token(BASE_USDC)


# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------


class TestBaseUnits:
    def test_to_base_units(self) -> None:
        assert to_base_units("0.5", 6) == 500_000
        assert to_base_units(Decimal("1"), 18) == 10**18

    def test_rejects_excess_precision(self) -> None:
        with pytest.raises(ValueError, match="decimal places"):
            to_base_units("0.0000001", 6)

    def test_rejects_garbage(self) -> None:
        with pytest.raises(ValueError, match="Invalid amount"):
            to_base_units("lots", 6)

    def test_from_base_units(self) -> None:
        assert from_base_units(500_000, 6) == Decimal("0.5")


class TestFormat:
    def test_stablecoin_two_decimals_trimmed(self) -> None:
        assert format_amount(1.2005, BASE_USDC, "base") == "1.2"

    def test_non_stablecoin_four_decimals(self) -> None:
        assert format_amount(0.123456, BASE_WETH, "base") == "0.1235"

    def test_precision_override(self) -> None:
        assert format_amount(1.23456, BASE_USDC, "base", precision=4) == "1.2346"

    def test_whole_numbers_keep_their_zeros(self) -> None:
        assert format_amount(100, BASE_USDC, "base") == "100"

    def test_compact_millions(self) -> None:
        formatted = format_amount(1_234_567, BASE_USDC, "base", compact=True)
        assert re.fullmatch(r"\d+(\.\d+)?[KMBT]", formatted)
        assert formatted == "1.2M"

    def test_compact_suffixes(self) -> None:
        assert format_amount(1_000, BASE_USDC, "base", compact=True) == "1K"
        assert format_amount(2_500_000_000, BASE_USDC, "base", compact=True) == "2.5B"
        assert format_amount(3 * 10**12, BASE_USDC, "base", compact=True) == "3T"

    def test_compact_below_threshold_is_plain(self) -> None:
        assert format_amount(999.5, BASE_USDC, "base", compact=True) == "999.5"

    def test_compact_carries_into_next_suffix(self) -> None:
        assert format_amount(999_950, BASE_USDC, "base", compact=True) == "1M"
        assert format_amount(999_949, BASE_USDC, "base", compact=True) == "999.9K"

    def test_compact_threshold_override(self) -> None:
        assert format_amount(50_000, BASE_USDC, "base", compact=True, compact_threshold=100_000) == "50000"
        assert format_amount(150_000, BASE_USDC, "base", compact=True, compact_threshold=100_000) == "150K"

    def test_show_symbol(self) -> None:
        assert format_amount("1.50", BASE_USDC, "base", show_symbol=True) == "1.5 USDC"

    def test_base_units(self) -> None:
        assert format_amount(1_500_000, BASE_USDC, "base", base_units=True) == "1.5"

    def test_unknown_token_falls_back(self) -> None:
        assert format_amount(42, UNKNOWN, "base") == "42 0x1234...5678"

    def test_abbreviate_address(self) -> None:
        assert abbreviate_address(UNKNOWN) == "0x1234...5678"
        assert abbreviate_address("0xabc") == "0xabc"
