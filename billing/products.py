# billing/products.py
"""
Stripe price to tier mapping.

Price IDs differ between test and live Stripe accounts, so the mapping is
built from configuration at startup and injected wherever a tier is needed.
"""

from __future__ import annotations

from typing import Mapping, Optional

# Tier keys for the env-configured plans
TIER_PRO = "pro"
TIER_PREMIUM = "premium"


class TierResolver:
    """
    Resolve Stripe price IDs to internal tier keys.

    Unknown prices resolve to None so an unrecognized price degrades to
    "no tier" instead of failing reconciliation.
    """

    def __init__(self, price_map: Mapping[str, str]):
        self._price_map = {
            price_id.strip(): tier.strip()
            for price_id, tier in price_map.items()
            if price_id and price_id.strip() and tier and tier.strip()
        }

    def resolve(self, price_id: Optional[str]) -> Optional[str]:
        """Tier key for a price, or None if not a known price."""
        if not price_id:
            return None
        return self._price_map.get(price_id)

    def is_known(self, price_id: Optional[str]) -> bool:
        return self.resolve(price_id) is not None

    def tiers(self) -> dict[str, str]:
        """Copy of the price -> tier table."""
        return dict(self._price_map)

    def __len__(self) -> int:
        return len(self._price_map)


def parse_price_tiers(raw: str) -> dict[str, str]:
    """
    Parse a "price_id:tier,price_id:tier" table.

    Raises:
        ValueError: If an entry is not a price:tier pair
    """
    table: dict[str, str] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        price_id, sep, tier = entry.partition(":")
        if not sep or not price_id.strip() or not tier.strip():
            raise ValueError(f"Invalid price tier entry: '{entry}'")
        table[price_id.strip()] = tier.strip()
    return table
