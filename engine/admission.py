# engine/admission.py
"""
Tighten-or-trade admission rule for limit orders.

A new limit order must either improve the best price on its own side of the
book or be priced aggressively enough to execute immediately. Market orders
never pass through here.
"""
from decimal import Decimal
from typing import Optional

from engine.errors import AdmissionRejected
from engine.order import BID


def can_place_order(side: str, price: Decimal,
                    best_bid: Optional[Decimal], best_ask: Optional[Decimal]) -> bool:
    """Return True if a limit order at price is admissible on side."""
    if side == BID:
        if best_bid is None or price > best_bid:
            return True
        return best_ask is not None and price >= best_ask

    if best_ask is None or price < best_ask:
        return True
    return best_bid is not None and price <= best_bid


def check_admission(side: str, price: Decimal,
                    best_bid: Optional[Decimal], best_ask: Optional[Decimal]) -> None:
    """Raise AdmissionRejected, carrying the current best prices, if not admissible."""
    if not can_place_order(side, price, best_bid, best_ask):
        raise AdmissionRejected(best_bid, best_ask)
