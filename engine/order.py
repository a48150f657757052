# engine/order.py
from dataclasses import dataclass, field
from decimal import Decimal, getcontext
import time
from typing import Optional

# Set high precision for financial calculations
getcontext().prec = 28

BID = "bid"
ASK = "ask"
SIDES = (BID, ASK)

LIMIT = "limit"
MARKET = "market"
ORDER_TYPES = (LIMIT, MARKET)


def opposite_side(side: str) -> str:
    return ASK if side == BID else BID


@dataclass
class Order:
    """
    A participant's order.

    Fields:
        order_id: monotonic integer assigned by the engine
        owner: participant name
        side: "bid" or "ask"
        price: Decimal | None (None for market orders)
        size: remaining contracts, decremented as the order fills
        order_type: "limit" or "market"
        created_at: float (epoch seconds)
    """
    order_id: int
    owner: str
    side: str
    price: Optional[Decimal]
    size: int
    order_type: str = LIMIT
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.side not in SIDES:
            raise ValueError("Side must be 'bid' or 'ask'")
        if self.order_type not in ORDER_TYPES:
            raise ValueError("Invalid order type")
        if isinstance(self.size, bool) or not isinstance(self.size, int) or self.size <= 0:
            raise ValueError("Size must be a positive integer")
        if self.order_type == LIMIT and (self.price is None or self.price <= 0):
            raise ValueError("Limit orders require a positive price")
        if self.order_type == MARKET and self.price is not None:
            raise ValueError("Market orders cannot have a price")

    def is_market(self) -> bool:
        return self.order_type == MARKET

    def is_bid(self) -> bool:
        return self.side == BID

    def accepts(self, resting_price: Decimal) -> bool:
        """Check whether a resting opposite-side price is compatible with this order."""
        if self.is_market():
            return True
        if self.is_bid():
            return resting_price <= self.price
        return resting_price >= self.price

    def fill(self, quantity: int) -> None:
        """
        Fill part of the order.

        Args:
            quantity: Contracts to take off the remaining size
        """
        if quantity <= 0:
            raise ValueError("Fill quantity must be positive")
        if quantity > self.size:
            raise ValueError("Cannot fill more than remaining size")
        self.size -= quantity

    def to_dict(self) -> dict:
        """Convert order to dictionary for serialization."""
        return {
            "id": self.order_id,
            "player": self.owner,
            "side": self.side,
            "price": str(self.price) if self.price is not None else None,
            "size": self.size,
            "order_type": self.order_type,
            "timestamp": self.created_at,
        }

    def __repr__(self) -> str:
        price_str = str(self.price) if self.price is not None else "MKT"
        return f"<Order {self.order_id} {self.owner} {self.side.upper()} {self.size}@{price_str}>"
