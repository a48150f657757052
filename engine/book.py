# engine/book.py
from collections import deque
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Tuple
from engine.order import Order, BID, ASK, opposite_side
import time
import logging
from sortedcontainers import SortedDict

logger = logging.getLogger(__name__)


class PriceLevel:
    """
    All resting orders at one price, oldest first.
    """
    def __init__(self, price: Decimal):
        self.price: Decimal = price
        self.orders: deque = deque()
        self.aggregate: int = 0
        self.order_map: Dict[int, Order] = {}  # For O(1) order lookup

    def add_order(self, order: Order) -> None:
        self.orders.append(order)
        self.order_map[order.order_id] = order
        self.aggregate += order.size

    def peek_oldest(self) -> Optional[Order]:
        """Get the oldest order without removing it."""
        return self.orders[0] if self.orders else None

    def pop_oldest(self) -> Optional[Order]:
        """Remove and return the oldest order."""
        if not self.orders:
            return None
        order = self.orders.popleft()
        self.order_map.pop(order.order_id, None)
        self.aggregate -= order.size
        return order

    def remove_order(self, order_id: int) -> Optional[Order]:
        """
        Remove a specific order by ID.
        Returns the removed order, or None if it is not at this level.
        """
        order = self.order_map.pop(order_id, None)
        if order is None:
            return None
        self.orders.remove(order)
        self.aggregate -= order.size
        return order

    def reduce(self, quantity: int) -> None:
        """Update aggregate when the oldest order is partially filled."""
        self.aggregate -= quantity

    def is_empty(self) -> bool:
        return len(self.orders) == 0

    def __len__(self) -> int:
        return len(self.orders)

    def __iter__(self) -> Iterator[Order]:
        return iter(self.orders)


class Trade:
    """One execution between a resting order and an aggressor."""
    def __init__(self, trade_id: int, price: Decimal, size: int,
                 maker_order: Order, taker_order: Order):
        self.trade_id = trade_id
        self.timestamp = time.time()
        self.price = price
        self.size = size
        if taker_order.is_bid():
            self.buyer, self.seller = taker_order.owner, maker_order.owner
        else:
            self.buyer, self.seller = maker_order.owner, taker_order.owner
        self.maker_order_id = maker_order.order_id
        self.taker_order_id = taker_order.order_id
        self.aggressor_side = taker_order.side

    def to_dict(self) -> dict:
        """Convert trade to dictionary for API response."""
        return {
            "id": self.trade_id,
            "buyer": self.buyer,
            "seller": self.seller,
            "price": str(self.price),
            "size": self.size,
            "timestamp": self.timestamp,
            "aggressor_side": self.aggressor_side,
            "maker_order_id": self.maker_order_id,
            "taker_order_id": self.taker_order_id,
        }

    def __repr__(self) -> str:
        return f"<Trade {self.trade_id} {self.buyer}<-{self.seller} {self.size}@{self.price}>"


class OrderBook:
    """
    Two-sided book of resting limit orders with strict price-time priority.

    Not synchronized on its own: GameEngine serializes every access.
    """
    def __init__(self):
        # Keys are negative for bids so both sides iterate best price first
        self.bids: SortedDict = SortedDict()
        self.asks: SortedDict = SortedDict()

        # Order tracking
        self.orders: Dict[int, Tuple[Order, PriceLevel]] = {}

        self.trade_seq: int = 0

        self.stats = {
            "total_trades": 0,
            "total_volume": 0,
            "last_trade_price": None,
            "last_trade_time": None
        }

    def _levels(self, side: str) -> SortedDict:
        return self.bids if side == BID else self.asks

    @staticmethod
    def _key(side: str, price: Decimal) -> Decimal:
        return -price if side == BID else price

    def best_bid(self) -> Optional[Decimal]:
        """Get best bid price (highest)."""
        return -self.bids.peekitem(0)[0] if self.bids else None

    def best_ask(self) -> Optional[Decimal]:
        """Get best ask price (lowest)."""
        return self.asks.peekitem(0)[0] if self.asks else None

    def best_prices(self) -> Tuple[Optional[Decimal], Optional[Decimal]]:
        return self.best_bid(), self.best_ask()

    def spread(self) -> Optional[Decimal]:
        bb, ba = self.best_prices()
        return ba - bb if bb is not None and ba is not None else None

    def mid_price(self) -> Optional[Decimal]:
        bb, ba = self.best_prices()
        return (bb + ba) / 2 if bb is not None and ba is not None else None

    def is_crossed(self) -> bool:
        bb, ba = self.best_prices()
        return bb is not None and ba is not None and bb >= ba

    def get_bbo(self) -> Dict:
        """Get Best Bid Offer snapshot."""
        bb, ba = self.best_prices()
        spread, mid = self.spread(), self.mid_price()
        return {
            "best_bid": str(bb) if bb is not None else None,
            "best_ask": str(ba) if ba is not None else None,
            "spread": str(spread) if spread is not None else None,
            "mid_price": str(mid) if mid is not None else None,
        }

    def get_depth(self, levels: int = 10) -> Dict:
        """Get aggregated depth (L2 data), best levels first."""
        bids = [[str(level.price), level.aggregate] for level in self.bids.values()[:levels]]
        asks = [[str(level.price), level.aggregate] for level in self.asks.values()[:levels]]
        return {"bids": bids, "asks": asks}

    def iter_orders(self, side: str) -> Iterator[Order]:
        """Resting orders of one side in priority order."""
        for level in self._levels(side).values():
            yield from level

    def all_orders(self) -> List[Order]:
        return list(self.iter_orders(BID)) + list(self.iter_orders(ASK))

    def orders_of(self, owner: str) -> List[Order]:
        return [order for order, _ in self.orders.values() if order.owner == owner]

    def get_order(self, order_id: int) -> Optional[Order]:
        entry = self.orders.get(order_id)
        return entry[0] if entry else None

    def add_resting_order(self, order: Order) -> None:
        """Add a resting limit order to the book."""
        levels = self._levels(order.side)
        key = self._key(order.side, order.price)
        level = levels.get(key)
        if level is None:
            level = levels[key] = PriceLevel(order.price)
        level.add_order(order)
        self.orders[order.order_id] = (order, level)

    def _remove_empty_level(self, level: PriceLevel, side: str) -> None:
        if level.is_empty():
            self._levels(side).pop(self._key(side, level.price), None)

    def cancel(self, order_id: int) -> Optional[Order]:
        """
        Cancel a resting order by id.
        Returns the removed order, or None if not found.
        """
        entry = self.orders.pop(order_id, None)
        if entry is None:
            return None
        order, level = entry
        level.remove_order(order_id)
        self._remove_empty_level(level, order.side)
        logger.debug(f"Order {order_id} cancelled, {order.size} left unfilled")
        return order

    def cancel_owner(self, owner: str) -> List[Order]:
        """Cancel every resting order belonging to owner."""
        return [self.cancel(order.order_id) for order in self.orders_of(owner)]

    def available_liquidity(self, incoming: Order) -> int:
        """Total resting size the incoming order could trade against."""
        total = 0
        for level in self._levels(opposite_side(incoming.side)).values():
            if not incoming.accepts(level.price):
                break
            total += level.aggregate
        return total

    def _execute_trade(self, maker_order: Order, taker_order: Order,
                       level: PriceLevel, quantity: int) -> Trade:
        maker_order.fill(quantity)
        taker_order.fill(quantity)
        level.reduce(quantity)

        self.trade_seq += 1
        trade = Trade(
            trade_id=self.trade_seq,
            price=level.price,
            size=quantity,
            maker_order=maker_order,
            taker_order=taker_order,
        )

        self.stats["total_trades"] += 1
        self.stats["total_volume"] += quantity
        self.stats["last_trade_price"] = trade.price
        self.stats["last_trade_time"] = trade.timestamp
        return trade

    def match(self, incoming: Order) -> List[Trade]:
        """
        Walk the opposite side best price first, oldest order first, until the
        incoming order is filled or no compatible resting order is left.
        Every execution happens at the resting order's price.
        """
        trades: List[Trade] = []
        opposite = opposite_side(incoming.side)
        levels = self._levels(opposite)

        while incoming.size > 0 and levels:
            _, level = levels.peekitem(0)
            if not incoming.accepts(level.price):
                break

            while incoming.size > 0 and not level.is_empty():
                maker_order = level.peek_oldest()
                trade_qty = min(maker_order.size, incoming.size)
                trades.append(self._execute_trade(maker_order, incoming, level, trade_qty))

                if maker_order.size == 0:
                    level.pop_oldest()
                    self.orders.pop(maker_order.order_id, None)

            self._remove_empty_level(level, opposite)

        return trades

    def submit(self, order: Order) -> Tuple[List[Trade], bool]:
        """
        Match an order and rest any limit remainder.

        Returns:
            Tuple[List[Trade], bool]: (trades_executed, order_resting)
        """
        trades = self.match(order)
        resting = False
        if order.size > 0 and not order.is_market():
            self.add_resting_order(order)
            resting = True
        elif order.size > 0:
            logger.warning(f"Market order {order.order_id} partially cancelled: no liquidity")
        return trades, resting

    def get_statistics(self) -> Dict:
        stats = self.stats.copy()
        stats.update({
            "active_orders": len(self.orders),
            "bid_levels": len(self.bids),
            "ask_levels": len(self.asks),
            "last_trade_price": str(stats["last_trade_price"]) if stats["last_trade_price"] is not None else None
        })
        return stats

    def __len__(self) -> int:
        return len(self.orders)
