# engine/ledger.py
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, Optional
import logging

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _sign(value) -> int:
    return 1 if value > 0 else -1


@dataclass
class Position:
    """
    Net position of one participant under the average-cost convention.

    Fields:
        quantity: net contracts, positive long / negative short
        cost_basis: signed accumulated cost of the open quantity
        realized_pnl: profit locked in by closing trades and settlement
        cash: running cash balance, buying spends and selling receives
    """
    quantity: int = 0
    cost_basis: Decimal = field(default_factory=lambda: ZERO)
    realized_pnl: Decimal = field(default_factory=lambda: ZERO)
    cash: Decimal = field(default_factory=lambda: ZERO)

    @property
    def avg_price(self) -> Optional[Decimal]:
        if self.quantity == 0:
            return None
        return self.cost_basis / self.quantity

    def unrealized_pnl(self, mark: Decimal) -> Decimal:
        """Profit the open quantity would realize if closed at mark."""
        return self.quantity * mark - self.cost_basis

    def to_dict(self) -> dict:
        avg = self.avg_price
        return {
            "quantity": self.quantity,
            "cost_basis": str(self.cost_basis),
            "avg_price": str(avg) if avg is not None else None,
            "realized_pnl": str(self.realized_pnl),
            "cash": str(self.cash),
        }


class PositionLedger:
    """Per-participant positions, driven one trade at a time."""

    def __init__(self):
        self.positions: Dict[str, Position] = {}

    def ensure(self, name: str) -> Position:
        if name not in self.positions:
            self.positions[name] = Position()
        return self.positions[name]

    def get(self, name: str) -> Optional[Position]:
        return self.positions.get(name)

    def update_position(self, name: str, signed_quantity: int, price: Decimal) -> Position:
        """
        Apply one side of a trade.

        Args:
            name: participant
            signed_quantity: +size for the buyer, -size for the seller
            price: execution price
        """
        pos = self.ensure(name)
        pos.cash -= signed_quantity * price

        if pos.quantity == 0 or _sign(signed_quantity) == _sign(pos.quantity):
            pos.cost_basis += signed_quantity * price
            pos.quantity += signed_quantity
            return pos

        direction = _sign(pos.quantity)
        avg_cost = pos.cost_basis / pos.quantity
        closed_size = min(abs(signed_quantity), abs(pos.quantity))

        pos.realized_pnl += closed_size * (price - avg_cost) * direction
        pos.quantity -= closed_size * direction
        if pos.quantity == 0:
            pos.cost_basis = ZERO
        else:
            pos.cost_basis -= closed_size * avg_cost * direction

        residual = abs(signed_quantity) - closed_size
        if residual > 0:
            # Flipped through zero: the rest opens a new lot at the trade price
            pos.quantity -= residual * direction
            pos.cost_basis -= residual * price * direction
        return pos

    def apply_trade(self, trade) -> None:
        self.update_position(trade.buyer, trade.size, trade.price)
        self.update_position(trade.seller, -trade.size, trade.price)

    @classmethod
    def replay(cls, trades: Iterable) -> "PositionLedger":
        """Rebuild a ledger from a trade log, oldest trade first."""
        ledger = cls()
        for trade in trades:
            ledger.apply_trade(trade)
        return ledger

    def settle(self, settlement_price: Decimal) -> Dict[str, Decimal]:
        """
        Close every open position at settlement_price.

        Unrealized profit is folded into realized, the position's value is
        paid out in cash, and quantity and cost basis are zeroed. Flat
        positions are untouched, so a second call changes nothing.

        Returns:
            Dict of participant -> profit realized by this settlement
        """
        realized = {}
        for name, pos in self.positions.items():
            if pos.quantity == 0:
                continue
            unrealized = pos.unrealized_pnl(settlement_price)
            pos.realized_pnl += unrealized
            pos.cash += pos.quantity * settlement_price
            logger.info(f"Settled {name}: qty={pos.quantity} pnl={unrealized} cash={pos.cash}")
            pos.quantity = 0
            pos.cost_basis = ZERO
            realized[name] = unrealized
        return realized

    def unrealized_pnl(self, name: str, mark: Optional[Decimal]) -> Optional[Decimal]:
        """
        Open profit of a participant marked at mark.

        Flat or unknown participants have none. Returns None when an open
        position has no mark to value it against.
        """
        pos = self.positions.get(name)
        if pos is None or pos.quantity == 0:
            return ZERO
        if mark is None:
            return None
        return pos.unrealized_pnl(mark)

    def total_value(self, name: str, mark: Optional[Decimal]) -> Optional[Decimal]:
        """Cash plus the open quantity marked at mark."""
        pos = self.positions.get(name)
        if pos is None:
            return ZERO
        if pos.quantity == 0:
            return pos.cash
        if mark is None:
            return None
        return pos.cash + pos.quantity * mark

    def net_quantity(self) -> int:
        return sum(pos.quantity for pos in self.positions.values())

    def to_dict(self, mark: Optional[Decimal] = None) -> Dict[str, dict]:
        """Serialize every position, valued at mark where one is given."""
        result = {}
        for name, pos in self.positions.items():
            entry = pos.to_dict()
            unrealized = self.unrealized_pnl(name, mark)
            total = self.total_value(name, mark)
            entry["unrealized_pnl"] = str(unrealized) if unrealized is not None else None
            entry["total_value"] = str(total) if total is not None else None
            result[name] = entry
        return result

    def __eq__(self, other) -> bool:
        if not isinstance(other, PositionLedger):
            return NotImplemented
        return self.positions == other.positions

    def __len__(self) -> int:
        return len(self.positions)
