# engine/turns.py
from decimal import Decimal
from typing import Container, Dict, List, Optional, Sequence
import logging

from engine.errors import NotFoundError, PreconditionFailed, TurnViolation, ValidationError

logger = logging.getLogger(__name__)

INACTIVE = -1

# Values accepted by set_current() meaning "nobody's turn"
NO_TURN_SENTINELS = (None, "", "none", INACTIVE)


class TurnScheduler:
    """
    Optional round-robin gate over who may trade next.

    While active, only turn_order[current_index] may submit or cancel; each
    accepted action passes the turn on and records the mid price.
    """

    def __init__(self):
        self.turn_order: List[str] = []
        self.current_index: int = INACTIVE
        self.history: List[Dict] = []

    @property
    def is_active(self) -> bool:
        return bool(self.turn_order) and self.current_index >= 0

    @property
    def current_player(self) -> Optional[str]:
        return self.turn_order[self.current_index] if self.is_active else None

    def start(self) -> str:
        if not self.turn_order:
            raise PreconditionFailed("Turn order is empty. Add players to turn order first.")
        self.current_index = 0
        return self.turn_order[0]

    def stop(self) -> None:
        self.current_index = INACTIVE

    def validate_order(self, names: Sequence[str], known: Container[str]) -> List[str]:
        """Check a candidate turn order without applying it."""
        if not isinstance(names, (list, tuple)):
            raise ValidationError("turnOrder must be array")
        for name in names:
            if not isinstance(name, str) or name not in known:
                raise NotFoundError(f"Player {name} not found", player=name)
        return list(names)

    def set_order(self, names: Sequence[str], known: Container[str]) -> None:
        """Replace the turn order; every name must be a known participant."""
        new_order = self.validate_order(names, known)
        self.turn_order = new_order
        if self.current_index >= len(new_order):
            self.current_index = 0 if new_order else INACTIVE

    def set_current(self, name) -> int:
        """Jump to name's slot, or deactivate on a sentinel value."""
        if name in NO_TURN_SENTINELS:
            self.current_index = INACTIVE
        elif name in self.turn_order:
            self.current_index = self.turn_order.index(name)
        else:
            raise NotFoundError(f"Player {name} not in turn order", player=name)
        return self.current_index

    def check_turn(self, name: str) -> None:
        if self.is_active and name != self.current_player:
            raise TurnViolation(self.current_player)

    def advance(self, mid_price: Optional[Decimal]) -> None:
        """Pass the turn on and snapshot the mid price; no-op while inactive."""
        if not self.is_active:
            return
        self.current_index = (self.current_index + 1) % len(self.turn_order)
        self.history.append({"turn": len(self.history) + 1, "mid_price": mid_price})
        logger.info(f"Turn passed to {self.current_player} (turn {len(self.history)})")

    def to_dict(self) -> dict:
        return {
            "turn_order": list(self.turn_order),
            "current_turn_index": self.current_index,
            "current_player": self.current_player,
            "price_history": [
                {"turn": entry["turn"],
                 "mid_price": str(entry["mid_price"]) if entry["mid_price"] is not None else None}
                for entry in self.history
            ],
        }
